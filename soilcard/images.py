import base64
import binascii
import io
import re
from pathlib import Path
from typing import Union

from PIL import Image, UnidentifiedImageError

SUPPORTED_EXTS = {".jpg", ".jpeg", ".png", ".webp"}
SUPPORTED_MIME = {"image/jpeg", "image/jpg", "image/png", "image/webp"}
# Formats détectés par Pillow sur le contenu réel, quel que soit le nom ou le MIME annoncé
SUPPORTED_FORMATS = {"JPEG", "PNG", "WEBP"}
MAX_IMAGE_BYTES = 5 * 1024 * 1024

ImageInput = Union[str, Path, bytes]

_DATA_URI_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<data>.+)$", re.DOTALL)


def _check_size(size: int) -> None:
    if size > MAX_IMAGE_BYTES:
        raise RuntimeError(
            f"Image trop volumineuse: {size} octets (max {MAX_IMAGE_BYTES // (1024 * 1024)} Mo)"
        )


def _decode_data_uri(uri: str) -> bytes:
    m = _DATA_URI_RE.match(uri.strip())
    if not m:
        raise RuntimeError("Data URI invalide (format attendu: 'data:<mimetype>;base64,<données>')")
    mime = m.group("mime").lower()
    if mime not in SUPPORTED_MIME:
        raise RuntimeError(f"Type MIME non supporté: {mime}")
    try:
        return base64.b64decode(m.group("data"), validate=False)
    except (binascii.Error, ValueError) as e:
        raise RuntimeError(f"Data URI: base64 illisible ({e})") from e


def _to_png(raw: bytes) -> bytes:
    _check_size(len(raw))
    try:
        with Image.open(io.BytesIO(raw)) as img:
            if img.format not in SUPPORTED_FORMATS:
                raise RuntimeError(f"Format d'image non supporté: {img.format}")
            img.load()
            if img.mode not in ("RGB", "RGBA", "L"):
                img = img.convert("RGB")
            with io.BytesIO() as buf:
                img.save(buf, format="PNG")
                return buf.getvalue()
    except UnidentifiedImageError as e:
        raise RuntimeError("Image illisible: format non reconnu") from e


def load_image_bytes(image: ImageInput) -> bytes:
    """
    Charge la photo d'une Soil Health Card et la ré-encode en PNG.

    Accepte un chemin de fichier (JPG/PNG/WEBP), des octets bruts ou
    une data URI `data:<mimetype>;base64,<données>`. Les trois formes
    sont soumises aux mêmes règles: JPEG/PNG/WEBP uniquement, 5 Mo max.
    """
    if isinstance(image, bytes):
        return _to_png(image)

    if isinstance(image, str) and image.startswith("data:"):
        return _to_png(_decode_data_uri(image))

    path = Path(image).expanduser().resolve()
    suffix = path.suffix.lower()
    if suffix not in SUPPORTED_EXTS:
        raise RuntimeError(f"Type de fichier non supporté: {suffix}")
    _check_size(path.stat().st_size)
    return _to_png(path.read_bytes())


def to_data_url(png_bytes: bytes) -> str:
    b64 = base64.b64encode(png_bytes).decode("utf-8")
    return f"data:image/png;base64,{b64}"
