import glob
import json
import logging
import shutil
import uuid
from pathlib import Path
from typing import Dict

from .types import ProcessPaths

logger = logging.getLogger(__name__)

RESULT_SUFFIX = "_soil_card.json"
ERRORS_FILE = "errors.json"


def _safe_dir_name(name: str) -> str:
    return "".join(c if c.isalnum() or c in ("_", "-", ".") else "_" for c in name)


def result_path(process_dir: Path, base_name: str) -> Path:
    return process_dir / f"{base_name}{RESULT_SUFFIX}"


def result_exists(out_root: Path, image_path: str) -> bool:
    """
    Vrai si un dossier de process de cette image contient déjà un résultat.

    Couvre le dossier par défaut et ses variantes suffixées `<base>_<hex>`.
    """
    base_name = Path(image_path).stem
    pattern = f"{glob.escape(_safe_dir_name(base_name))}*/{glob.escape(base_name)}{RESULT_SUFFIX}"
    return any(Path(out_root).glob(pattern))


def ensure_process_dir(out_root: Path, base_name: str) -> Path:
    """
    Dossier de process de l'image. Le dossier par défaut est réutilisé tant
    qu'il ne contient pas de résultat (ex: après un échec); sinon dossier unique.
    """
    base = _safe_dir_name(base_name)
    candidate = out_root / base
    if not result_path(candidate, base_name).exists():
        candidate.mkdir(parents=True, exist_ok=True)
        # errors.json d'une exécution précédente ratée
        stale = candidate / ERRORS_FILE
        if stale.exists():
            stale.unlink()
        return candidate
    # fallback unique
    unique = out_root / f"{base}_{uuid.uuid4().hex[:8]}"
    unique.mkdir(parents=True, exist_ok=True)
    return unique


def prepare_paths(image_path: str, out_root: Path) -> ProcessPaths:
    image = Path(image_path).expanduser().resolve()
    base_name = image.stem
    process_dir = ensure_process_dir(out_root, base_name)
    original_image_path = process_dir / f"original_{image.name}"
    try:
        shutil.copy2(str(image), str(original_image_path))
    except OSError as e:
        # la copie n'est qu'une trace; le traitement lit l'image source
        logger.warning("Copie de l'image originale impossible (%s): %s", image, e)
    return ProcessPaths(
        run_root=out_root,
        process_dir=process_dir,
        base_name=base_name,
        original_image_path=original_image_path,
    )


def write_json(path: Path, data: Dict) -> None:
    path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")


def write_status(process_dir: Path, status: Dict) -> Path:
    p = process_dir / "status.json"
    write_json(p, status)
    return p


def write_errors(process_dir: Path, errors: Dict) -> Path:
    p = process_dir / ERRORS_FILE
    write_json(p, errors)
    return p
