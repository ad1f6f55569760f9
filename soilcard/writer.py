from pathlib import Path

from .storage import result_path, write_json
from .types import SoilCardResult


def write_result_json(out_dir: Path, prefix: str, result: SoilCardResult) -> Path:
    """
    Écrit le relevé final dans `<prefix>_soil_card.json`:
    les douze clés camelCase (null si non extrait), les avertissements
    et le nombre de champs remplis.
    """
    path = result_path(out_dir, prefix)
    write_json(path, result.to_dict())
    return path
