"""
Contrôles de plausibilité agronomique sur le relevé final.

Les avertissements produits sont purement consultatifs: ils ne modifient
jamais le relevé et ne font jamais échouer le pipeline.
"""

import logging
from typing import Dict, List, Mapping, Optional, Tuple

from .types import ExtractionRecord, NutrientField

logger = logging.getLogger(__name__)

# Bornes inclusives (min, max); None = borne ouverte.
PlausibilityRange = Tuple[Optional[float], Optional[float]]

PLAUSIBILITY_RANGES: Dict[NutrientField, PlausibilityRange] = {
    NutrientField.PH: (3.0, 12.0),
    NutrientField.EC: (0.0, 20.0),               # dS/m
    NutrientField.ORGANIC_CARBON: (0.0, 5.0),    # %
    NutrientField.NITROGEN: (0.0, 1000.0),       # kg/ha
    NutrientField.PHOSPHORUS: (0.0, 200.0),      # kg/ha
    NutrientField.POTASSIUM: (0.0, 2000.0),      # kg/ha
    NutrientField.SULPHUR: (0.0, 200.0),         # ppm
    NutrientField.ZINC: (0.0, 20.0),             # ppm
    NutrientField.BORON: (0.0, 10.0),            # ppm
    NutrientField.IRON: (0.0, 300.0),            # ppm
    NutrientField.MANGANESE: (0.0, 200.0),       # ppm
    NutrientField.COPPER: (0.0, 30.0),           # ppm
}


def _fmt_bound(bound: float) -> str:
    return f"{bound:g}"


def format_range(bounds: PlausibilityRange) -> str:
    low, high = bounds
    if low is not None and high is not None:
        return f"[{_fmt_bound(low)},{_fmt_bound(high)}]"
    if low is not None:
        return f"[>={_fmt_bound(low)}]"
    if high is not None:
        return f"[<={_fmt_bound(high)}]"
    return "[any]"


def in_range(value: float, bounds: PlausibilityRange) -> bool:
    low, high = bounds
    if low is not None and value < low:
        return False
    if high is not None and value > high:
        return False
    return True


def validate_record(
    record: ExtractionRecord,
    ranges: Optional[Mapping[NutrientField, PlausibilityRange]] = None,
) -> List[str]:
    """
    Produit la liste des avertissements pour le relevé final:
    - une valeur hors plage → "<champ> = <valeur> outside expected range [min,max]"
    - un champ absent → "<champ> not extracted"
    """
    table = PLAUSIBILITY_RANGES if ranges is None else ranges
    warnings: List[str] = []

    for nutrient in NutrientField:
        value = record.get(nutrient)
        if value is None:
            warnings.append(f"{nutrient.value} not extracted")
            continue
        bounds = table.get(nutrient)
        if bounds is not None and not in_range(value, bounds):
            warnings.append(
                f"{nutrient.value} = {value} outside expected range {format_range(bounds)}"
            )

    logger.debug("Validation: %d avertissement(s)", len(warnings))
    return warnings
