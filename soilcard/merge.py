from typing import List

from .types import ExtractionRecord, NutrientField


def merge_records(base: ExtractionRecord, update: ExtractionRecord) -> ExtractionRecord:
    """
    Fusionne le relevé d'une nouvelle tentative dans le relevé courant.

    Politique "dernier écrivain gagne": toute valeur renvoyée par `update`
    remplace celle de `base`, même si `base` en avait déjà une. Les champs
    absents de `update` restent inchangés. Une passe ultérieure peut donc
    écraser une valeur correcte par une valeur erronée (risque connu, conservé).
    """
    merged = dict(base.values)
    merged.update(update.values)
    return ExtractionRecord(merged)


def fields_gained(before: ExtractionRecord, after: ExtractionRecord) -> List[NutrientField]:
    """Champs présents dans `after` mais pas dans `before`, dans l'ordre canonique."""
    return [f for f in NutrientField if f in after and f not in before]


def fields_overwritten(before: ExtractionRecord, update: ExtractionRecord) -> List[NutrientField]:
    # valeur déjà connue remplacée par une valeur différente
    return [
        f for f in NutrientField
        if f in before and f in update and before.get(f) != update.get(f)
    ]
