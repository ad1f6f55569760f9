from typing import FrozenSet

from .types import ALL_FIELDS, ExtractionRecord, NutrientField

# 10 champs sur 12 suffisent: pas d'appel modèle supplémentaire pour les deux derniers.
COVERAGE_THRESHOLD = 10
MAX_ATTEMPTS = 3


def coverage_reached(record: ExtractionRecord) -> bool:
    return record.coverage() >= COVERAGE_THRESHOLD


def targeted_scope(record: ExtractionRecord) -> FrozenSet[NutrientField]:
    """Champs à cibler pour la tentative 3: tous les champs moins ceux déjà présents."""
    return ALL_FIELDS - record.present_fields()
