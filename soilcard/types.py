from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional


class NutrientField(str, Enum):
    """Les douze paramètres lus sur une Soil Health Card (ensemble fermé)."""

    PH = "ph"
    EC = "ec"
    ORGANIC_CARBON = "organicCarbon"
    NITROGEN = "nitrogen"
    PHOSPHORUS = "phosphorus"
    POTASSIUM = "potassium"
    SULPHUR = "sulphur"
    ZINC = "zinc"
    BORON = "boron"
    IRON = "iron"
    MANGANESE = "manganese"
    COPPER = "copper"


ALL_FIELDS: FrozenSet[NutrientField] = frozenset(NutrientField)


class InvalidRecordError(ValueError):
    """Valeur non finie ou clé inconnue dans un ExtractionRecord."""


@dataclass
class ExtractionRecord:
    """
    Relevé partiel: NutrientField → valeur numérique.

    Une clé absente signifie "non extrait" (différent d'un 0 légitime).
    Toute valeur présente est un réel fini.
    """
    values: Dict[NutrientField, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        checked: Dict[NutrientField, float] = {}
        for key, value in self.values.items():
            if not isinstance(key, NutrientField):
                raise InvalidRecordError(f"Champ inconnu: {key!r}")
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise InvalidRecordError(f"{key.value}: valeur non numérique {value!r}")
            if not math.isfinite(value):
                raise InvalidRecordError(f"{key.value}: valeur non finie {value!r}")
            checked[key] = float(value)
        self.values = checked

    @classmethod
    def from_mapping(cls, data: Mapping[str, Optional[float]]) -> "ExtractionRecord":
        """Construit un relevé à partir de clés camelCase (`organicCarbon`, ...)."""
        values: Dict[NutrientField, float] = {}
        for key, value in data.items():
            try:
                nutrient = NutrientField(key)
            except ValueError:
                raise InvalidRecordError(f"Champ inconnu: {key!r}") from None
            if value is not None:
                values[nutrient] = value
        return cls(values)

    def get(self, nutrient: NutrientField) -> Optional[float]:
        return self.values.get(nutrient)

    def present_fields(self) -> FrozenSet[NutrientField]:
        return frozenset(self.values)

    def missing_fields(self) -> FrozenSet[NutrientField]:
        return ALL_FIELDS - self.present_fields()

    def coverage(self) -> int:
        return len(self.values)

    def is_empty(self) -> bool:
        return not self.values

    def to_dict(self) -> Dict[str, Optional[float]]:
        """Les douze clés dans l'ordre de l'énumération, `None` si non extrait."""
        return {f.value: self.values.get(f) for f in NutrientField}

    def __len__(self) -> int:
        return len(self.values)

    def __contains__(self, nutrient: object) -> bool:
        return nutrient in self.values


class VariantKind(str, Enum):
    """Les trois stratégies d'instructions, une par tentative."""

    FULL = "full"
    REINFORCED = "reinforced"
    TARGETED = "targeted"


@dataclass(frozen=True)
class InstructionVariant:
    """
    Stratégie de construction des instructions envoyées à l'Extractor.

    - FULL: tentative 1, les douze champs avec consignes exhaustives
    - REINFORCED: tentative 2, même ensemble, formulation renforcée
    - TARGETED: tentative 3, restreinte aux champs encore manquants
    """
    kind: VariantKind
    fields: FrozenSet[NutrientField] = ALL_FIELDS

    FULL = VariantKind.FULL
    REINFORCED = VariantKind.REINFORCED
    TARGETED = VariantKind.TARGETED

    def __post_init__(self) -> None:
        # ValueError pour une variante inconnue, dès la construction
        object.__setattr__(self, "kind", VariantKind(self.kind))
        object.__setattr__(self, "fields", frozenset(self.fields))

    @classmethod
    def full(cls) -> "InstructionVariant":
        return cls(cls.FULL)

    @classmethod
    def reinforced(cls) -> "InstructionVariant":
        return cls(cls.REINFORCED)

    @classmethod
    def targeted(cls, missing: Iterable[NutrientField]) -> "InstructionVariant":
        return cls(cls.TARGETED, frozenset(missing))

    def ordered_fields(self) -> List[NutrientField]:
        return [f for f in NutrientField if f in self.fields]


@dataclass(frozen=True)
class AttemptOutcome:
    """Résultat normalisé d'une tentative: relevé (éventuellement vide) + drapeau d'échec."""
    attempt: int
    variant: InstructionVariant
    record: ExtractionRecord
    failed: bool = False
    error: Optional[str] = None


@dataclass
class PipelineEvent:
    """Entrée de diagnostic émise par l'orchestrateur (hors contrat de retour)."""
    kind: str
    attempt: Optional[int] = None
    fields_gained: List[str] = field(default_factory=list)
    coverage: Optional[int] = None
    detail: Optional[str] = None


@dataclass
class SoilCardResult:
    """Sortie succès: relevé fusionné + avertissements consultatifs."""
    record: ExtractionRecord
    warnings: List[str] = field(default_factory=list)

    def to_form_values(self) -> Dict[str, float]:
        """Valeurs extraites uniquement, prêtes à pré-remplir un formulaire."""
        return {f.value: v for f, v in self.record.values.items()}

    def filled_fields(self) -> int:
        return self.record.coverage()

    def to_dict(self) -> Dict[str, object]:
        return {
            "record": self.record.to_dict(),
            "warnings": list(self.warnings),
            "filled_fields": self.filled_fields(),
        }


@dataclass
class ProcessConfig:
    """Configuration de haut niveau pour exécuter le pipeline."""
    out_root: Path
    azure_endpoint: Optional[str] = None
    azure_deployment: Optional[str] = None
    azure_api_key: Optional[str] = None
    api_timeout: float = 300.0
    api_max_retries: int = 2
    skip_existing: bool = False


@dataclass
class ProcessPaths:
    """Regroupe les chemins utilisés pendant le traitement d'une image."""
    run_root: Path
    process_dir: Path
    base_name: str
    original_image_path: Path


@dataclass
class StepResult:
    name: str
    ok: bool
    duration_sec: float
    output_paths: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class ProcessReport:
    image: str
    process_dir: str
    steps: List[StepResult]
    result: Optional[SoilCardResult] = None
    skipped: bool = False
