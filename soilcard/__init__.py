"""Soilcard package: orchestration de la numérisation des Soil Health Cards.

This package provides:
- Configuration loading utilities
- Typed structures for nutrient records, instruction variants and reports
- Merge, coverage and plausibility policies
- An Azure OpenAI vision extractor behind an `Extractor` interface
- An orchestrator running up to three extraction attempts per card
- Storage helpers and a CLI to process folders of card photos in batch mode
"""

from .orchestrator import SoilCardExtractionError, digitize_soil_card, run_card_pipeline
from .types import ExtractionRecord, InstructionVariant, NutrientField, SoilCardResult, VariantKind

__all__ = [
    "config",
    "types",
    "merge",
    "policy",
    "validation",
    "images",
    "extractor_service",
    "storage",
    "writer",
    "orchestrator",
    "digitize_soil_card",
    "run_card_pipeline",
    "SoilCardExtractionError",
    "ExtractionRecord",
    "InstructionVariant",
    "NutrientField",
    "SoilCardResult",
    "VariantKind",
]
