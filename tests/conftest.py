"""
Pytest configuration and shared fixtures for the soilcard tests.
"""

import io
import sys
from pathlib import Path
from typing import Dict, List, Optional, Union

import pytest
from PIL import Image

# Add the project root to the Python path so tests can import modules
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from soilcard.extractor_service import Extractor  # noqa: E402
from soilcard.types import ExtractionRecord, InstructionVariant, NutrientField  # noqa: E402


# Lecture typique d'une carte complète
FULL_CARD: Dict[str, float] = {
    "ph": 7.2,
    "ec": 0.45,
    "organicCarbon": 0.62,
    "nitrogen": 245.0,
    "phosphorus": 18.5,
    "potassium": 310.0,
    "sulphur": 12.4,
    "zinc": 0.8,
    "boron": 0.6,
    "iron": 5.2,
    "manganese": 3.1,
    "copper": 0.9,
}


def card_record(*names: str, **overrides: float) -> ExtractionRecord:
    """Relevé contenant les champs nommés (valeurs de FULL_CARD) plus les surcharges."""
    values = {n: FULL_CARD[n] for n in names}
    values.update(overrides)
    return ExtractionRecord.from_mapping(values)


Script = Union[ExtractionRecord, None, Exception]


class ScriptedExtractor(Extractor):
    """Extractor factice: renvoie, tentative après tentative, les réponses scriptées."""

    def __init__(self, responses: List[Script]):
        self.responses = list(responses)
        self.calls: List[InstructionVariant] = []

    async def extract(self, image: bytes, variant: InstructionVariant) -> Optional[ExtractionRecord]:
        self.calls.append(variant)
        if not self.responses:
            raise AssertionError("unexpected extra extraction call")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def png_bytes() -> bytes:
    img = Image.new("RGB", (8, 8), color=(120, 80, 40))
    with io.BytesIO() as buf:
        img.save(buf, format="PNG")
        return buf.getvalue()


@pytest.fixture
def gif_bytes() -> bytes:
    img = Image.new("RGB", (8, 8), color=(120, 80, 40))
    with io.BytesIO() as buf:
        img.save(buf, format="GIF")
        return buf.getvalue()


@pytest.fixture
def card_image(tmp_path, png_bytes) -> Path:
    path = tmp_path / "inputs" / "card_01.jpg"
    path.parent.mkdir(parents=True)
    Image.open(io.BytesIO(png_bytes)).save(path, format="JPEG")
    return path


@pytest.fixture
def azure_env(monkeypatch):
    monkeypatch.setenv("AZURE_OPENAI_ENDPOINT", "https://test.openai.azure.com")
    monkeypatch.setenv("AZURE_OPENAI_DEPLOYMENT", "gpt-4o-test")
    monkeypatch.setenv("AZURE_OPENAI_API_KEY", "test-key")


@pytest.fixture
def all_fields() -> List[NutrientField]:
    return list(NutrientField)
