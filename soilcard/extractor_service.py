import asyncio
import json
import logging
import math
import re
from typing import Any, Dict, Iterable, List, Optional

from openai import OpenAI

from .config import load_config
from .images import to_data_url
from .types import ExtractionRecord, InstructionVariant, NutrientField, ProcessConfig

logger = logging.getLogger(__name__)


class Extractor:
    """Capacité externe: image PNG + variante d'instructions → relevé partiel, ou None."""

    async def extract(self, image: bytes, variant: InstructionVariant) -> Optional[ExtractionRecord]:
        raise NotImplementedError


# Libellé sur la carte, unité usuelle, synonymes fréquents.
FIELD_GUIDE: Dict[NutrientField, Dict[str, Any]] = {
    NutrientField.PH: {"label": "pH", "unit": None, "aliases": ["pH", "Soil Reaction"]},
    NutrientField.EC: {"label": "Electrical Conductivity (EC)", "unit": "dS/m", "aliases": ["EC", "E.C."]},
    NutrientField.ORGANIC_CARBON: {"label": "Organic Carbon (OC)", "unit": "%", "aliases": ["OC", "O.C."]},
    NutrientField.NITROGEN: {"label": "Available Nitrogen (N)", "unit": "kg/ha", "aliases": ["N"]},
    NutrientField.PHOSPHORUS: {"label": "Available Phosphorus (P)", "unit": "kg/ha", "aliases": ["P", "P2O5"]},
    NutrientField.POTASSIUM: {"label": "Available Potassium (K)", "unit": "kg/ha", "aliases": ["K", "K2O"]},
    NutrientField.SULPHUR: {"label": "Available Sulphur (S)", "unit": "ppm", "aliases": ["S", "Sulfur"]},
    NutrientField.ZINC: {"label": "Available Zinc (Zn)", "unit": "ppm", "aliases": ["Zn"]},
    NutrientField.BORON: {"label": "Available Boron (B)", "unit": "ppm", "aliases": ["B"]},
    NutrientField.IRON: {"label": "Available Iron (Fe)", "unit": "ppm", "aliases": ["Fe"]},
    NutrientField.MANGANESE: {"label": "Available Manganese (Mn)", "unit": "ppm", "aliases": ["Mn"]},
    NutrientField.COPPER: {"label": "Available Copper (Cu)", "unit": "ppm", "aliases": ["Cu"]},
}

# Clés normalisées (minuscules, alphanumérique seul) acceptées dans la réponse du modèle.
_KEY_ALIASES: Dict[str, NutrientField] = {
    "ph": NutrientField.PH,
    "soilreaction": NutrientField.PH,
    "ec": NutrientField.EC,
    "electricalconductivity": NutrientField.EC,
    "organiccarbon": NutrientField.ORGANIC_CARBON,
    "oc": NutrientField.ORGANIC_CARBON,
    "nitrogen": NutrientField.NITROGEN,
    "availablenitrogen": NutrientField.NITROGEN,
    "n": NutrientField.NITROGEN,
    "phosphorus": NutrientField.PHOSPHORUS,
    "availablephosphorus": NutrientField.PHOSPHORUS,
    "p": NutrientField.PHOSPHORUS,
    "p2o5": NutrientField.PHOSPHORUS,
    "potassium": NutrientField.POTASSIUM,
    "availablepotassium": NutrientField.POTASSIUM,
    "k": NutrientField.POTASSIUM,
    "k2o": NutrientField.POTASSIUM,
    "sulphur": NutrientField.SULPHUR,
    "sulfur": NutrientField.SULPHUR,
    "s": NutrientField.SULPHUR,
    "zinc": NutrientField.ZINC,
    "zn": NutrientField.ZINC,
    "boron": NutrientField.BORON,
    "b": NutrientField.BORON,
    "iron": NutrientField.IRON,
    "fe": NutrientField.IRON,
    "manganese": NutrientField.MANGANESE,
    "mn": NutrientField.MANGANESE,
    "copper": NutrientField.COPPER,
    "cu": NutrientField.COPPER,
}


def _get_azure_client(cfg: ProcessConfig) -> OpenAI:
    if not cfg.azure_endpoint:
        raise RuntimeError("AZURE_OPENAI_ENDPOINT non défini (ex: https://<resource>.openai.azure.com)")
    if not cfg.azure_deployment:
        raise RuntimeError("AZURE_OPENAI_DEPLOYMENT non défini (nom du déploiement dans Azure)")
    if not cfg.azure_api_key:
        raise RuntimeError("AZURE_OPENAI_API_KEY non défini")

    base_url = cfg.azure_endpoint.rstrip('/') + "/openai/v1/"
    return OpenAI(
        api_key=cfg.azure_api_key,
        base_url=base_url,
        timeout=cfg.api_timeout,
        max_retries=cfg.api_max_retries,
    )


def _azure_image_to_text(client: OpenAI, deployment: str, image_bytes: bytes, instructions: str) -> str:
    resp = client.responses.create(
        model=deployment,
        instructions=instructions,
        input=[
            {
                "role": "user",
                "content": [
                    {"type": "input_text", "text": "Process this Soil Health Card according to the instructions."},
                    {"type": "input_image", "image_url": to_data_url(image_bytes)},
                ],
            }
        ],
    )
    return resp.output_text or ""


def _parameter_lines(fields: Iterable[NutrientField]) -> str:
    lines: List[str] = []
    for f in fields:
        guide = FIELD_GUIDE[f]
        unit = f", usually in {guide['unit']}" if guide["unit"] else ""
        aliases = " / ".join(guide["aliases"])
        lines.append(f'- "{f.value}": row "{guide["label"]}" (also written {aliases}){unit}.')
    return "\n".join(lines)


def _output_rules(fields: List[NutrientField]) -> str:
    keys = ", ".join(f'"{f.value}"' for f in fields)
    return f"""
<output_format>
- Return ONE JSON object and nothing else (no prose, no Markdown).
- Allowed keys: {keys}.
- Each value is the bare number from the "Test Value" column: no units ("kg/ha", "%", "ppm"), no text.
- If a value cannot be clearly read or is not on the card, OMIT the key. Never guess, never use 0 or null as a placeholder.
</output_format>
"""


def _full_instructions() -> str:
    fields = list(NutrientField)
    return f"""
<role>
You are an expert in Optical Character Recognition and data extraction, specialised in Indian Soil Health Cards.
</role>

<mission>
The card usually contains a table with columns such as "Parameter", "Test Value" and "Unit".
For each parameter below, find its row in the table and extract the corresponding Test Value.
</mission>

<parameters>
{_parameter_lines(fields)}
</parameters>
{_output_rules(fields)}"""


def _reinforced_instructions() -> str:
    fields = list(NutrientField)
    return f"""
<role>
You are re-reading an Indian Soil Health Card whose first reading was incomplete. Be meticulous.
</role>

<method>
- Scan the results table ROW BY ROW, from top to bottom, including macro-nutrients, secondary nutrients and micro-nutrients.
- Parameters may be printed with chemical symbols (N, P, K, S, Zn, B, Fe, Mn, Cu), abbreviations (OC, EC) or in a regional language next to the English label.
- The Test Value is the measured number, NOT the "Normal Level" / rating column and NOT the recommended dose.
- Read decimals carefully (e.g. 0.45, 7.2); do not drop leading zeros.
</method>

<parameters>
{_parameter_lines(fields)}
</parameters>
{_output_rules(fields)}"""


def _targeted_instructions(fields: List[NutrientField]) -> str:
    return f"""
<role>
You are an expert reader of Indian Soil Health Cards. Only a few parameters are still missing.
</role>

<mission>
Look ONLY for the parameters listed below. Ignore every other row of the table.
Check the whole card, including secondary tables and footnotes, for these rows.
</mission>

<parameters>
{_parameter_lines(fields)}
</parameters>
{_output_rules(fields)}"""


def build_instructions(variant: InstructionVariant) -> str:
    if variant.kind == InstructionVariant.FULL:
        return _full_instructions()
    if variant.kind == InstructionVariant.REINFORCED:
        return _reinforced_instructions()
    if variant.kind == InstructionVariant.TARGETED:
        return _targeted_instructions(variant.ordered_fields())
    raise ValueError(f"Variante d'instructions inconnue: {variant.kind}")


def _strip_fences_and_think(raw: str) -> str:
    s = raw.strip()
    s = re.sub(r"<think>[\s\S]*?</think>", "", s)
    s = s.strip()
    if s.startswith("```json"):
        s = s[7:]
    if s.startswith("```"):
        s = s[3:]
    if s.endswith("```"):
        s = s[:-3]
    return s.strip()


def _extract_json_object(s: str) -> Optional[str]:
    start = s.find("{")
    end = s.rfind("}")
    if start == -1 or end == -1 or end < start:
        return None
    return s[start : end + 1]


def _normalize_key(key: str) -> str:
    return re.sub(r"[^a-z0-9]", "", key.lower())


_NUMBER_RE = re.compile(r"[-+]?(?:\d+(?:\.\d*)?|\.\d+)")
# "1,250" / "12,500,000": groupes de milliers (pas de zéro initial)
_THOUSANDS_RE = re.compile(r"(?<![\d,])[1-9]\d{0,2}(?:,\d{3})+(?![\d,])")


def _parse_number(value: Any) -> Optional[float]:
    """Nombre fini ou None (null, booléen, texte sans nombre, NaN, infini)."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        s = value.strip().replace(" ", "")
        if "," in s:
            # "1,250.5" et "1,250": milliers; "0,45" et "12,5": virgule décimale
            if "." in s or _THOUSANDS_RE.search(s):
                s = s.replace(",", "")
            else:
                s = s.replace(",", ".")
        m = _NUMBER_RE.search(s)
        if not m:
            return None
        number = float(m.group(0))
    else:
        return None
    return number if math.isfinite(number) else None


def parse_extraction_output(raw: str, variant: InstructionVariant) -> Optional[ExtractionRecord]:
    """
    Transforme la sortie brute du modèle en ExtractionRecord.

    Retourne None si aucune sortie structurée n'est exploitable (échec total).
    Un objet JSON sans aucune valeur lisible donne un relevé vide, pas None.
    """
    cleaned = _strip_fences_and_think(raw or "")
    json_str = _extract_json_object(cleaned)
    if json_str is None:
        return None
    try:
        data = json.loads(json_str)
    except json.JSONDecodeError:
        logger.debug("Sortie JSON invalide: %s", json_str[:200])
        return None
    if not isinstance(data, dict):
        return None

    values: Dict[NutrientField, float] = {}
    for key, raw_value in data.items():
        nutrient = _KEY_ALIASES.get(_normalize_key(str(key)))
        if nutrient is None or nutrient not in variant.fields:
            continue
        number = _parse_number(raw_value)
        if number is None:
            continue
        values[nutrient] = number
    return ExtractionRecord(values)


class AzureSoilCardExtractor(Extractor):
    """Extractor basé sur un déploiement vision Azure OpenAI (Responses API)."""

    def __init__(self, cfg: Optional[ProcessConfig] = None, client: Optional[OpenAI] = None):
        self.cfg = cfg or load_config()
        self._client = client

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = _get_azure_client(self.cfg)
        return self._client

    async def extract(self, image: bytes, variant: InstructionVariant) -> Optional[ExtractionRecord]:
        instructions = build_instructions(variant)
        raw = await asyncio.to_thread(
            _azure_image_to_text, self.client, self.cfg.azure_deployment, image, instructions
        )
        return parse_extraction_output(raw, variant)
