import logging
import time
from typing import Callable, List, Optional

from .config import load_config
from .extractor_service import AzureSoilCardExtractor, Extractor
from .images import ImageInput, load_image_bytes
from .merge import fields_gained, fields_overwritten, merge_records
from .policy import MAX_ATTEMPTS, coverage_reached, targeted_scope
from .storage import prepare_paths, result_exists, write_errors, write_status
from .types import (
    AttemptOutcome,
    ExtractionRecord,
    InstructionVariant,
    PipelineEvent,
    ProcessConfig,
    ProcessReport,
    SoilCardResult,
    StepResult,
)
from .validation import validate_record
from .writer import write_result_json

logger = logging.getLogger(__name__)

EventSink = Callable[[PipelineEvent], None]

FATAL_MESSAGE = (
    "The AI model could not extract any data from the image. "
    "Please try again with a clearer image."
)


class SoilCardExtractionError(RuntimeError):
    """Échec total de la première tentative: aucun relevé partiel, saisie manuelle requise."""


class _Run:
    """État d'une seule invocation (jamais réutilisé entre deux appels)."""

    def __init__(self, extractor: Extractor, image: bytes, on_event: Optional[EventSink]):
        self.extractor = extractor
        self.image = image
        self.on_event = on_event
        self.record = ExtractionRecord()
        self.outcomes: List[AttemptOutcome] = []
        self.last_error: Optional[BaseException] = None

    def emit(self, event: PipelineEvent) -> None:
        level = logging.WARNING if event.kind in ("attempt_failed", "fatal") else logging.INFO
        logger.log(
            level,
            "[%s] attempt=%s gained=%s coverage=%s %s",
            event.kind,
            event.attempt,
            ",".join(event.fields_gained) or "-",
            event.coverage,
            event.detail or "",
        )
        if self.on_event is None:
            return
        try:
            self.on_event(event)
        except Exception:
            # un sink défaillant ne modifie jamais le déroulement ni le résultat
            logger.exception("Sink de diagnostic en erreur sur l'évènement %s", event.kind)

    async def attempt(self, number: int, variant: InstructionVariant) -> AttemptOutcome:
        self.emit(PipelineEvent(
            kind="attempt_started",
            attempt=number,
            coverage=self.record.coverage(),
            detail=variant.kind.value,
        ))
        try:
            record = await self.extractor.extract(self.image, variant)
        except Exception as e:
            self.last_error = e
            outcome = AttemptOutcome(number, variant, ExtractionRecord(), failed=True, error=str(e) or type(e).__name__)
        else:
            if record is None:
                outcome = AttemptOutcome(number, variant, ExtractionRecord(), failed=True, error="no structured output")
            else:
                outcome = AttemptOutcome(number, variant, record)
        self.outcomes.append(outcome)
        return outcome

    def merge(self, outcome: AttemptOutcome) -> None:
        before = self.record
        overwritten = fields_overwritten(before, outcome.record)
        self.record = merge_records(before, outcome.record)
        gained = [f.value for f in fields_gained(before, self.record)]

        if outcome.failed:
            self.emit(PipelineEvent(
                kind="attempt_failed",
                attempt=outcome.attempt,
                coverage=self.record.coverage(),
                detail=outcome.error,
            ))
            return
        detail = None
        if overwritten:
            detail = "overwritten: " + ",".join(f.value for f in overwritten)
        self.emit(PipelineEvent(
            kind="attempt_completed",
            attempt=outcome.attempt,
            fields_gained=gained,
            coverage=self.record.coverage(),
            detail=detail,
        ))


async def digitize_soil_card(
    image: ImageInput,
    extractor: Optional[Extractor] = None,
    on_event: Optional[EventSink] = None,
) -> SoilCardResult:
    """
    Orchestrateur principal: photo de Soil Health Card → relevé des 12 paramètres.

    Étapes:
    1. Extraction complète (FULL). Aucune sortie → SoilCardExtractionError (seul cas fatal).
    2. Si couverture < 10: extraction renforcée (REINFORCED) sur les 12 champs.
    3. Si toujours < 10: extraction ciblée (TARGETED) sur les champs manquants.
    Puis validation de plausibilité; les avertissements n'altèrent jamais le relevé.

    Les échecs des tentatives 2 et 3 sont journalisés et traités comme des relevés vides.
    """
    extractor = extractor or AzureSoilCardExtractor()
    run = _Run(extractor, load_image_bytes(image), on_event)

    # Tentative 1: un échec ici est fatal
    first = await run.attempt(1, InstructionVariant.full())
    if first.failed:
        run.emit(PipelineEvent(kind="fatal", attempt=1, coverage=0, detail=first.error))
        raise SoilCardExtractionError(FATAL_MESSAGE) from run.last_error
    run.merge(first)

    if coverage_reached(run.record):
        run.emit(PipelineEvent(kind="early_stop", attempt=1, coverage=run.record.coverage()))
    else:
        # Tentative 2
        run.merge(await run.attempt(2, InstructionVariant.reinforced()))

        if coverage_reached(run.record):
            run.emit(PipelineEvent(kind="early_stop", attempt=2, coverage=run.record.coverage()))
        else:
            missing = targeted_scope(run.record)
            if missing:
                # Tentative 3 (dernière, MAX_ATTEMPTS)
                run.merge(await run.attempt(MAX_ATTEMPTS, InstructionVariant.targeted(missing)))
            else:
                run.emit(PipelineEvent(kind="attempt3_skipped", attempt=MAX_ATTEMPTS, coverage=run.record.coverage()))

    return _finalize(run)


def _finalize(run: _Run) -> SoilCardResult:
    warnings = validate_record(run.record)
    for w in warnings:
        run.emit(PipelineEvent(kind="warning", coverage=run.record.coverage(), detail=w))
    run.emit(PipelineEvent(
        kind="finalized",
        attempt=len(run.outcomes),
        coverage=run.record.coverage(),
    ))
    return SoilCardResult(record=run.record, warnings=warnings)


async def run_card_pipeline(
    image_path: str,
    cfg: Optional[ProcessConfig] = None,
    extractor: Optional[Extractor] = None,
) -> ProcessReport:
    """
    Traitement d'une image de carte avec sorties sur disque:
    copie de l'original, `<base>_soil_card.json`, `status.json` et `errors.json` en cas d'échec.
    """
    cfg = cfg or load_config()

    if cfg.skip_existing and result_exists(cfg.out_root, image_path):
        logger.info("Résultat déjà présent, image ignorée: %s", image_path)
        return ProcessReport(image=image_path, process_dir="", steps=[], skipped=True)

    paths = prepare_paths(image_path, cfg.out_root)
    steps: List[StepResult] = []
    events: List[PipelineEvent] = []
    result: Optional[SoilCardResult] = None

    try:
        t0 = time.time()
        result = await digitize_soil_card(
            image_path,
            extractor=extractor or AzureSoilCardExtractor(cfg),
            on_event=events.append,
        )
        out_path = write_result_json(paths.process_dir, paths.base_name, result)
        steps.append(
            StepResult(
                name="digitize_soil_card",
                ok=True,
                duration_sec=time.time() - t0,
                output_paths={"result_json": str(out_path)},
            )
        )
    except Exception as e:
        logger.error("Échec de la numérisation %s: %s", image_path, e)
        steps.append(StepResult(name="digitize_soil_card", ok=False, duration_sec=0.0, error=str(e)))
        write_errors(paths.process_dir, {"digitize_soil_card": str(e)})

    write_status(
        paths.process_dir,
        {
            "image": str(paths.original_image_path),
            "steps": [s.__dict__ for s in steps],
            "events": [e.__dict__ for e in events],
        },
    )

    return ProcessReport(
        image=str(paths.original_image_path),
        process_dir=str(paths.process_dir),
        steps=steps,
        result=result,
    )
