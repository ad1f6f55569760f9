"""
Tests for the extraction orchestrator
=====================================
Attempt sequencing, early stop, targeted scope, failure tolerance and diagnostics.
"""

import asyncio
import base64

import pytest

from conftest import FULL_CARD, ScriptedExtractor, card_record
from soilcard.images import MAX_IMAGE_BYTES
from soilcard.orchestrator import FATAL_MESSAGE, SoilCardExtractionError, digitize_soil_card
from soilcard.types import ALL_FIELDS, ExtractionRecord, InstructionVariant, NutrientField

NAMES = list(FULL_CARD)


def run(extractor, image, events=None):
    return asyncio.run(digitize_soil_card(image, extractor=extractor, on_event=events))


class TestScenarios:

    def test_a_early_stop_after_first_attempt(self, png_bytes):
        names = [n for n in NAMES if n != "boron"]
        extractor = ScriptedExtractor([card_record(*names)])

        result = run(extractor, png_bytes)

        assert len(extractor.calls) == 1
        assert extractor.calls[0].kind == InstructionVariant.FULL
        assert result.record.coverage() == 11
        assert result.warnings == ["boron not extracted"]

    def test_b_union_of_two_attempts_reaches_threshold(self, png_bytes):
        extractor = ScriptedExtractor([
            card_record(*NAMES[:6]),
            card_record(*NAMES[6:11]),
        ])

        result = run(extractor, png_bytes)

        assert [c.kind for c in extractor.calls] == [InstructionVariant.FULL, InstructionVariant.REINFORCED]
        assert result.record.coverage() == 11

    def test_c_second_attempt_throws_third_is_targeted(self, png_bytes):
        first = NAMES[:4]
        missing = NAMES[4:]
        extractor = ScriptedExtractor([
            card_record(*first),
            ConnectionError("model unavailable"),
            card_record(*missing[:5]),
        ])

        result = run(extractor, png_bytes)

        assert len(extractor.calls) == 3
        targeted = extractor.calls[2]
        assert targeted.kind == InstructionVariant.TARGETED
        assert {f.value for f in targeted.fields} == set(missing)
        assert result.record.coverage() == 9
        not_extracted = [w for w in result.warnings if w.endswith("not extracted")]
        assert not_extracted == [f"{n} not extracted" for n in missing[5:]]

    def test_d_no_output_on_first_attempt_is_fatal(self, png_bytes):
        extractor = ScriptedExtractor([None])

        with pytest.raises(SoilCardExtractionError) as exc_info:
            run(extractor, png_bytes)

        assert str(exc_info.value) == FATAL_MESSAGE
        assert len(extractor.calls) == 1

    def test_e_implausible_value_kept_and_reported(self, png_bytes):
        extractor = ScriptedExtractor([card_record(*NAMES, ph=2.0)])

        result = run(extractor, png_bytes)

        assert len(extractor.calls) == 1
        assert result.record.get(NutrientField.PH) == 2.0
        assert "ph = 2.0 outside expected range [3,12]" in result.warnings


class TestProperties:

    def test_no_more_than_three_calls_on_poor_results(self, png_bytes):
        extractor = ScriptedExtractor([ExtractionRecord(), ExtractionRecord(), ExtractionRecord()])

        result = run(extractor, png_bytes)

        assert len(extractor.calls) == 3
        assert result.record.is_empty()
        assert len(result.warnings) == 12

    def test_targeted_scope_equals_fields_missing_after_second_attempt(self, png_bytes):
        extractor = ScriptedExtractor([
            card_record("ph", "ec"),
            card_record("nitrogen", "zinc", "iron"),
            ExtractionRecord(),
        ])

        run(extractor, png_bytes)

        present = {NutrientField.PH, NutrientField.EC, NutrientField.NITROGEN, NutrientField.ZINC, NutrientField.IRON}
        assert extractor.calls[2].fields == ALL_FIELDS - present

    def test_later_attempt_overwrites_earlier_value(self, png_bytes):
        extractor = ScriptedExtractor([
            card_record(*NAMES[:5], ph=6.1),
            card_record("ph", "zinc", potassium=290.0),
            card_record(boron=0.4, copper=0.9),
        ])

        result = run(extractor, png_bytes)

        assert result.record.get(NutrientField.PH) == 7.2
        assert result.record.get(NutrientField.ZINC) == 0.8
        assert result.record.get(NutrientField.POTASSIUM) == 290.0
        assert result.record.get(NutrientField.BORON) == 0.4

    def test_empty_second_attempt_leaves_record_untouched(self, png_bytes):
        extractor = ScriptedExtractor([
            card_record(*NAMES[:9]),
            ExtractionRecord(),
            card_record("copper"),
        ])

        result = run(extractor, png_bytes)

        assert result.record.coverage() == 10
        for name in NAMES[:9]:
            assert result.record.to_dict()[name] == FULL_CARD[name]

    @pytest.mark.parametrize("failure", [None, RuntimeError("boom")])
    def test_failure_on_later_attempts_is_not_fatal(self, png_bytes, failure):
        extractor = ScriptedExtractor([card_record("ph", "ec"), failure, failure])

        result = run(extractor, png_bytes)

        assert len(extractor.calls) == 3
        assert result.record.coverage() == 2

    def test_exception_on_first_attempt_is_fatal_and_chained(self, png_bytes):
        error = TimeoutError("model timed out")
        extractor = ScriptedExtractor([error])

        with pytest.raises(SoilCardExtractionError) as exc_info:
            run(extractor, png_bytes)

        assert exc_info.value.__cause__ is error
        assert len(extractor.calls) == 1

    def test_empty_structured_first_output_is_not_fatal(self, png_bytes):
        extractor = ScriptedExtractor([ExtractionRecord(), card_record(*NAMES)])

        result = run(extractor, png_bytes)

        assert len(extractor.calls) == 2
        assert result.record.coverage() == 12
        assert result.warnings == []

    def test_invocations_are_independent(self, png_bytes):
        first = run(ScriptedExtractor([card_record(*NAMES)]), png_bytes)
        second = run(ScriptedExtractor([card_record(*NAMES[:10], ph=5.0)]), png_bytes)

        assert first.record.coverage() == 12
        assert second.record.coverage() == 10
        assert first.record.get(NutrientField.PH) == 7.2


class TestDiagnostics:

    def test_events_describe_each_stage(self, png_bytes):
        events = []
        extractor = ScriptedExtractor([
            card_record(*NAMES[:4]),
            RuntimeError("boom"),
            card_record(*NAMES[4:10]),
        ])

        run(extractor, png_bytes, events.append)

        kinds = [e.kind for e in events]
        assert kinds.count("attempt_started") == 3
        assert "attempt_failed" in kinds
        assert kinds[-1] == "finalized"

        completed = [e for e in events if e.kind == "attempt_completed"]
        assert [e.attempt for e in completed] == [1, 3]
        assert completed[0].fields_gained == NAMES[:4]
        assert completed[1].coverage == 10

        failed = next(e for e in events if e.kind == "attempt_failed")
        assert failed.attempt == 2
        assert failed.detail == "boom"

        started = [e.detail for e in events if e.kind == "attempt_started"]
        assert started == ["full", "reinforced", "targeted"]

    def test_failing_sink_does_not_abort_the_run(self, png_bytes):
        seen = []

        def sink(event):
            seen.append(event.kind)
            if event.kind == "attempt_failed":
                raise ValueError("sink down")

        extractor = ScriptedExtractor([
            card_record(*NAMES[:4]),
            RuntimeError("boom"),
            card_record(*NAMES[4:10]),
        ])

        result = run(extractor, png_bytes, sink)

        assert len(extractor.calls) == 3
        assert result.filled_fields() == 10
        assert seen[-1] == "finalized"

    def test_early_stop_event(self, png_bytes):
        events = []
        run(ScriptedExtractor([card_record(*NAMES)]), png_bytes, events.append)

        early = [e for e in events if e.kind == "early_stop"]
        assert len(early) == 1
        assert early[0].attempt == 1
        assert early[0].coverage == 12

    def test_fatal_event_emitted(self, png_bytes):
        events = []
        with pytest.raises(SoilCardExtractionError):
            run(ScriptedExtractor([None]), png_bytes, events.append)

        assert events[-1].kind == "fatal"
        assert events[-1].attempt == 1

    def test_warning_events_mirror_result(self, png_bytes):
        events = []
        result = run(ScriptedExtractor([card_record(*NAMES[:11])]), png_bytes, events.append)

        assert [e.detail for e in events if e.kind == "warning"] == result.warnings


class TestImageInputs:

    def test_accepts_file_path(self, card_image):
        result = run(ScriptedExtractor([card_record(*NAMES)]), str(card_image))
        assert result.filled_fields() == 12

    def test_accepts_data_uri(self, png_bytes):
        uri = "data:image/png;base64," + base64.b64encode(png_bytes).decode()
        extractor = ScriptedExtractor([card_record(*NAMES)])
        result = run(extractor, uri)
        assert result.to_form_values()["ph"] == 7.2

    def test_unsupported_file_raises_before_any_attempt(self, tmp_path):
        path = tmp_path / "card.gif"
        path.write_bytes(b"GIF89a")
        extractor = ScriptedExtractor([])

        with pytest.raises(RuntimeError):
            run(extractor, str(path))
        assert extractor.calls == []

    def test_gif_bytes_rejected(self, gif_bytes):
        extractor = ScriptedExtractor([])
        with pytest.raises(RuntimeError, match="GIF"):
            run(extractor, gif_bytes)
        assert extractor.calls == []

    def test_data_uri_with_unsupported_mime_rejected(self, png_bytes):
        uri = "data:image/gif;base64," + base64.b64encode(png_bytes).decode()
        extractor = ScriptedExtractor([])
        with pytest.raises(RuntimeError, match="MIME"):
            run(extractor, uri)
        assert extractor.calls == []

    def test_data_uri_content_checked_not_just_mime(self, gif_bytes):
        uri = "data:image/png;base64," + base64.b64encode(gif_bytes).decode()
        extractor = ScriptedExtractor([])
        with pytest.raises(RuntimeError, match="GIF"):
            run(extractor, uri)
        assert extractor.calls == []

    def test_renamed_gif_file_rejected(self, tmp_path, gif_bytes):
        path = tmp_path / "card.png"
        path.write_bytes(gif_bytes)
        extractor = ScriptedExtractor([])
        with pytest.raises(RuntimeError, match="GIF"):
            run(extractor, str(path))
        assert extractor.calls == []

    @pytest.mark.parametrize("kind", ["bytes", "data_uri", "file"])
    def test_oversize_image_rejected_for_every_input_kind(self, tmp_path, kind):
        raw = b"\x00" * (MAX_IMAGE_BYTES + 1)
        if kind == "bytes":
            image = raw
        elif kind == "data_uri":
            image = "data:image/png;base64," + base64.b64encode(raw).decode()
        else:
            path = tmp_path / "card.png"
            path.write_bytes(raw)
            image = str(path)
        extractor = ScriptedExtractor([])

        with pytest.raises(RuntimeError, match="trop volumineuse"):
            run(extractor, image)
        assert extractor.calls == []
