"""Tests for the tabcalc structured event logging system."""

from __future__ import annotations

import json
from pathlib import Path

import pytest


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """Create a minimal project directory."""
    (tmp_path / "logs").mkdir()
    return tmp_path


@pytest.fixture
def sink(project_dir: Path):
    from tabcalc.logging.sink import EventSink

    return EventSink(project_dir)


@pytest.fixture
def attached(project_dir: Path):
    """Route module-level events to *project_dir* for one test."""
    from tabcalc.logging.events import clear_log_dir, set_log_dir

    set_log_dir(project_dir)
    yield project_dir
    clear_log_dir()


def _global_events(project_dir: Path) -> list[dict]:
    path = project_dir / "logs" / "events.ndjson"
    return [json.loads(line) for line in path.read_text().strip().splitlines()]


# ---------------------------------------------------------------------------
# A) Event schema
# ---------------------------------------------------------------------------


class TestCalcEvent:
    def test_event_defaults(self):
        from tabcalc.logging.events import CalcEvent, EventLevel, EventType

        evt = CalcEvent(
            level=EventLevel.info,
            event_type=EventType.calc_started,
            message="hello",
        )
        assert evt.schema_version == 1
        assert evt.ts.endswith("Z")
        assert evt.level == "info"
        assert evt.event_type == "calc_started"
        assert evt.context == {}
        assert evt.error_code is None

    def test_make_calc_event_context(self):
        from tabcalc.logging.events import EventLevel, EventType, make_calc_event

        evt = make_calc_event(
            EventType.calc_failed,
            EventLevel.error,
            "failed",
            run_id="r1",
            model="model.yaml",
            error_code="cycle_error",
            extra={"members": ["a", "b"]},
        )
        assert evt.context == {"run_id": "r1", "model": "model.yaml", "members": ["a", "b"]}
        assert evt.error_code == "cycle_error"

    def test_all_event_types_exist(self):
        from tabcalc.logging.events import EventType

        expected = {
            "calc_started", "calc_completed", "calc_failed", "calc_row_errors",
            "include_loaded",
            "export_completed", "import_completed",
            "validate_pass", "validate_fail",
            "solver_converged", "solver_failed", "sensitivity_completed",
        }
        assert {e.value for e in EventType} == expected

    def test_error_codes(self):
        from tabcalc.errors import CycleError, RowErrors, TranslationError, UnknownReferenceError
        from tabcalc.formulas.errors import FormulaParseError
        from tabcalc.logging.events import error_code_for

        assert error_code_for(CycleError(["a"])) == "cycle_error"
        assert error_code_for(UnknownReferenceError("x")) == "unknown_reference"
        assert error_code_for(RowErrors("t.c", None, [(0, "boom")])) == "row_errors"
        assert error_code_for(TranslationError("bad")) == "translation_error"
        assert error_code_for(FormulaParseError("bad")) == "parse_error"
        assert error_code_for(ValueError("x")) == "ValueError"

    def test_trim_context(self):
        from tabcalc.logging.events import trim_context

        trimmed = trim_context({"s": "x" * 300, "items": list(range(60)), "nested": {"s": "y" * 300}})
        assert trimmed["s"].endswith("...[truncated]")
        assert len(trimmed["items"]) == 51
        assert trimmed["items"][-1] == "...[10 more]"
        assert trimmed["nested"]["s"].endswith("...[truncated]")


# ---------------------------------------------------------------------------
# B) Filesystem NDJSON sink
# ---------------------------------------------------------------------------


class TestEventSink:
    def test_write_creates_global_and_run_logs(self, sink, project_dir):
        from tabcalc.logging.events import CalcEvent, EventLevel, EventType

        sink.write(
            CalcEvent(level=EventLevel.info, event_type=EventType.calc_completed, message="done"),
            run_id="run_001",
        )
        assert len(_global_events(project_dir)) == 1
        run_log = project_dir / "logs" / "runs" / "run_001.ndjson"
        assert run_log.exists()

    def test_json_sort_keys(self, sink, project_dir):
        from tabcalc.logging.events import CalcEvent, EventLevel, EventType

        sink.write(CalcEvent(level=EventLevel.info, event_type=EventType.calc_started, message="m"))
        parsed = _global_events(project_dir)[0]
        keys = list(parsed.keys())
        assert keys == sorted(keys)

    def test_unsafe_run_id_skips_run_log(self, sink, project_dir):
        from tabcalc.logging.events import CalcEvent, EventLevel, EventType

        sink.write(
            CalcEvent(level=EventLevel.info, event_type=EventType.calc_started, message="m"),
            run_id="../escape",
        )
        assert list((project_dir / "logs" / "runs").iterdir()) == []
        assert sink.read_run_log("../escape") == []

    def test_read_global_filters(self, sink):
        from tabcalc.logging.events import CalcEvent, EventLevel, EventType

        for i in range(5):
            sink.write(CalcEvent(
                level=EventLevel.info,
                event_type=EventType.calc_started,
                message=f"run {i}",
                context={"run_id": f"r{i}"},
            ))
        sink.write(CalcEvent(level=EventLevel.error, event_type=EventType.calc_failed, message="boom"))

        events = sink.read_global()
        assert events[0]["message"] == "boom"
        assert events[-1]["message"] == "run 0"
        assert [e["message"] for e in sink.read_global(level="error")] == ["boom"]
        assert len(sink.read_global(event_type="calc_started", limit=2)) == 2
        assert [e["message"] for e in sink.read_global(run_id="r3")] == ["run 3"]

    def test_tail_read_drops_partial_line(self, project_dir):
        from tabcalc.logging.events import CalcEvent, EventLevel, EventType
        from tabcalc.logging.sink import EventSink

        small = EventSink(project_dir, tail_bytes=300)
        for i in range(10):
            small.write(CalcEvent(level=EventLevel.info, event_type=EventType.calc_started, message=f"run {i}"))
        events = small.read_global()
        assert 0 < len(events) < 10
        assert events[0]["message"] == "run 9"

    def test_read_missing_log_returns_empty(self, sink):
        assert sink.read_run_log("nonexistent") == []
        assert sink.read_global() == []


# ---------------------------------------------------------------------------
# C) Module-level emit helpers (safety)
# ---------------------------------------------------------------------------


class TestEmitHelpers:
    def test_emit_without_log_dir_is_noop(self):
        from tabcalc.logging.events import EventType, clear_log_dir, emit_info, get_sink

        clear_log_dir()
        assert get_sink() is None
        emit_info(EventType.calc_started, "test")

    def test_emit_never_raises(self):
        import tabcalc.logging.events as mod

        class Broken:
            def write(self, event, run_id=None):
                raise OSError("disk full")

        old_sink = mod._sink
        mod._sink = Broken()
        try:
            mod.emit_info(mod.EventType.calc_started, "test")
        finally:
            mod._sink = old_sink

    def test_set_log_dir_enables_logging(self, attached):
        from tabcalc.logging.events import EventType, emit_error

        emit_error(EventType.calc_failed, "boom", {"model": "m.yaml"}, error_code="cycle_error")
        parsed = _global_events(attached)[0]
        assert parsed["error_code"] == "cycle_error"
        assert parsed["level"] == "error"

    def test_missing_attribution_downgrades(self, attached):
        from tabcalc.logging.events import EventType, emit_info

        emit_info(EventType.calc_completed, "done", {"model": "m.yaml"})
        parsed = _global_events(attached)[0]
        assert parsed["level"] == "warning"
        assert parsed["context"]["_missing_attribution"] == ["run_id"]

    def test_sink_reads_config(self, project_dir):
        from tabcalc.logging.events import clear_log_dir, get_sink, set_log_dir

        (project_dir / "tabcalc.yaml").write_text("logging_tail_bytes: 4096\n")
        set_log_dir(project_dir)
        try:
            assert get_sink()._tail_bytes == 4096
        finally:
            clear_log_dir()


# ---------------------------------------------------------------------------
# D) Calculation events
# ---------------------------------------------------------------------------


class TestCalculationEvents:
    def test_successful_pass(self, attached):
        from tabcalc.document import parse_document
        from tabcalc.engine import Calculator
        from tabcalc.project import DEMO_MODEL

        Calculator(parse_document(DEMO_MODEL, source="model.yaml"), run_id="run_ok").run()
        types = [e["event_type"] for e in _global_events(attached)]
        assert types == ["calc_started", "calc_completed"]

        run_log = attached / "logs" / "runs" / "run_ok.ndjson"
        completed = json.loads(run_log.read_text().strip().splitlines()[-1])
        assert completed["level"] == "info"
        assert completed["context"]["model"] == "model.yaml"
        assert set(completed["context"]["timings_ms"]) == {"build_graph", "order", "evaluate"}

    def test_row_errors(self, attached):
        from tabcalc.document import parse_document
        from tabcalc.engine import Calculator
        from tabcalc.errors import RowErrors

        model = parse_document("t:\n  a: [1, 0]\n  q: \"=1 / a\"\n")
        with pytest.raises(RowErrors):
            Calculator(model, run_id="run_bad").run()
        events = _global_events(attached)
        assert [e["event_type"] for e in events] == ["calc_started", "calc_row_errors", "calc_failed"]
        assert events[1]["context"]["rows"] == [1]
        assert events[2]["error_code"] == "row_errors"

    def test_cycle(self, attached):
        from tabcalc.document import parse_document
        from tabcalc.engine import calculate
        from tabcalc.errors import CycleError

        with pytest.raises(CycleError):
            calculate(parse_document('a: "=b"\nb: "=a"\n'))
        failed = _global_events(attached)[-1]
        assert failed["event_type"] == "calc_failed"
        assert failed["error_code"] == "cycle_error"
        assert failed["context"]["members"] == ["a", "b"]

    def test_last_run_id(self, attached):
        from tabcalc.document import parse_document
        from tabcalc.engine import Calculator
        from tabcalc.logging.events import get_sink

        assert get_sink().last_run_id() is None
        Calculator(parse_document("x: 1\n"), run_id="first").run()
        Calculator(parse_document("x: 2\n"), run_id="second").run()
        assert get_sink().last_run_id() == "second"
        assert [e["event_type"] for e in get_sink().read_run_log("first")] == ["calc_started", "calc_completed"]
