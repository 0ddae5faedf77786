"""Calculation events: schema, error codes and emit helpers.

The engine, solver and commands report what they did as ``CalcEvent``
records.  Events go to the sink attached with ``set_log_dir`` (the CLI
attaches the model's directory) and are dropped when none is attached.
Timestamps are UTC ISO-8601 with a ``Z`` suffix.  A failing sink never
breaks a calculation; ``emit`` reports the failure on stderr at most
once a minute.
"""

from __future__ import annotations

import sys
import time
import traceback
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class EventLevel(str, Enum):
    info = "info"
    warning = "warning"
    error = "error"


class EventType(str, Enum):
    # Calculation lifecycle
    calc_started = "calc_started"
    calc_completed = "calc_completed"
    calc_failed = "calc_failed"
    calc_row_errors = "calc_row_errors"

    # Model loading
    include_loaded = "include_loaded"

    # Translation
    export_completed = "export_completed"
    import_completed = "import_completed"

    # Checks
    validate_pass = "validate_pass"
    validate_fail = "validate_fail"

    # Solver
    solver_converged = "solver_converged"
    solver_failed = "solver_failed"
    sensitivity_completed = "sensitivity_completed"


# ---------------------------------------------------------------------------
# Error codes
# ---------------------------------------------------------------------------

PARSE_ERROR = "parse_error"
CYCLE_ERROR = "cycle_error"
UNKNOWN_REFERENCE = "unknown_reference"
ROW_ERRORS = "row_errors"
TRANSLATION_ERROR = "translation_error"


def error_code_for(exc: BaseException) -> str:
    """Stable error code for an exception, for the ``error_code`` field."""
    from tabcalc.errors import (
        CycleError,
        ModelParseError,
        RowErrors,
        TranslationError,
        UnknownReferenceError,
    )
    from tabcalc.formulas.errors import FormulaParseError

    if isinstance(exc, (ModelParseError, FormulaParseError)):
        return PARSE_ERROR
    if isinstance(exc, CycleError):
        return CYCLE_ERROR
    if isinstance(exc, UnknownReferenceError):
        return UNKNOWN_REFERENCE
    if isinstance(exc, RowErrors):
        return ROW_ERRORS
    if isinstance(exc, TranslationError):
        return TRANSLATION_ERROR
    return type(exc).__name__


# ---------------------------------------------------------------------------
# Context limits
# ---------------------------------------------------------------------------

_MAX_VALUE_LEN = 256
_MAX_LIST_LEN = 50


def trim_context(context: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of *context* with long strings and lists truncated."""
    return {k: _trim_value(v) for k, v in context.items()}


def _trim_value(v: Any) -> Any:
    if isinstance(v, dict):
        return trim_context(v)
    if isinstance(v, list):
        items = [_trim_value(item) for item in v[:_MAX_LIST_LEN]]
        if len(v) > _MAX_LIST_LEN:
            items.append(f"...[{len(v) - _MAX_LIST_LEN} more]")
        return items
    if isinstance(v, str) and len(v) > _MAX_VALUE_LEN:
        return v[:_MAX_VALUE_LEN] + "...[truncated]"
    return v


# ---------------------------------------------------------------------------
# Attribution invariants
# ---------------------------------------------------------------------------

_CALC_EVENT_REQUIRED = {"run_id", "model"}

_EVENT_REQUIRED_KEYS: dict[str, set[str]] = {
    EventType.calc_started.value: {"model"},
    EventType.calc_completed.value: _CALC_EVENT_REQUIRED,
    EventType.calc_failed.value: {"model"},
    EventType.calc_row_errors.value: {"identifier"},
    EventType.include_loaded.value: {"file", "alias"},
}


def _validate_attribution(event: CalcEvent) -> CalcEvent:
    """Check required context keys; downgrade to warning if missing."""
    required = _EVENT_REQUIRED_KEYS.get(event.event_type.value, set())
    if not required:
        return event
    missing = required - set(event.context.keys())
    if missing:
        ctx = dict(event.context)
        ctx["_missing_attribution"] = sorted(missing)
        return event.model_copy(update={"level": EventLevel.warning, "context": ctx})
    return event


# ---------------------------------------------------------------------------
# Event model
# ---------------------------------------------------------------------------


def _utc_now() -> str:
    """Return current UTC timestamp in ISO-8601 with Z suffix."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class CalcEvent(BaseModel):
    """A single structured log event."""

    schema_version: int = 1
    ts: str = Field(default_factory=_utc_now)
    level: EventLevel
    event_type: EventType
    context: dict[str, Any] = Field(default_factory=dict)
    message: str = ""
    error_code: str | None = None


def make_calc_event(
    event_type: EventType,
    level: EventLevel,
    message: str,
    *,
    run_id: str | None = None,
    model: str | None = None,
    error_code: str | None = None,
    extra: dict[str, Any] | None = None,
) -> CalcEvent:
    """Build an event with calculation attribution context."""
    ctx: dict[str, Any] = {}
    if run_id is not None:
        ctx["run_id"] = run_id
    if model is not None:
        ctx["model"] = model
    if extra:
        ctx.update(extra)
    return CalcEvent(
        level=level,
        event_type=event_type,
        message=message,
        context=ctx,
        error_code=error_code,
    )


# ---------------------------------------------------------------------------
# Module-level sink reference
# ---------------------------------------------------------------------------

# Set by ``set_log_dir``; ``None`` means events are discarded.
_sink: Any = None  # EventSink | None


def set_log_dir(project_dir: Any) -> None:
    """Configure the module-level event sink for a project directory.

    This should be called early in a CLI command.  If it is never
    called, ``emit()`` silently discards events.

    Reads ``logging_fsync`` and ``logging_tail_bytes`` from the project
    config (``tabcalc.yaml``) to configure the sink.
    """
    global _sink
    from pathlib import Path

    from tabcalc.logging.sink import EventSink
    from tabcalc.project import load_project_config

    cfg = load_project_config(Path(project_dir))
    fsync = bool(cfg.get("logging_fsync", False))
    tb = cfg.get("logging_tail_bytes")
    tail_bytes = int(tb) if tb is not None else None
    _sink = EventSink(Path(project_dir), fsync=fsync, tail_bytes=tail_bytes)


def clear_log_dir() -> None:
    """Detach the module-level sink; later events are discarded."""
    global _sink
    _sink = None


def get_sink() -> Any:
    """Return the module-level sink, or None."""
    return _sink


# ---------------------------------------------------------------------------
# Rate-limited stderr warnings
# ---------------------------------------------------------------------------

_last_stderr_ts: float = 0.0
_STDERR_INTERVAL_SECS = 60.0


def _stderr_warning(msg: str) -> None:
    """Print a warning to stderr, rate-limited to one per 60 seconds."""
    global _last_stderr_ts
    now = time.monotonic()
    if now - _last_stderr_ts < _STDERR_INTERVAL_SECS:
        return
    _last_stderr_ts = now
    try:
        print(f"[tabcalc] {msg}", file=sys.stderr)
    except Exception:
        pass


# ---------------------------------------------------------------------------
# Safe emit helpers
# ---------------------------------------------------------------------------


def emit(event: CalcEvent, *, run_id: str | None = None) -> None:
    """Write an event to the global log and optionally to a per-run log.

    **Never raises.**  On failure, prints a rate-limited warning to stderr.
    """
    try:
        sink = get_sink()
        if sink is None:
            return
        event = event.model_copy(update={"context": trim_context(event.context)})
        event = _validate_attribution(event)
        sink.write(event, run_id=run_id)
    except Exception:
        _stderr_warning(f"logging failed: {traceback.format_exc()}")


def _emit_level(
    level: EventLevel,
    event_type: EventType,
    message: str,
    context: dict[str, Any] | None,
    run_id: str | None,
    error_code: str | None = None,
) -> None:
    emit(
        CalcEvent(
            level=level,
            event_type=event_type,
            message=message,
            context=context or {},
            error_code=error_code,
        ),
        run_id=run_id,
    )


def emit_info(
    event_type: EventType,
    message: str,
    context: dict[str, Any] | None = None,
    *,
    run_id: str | None = None,
) -> None:
    """Convenience: emit an info-level event."""
    _emit_level(EventLevel.info, event_type, message, context, run_id)


def emit_warning(
    event_type: EventType,
    message: str,
    context: dict[str, Any] | None = None,
    *,
    run_id: str | None = None,
    error_code: str | None = None,
) -> None:
    """Convenience: emit a warning-level event."""
    _emit_level(EventLevel.warning, event_type, message, context, run_id, error_code)


def emit_error(
    event_type: EventType,
    message: str,
    context: dict[str, Any] | None = None,
    *,
    run_id: str | None = None,
    error_code: str | None = None,
) -> None:
    """Convenience: emit an error-level event."""
    _emit_level(EventLevel.error, event_type, message, context, run_id, error_code)
