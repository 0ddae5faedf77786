"""Structured event logging for tabcalc.

Provides a unified event schema, filesystem NDJSON sink, and safe
emit helpers that never raise uncaught exceptions.
"""

from tabcalc.logging.events import (
    CalcEvent,
    EventLevel,
    EventType,
    clear_log_dir,
    emit,
    emit_error,
    emit_info,
    emit_warning,
    make_calc_event,
    set_log_dir,
    trim_context,
)
from tabcalc.logging.sink import EventSink

__all__ = [
    "CalcEvent",
    "EventLevel",
    "EventSink",
    "EventType",
    "clear_log_dir",
    "emit",
    "emit_error",
    "emit_info",
    "emit_warning",
    "make_calc_event",
    "set_log_dir",
    "trim_context",
]
