"""NDJSON event sink for calculation logs.

Every event is one JSON line (``sort_keys=True``) appended to
``logs/events.ndjson``.  Events written with a run id are also appended to
``logs/runs/<run_id>.ndjson`` so a single calculation pass or solver run
can be replayed on its own.

Appends take an exclusive ``fcntl.flock`` and reads a shared one.  Where
``fcntl`` is unavailable the file operations run unlocked.
"""

from __future__ import annotations

import json
import os
import re
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from tabcalc.logging.events import CalcEvent

try:
    import fcntl

    _HAS_FCNTL = True
except ImportError:
    _HAS_FCNTL = False

# Run ids become file names
_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9_\-]+$")

_DEFAULT_TAIL_BYTES = 2 * 1024 * 1024
_MAX_LIMIT = 2000


@contextmanager
def _locked(path: Path, flags: int, shared: bool) -> Iterator[int]:
    """Open *path* as a raw descriptor held under a file lock."""
    fd = os.open(str(path), flags)
    try:
        if _HAS_FCNTL:
            fcntl.flock(fd, fcntl.LOCK_SH if shared else fcntl.LOCK_EX)
        yield fd
    finally:
        if _HAS_FCNTL:
            fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)


class EventSink:
    """Append-only event log rooted at ``<project_dir>/logs``."""

    def __init__(self, project_dir: Path, *, fsync: bool = False, tail_bytes: int | None = None) -> None:
        self.logs_dir = Path(project_dir) / "logs"
        self.runs_dir = self.logs_dir / "runs"
        self._fsync = fsync
        self._tail_bytes = tail_bytes if tail_bytes is not None else _DEFAULT_TAIL_BYTES
        self.runs_dir.mkdir(parents=True, exist_ok=True)

    @property
    def global_path(self) -> Path:
        return self.logs_dir / "events.ndjson"

    def run_path(self, run_id: str) -> Path | None:
        """Per-run log path, or None for an id that is not a safe file name."""
        if not _SAFE_ID_RE.match(run_id):
            return None
        return self.runs_dir / f"{run_id}.ndjson"

    def write(self, event: CalcEvent, *, run_id: str | None = None) -> None:
        """Append *event* to the global log and, given a run id, its run log."""
        line = (json.dumps(event.model_dump(mode="json"), sort_keys=True, default=str) + "\n").encode("utf-8")
        self._append(self.global_path, line)
        run_path = self.run_path(run_id) if run_id else None
        if run_path is not None:
            self._append(run_path, line)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def read_global(
        self,
        *,
        level: str | None = None,
        event_type: str | None = None,
        run_id: str | None = None,
        limit: int = 200,
    ) -> list[dict[str, Any]]:
        """Newest-first events from the tail of the global log.

        Filters combine; ``run_id`` matches ``context.run_id``.
        """

        def keep(evt: dict[str, Any]) -> bool:
            if level and evt.get("level") != level:
                return False
            if event_type and evt.get("event_type") != event_type:
                return False
            return not run_id or evt.get("context", {}).get("run_id") == run_id

        events = [e for e in self._read_ndjson(self.global_path) if keep(e)]
        events.reverse()
        return events[: min(limit, _MAX_LIMIT)]

    def read_run_log(self, run_id: str) -> list[dict[str, Any]]:
        """All events of one run in write order."""
        path = self.run_path(run_id)
        return self._read_ndjson(path) if path is not None else []

    def last_run_id(self) -> str | None:
        """Run id of the most recent ``calc_started`` event, if any."""
        for evt in self.read_global(event_type="calc_started", limit=1):
            return evt.get("context", {}).get("run_id")
        return None

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _append(self, path: Path, line: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with _locked(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, shared=False) as fd:
            os.write(fd, line)
            if self._fsync:
                os.fsync(fd)

    def _read_ndjson(self, path: Path) -> list[dict[str, Any]]:
        if not path.exists():
            return []
        events: list[dict[str, Any]] = []
        for line in self._read_tail(path).splitlines():
            if not line.strip():
                continue
            try:
                events.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return events

    def _read_tail(self, path: Path) -> str:
        """The last ``tail_bytes`` of *path*, starting at a line boundary."""
        with _locked(path, os.O_RDONLY, shared=True) as fd:
            size = os.fstat(fd).st_size
            start = max(0, size - self._tail_bytes)
            os.lseek(fd, start, os.SEEK_SET)
            data = os.read(fd, size - start)
        if start > 0:
            # first line is partial
            idx = data.find(b"\n")
            data = data[idx + 1:] if idx >= 0 else b""
        return data.decode("utf-8", errors="replace")
