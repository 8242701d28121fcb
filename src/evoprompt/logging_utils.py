"""
Structured event log for evolution runs.

Events are written as JSONL lines so downstream tooling can consume them
without bespoke parsers. Writes are serialized via an asyncio lock and
performed off the event loop with ``asyncio.to_thread``.
"""

from __future__ import annotations

import asyncio
import atexit
import json
import time
from pathlib import Path
from typing import Any, Dict, List

from evoprompt.logging.logger import Logger, LoggerProtocol, LogLevel, StdOutLogger


class EventLogger:
    """Append-only JSONL logger with async-safe writes."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()
        self._handle = self.path.open("a", encoding="utf-8", buffering=1)
        self.events_written = 0
        atexit.register(self.close)

    def close(self) -> None:
        if self._handle and not self._handle.closed:
            self._handle.flush()
            self._handle.close()

    async def log(self, event_type: str, payload: Dict[str, Any]) -> None:
        """Write a structured event."""
        record = {
            "ts": time.time(),
            "event": event_type,
            **payload,
        }
        async with self._lock:
            await asyncio.to_thread(self._append_record, record)

    def _append_record(self, record: Dict[str, Any]) -> None:
        self._handle.write(json.dumps(record, default=str) + "\n")
        self._handle.flush()
        self.events_written += 1


def read_events(path: str | Path) -> List[Dict[str, Any]]:
    """Load every event from a JSONL log, skipping blank lines."""
    events: List[Dict[str, Any]] = []
    with Path(path).open("r", encoding="utf-8") as handle:
        for line in handle:
            line = line.strip()
            if line:
                events.append(json.loads(line))
    return events


def build_logger(log_level: LogLevel | str = LogLevel.WARNING, *, attach_handler: bool = False) -> LoggerProtocol:
    """Return the default human-facing logger for a run."""
    level = LogLevel.parse(log_level)
    if attach_handler:
        return Logger(level)
    return StdOutLogger(level)
