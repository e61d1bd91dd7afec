"""Persistent connection event log for troubleshooting reader discovery."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque, Iterable


logger = logging.getLogger(__name__)

DEFAULT_EVENT_LOG_PATH = Path("data/event_log.jsonl")


@dataclass(slots=True)
class EventLogEntry:
    """A connection, discovery or credential event."""

    timestamp: float
    category: str
    event: str
    message: str
    metadata: dict[str, object | None] | None = None

    def to_dict(self) -> dict[str, object | None]:
        payload: dict[str, object | None] = {
            "timestamp": self.timestamp,
            "category": self.category,
            "event": self.event,
            "message": self.message,
        }
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload

    @classmethod
    def from_payload(cls, payload: object) -> "EventLogEntry | None":
        if not isinstance(payload, dict):
            return None
        event = payload.get("event")
        message = payload.get("message")
        if not isinstance(event, str) or not isinstance(message, str):
            return None
        category = payload.get("category")
        cleaned_category = category.strip() if isinstance(category, str) and category.strip() else "general"
        try:
            timestamp = float(payload.get("timestamp"))  # type: ignore[arg-type]
        except (TypeError, ValueError):
            timestamp = time.time()
        metadata = payload.get("metadata")
        return cls(
            timestamp=timestamp,
            category=cleaned_category,
            event=event,
            message=message,
            metadata=metadata if isinstance(metadata, dict) else None,
        )


class EventLog:
    """Bounded in-memory event log mirrored to an append-only JSON-lines file.

    Passing ``path=None`` keeps the log in memory only.
    """

    def __init__(
        self,
        path: Path | str | None = DEFAULT_EVENT_LOG_PATH,
        *,
        max_entries: int = 500,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._path: Path | None = Path(path) if path is not None else None
        self._entries: Deque[EventLogEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        if self._path is not None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:  # pragma: no cover - filesystem errors are rare
                logger.warning("Unable to prepare event log directory: %s", exc)
                self._path = None
        self._restore()

    @property
    def path(self) -> Path | None:
        return self._path

    def record(
        self,
        category: str,
        event: str,
        message: str,
        *,
        metadata: dict[str, object | None] | None = None,
    ) -> EventLogEntry:
        """Append an event, persist it and mirror it to the logger."""

        cleaned_category = category.strip() if isinstance(category, str) else ""
        cleaned_metadata = {key: value for key, value in (metadata or {}).items() if value is not None}
        entry = EventLogEntry(
            timestamp=time.time(),
            category=cleaned_category or "general",
            event=event,
            message=message,
            metadata=cleaned_metadata or None,
        )
        with self._lock:
            self._entries.append(entry)
            self._append_persistent(entry)
        if entry.metadata:
            logger.info("Reader event %s/%s: %s | metadata=%s", entry.category, event, message, entry.metadata)
        else:
            logger.info("Reader event %s/%s: %s", entry.category, event, message)
        return entry

    def tail(self, limit: int | None = None, *, category: str | None = None) -> list[EventLogEntry]:
        """Return the most recent entries, oldest first."""

        with self._lock:
            entries: Iterable[EventLogEntry] = list(self._entries)
        wanted = category.strip() if isinstance(category, str) else ""
        if wanted:
            entries = [entry for entry in entries if entry.category == wanted]
        entries = list(entries)
        if limit is not None:
            try:
                limit_value = max(1, int(limit))
            except (TypeError, ValueError):
                limit_value = 1
            entries = entries[-limit_value:]
        return entries

    def _restore(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to load event log: %s", exc)
            return
        with self._lock:
            for line in lines:
                if not line.strip():
                    continue
                try:
                    payload = json.loads(line)
                except ValueError:
                    continue
                entry = EventLogEntry.from_payload(payload)
                if entry is not None:
                    self._entries.append(entry)

    def _append_persistent(self, entry: EventLogEntry) -> None:
        if self._path is None:
            return
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to persist event log: %s", exc)


__all__ = ["DEFAULT_EVENT_LOG_PATH", "EventLog", "EventLogEntry"]
