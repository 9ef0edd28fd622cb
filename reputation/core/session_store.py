"""Session-scoped, write-then-destructive-read storage for the audit flow.

Each browser session owns at most one value per key. Values are written
once and consumed by the next page view that needs them:

- ``auditSelectionContext``: pending disambiguation (request + candidates)
- ``auditQueueNotice``: one-shot notice shown by the history view
- ``auditResults``: raw scan payload rendered by the results view

Writes always overwrite (last write wins), reads always delete.
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

from reputation.core import db
from reputation.core.config import get_settings
from reputation.models import QueuedNotice, SelectionContext, ValidationError, _safe_int, _strip_or_none

logger = logging.getLogger(__name__)

SELECTION_CONTEXT_KEY = "auditSelectionContext"
QUEUE_NOTICE_KEY = "auditQueueNotice"
LAST_RESULT_KEY = "auditResults"

DEFAULT_QUEUE_MESSAGE = "Your audit has started successfully."


class SessionBackend(ABC):
    """Key/value storage partitioned by session id."""

    @abstractmethod
    def put(self, session_id: str, key: str, value: Any) -> None:
        """Store *value*, replacing anything already stored under *key*."""

    @abstractmethod
    def pop(self, session_id: str, key: str) -> Optional[Any]:
        """Remove and return the value under *key*, or None."""

    @abstractmethod
    def clear(self, session_id: str) -> None:
        """Drop every entry of a session (the browsing context ended)."""


class MemorySessionBackend(SessionBackend):
    """In-process backend; values are kept as JSON text like browser storage."""

    def __init__(self) -> None:
        self._entries: Dict[Tuple[str, str], str] = {}
        self._lock = threading.Lock()

    def put(self, session_id: str, key: str, value: Any) -> None:
        encoded = json.dumps(value)
        with self._lock:
            self._entries[(session_id, key)] = encoded

    def pop(self, session_id: str, key: str) -> Optional[Any]:
        with self._lock:
            encoded = self._entries.pop((session_id, key), None)
        if encoded is None:
            return None
        return json.loads(encoded)

    def clear(self, session_id: str) -> None:
        with self._lock:
            for entry_key in [k for k in self._entries if k[0] == session_id]:
                del self._entries[entry_key]


class PostgresSessionBackend(SessionBackend):
    """Backend storing entries in the ``session_entries`` table."""

    def __init__(self) -> None:
        db.ensure_schema()

    def put(self, session_id: str, key: str, value: Any) -> None:
        db.upsert_entry(session_id, key, value)

    def pop(self, session_id: str, key: str) -> Optional[Any]:
        return db.pop_entry(session_id, key)

    def clear(self, session_id: str) -> None:
        db.clear_session(session_id)


_backend: Optional[SessionBackend] = None
_backend_lock = threading.Lock()


def get_backend() -> SessionBackend:
    """Return the process-wide backend, PostgreSQL when DATABASE_URL is set."""
    global _backend
    with _backend_lock:
        if _backend is None:
            if get_settings().database_url:
                _backend = PostgresSessionBackend()
            else:
                _backend = MemorySessionBackend()
            logger.info("Using %s for session state", type(_backend).__name__)
        return _backend


class SelectionContextStore:
    """Holds the single pending disambiguation of a session."""

    def __init__(self, session_id: str, backend: Optional[SessionBackend] = None):
        self.session_id = session_id
        self._backend = backend or get_backend()

    def save(self, context: SelectionContext) -> None:
        self._backend.put(self.session_id, SELECTION_CONTEXT_KEY, context.to_payload())

    def load_and_clear(self) -> Optional[SelectionContext]:
        raw = self._backend.pop(self.session_id, SELECTION_CONTEXT_KEY)
        if raw is None:
            return None
        try:
            return SelectionContext.from_payload(raw)
        except ValidationError as exc:
            logger.warning("Discarding invalid selection context for session %s: %s", self.session_id, exc)
            return None


class QueuedNoticeStore:
    def __init__(self, session_id: str, backend: Optional[SessionBackend] = None):
        self.session_id = session_id
        self._backend = backend or get_backend()

    def save(self, notice: QueuedNotice) -> None:
        self._backend.put(self.session_id, QUEUE_NOTICE_KEY, notice.to_payload())

    def load_and_clear(self) -> Optional[QueuedNotice]:
        raw = self._backend.pop(self.session_id, QUEUE_NOTICE_KEY)
        if raw is None:
            return None
        if not isinstance(raw, dict):
            return QueuedNotice(audit_id=None, message=DEFAULT_QUEUE_MESSAGE)
        return QueuedNotice(
            audit_id=_safe_int(raw.get("audit_id")),
            message=_strip_or_none(raw.get("message")) or DEFAULT_QUEUE_MESSAGE,
            created_at=_strip_or_none(raw.get("created_at")) or "",
        )


class LastResultStore:
    def __init__(self, session_id: str, backend: Optional[SessionBackend] = None):
        self.session_id = session_id
        self._backend = backend or get_backend()

    def save(self, raw_result: Dict[str, Any]) -> None:
        self._backend.put(self.session_id, LAST_RESULT_KEY, raw_result)

    def load_and_clear(self) -> Optional[Dict[str, Any]]:
        raw = self._backend.pop(self.session_id, LAST_RESULT_KEY)
        return raw if isinstance(raw, dict) else None


class SessionState:
    """The three stores of one browser session."""

    def __init__(self, session_id: str, backend: Optional[SessionBackend] = None):
        self.session_id = session_id
        self._backend = backend or get_backend()
        self.selection = SelectionContextStore(session_id, self._backend)
        self.queued_notice = QueuedNoticeStore(session_id, self._backend)
        self.last_result = LastResultStore(session_id, self._backend)

    def end(self) -> None:
        self._backend.clear(self.session_id)
