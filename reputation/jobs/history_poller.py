"""Periodic reconciliation of a user's audit history.

Queued audits finish on the backend; the client only notices by
re-fetching the history list. :class:`HistoryPoller` does that on a fixed
interval and never lets two fetches overlap: a tick that fires while the
previous fetch is still running is skipped.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import urlparse

from reputation.core.config import get_settings
from reputation.etl.normalize import score_band
from reputation.models import AuditHistoryRecord
from reputation.vendors import reputation_api
from reputation.vendors.reputation_api import HISTORY_FAILED_MESSAGE, ReputationApiError

logger = logging.getLogger(__name__)

STATUS_MAP = {
    "pending": "queued",
    "processing": "processing",
    "success": "complete",
    "selection_required": "needs_selection",
    "error": "failed",
}
STATUS_LABELS = {
    "queued": "Submitted",
    "processing": "Processing",
    "complete": "Complete",
    "needs_selection": "Needs Selection",
    "failed": "Failed",
}
FILTER_ALL = "all"


def map_status(status: Any) -> str:
    """Backend status to client status; anything unknown is a failure."""
    if not isinstance(status, str):
        return "failed"
    return STATUS_MAP.get(status, "failed")


def status_label(client_status: str) -> str:
    return STATUS_LABELS.get(client_status, STATUS_LABELS["failed"])


def extract_domain(website: Optional[str]) -> str:
    if not website:
        return "--"
    host = urlparse(website).hostname
    if not host:
        return website
    return host.removeprefix("www.")


def format_date(value: Optional[str]) -> str:
    if not value:
        return "--"
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return value
    return f"{parsed:%b} {parsed.day}, {parsed.year}"


def filter_audits(
    records: Iterable[AuditHistoryRecord],
    status_filter: str = FILTER_ALL,
    search_term: str = "",
) -> List[AuditHistoryRecord]:
    term = (search_term or "").strip().lower()
    matches = []
    for record in records:
        if status_filter != FILTER_ALL and map_status(record.status) != status_filter:
            continue
        business = (record.business_name or "").lower()
        website = (record.website or "").lower()
        if term and term not in business and term not in website:
            continue
        matches.append(record)
    return matches


def history_row(record: AuditHistoryRecord) -> Dict[str, Any]:
    """Display fields for one history entry."""
    client_status = map_status(record.status)
    score = record.reputation_score
    return {
        **record.to_payload(),
        "client_status": client_status,
        "status_label": status_label(client_status),
        "business_label": record.business_name or "Unnamed Business",
        "domain": extract_domain(record.website),
        "date_label": format_date(record.scan_date or record.created_at),
        "score_band": score_band(score) if score is not None else None,
    }


def _default_fetch(user_id: int) -> List[AuditHistoryRecord]:
    return reputation_api.fetch_history(user_id=user_id, limit=get_settings().history_limit).audits


class HistoryPoller:
    """Re-fetch the audit list every ``interval`` seconds until stopped.

    With ``max_idle`` set, the poller stops itself once nobody has called
    :meth:`touch` (or :meth:`start`) for that many seconds.
    """

    def __init__(
        self,
        fetch: Optional[Callable[[int], List[AuditHistoryRecord]]] = None,
        interval: Optional[float] = None,
        max_idle: Optional[float] = None,
    ):
        self._fetch_records = fetch or _default_fetch
        self.interval = interval if interval is not None else get_settings().history_poll_interval
        self.max_idle = max_idle
        self.records: List[AuditHistoryRecord] = []
        self.loading = False
        self.last_error: Optional[str] = None

        self._inflight = threading.Lock()
        self._state_lock = threading.Lock()
        self._generation = 0
        self._user_id: Optional[int] = None
        self._last_seen = time.monotonic()
        self._on_update: Optional[Callable[[List[AuditHistoryRecord]], None]] = None
        self._on_error: Optional[Callable[[Exception], None]] = None
        self._stop_event: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._future: Optional[Future] = None

    @property
    def running(self) -> bool:
        return self._stop_event is not None and not self._stop_event.is_set()

    @property
    def user_id(self) -> Optional[int]:
        return self._user_id

    def touch(self) -> None:
        """Record that the history view is still being looked at."""
        self._last_seen = time.monotonic()

    def start(
        self,
        user_id: int,
        on_update: Callable[[List[AuditHistoryRecord]], None],
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> None:
        """Run the initial (loud) fetch, then keep refreshing silently in the background."""
        with self._state_lock:
            if self.running:
                raise RuntimeError("History poller is already running")
            self._generation += 1
            self._user_id = user_id
            self._on_update = on_update
            self._on_error = on_error
            stop_event = self._stop_event = threading.Event()
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="history-fetch")
            generation = self._generation
            self.touch()

        logger.info("Starting history polling for user_id=%s every %ss", user_id, self.interval)
        self._fetch(generation, silent=False)

        with self._state_lock:
            if generation != self._generation:
                return
            self._thread = threading.Thread(
                target=self._run,
                args=(generation, stop_event),
                name="history-poller",
                daemon=True,
            )
            self._thread.start()

    def stop(self) -> None:
        """Cancel the interval; a fetch still in flight is ignored when it returns."""
        self._shutdown()

    def refresh(self, silent: bool = True) -> bool:
        """Fetch now on the calling thread; returns False if a fetch was already running."""
        with self._state_lock:
            generation = self._generation
        return self._fetch(generation, silent)

    def _shutdown(self, generation: Optional[int] = None) -> None:
        with self._state_lock:
            if self._stop_event is None:
                return
            if generation is not None and generation != self._generation:
                return
            self._generation += 1
            self._stop_event.set()
            thread, executor = self._thread, self._executor
            self._stop_event = None
            self._thread = None
            self._executor = None
            self._future = None

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.interval)
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)
        logger.info("Stopped history polling for user_id=%s", self._user_id)

    def _run(self, generation: int, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.interval):
            if self.max_idle is not None and time.monotonic() - self._last_seen > self.max_idle:
                logger.info("History view idle for over %ss; stopping poller", self.max_idle)
                self._shutdown(generation)
                return
            self._tick(generation)

    def _tick(self, generation: int) -> None:
        with self._state_lock:
            if generation != self._generation or self._executor is None:
                return
            if (self._future is not None and not self._future.done()) or self._inflight.locked():
                logger.debug("Previous history fetch still running; skipping tick")
                return
            self._future = self._executor.submit(self._fetch, generation, True)

    def _fetch(self, generation: int, silent: bool) -> bool:
        if not self._inflight.acquire(blocking=False):
            logger.debug("History fetch already in flight; skipping")
            return False
        try:
            if not silent:
                self.loading = True
            try:
                records = self._fetch_records(self._user_id)
            except ReputationApiError as exc:
                logger.warning("History refresh failed: %s", exc)
                self._report_error(generation, exc, exc.message)
                return True
            except Exception as exc:  # noqa: BLE001
                logger.exception("History refresh crashed: %s", exc)
                self._report_error(generation, exc, HISTORY_FAILED_MESSAGE)
                return True

            if generation != self._generation:
                logger.debug("Discarding history fetched by a stopped poller")
                return True
            self.records = records
            self.last_error = None
            if self._on_update is not None:
                self._on_update(records)
            return True
        finally:
            if not silent:
                self.loading = False
            self._inflight.release()

    def _report_error(self, generation: int, exc: Exception, message: str) -> None:
        if generation != self._generation:
            return
        self.last_error = message
        if self._on_error is not None:
            self._on_error(exc)
