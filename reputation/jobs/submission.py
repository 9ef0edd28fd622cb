"""Audit submission flow: submit, disambiguate, resubmit until a terminal outcome.

States::

    IDLE -> SUBMITTING -> SUCCEEDED | AWAITING_SELECTION | QUEUED | FAILED
    AWAITING_SELECTION --choose_candidate/decline_matching--> SUBMITTING
    FAILED --retry--> SUBMITTING (same request)

Only one request per flow may be outstanding. The HTTP call runs outside
the lock; every attempt carries a generation number so a response that
arrives after cancel/restart/close is discarded instead of applied.
"""

import enum
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from reputation.core.session_store import SessionState
from reputation.etl.normalize import normalize, sample_result
from reputation.models import (
    SELECTION_MESSAGE,
    AuditHistoryItem,
    Candidate,
    NormalizedAuditResult,
    Queued,
    QueuedNotice,
    ScanOutcome,
    ScanRequest,
    ScanSuccess,
    SelectionContext,
    SelectionRequired,
    ValidationError,
    parse_candidates,
    validate_scan_request,
)
from reputation.vendors import reputation_api
from reputation.vendors.reputation_api import ReputationApiError

logger = logging.getLogger(__name__)


class SubmissionState(str, enum.Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    SUCCEEDED = "succeeded"
    AWAITING_SELECTION = "awaiting_selection"
    QUEUED = "queued"
    FAILED = "failed"


class SubmissionError(RuntimeError):
    """Base class for flow-level errors."""


class SubmissionInProgressError(SubmissionError):
    """Raised when a request is already outstanding for this audit."""


class InvalidTransitionError(SubmissionError):
    """Raised when a trigger is not accepted in the current state."""


class SubmissionCancelledError(SubmissionError):
    """Recorded as the failure reason when an outstanding request is abandoned."""


def default_place_id(candidates: List[Candidate], previous: Optional[str]) -> Optional[str]:
    """Keep the previous choice if it is still offered, otherwise the first selectable candidate."""
    if previous and any(candidate.place_id == previous for candidate in candidates):
        return previous
    for candidate in candidates:
        if candidate.selectable:
            return candidate.place_id
    return None


class AuditSubmission:
    """State machine for one logical audit within a browser session."""

    def __init__(
        self,
        session: SessionState,
        scan: Optional[Callable[[ScanRequest], ScanOutcome]] = None,
    ):
        self._session = session
        self._scan = scan or reputation_api.submit_scan
        self._lock = threading.Lock()
        self._generation = 0
        self._closed = False

        self.state = SubmissionState.IDLE
        self.request: Optional[ScanRequest] = None
        self.pending_request: Optional[ScanRequest] = None
        self.candidates: List[Candidate] = []
        self.selection_message: Optional[str] = None
        self.selected_place_id: Optional[str] = None
        self.result: Optional[NormalizedAuditResult] = None
        self.queued: Optional[Queued] = None
        self.error: Optional[Exception] = None

    # Triggers

    def submit(self, request: ScanRequest) -> SubmissionState:
        """Start a fresh attempt; validation failures never reach the network."""
        validate_scan_request(request)
        return self._run(request)

    def select_candidate(self, place_id: str) -> None:
        """Change the highlighted candidate without submitting."""
        with self._lock:
            self._require(SubmissionState.AWAITING_SELECTION, "select a candidate")
            self._find_selectable(place_id)
            self.selected_place_id = place_id

    def choose_candidate(self, place_id: Optional[str] = None) -> SubmissionState:
        """Confirm a candidate (default: the current selection) and resubmit."""
        with self._lock:
            self._require(SubmissionState.AWAITING_SELECTION, "choose a candidate")
            candidate = self._find_selectable(place_id or self.selected_place_id)
            self.selected_place_id = candidate.place_id
            amended = self.pending_request.replace(
                place_id=candidate.place_id,
                skip_places=False,
                selected_place_name=candidate.name,
                selected_place_address=candidate.address,
                selected_place_rating=candidate.rating,
                selected_place_review_count=candidate.review_count,
            )
        return self._run(amended, expected=SubmissionState.AWAITING_SELECTION)

    def decline_matching(self) -> SubmissionState:
        """Continue without a business profile match."""
        with self._lock:
            self._require(SubmissionState.AWAITING_SELECTION, "continue without a profile")
            amended = self.pending_request.replace(
                place_id=None,
                skip_places=True,
                selected_place_name=None,
                selected_place_address=None,
                selected_place_rating=None,
                selected_place_review_count=None,
            )
        return self._run(amended, expected=SubmissionState.AWAITING_SELECTION)

    def retry(self) -> SubmissionState:
        """Resend exactly the request that failed."""
        with self._lock:
            self._require(SubmissionState.FAILED, "retry")
            request = self.request
        if request is None:
            raise InvalidTransitionError("There is no failed request to retry.")
        return self._run(request, expected=SubmissionState.FAILED)

    def cancel(self) -> SubmissionState:
        """Abandon an outstanding request; its response will be ignored."""
        with self._lock:
            if self.state is SubmissionState.SUBMITTING:
                self._generation += 1
                self.error = SubmissionCancelledError("The audit request was cancelled. Please try again.")
                self._set_state(SubmissionState.FAILED)
            return self.state

    def restart(self) -> SubmissionState:
        """Drop everything, including a persisted selection, and go back to IDLE."""
        with self._lock:
            self._generation += 1
            self._reset()
            self._session.selection.load_and_clear()
            self._set_state(SubmissionState.IDLE)
            return self.state

    def resume(self) -> bool:
        """Restore a persisted disambiguation; reads (and removes) it exactly once."""
        with self._lock:
            if self.state is not SubmissionState.IDLE:
                return False
            context = self._session.selection.load_and_clear()
            if context is None:
                return False
            self._enter_selection(context)
            logger.info("Resumed pending selection with %d candidates", len(context.candidates))
            return True

    def close(self) -> None:
        """Tear the flow down; any outstanding response is voided on arrival."""
        with self._lock:
            self._closed = True
            self._generation += 1

    # Internals

    def _run(self, request: ScanRequest, expected: Optional[SubmissionState] = None) -> SubmissionState:
        with self._lock:
            if self._closed:
                raise InvalidTransitionError("This audit flow has been closed.")
            if self.state is SubmissionState.SUBMITTING:
                raise SubmissionInProgressError("An audit request is already in progress.")
            if expected is not None:
                self._require(expected, "resubmit")
            self._generation += 1
            generation = self._generation
            self.request = request
            self.error = None
            self._set_state(SubmissionState.SUBMITTING)

        try:
            outcome = self._scan(request)
        except Exception as exc:
            if not isinstance(exc, ReputationApiError):
                logger.exception("Audit submission crashed: %s", exc)
            with self._lock:
                if self._is_current(generation):
                    self._fail(exc)
            raise

        with self._lock:
            if not self._is_current(generation):
                return self.state
            try:
                self._apply(request, outcome)
            except Exception as exc:
                logger.exception("Could not record audit outcome: %s", exc)
                self._fail(exc)
                raise
            return self.state

    def _fail(self, exc: Exception) -> None:
        self.error = exc
        self._set_state(SubmissionState.FAILED)

    def _apply(self, request: ScanRequest, outcome: ScanOutcome) -> None:
        if isinstance(outcome, SelectionRequired):
            pending = request.replace(audit_id=outcome.audit_id if outcome.audit_id is not None else request.audit_id)
            context = SelectionContext(
                message=outcome.message,
                candidates=outcome.candidates,
                pending_request=pending,
            )
            self._session.selection.save(context)
            self._enter_selection(context, previous=request.place_id or self.selected_place_id)
        elif isinstance(outcome, Queued):
            self._session.queued_notice.save(QueuedNotice(audit_id=outcome.audit_id, message=outcome.message))
            self._session.selection.load_and_clear()
            self._reset(keep_request=True)
            self.queued = outcome
            self._set_state(SubmissionState.QUEUED)
        elif isinstance(outcome, ScanSuccess):
            self._session.last_result.save(outcome.raw)
            self._session.selection.load_and_clear()
            self._reset(keep_request=True)
            self.result = normalize(outcome.raw) or sample_result()
            self._set_state(SubmissionState.SUCCEEDED)
        else:
            raise TypeError(f"Unsupported scan outcome: {type(outcome).__name__}")

    def _enter_selection(self, context: SelectionContext, previous: Optional[str] = None) -> None:
        self.pending_request = context.pending_request
        self.candidates = list(context.candidates)
        self.selection_message = context.message
        self.selected_place_id = default_place_id(self.candidates, previous or context.pending_request.place_id)
        self._set_state(SubmissionState.AWAITING_SELECTION)

    def _find_selectable(self, place_id: Optional[str]) -> Candidate:
        if place_id:
            for candidate in self.candidates:
                if candidate.selectable and candidate.place_id == place_id:
                    return candidate
        raise ValidationError("Select the Google Business Profile that matches your business before continuing.")

    def _require(self, state: SubmissionState, action: str) -> None:
        if self.state is SubmissionState.SUBMITTING:
            raise SubmissionInProgressError("An audit request is already in progress.")
        if self.state is not state:
            raise InvalidTransitionError(f"Cannot {action} while the audit is {self.state.value}.")

    def _is_current(self, generation: int) -> bool:
        if self._closed or generation != self._generation:
            logger.debug("Discarding response for voided submission (generation=%s)", generation)
            return False
        return True

    def _reset(self, keep_request: bool = False) -> None:
        if not keep_request:
            self.request = None
        self.pending_request = None
        self.candidates = []
        self.selection_message = None
        self.selected_place_id = None
        self.result = None
        self.queued = None
        self.error = None

    def _set_state(self, state: SubmissionState) -> None:
        if state is not self.state:
            logger.info("Audit submission %s -> %s", self.state.value, state.value)
        self.state = state

    def snapshot(self) -> Dict[str, Any]:
        """JSON-friendly view of the flow for the HTTP layer."""
        with self._lock:
            return {
                "state": self.state.value,
                "request": self.request.to_payload() if self.request else None,
                "selection_message": self.selection_message,
                "candidates": [
                    {**candidate.to_payload(), "selectable": candidate.selectable} for candidate in self.candidates
                ],
                "selected_place_id": self.selected_place_id,
                "result": self.result.to_dict() if self.result else None,
                "queued": (
                    {"audit_id": self.queued.audit_id, "message": self.queued.message} if self.queued else None
                ),
                "error": str(self.error) if self.error else None,
            }


def restore_selection_from_history(item: AuditHistoryItem, session: SessionState) -> SelectionContext:
    """Persist a disambiguation rebuilt from a ``selection_required`` history entry."""
    response_payload = item.response_payload or {}
    candidates = parse_candidates(response_payload.get("candidates"))
    if item.request_payload is None or not candidates:
        raise ValidationError("Unable to restore this selection. Start a new audit to continue.")

    pending = ScanRequest.from_payload(item.request_payload).replace(audit_id=item.record.id)
    message = response_payload.get("message")
    context = SelectionContext(
        message=message if isinstance(message, str) and message.strip() else SELECTION_MESSAGE,
        candidates=candidates,
        pending_request=pending,
    )
    session.selection.save(context)
    logger.info("Restored selection for audit %s with %d candidates", item.record.id, len(candidates))
    return context


def reopen_result_from_history(item: AuditHistoryItem, session: SessionState) -> Dict[str, Any]:
    """Hand a completed audit's stored scan response to the results view."""
    if not item.scan_response:
        raise ValidationError("This audit does not have a completed scan result yet.")
    session.last_result.save(item.scan_response)
    return item.scan_response
