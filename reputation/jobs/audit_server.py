"""HTTP front-end for the audit flow (start-audit, results and history views)."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from typing import Any, Dict, Optional, Tuple

from flask import Flask, jsonify, request, session

from reputation.core.config import get_settings
from reputation.core.session_store import SessionState
from reputation.etl.normalize import normalize, sample_result
from reputation.jobs.history_poller import FILTER_ALL, HistoryPoller, filter_audits, history_row
from reputation.jobs.submission import (
    AuditSubmission,
    SubmissionError,
    SubmissionInProgressError,
    SubmissionState,
    reopen_result_from_history,
    restore_selection_from_history,
)
from reputation.models import ValidationError, build_scan_request
from reputation.vendors import reputation_api
from reputation.vendors.reputation_api import ReputationApiError

# ---------- Logging ----------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

# ---------- App & per-session registries ----------
# A history poller stops itself after this many intervals without a history view.
HISTORY_IDLE_INTERVALS = 3

app = Flask(__name__)
app.secret_key = get_settings().session_secret_key

_flows: Dict[str, AuditSubmission] = {}
_pollers: Dict[str, HistoryPoller] = {}
_last_seen: Dict[str, float] = {}
_registry_lock = threading.Lock()


# ---------- Error mapping ----------


@app.errorhandler(ValidationError)
def _validation_failed(exc: ValidationError) -> Any:
    return jsonify({"error": str(exc)}), 400


@app.errorhandler(SubmissionError)
def _submission_conflict(exc: SubmissionError) -> Any:
    return jsonify({"error": str(exc)}), 409


@app.errorhandler(ReputationApiError)
def _backend_failed(exc: ReputationApiError) -> Any:
    return jsonify({"error": exc.message}), 502


# ---------- Routes ----------


@app.get("/healthz")
def healthcheck() -> Any:
    settings = get_settings()
    return jsonify({"status": "ok", "api_base_url": settings.api_base_url}), 200


@app.post("/session")
def open_session() -> Any:
    """Record who is using this browser session (user id and/or lookup email)."""
    payload: Dict[str, Any] = request.get_json(silent=True) or {}
    user_id = payload.get("user_id")
    lookup_email = payload.get("lookup_email")

    if user_id is not None:
        try:
            user_id = int(user_id)
        except (TypeError, ValueError):
            return jsonify({"error": "user_id must be numeric"}), 400
    if not user_id and not lookup_email:
        return jsonify({"error": "user_id or lookup_email is required"}), 400

    session_id = session.get("sid")
    if session_id and (session.get("user_id"), session.get("lookup_email")) != (user_id, lookup_email):
        logger.info("Identity changed for session %s; dropping its audit state", session_id)
        _discard(session_id)
        SessionState(session_id).end()

    session["user_id"] = user_id
    session["lookup_email"] = lookup_email
    return jsonify({"data": {"session_id": _session_id()}}), 200


@app.delete("/session")
def end_session() -> Any:
    """The browsing context ended: drop flow, poller and every stored entry."""
    session_id = session.get("sid")
    if session_id:
        _discard(session_id)
        SessionState(session_id).end()
    session.clear()
    return jsonify({"data": {"status": "ended"}}), 200


@app.post("/audits")
def start_audit() -> Any:
    """Submit a new audit from the form fields."""
    payload: Dict[str, Any] = request.get_json(silent=True) or {}
    scan_request = build_scan_request(payload, user_id=session.get("user_id"), lookup_email=session.get("lookup_email"))

    flow = _flow()
    flow.submit(scan_request)
    return _flow_response(flow)


@app.get("/audits/current")
def current_audit() -> Any:
    flow = _flow()
    flow.resume()
    return _flow_response(flow)


@app.put("/audits/current/selection")
def highlight_candidate() -> Any:
    payload: Dict[str, Any] = request.get_json(silent=True) or {}
    flow = _flow()
    flow.select_candidate(str(payload.get("place_id") or ""))
    return _flow_response(flow)


@app.post("/audits/current/selection")
def confirm_candidate() -> Any:
    payload: Dict[str, Any] = request.get_json(silent=True) or {}
    flow = _flow()
    flow.choose_candidate(payload.get("place_id") or None)
    return _flow_response(flow)


@app.post("/audits/current/decline")
def decline_matching() -> Any:
    flow = _flow()
    flow.decline_matching()
    return _flow_response(flow)


@app.post("/audits/current/retry")
def retry_audit() -> Any:
    flow = _flow()
    flow.retry()
    return _flow_response(flow)


@app.post("/audits/current/cancel")
def cancel_audit() -> Any:
    flow = _flow()
    flow.cancel()
    return _flow_response(flow)


@app.post("/audits/current/restart")
def restart_audit() -> Any:
    flow = _flow()
    flow.restart()
    return _flow_response(flow)


@app.get("/audits/results")
def audit_results() -> Any:
    """Render the last scan result once; fall back to the sample report."""
    raw = SessionState(_session_id()).last_result.load_and_clear()
    result = normalize(raw) if raw is not None else None
    placeholder = result is None
    if placeholder:
        result = sample_result()
    return jsonify({"data": {"placeholder": placeholder, "result": result.to_dict()}}), 200


@app.get("/audits/history")
def audit_history() -> Any:
    user_id, _ = _identity()
    if not user_id:
        return jsonify({"error": "No authenticated user found. Sign in to view audit history."}), 401

    poller = _poller(user_id)
    notice = SessionState(_session_id()).queued_notice.load_and_clear()
    status_filter = request.args.get("status") or FILTER_ALL
    search_term = request.args.get("q") or ""

    rows = [history_row(record) for record in filter_audits(poller.records, status_filter, search_term)]
    return (
        jsonify(
            {
                "data": {
                    "audits": rows,
                    "total": len(poller.records),
                    "loading": poller.loading,
                    "error": poller.last_error,
                    "notice": notice.to_payload() if notice else None,
                }
            }
        ),
        200,
    )


@app.post("/audits/history/<int:audit_id>/resume")
def resume_from_history(audit_id: int) -> Any:
    user_id, lookup_email = _identity()
    item = reputation_api.fetch_history_item(audit_id, user_id=user_id, lookup_email=lookup_email)

    flow = _flow()
    if flow.state is SubmissionState.SUBMITTING:
        raise SubmissionInProgressError("An audit request is already in progress.")
    flow.restart()
    restore_selection_from_history(item, SessionState(_session_id()))
    return jsonify({"data": {"next": "/audits/current"}}), 200


@app.post("/audits/history/<int:audit_id>/open")
def open_from_history(audit_id: int) -> Any:
    user_id, lookup_email = _identity()
    item = reputation_api.fetch_history_item(audit_id, user_id=user_id, lookup_email=lookup_email)
    try:
        reopen_result_from_history(item, SessionState(_session_id()))
    except ValidationError as exc:
        return jsonify({"error": str(exc)}), 404
    return jsonify({"data": {"next": "/audits/results"}}), 200


# ---------- Internals ----------


def _session_id() -> str:
    session_id = session.get("sid")
    if not session_id:
        session_id = uuid.uuid4().hex
        session["sid"] = session_id
    return session_id


def _identity() -> Tuple[Optional[int], Optional[str]]:
    return session.get("user_id"), session.get("lookup_email")


def _flow() -> AuditSubmission:
    session_id = _session_id()
    _evict_idle()
    with _registry_lock:
        _last_seen[session_id] = time.monotonic()
        flow = _flows.get(session_id)
        if flow is None:
            flow = AuditSubmission(SessionState(session_id))
            _flows[session_id] = flow
        return flow


def _poller(user_id: int) -> HistoryPoller:
    """The session's history poller, restarted when it went idle or the user changed."""
    session_id = _session_id()
    _evict_idle()
    stale = None
    with _registry_lock:
        _last_seen[session_id] = time.monotonic()
        poller = _pollers.get(session_id)
        created = poller is None or not poller.running or poller.user_id != user_id
        if created:
            stale = poller
            interval = get_settings().history_poll_interval
            poller = HistoryPoller(interval=interval, max_idle=interval * HISTORY_IDLE_INTERVALS)
            _pollers[session_id] = poller
    if stale is not None:
        stale.stop()
    if created:
        poller.start(user_id, on_update=lambda records: logger.debug("History refreshed: %d audits", len(records)))
    else:
        poller.touch()
    return poller


def _evict_idle() -> None:
    """Drop flows and pollers of sessions not seen for SESSION_IDLE_TIMEOUT seconds."""
    cutoff = time.monotonic() - get_settings().session_idle_timeout
    with _registry_lock:
        stale = [
            session_id
            for session_id, seen in _last_seen.items()
            if seen < cutoff
            and not (session_id in _flows and _flows[session_id].state is SubmissionState.SUBMITTING)
        ]
    for session_id in stale:
        logger.info("Evicting idle session %s", session_id)
        _discard(session_id)


def _discard(session_id: str) -> None:
    with _registry_lock:
        flow = _flows.pop(session_id, None)
        poller = _pollers.pop(session_id, None)
        _last_seen.pop(session_id, None)
    if flow is not None:
        flow.close()
    if poller is not None:
        poller.stop()


def _flow_response(flow: AuditSubmission) -> Any:
    snapshot = flow.snapshot()
    next_view = None
    if flow.state is SubmissionState.SUCCEEDED:
        next_view = "/audits/results"
    elif flow.state is SubmissionState.QUEUED:
        next_view = "/audits/history"
    return jsonify({"data": {**snapshot, "next": next_view}}), 200


def main() -> None:
    port = get_settings().server_port
    logger.info("[BOOT] Binding on 0.0.0.0:%d", port)
    app.run(host="0.0.0.0", port=port, threaded=True)


if __name__ == "__main__":
    main()
