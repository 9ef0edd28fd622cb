"""Client utilities for the reputation backend API."""

import logging
from typing import Any, Dict, Optional

import requests

from reputation.core.config import get_settings
from reputation.models import (
    SELECTION_MESSAGE,
    AuditHistoryItem,
    AuditHistoryPage,
    AuditHistoryRecord,
    Queued,
    ScanOutcome,
    ScanRequest,
    ScanSuccess,
    SelectionRequired,
    _safe_int,
    _strip_or_none,
    parse_candidates,
)

logger = logging.getLogger(__name__)
_SESSION = requests.Session()
_SESSION.headers.update({"Accept": "application/json"})

SCAN_FAILED_MESSAGE = "Audit request failed. Please try again."
HISTORY_FAILED_MESSAGE = "Unable to load audit history right now."
HISTORY_ITEM_FAILED_MESSAGE = "Unable to load audit details right now."


class ReputationApiError(RuntimeError):
    """Base class for failures talking to the reputation backend."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NetworkError(ReputationApiError):
    """Raised when the backend cannot be reached."""


class ProtocolError(ReputationApiError):
    """Raised when the response body is not JSON or not the expected shape."""


class ApiError(ReputationApiError):
    """Raised when the backend reports a failure."""

    def __init__(self, message: str, code: Optional[str] = None, http_status: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.http_status = http_status


def build_error_message(data: Any, fallback: str) -> str:
    """Prefer the first field-level detail, then the top-level message."""
    if not isinstance(data, dict):
        return fallback
    details = data.get("details")
    if isinstance(details, dict) and details:
        first_value = next(iter(details.values()))
        if isinstance(first_value, list) and first_value:
            return str(first_value[0])
        if isinstance(first_value, str):
            return first_value
    return _strip_or_none(data.get("message")) or fallback


def _request_json(method: str, path: str, fallback: str, **kwargs: Any) -> Dict[str, Any]:
    settings = get_settings()
    url = f"{settings.api_base_url}{path}"
    try:
        response = _SESSION.request(method, url, timeout=settings.request_timeout, **kwargs)
    except requests.RequestException as exc:
        logger.warning("%s %s failed: %s", method, path, exc)
        raise NetworkError(fallback) from exc

    try:
        payload = response.json()
    except ValueError as exc:
        logger.error("%s %s returned a non-JSON body (status=%s)", method, path, response.status_code)
        raise ProtocolError(fallback) from exc

    ok = 200 <= response.status_code < 300
    if not ok or not isinstance(payload, dict) or payload.get("status") == "error":
        code = payload.get("code") if isinstance(payload, dict) else None
        logger.error("%s %s failed: http_status=%s code=%s", method, path, response.status_code, code)
        raise ApiError(build_error_message(payload, fallback), code=code, http_status=response.status_code)
    return payload


def submit_scan(request: ScanRequest) -> ScanOutcome:
    """POST one scan request and classify the response. Exactly one HTTP call, no retries."""
    payload = _request_json("POST", "/reputation/scan", SCAN_FAILED_MESSAGE, json=request.to_payload())
    return parse_scan_outcome(payload)


def parse_scan_outcome(payload: Dict[str, Any]) -> ScanOutcome:
    status = payload.get("status")
    if status == "success":
        results = payload.get("results")
        return ScanSuccess(
            business_name=_strip_or_none(payload.get("business_name")) or "",
            results=results if isinstance(results, dict) else {},
            verified_website=_strip_or_none(payload.get("verified_website")),
            verified_location=_strip_or_none(payload.get("verified_location")),
            verified_phone=_strip_or_none(payload.get("verified_phone")),
            scan_date=_strip_or_none(payload.get("scan_date")),
            raw=payload,
        )
    if status == "selection_required":
        return SelectionRequired(
            message=_strip_or_none(payload.get("message")) or SELECTION_MESSAGE,
            candidates=parse_candidates(payload.get("candidates")),
            audit_id=_safe_int(payload.get("audit_id")),
        )
    if status == "queued":
        audit_id = _safe_int(payload.get("audit_id"))
        if audit_id is None:
            raise ProtocolError("Queued audit response is missing an audit id.")
        return Queued(
            audit_id=audit_id,
            message=_strip_or_none(payload.get("message")) or "Your audit has started successfully.",
            audit_summary=AuditHistoryRecord.from_payload(payload.get("audit")),
        )

    logger.error("Unexpected scan response status=%s", status)
    raise ApiError("Unexpected audit response from server.")


def _identity_params(user_id: Optional[int], lookup_email: Optional[str]) -> Dict[str, Any]:
    params: Dict[str, Any] = {}
    if user_id:
        params["user_id"] = user_id
    if lookup_email:
        params["lookup_email"] = lookup_email
    return params


def fetch_history(
    user_id: Optional[int] = None,
    lookup_email: Optional[str] = None,
    limit: Optional[int] = None,
) -> AuditHistoryPage:
    params = _identity_params(user_id, lookup_email)
    if limit:
        params["limit"] = limit
    payload = _request_json("GET", "/reputation/history", HISTORY_FAILED_MESSAGE, params=params)

    raw_audits = payload.get("audits")
    if not isinstance(raw_audits, list):
        raise ProtocolError(HISTORY_FAILED_MESSAGE)

    audits = []
    for raw in raw_audits:
        record = AuditHistoryRecord.from_payload(raw)
        if record is None:
            logger.debug("Skipping malformed audit record: %s", str(raw)[:200])
            continue
        audits.append(record)

    total = _safe_int(payload.get("total"))
    return AuditHistoryPage(total=total if total is not None else len(audits), audits=audits)


def fetch_history_item(
    audit_id: int,
    user_id: Optional[int] = None,
    lookup_email: Optional[str] = None,
) -> AuditHistoryItem:
    params = _identity_params(user_id, lookup_email)
    payload = _request_json("GET", f"/reputation/history/{audit_id}", HISTORY_ITEM_FAILED_MESSAGE, params=params)

    audit = payload.get("audit")
    record = AuditHistoryRecord.from_payload(audit)
    if record is None:
        raise ProtocolError(HISTORY_ITEM_FAILED_MESSAGE)

    return AuditHistoryItem(
        record=record,
        request_payload=_dict_or_none(audit.get("request_payload")),
        response_payload=_dict_or_none(audit.get("response_payload")),
        scan_response=_dict_or_none(audit.get("scan_response")),
    )


def _dict_or_none(value: Any) -> Optional[Dict[str, Any]]:
    return value if isinstance(value, dict) else None
