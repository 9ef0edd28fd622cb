"""Core data models shared by the audit submission flow."""

from __future__ import annotations

import dataclasses
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

SELECTION_MESSAGE = (
    "Select your business, or click Continue without Google Business Profile "
    "if your business is not listed."
)

AUDIT_STATUSES = ("pending", "processing", "success", "error", "selection_required")

_REQUEST_STR_FIELDS = (
    "lookup_email",
    "website",
    "business_name",
    "phone",
    "location",
    "industry",
    "country",
    "place_id",
    "selected_place_name",
    "selected_place_address",
)


class ValidationError(ValueError):
    """Raised when a request fails client-side checks; never reaches the network."""


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(slots=True)
class ScanRequest:
    """Parameters of one audit attempt, mirroring the POST /reputation/scan body."""

    user_id: Optional[int] = None
    lookup_email: Optional[str] = None
    audit_id: Optional[int] = None
    website: Optional[str] = None
    business_name: Optional[str] = None
    phone: Optional[str] = None
    location: Optional[str] = None
    industry: Optional[str] = None
    country: Optional[str] = None
    place_id: Optional[str] = None
    skip_places: bool = False
    selected_place_name: Optional[str] = None
    selected_place_address: Optional[str] = None
    selected_place_rating: Optional[float] = None
    selected_place_review_count: Optional[int] = None

    def replace(self, **changes: Any) -> "ScanRequest":
        return dataclasses.replace(self, **changes)

    def to_payload(self) -> Dict[str, Any]:
        """JSON body for the backend; unset optional fields are omitted."""
        payload = {key: value for key, value in dataclasses.asdict(self).items() if value is not None}
        payload["skip_places"] = bool(self.skip_places)
        return payload

    @classmethod
    def from_payload(cls, data: Any) -> "ScanRequest":
        if not isinstance(data, Mapping):
            raise ValidationError("Stored audit request is not an object.")

        kwargs: Dict[str, Any] = {name: _strip_or_none(data.get(name)) for name in _REQUEST_STR_FIELDS}
        kwargs["user_id"] = _safe_int(data.get("user_id"))
        kwargs["audit_id"] = _safe_int(data.get("audit_id"))
        kwargs["skip_places"] = data.get("skip_places") is True
        kwargs["selected_place_rating"] = _safe_float(data.get("selected_place_rating"))
        kwargs["selected_place_review_count"] = _safe_int(data.get("selected_place_review_count"))
        return cls(**kwargs)


def validate_scan_request(request: ScanRequest) -> None:
    """Reject requests that do not identify a business."""
    has_website = bool(_strip_or_none(request.website))
    has_business_name = bool(_strip_or_none(request.business_name))
    has_phone = bool(_strip_or_none(request.phone))
    has_location = bool(_strip_or_none(request.location))

    if not has_website and not has_business_name and not (has_phone and has_location):
        raise ValidationError("Provide business name, or website, or both phone and location to continue.")
    if has_phone and not has_location:
        raise ValidationError("Location is required when a phone number is provided.")


def normalize_website(url: Optional[str]) -> str:
    trimmed = (url or "").strip()
    if not trimmed:
        return ""
    if trimmed.lower().startswith(("http://", "https://")):
        return trimmed
    return f"https://{trimmed}"


def build_scan_request(
    form: Mapping[str, Any],
    user_id: Optional[int] = None,
    lookup_email: Optional[str] = None,
) -> ScanRequest:
    """Turn raw form fields into a ScanRequest, dropping blanks."""
    return ScanRequest(
        user_id=user_id,
        lookup_email=_strip_or_none(lookup_email),
        website=normalize_website(_strip_or_none(form.get("website"))) or None,
        business_name=_strip_or_none(form.get("business_name")),
        phone=_strip_or_none(form.get("phone")),
        location=_strip_or_none(form.get("location")),
        industry=_strip_or_none(form.get("industry")),
        country=_strip_or_none(form.get("country")),
        skip_places=False,
    )


@dataclass(slots=True)
class Candidate:
    """One possible business-profile match returned by place matching."""

    place_id: Optional[str] = None
    name: Optional[str] = None
    address: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None

    @property
    def selectable(self) -> bool:
        return bool(self.place_id)

    def to_payload(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_payload(cls, data: Any) -> Optional["Candidate"]:
        if not isinstance(data, Mapping):
            return None
        return cls(
            place_id=_strip_or_none(data.get("place_id")),
            name=_strip_or_none(data.get("name")),
            address=_strip_or_none(data.get("address")),
            rating=_safe_float(data.get("rating")),
            review_count=_safe_int(data.get("review_count")),
        )


def parse_candidates(items: Any) -> List[Candidate]:
    if not isinstance(items, list):
        return []
    candidates = []
    for raw in items:
        candidate = Candidate.from_payload(raw)
        if candidate is not None:
            candidates.append(candidate)
    return candidates


@dataclass(slots=True)
class AuditHistoryRecord:
    """A server-tracked audit as returned by the history endpoints."""

    id: int
    status: str
    business_name: Optional[str] = None
    website: Optional[str] = None
    location: Optional[str] = None
    industry: Optional[str] = None
    reputation_score: Optional[float] = None
    scan_date: Optional[str] = None
    created_at: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_payload(cls, data: Any) -> Optional["AuditHistoryRecord"]:
        if not isinstance(data, Mapping):
            return None
        audit_id = _safe_int(data.get("id"))
        if audit_id is None:
            return None
        return cls(
            id=audit_id,
            status=str(data.get("status") or ""),
            business_name=_strip_or_none(data.get("business_name")),
            website=_strip_or_none(data.get("website")),
            location=_strip_or_none(data.get("location")),
            industry=_strip_or_none(data.get("industry")),
            reputation_score=_safe_float(data.get("reputation_score")),
            scan_date=_strip_or_none(data.get("scan_date")),
            created_at=_strip_or_none(data.get("created_at")),
            error_code=_strip_or_none(data.get("error_code")),
            error_message=_strip_or_none(data.get("error_message")),
        )


@dataclass(slots=True)
class AuditHistoryPage:
    total: int
    audits: List[AuditHistoryRecord] = field(default_factory=list)


@dataclass(slots=True)
class AuditHistoryItem:
    """One audit plus the payloads needed to resume or reopen it."""

    record: AuditHistoryRecord
    request_payload: Optional[Dict[str, Any]] = None
    response_payload: Optional[Dict[str, Any]] = None
    scan_response: Optional[Dict[str, Any]] = None


# Scan outcomes. Exactly one of these is produced per scan call.


@dataclass(slots=True)
class ScanSuccess:
    business_name: str
    results: Dict[str, Any]
    verified_website: Optional[str] = None
    verified_location: Optional[str] = None
    verified_phone: Optional[str] = None
    scan_date: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(slots=True)
class SelectionRequired:
    message: str
    candidates: List[Candidate] = field(default_factory=list)
    audit_id: Optional[int] = None


@dataclass(slots=True)
class Queued:
    audit_id: int
    message: str
    audit_summary: Optional[AuditHistoryRecord] = None


ScanOutcome = Union[ScanSuccess, SelectionRequired, Queued]


@dataclass(slots=True)
class SelectionContext:
    """Persisted disambiguation state for the one audit awaiting a choice."""

    message: str
    candidates: List[Candidate]
    pending_request: ScanRequest
    created_at: str = field(default_factory=utc_now_iso)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "audit_id": self.pending_request.audit_id,
            "message": self.message,
            "candidates": [candidate.to_payload() for candidate in self.candidates],
            "pending_payload": self.pending_request.to_payload(),
            "created_at": self.created_at,
        }

    @classmethod
    def from_payload(cls, data: Any) -> "SelectionContext":
        """Strictly rebuild a stored context; raises ValidationError when unusable."""
        if not isinstance(data, Mapping):
            raise ValidationError("Stored selection context is not an object.")
        candidates = parse_candidates(data.get("candidates"))
        if not candidates:
            raise ValidationError("Stored selection context has no candidates.")
        pending_request = ScanRequest.from_payload(data.get("pending_payload"))
        message = _strip_or_none(data.get("message")) or SELECTION_MESSAGE
        created_at = _strip_or_none(data.get("created_at")) or utc_now_iso()
        return cls(message=message, candidates=candidates, pending_request=pending_request, created_at=created_at)


@dataclass(slots=True)
class QueuedNotice:
    audit_id: Optional[int]
    message: str
    created_at: str = field(default_factory=utc_now_iso)

    def to_payload(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


# Display model produced by the result normalizer.


@dataclass(slots=True)
class SentimentBreakdown:
    positive: int = 0
    negative: int = 0
    neutral: int = 0


@dataclass(slots=True)
class Theme:
    name: str
    sentiment: str = "neutral"
    frequency: int = 1


@dataclass(slots=True)
class Mention:
    url: str
    sentiment: str = "neutral"
    title: Optional[str] = None
    source: Optional[str] = None
    summary: Optional[str] = None


@dataclass(slots=True)
class Narrative:
    executive_summary: str
    detailed_analysis: str
    risk_factors: str
    opportunities: str


@dataclass(slots=True)
class BusinessProfile:
    name: Optional[str] = None
    address: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None


@dataclass(slots=True)
class NormalizedAuditResult:
    business_name: str
    reputation_score: int
    sentiment: SentimentBreakdown
    themes: List[Theme]
    mentions: List[Mention]
    recommendations: List[str]
    narrative: Narrative
    verified_website: Optional[str] = None
    verified_location: Optional[str] = None
    verified_phone: Optional[str] = None
    scan_date: Optional[str] = None
    profile: Optional[BusinessProfile] = None

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


def _strip_or_none(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    value_str = str(value).strip()
    return value_str or None


def _safe_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _safe_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None

    if isinstance(value, str):
        cleaned = value.strip().replace(",", "")
        try:
            number = float(cleaned)
        except ValueError:
            return None
        return int(number) if math.isfinite(number) else None
    return None
