"""Utilities for turning raw scan payloads into the report display model.

The backend's AI output is only loosely typed: fields go missing, counts
arrive as strings, themes may live under ``audit.customer_themes`` instead
of ``top_themes``. :func:`normalize` first tries a strict decode of the
canonical shape and falls back to field-by-field extraction, so any
success payload yields a fully populated :class:`NormalizedAuditResult`.
"""

import logging
import math
from typing import Any, Dict, Iterable, List, Optional

from reputation.models import (
    BusinessProfile,
    Mention,
    Narrative,
    NormalizedAuditResult,
    SentimentBreakdown,
    Theme,
    _safe_int,
    _strip_or_none,
)

logger = logging.getLogger(__name__)

MAX_THEMES = 12
MAX_MENTIONS = 10
MAX_RECOMMENDATIONS = 8
SENTIMENTS = ("positive", "negative", "neutral")
NARRATIVE_FIELDS = ("executive_summary", "detailed_analysis", "risk_factors", "opportunities")
DEFAULT_BUSINESS_NAME = "Your Business"

_THEME_NAME_KEYS = ("theme", "name", "label", "title")
_RECOMMENDATION_KEYS = ("recommendation", "message", "text")


class _SchemaMismatch(Exception):
    """Payload is not in the canonical shape; use permissive decoding."""


def normalize(raw: Any) -> Optional[NormalizedAuditResult]:
    """Return the display model, or None for non-objects and non-success payloads."""
    if not isinstance(raw, dict):
        return None
    status = raw.get("status")
    if status is not None and status != "success":
        return None

    results = _locate_results(raw)
    try:
        return _decode_strict(raw, results)
    except _SchemaMismatch as exc:
        logger.debug("Permissive decoding of scan results: %s", exc)
    return _decode_permissive(raw, results)


def score_band(score: float) -> str:
    if score >= 80:
        return "Excellent"
    if score >= 60:
        return "Good"
    if score >= 40:
        return "Fair"
    return "Needs Improvement"


def _locate_results(raw: Dict[str, Any]) -> Dict[str, Any]:
    nested = raw.get("results")
    if isinstance(nested, dict):
        return nested
    return raw


# Strict path


def _decode_strict(raw: Dict[str, Any], results: Dict[str, Any]) -> NormalizedAuditResult:
    business_name = raw.get("business_name") or results.get("business_name")
    if not _is_text(business_name):
        raise _SchemaMismatch("business_name")

    score = results.get("reputation_score")
    if not _is_number(score) or not 0 <= score <= 100:
        raise _SchemaMismatch("reputation_score")

    breakdown = results.get("sentiment_breakdown")
    if not isinstance(breakdown, dict):
        raise _SchemaMismatch("sentiment_breakdown")
    for key in SENTIMENTS:
        value = breakdown.get(key)
        if not _is_number(value) or not 0 <= value <= 100:
            raise _SchemaMismatch(f"sentiment_breakdown.{key}")

    themes = results.get("top_themes")
    if not isinstance(themes, list) or len(themes) > MAX_THEMES:
        raise _SchemaMismatch("top_themes")
    for theme in themes:
        if not (
            isinstance(theme, dict)
            and _is_text(theme.get("theme"))
            and theme.get("sentiment") in SENTIMENTS
            and isinstance(theme.get("frequency"), int)
            and not isinstance(theme.get("frequency"), bool)
            and theme["frequency"] >= 1
        ):
            raise _SchemaMismatch("top_themes item")

    mentions = results.get("top_mentions")
    if not isinstance(mentions, list) or len(mentions) > MAX_MENTIONS:
        raise _SchemaMismatch("top_mentions")
    for mention in mentions:
        if not (isinstance(mention, dict) and _is_text(mention.get("url")) and mention.get("sentiment") in SENTIMENTS):
            raise _SchemaMismatch("top_mentions item")
        for optional in ("title", "source", "summary"):
            if mention.get(optional) is not None and not isinstance(mention[optional], str):
                raise _SchemaMismatch(f"top_mentions item {optional}")

    recommendations = results.get("recommendations")
    if not isinstance(recommendations, list) or len(recommendations) > MAX_RECOMMENDATIONS:
        raise _SchemaMismatch("recommendations")
    if not all(_is_text(item) for item in recommendations):
        raise _SchemaMismatch("recommendations item")

    audit = results.get("audit")
    if not isinstance(audit, dict) or not all(_is_text(audit.get(name)) for name in NARRATIVE_FIELDS):
        raise _SchemaMismatch("audit narrative")

    profile = results.get("online_profile")
    if profile is not None and not isinstance(profile, dict):
        raise _SchemaMismatch("online_profile")

    return NormalizedAuditResult(
        business_name=business_name,
        reputation_score=_round(score),
        sentiment=SentimentBreakdown(
            positive=_round(breakdown["positive"]),
            negative=_round(breakdown["negative"]),
            neutral=_round(breakdown["neutral"]),
        ),
        themes=[Theme(name=t["theme"], sentiment=t["sentiment"], frequency=t["frequency"]) for t in themes],
        mentions=[
            Mention(
                url=m["url"],
                sentiment=m["sentiment"],
                title=m.get("title"),
                source=m.get("source"),
                summary=m.get("summary"),
            )
            for m in mentions
        ],
        recommendations=[item.strip() for item in recommendations],
        narrative=Narrative(**{name: audit[name] for name in NARRATIVE_FIELDS}),
        verified_website=_strip_or_none(raw.get("verified_website")),
        verified_location=_strip_or_none(raw.get("verified_location")),
        verified_phone=_strip_or_none(raw.get("verified_phone")),
        scan_date=_strip_or_none(raw.get("scan_date")),
        profile=_parse_profile(profile),
    )


# Permissive path


def _decode_permissive(raw: Dict[str, Any], results: Dict[str, Any]) -> NormalizedAuditResult:
    audit = results.get("audit") if isinstance(results.get("audit"), dict) else {}
    profile = _parse_profile(results.get("online_profile"))

    business_name = (
        _first_text(raw.get("business_name"), results.get("business_name"), profile.name if profile else None)
        or DEFAULT_BUSINESS_NAME
    )
    score = _round(_clamp(_coerce_number(results.get("reputation_score")) or 0.0))
    sentiment = _parse_sentiment(results.get("sentiment_breakdown"), audit)
    themes = _parse_themes(results, audit)
    mentions = _parse_mentions(results, audit)
    recommendations = _parse_recommendations(results, audit)

    narrative = _build_narrative(business_name, score, sentiment, themes, recommendations, audit, results)

    return NormalizedAuditResult(
        business_name=business_name,
        reputation_score=score,
        sentiment=sentiment,
        themes=themes,
        mentions=mentions,
        recommendations=recommendations,
        narrative=narrative,
        verified_website=_first_text(raw.get("verified_website"), results.get("verified_website")),
        verified_location=_first_text(raw.get("verified_location"), results.get("verified_location")),
        verified_phone=_first_text(raw.get("verified_phone"), results.get("verified_phone")),
        scan_date=_first_text(raw.get("scan_date"), results.get("scan_date")),
        profile=profile,
    )


def _parse_sentiment(breakdown: Any, audit: Dict[str, Any]) -> SentimentBreakdown:
    if isinstance(breakdown, dict):
        explicit = {key: _coerce_number(breakdown.get(key)) for key in SENTIMENTS}
        if any(value is not None for value in explicit.values()):
            return SentimentBreakdown(**{key: _round(_clamp(value or 0.0)) for key, value in explicit.items()})
        groups = [breakdown.get("customer"), breakdown.get("employee")]
    else:
        groups = []

    if not any(isinstance(group, dict) for group in groups):
        groups = [audit.get("customer_sentiment"), audit.get("employee_sentiment")]

    counts = {key: 0.0 for key in SENTIMENTS}
    for group in groups:
        if not isinstance(group, dict):
            continue
        for key in SENTIMENTS:
            value = _coerce_number(group.get(key))
            if value is not None and value > 0:
                counts[key] += value

    total = sum(counts.values())
    if total == 0:
        return SentimentBreakdown()
    return SentimentBreakdown(**{key: _round(_clamp(counts[key] / total * 100)) for key in SENTIMENTS})


def _parse_themes(results: Dict[str, Any], audit: Dict[str, Any]) -> List[Theme]:
    items = _first_list(results.get("top_themes"), results.get("themes"))
    if items is None:
        items = _as_list(audit.get("customer_themes")) + _as_list(audit.get("employee_themes"))

    themes: List[Theme] = []
    for item in items:
        if len(themes) >= MAX_THEMES:
            break
        if isinstance(item, dict):
            name = _first_text(*(item.get(key) for key in _THEME_NAME_KEYS))
            sentiment = item.get("sentiment")
            frequency = _coerce_number(_first_present(item, ("frequency", "count", "mentions")))
        else:
            name, sentiment, frequency = _strip_or_none(item), None, None
        if not name:
            continue
        themes.append(
            Theme(
                name=name,
                sentiment=_normalize_sentiment(sentiment),
                frequency=max(1, _round(frequency)) if frequency is not None else 1,
            )
        )
    return themes


def _parse_mentions(results: Dict[str, Any], audit: Dict[str, Any]) -> List[Mention]:
    items = _first_list(
        results.get("top_mentions"),
        results.get("mentions"),
        audit.get("top_mentions"),
        audit.get("mentions"),
    ) or []

    mentions: List[Mention] = []
    for item in items:
        if len(mentions) >= MAX_MENTIONS:
            break
        if isinstance(item, dict):
            url = _first_text(item.get("url"), item.get("link"))
            if not url:
                continue
            mentions.append(
                Mention(
                    url=url,
                    sentiment=_normalize_sentiment(item.get("sentiment")),
                    title=_strip_or_none(item.get("title")),
                    source=_strip_or_none(item.get("source")),
                    summary=_strip_or_none(item.get("summary") or item.get("snippet")),
                )
            )
        elif _strip_or_none(item):
            mentions.append(Mention(url=_strip_or_none(item)))
    return mentions


def _parse_recommendations(results: Dict[str, Any], audit: Dict[str, Any]) -> List[str]:
    items = _first_list(results.get("recommendations"), audit.get("recommendations")) or []

    recommendations: List[str] = []
    for item in items:
        if len(recommendations) >= MAX_RECOMMENDATIONS:
            break
        if isinstance(item, dict):
            text = _first_text(*(item.get(key) for key in _RECOMMENDATION_KEYS))
        elif isinstance(item, str):
            text = _strip_or_none(item)
        else:
            text = None
        if text:
            recommendations.append(text)
    return recommendations


def _parse_profile(profile: Any) -> Optional[BusinessProfile]:
    if not isinstance(profile, dict):
        return None
    snapshot = BusinessProfile(
        name=_first_text(profile.get("name"), profile.get("business_name")),
        address=_first_text(profile.get("address"), profile.get("formatted_address")),
        rating=_coerce_number(profile.get("rating")),
        review_count=_safe_int(_first_present(profile, ("review_count", "reviews_count", "user_ratings_total"))),
    )
    if snapshot == BusinessProfile():
        return None
    return snapshot


# Narrative synthesis


def _build_narrative(
    business_name: str,
    score: int,
    sentiment: SentimentBreakdown,
    themes: List[Theme],
    recommendations: List[str],
    audit: Dict[str, Any],
    results: Dict[str, Any],
) -> Narrative:
    supplied = {name: _first_nonblank(audit.get(name), results.get(name)) for name in NARRATIVE_FIELDS}

    return Narrative(
        executive_summary=supplied["executive_summary"] or _summary_sentence(business_name, score, sentiment),
        detailed_analysis=supplied["detailed_analysis"] or _analysis_sentence(themes),
        risk_factors=supplied["risk_factors"] or _risk_sentence(themes, sentiment),
        opportunities=supplied["opportunities"] or _opportunity_sentence(recommendations, themes),
    )


def _summary_sentence(business_name: str, score: int, sentiment: SentimentBreakdown) -> str:
    return (
        f"Overall, the online reputation of {business_name} scores {score}/100 ({score_band(score)}). "
        f"{sentiment.positive}% of analysed mentions are positive, {sentiment.neutral}% neutral "
        f"and {sentiment.negative}% negative."
    )


def _analysis_sentence(themes: List[Theme]) -> str:
    top = _top_labels(themes)
    if not top:
        return "No recurring themes were identified in the available mentions."
    return f"The most discussed topics are {_join_labels(top)}."


def _risk_sentence(themes: List[Theme], sentiment: SentimentBreakdown) -> str:
    negative = _top_labels(theme for theme in themes if theme.sentiment == "negative")
    if negative:
        return f"Key risk areas include {_join_labels(negative)}."
    if sentiment.negative > 0:
        return f"Negative sentiment accounts for {sentiment.negative}% of mentions and should be monitored."
    return "No significant risk factors were identified."


def _opportunity_sentence(recommendations: List[str], themes: List[Theme]) -> str:
    if recommendations:
        picks = "; ".join(item.rstrip(".") for item in recommendations[:3])
        return f"Priority opportunities: {picks}."
    positive = _top_labels(theme for theme in themes if theme.sentiment == "positive")
    if positive:
        return f"Build on positive feedback about {_join_labels(positive)}."
    return "Encourage satisfied customers to leave reviews to strengthen your online presence."


def _top_labels(themes: Iterable[Theme], limit: int = 3) -> List[str]:
    ranked = sorted(themes, key=lambda theme: theme.frequency, reverse=True)
    return [theme.name for theme in ranked[:limit]]


def _join_labels(labels: List[str]) -> str:
    if len(labels) == 1:
        return labels[0]
    return f"{', '.join(labels[:-1])} and {labels[-1]}"


# Coercion helpers


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _is_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _coerce_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            number = float(value.strip().rstrip("%"))
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def _round(value: float) -> int:
    """Round half up, matching how scores are shown in the browser."""
    return int(math.floor(value + 0.5))


def _normalize_sentiment(value: Any) -> str:
    label = str(value).strip().lower() if isinstance(value, str) else ""
    return label if label in SENTIMENTS else "neutral"


def _first_text(*values: Any) -> Optional[str]:
    for value in values:
        text = _strip_or_none(value)
        if text:
            return text
    return None


def _first_nonblank(*values: Any) -> Optional[str]:
    for value in values:
        if _is_text(value):
            return value
    return None


def _first_list(*values: Any) -> Optional[List[Any]]:
    for value in values:
        if isinstance(value, list):
            return value
    return None


def _first_present(item: Dict[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        if item.get(key) is not None:
            return item[key]
    return None


def _as_list(value: Any) -> List[Any]:
    return list(value) if isinstance(value, list) else []


SAMPLE_PAYLOAD: Dict[str, Any] = {
    "status": "success",
    "business_name": "Sample Business",
    "results": {
        "reputation_score": 72,
        "sentiment_breakdown": {"positive": 45, "negative": 25, "neutral": 30},
        "top_themes": [
            {"theme": "Customer Service", "sentiment": "positive", "frequency": 35},
            {"theme": "Product Quality", "sentiment": "positive", "frequency": 28},
            {"theme": "Pricing", "sentiment": "neutral", "frequency": 22},
            {"theme": "Delivery Speed", "sentiment": "negative", "frequency": 15},
            {"theme": "Website Experience", "sentiment": "positive", "frequency": 12},
        ],
        "top_mentions": [
            {"url": "https://google.com/reviews/example", "sentiment": "positive"},
            {"url": "https://yelp.com/biz/example", "sentiment": "positive"},
            {"url": "https://trustpilot.com/review/example", "sentiment": "neutral"},
            {"url": "https://bbb.org/business/example", "sentiment": "positive"},
            {"url": "https://facebook.com/example/reviews", "sentiment": "negative"},
        ],
        "recommendations": [
            "Improve response time to customer inquiries",
            "Address delivery speed concerns in negative reviews",
            "Encourage satisfied customers to leave reviews",
            "Update business listings across all platforms",
            "Monitor and respond to social media mentions regularly",
        ],
        "audit": {
            "executive_summary": (
                "Overall, your online reputation is Good with a score of 72/100. The majority of mentions "
                "are positive, particularly around customer service and product quality."
            ),
            "detailed_analysis": (
                "Customer service is frequently praised, with multiple reviews highlighting helpful staff. "
                "The main areas of concern are delivery times and some pricing perceptions."
            ),
            "risk_factors": (
                "Recurring complaints about delivery delays could impact customer retention, and some "
                "negative mentions on social media are not being addressed promptly."
            ),
            "opportunities": (
                "Leverage the strong customer service reputation in marketing and encourage more reviews "
                "from satisfied customers."
            ),
        },
    },
}


def sample_result() -> NormalizedAuditResult:
    """Placeholder report shown when there is no usable scan result."""
    return _decode_strict(SAMPLE_PAYLOAD, SAMPLE_PAYLOAD["results"])
