import copy

import pytest

from reputation.etl import normalize as normalizer
from reputation.etl.normalize import (
    DEFAULT_BUSINESS_NAME,
    MAX_MENTIONS,
    MAX_RECOMMENDATIONS,
    MAX_THEMES,
    SAMPLE_PAYLOAD,
    normalize,
    sample_result,
    score_band,
)


def test_score_above_range_is_clamped():
    result = normalize({"status": "success", "results": {"reputation_score": 150}})

    assert result.reputation_score == 100
    assert result.business_name == DEFAULT_BUSINESS_NAME


@pytest.mark.parametrize("raw", [{"status": "error"}, {"status": "queued"}, None, "success", [1, 2]])
def test_non_success_payloads_return_none(raw):
    assert normalize(raw) is None


def test_canonical_payload_decodes_strictly():
    result = normalize(SAMPLE_PAYLOAD)

    assert result.business_name == "Sample Business"
    assert result.reputation_score == 72
    assert (result.sentiment.positive, result.sentiment.negative, result.sentiment.neutral) == (45, 25, 30)
    assert [theme.name for theme in result.themes][:2] == ["Customer Service", "Product Quality"]
    assert result.narrative.executive_summary.startswith("Overall, your online reputation is Good")


def test_missing_status_is_treated_as_success():
    payload = copy.deepcopy(SAMPLE_PAYLOAD)
    del payload["status"]

    assert normalize(payload).reputation_score == 72


def test_flat_payload_without_results_wrapper():
    result = normalize({"status": "success", "business_name": "Acme", "reputation_score": "64.5"})

    assert result.business_name == "Acme"
    assert result.reputation_score == 65


def test_half_values_round_up():
    result = normalize(
        {
            "status": "success",
            "results": {"reputation_score": 72.5, "sentiment_breakdown": {"positive": 44.5, "negative": -3}},
        }
    )

    assert result.reputation_score == 73
    assert result.sentiment.positive == 45
    assert result.sentiment.negative == 0
    assert result.sentiment.neutral == 0


def test_sentiment_from_customer_and_employee_counts():
    result = normalize(
        {
            "status": "success",
            "results": {
                "sentiment_breakdown": {
                    "customer": {"positive": 6, "negative": 2, "neutral": 2},
                    "employee": {"positive": 3, "negative": 3, "neutral": 4},
                }
            },
        }
    )

    assert (result.sentiment.positive, result.sentiment.negative, result.sentiment.neutral) == (45, 25, 30)


def test_sentiment_falls_back_to_audit_counts():
    result = normalize(
        {
            "status": "success",
            "results": {"audit": {"customer_sentiment": {"positive": "3", "negative": "1", "neutral": None}}},
        }
    )

    assert (result.sentiment.positive, result.sentiment.negative, result.sentiment.neutral) == (75, 25, 0)


def test_sentiment_without_counts_is_zero():
    result = normalize({"status": "success", "results": {}})

    assert (result.sentiment.positive, result.sentiment.negative, result.sentiment.neutral) == (0, 0, 0)


def test_lists_are_capped():
    results = {
        "reputation_score": 50,
        "top_themes": [{"theme": f"Theme {i}", "sentiment": "positive", "frequency": i + 1} for i in range(20)],
        "top_mentions": [{"url": f"https://example.com/{i}", "sentiment": "neutral"} for i in range(15)],
        "recommendations": [f"Do thing {i}" for i in range(11)],
    }

    result = normalize({"status": "success", "business_name": "Acme", "results": results})

    assert len(result.themes) == MAX_THEMES
    assert len(result.mentions) == MAX_MENTIONS
    assert len(result.recommendations) == MAX_RECOMMENDATIONS
    assert [theme.name for theme in result.themes] == [f"Theme {i}" for i in range(MAX_THEMES)]
    assert [mention.url for mention in result.mentions] == [f"https://example.com/{i}" for i in range(MAX_MENTIONS)]
    assert result.recommendations == [f"Do thing {i}" for i in range(MAX_RECOMMENDATIONS)]


def test_themes_from_audit_lists_with_alternate_keys():
    result = normalize(
        {
            "status": "success",
            "results": {
                "audit": {
                    "customer_themes": [{"name": "Staff", "sentiment": "POSITIVE", "count": "4"}, {"label": ""}],
                    "employee_themes": ["Scheduling", {"title": "Pay", "sentiment": "angry", "frequency": 0}],
                }
            },
        }
    )

    assert [(t.name, t.sentiment, t.frequency) for t in result.themes] == [
        ("Staff", "positive", 4),
        ("Scheduling", "neutral", 1),
        ("Pay", "neutral", 1),
    ]


def test_mentions_and_recommendations_accept_loose_shapes():
    result = normalize(
        {
            "status": "success",
            "results": {
                "mentions": [{"link": "https://yelp.com/biz/acme", "snippet": "Great"}, {"title": "no url"}],
                "recommendations": [{"message": "Reply to reviews"}, 42, "  ", "Update listings"],
            },
        }
    )

    assert [m.url for m in result.mentions] == ["https://yelp.com/biz/acme"]
    assert result.mentions[0].summary == "Great"
    assert result.recommendations == ["Reply to reviews", "Update listings"]


def test_missing_narrative_is_synthesized():
    result = normalize(
        {
            "status": "success",
            "business_name": "Acme",
            "results": {
                "reputation_score": 81,
                "top_themes": [
                    {"theme": "Service", "sentiment": "positive", "frequency": 10},
                    {"theme": "Price", "sentiment": "negative", "frequency": 7},
                    {"theme": "Wait", "sentiment": "negative", "frequency": 9},
                    {"theme": "Parking", "sentiment": "neutral", "frequency": 1},
                ],
                "recommendations": ["Shorten wait times.", "Publish prices"],
                "audit": {"executive_summary": "  "},
            },
        }
    )

    narrative = result.narrative
    assert narrative.executive_summary.startswith("Overall, the online reputation of Acme scores 81/100 (Excellent).")
    assert narrative.detailed_analysis == "The most discussed topics are Service, Wait and Price."
    assert narrative.risk_factors == "Key risk areas include Wait and Price."
    assert narrative.opportunities == "Priority opportunities: Shorten wait times; Publish prices."


def test_supplied_narrative_is_kept_verbatim():
    result = normalize(
        {"status": "success", "results": {"audit": {"risk_factors": "Watch the reviews on Yelp."}}}
    )

    assert result.narrative.risk_factors == "Watch the reviews on Yelp."
    assert result.narrative.opportunities


def test_normalize_is_deterministic():
    raw = {"status": "success", "results": {"reputation_score": "88", "themes": ["Service"]}}

    assert normalize(raw) == normalize(raw)


def test_profile_snapshot():
    result = normalize(
        {
            "status": "success",
            "results": {"online_profile": {"business_name": "Acme", "rating": "4.6", "user_ratings_total": 210}},
        }
    )

    assert result.business_name == "Acme"
    assert result.profile.rating == 4.6
    assert result.profile.review_count == 210


@pytest.mark.parametrize(
    "score, band",
    [(100, "Excellent"), (80, "Excellent"), (79, "Good"), (60, "Good"), (40, "Fair"), (39, "Needs Improvement")],
)
def test_score_band(score, band):
    assert score_band(score) == band


def test_sample_result_is_complete():
    result = sample_result()

    assert result.business_name == "Sample Business"
    assert len(result.themes) == 5
    assert result.to_dict()["sentiment"] == {"positive": 45, "negative": 25, "neutral": 30}


def test_strict_path_rejects_out_of_range_score(monkeypatch):
    payload = copy.deepcopy(SAMPLE_PAYLOAD)
    payload["results"]["reputation_score"] = 140
    calls = []
    real = normalizer._decode_permissive
    monkeypatch.setattr(normalizer, "_decode_permissive", lambda raw, results: calls.append(1) or real(raw, results))

    result = normalize(payload)

    assert calls == [1]
    assert result.reputation_score == 100
    assert result.narrative.executive_summary == SAMPLE_PAYLOAD["results"]["audit"]["executive_summary"]
