"""
Tests for the escalation policy.
"""
import pytest

from chat_relay.models.schemas import Priority
from chat_relay.services.escalation_policy import (
    CRISIS_KEYWORDS,
    LOW_CONFIDENCE_THRESHOLD,
    REASON_KEYWORD_MATCH,
    REASON_LOW_CONFIDENCE,
    classify_priority,
    evaluate_message,
    find_crisis_keywords,
    merge_keywords,
)


@pytest.mark.unit
@pytest.mark.parametrize("confidence", [0.0, 0.3, 0.6, 0.95, 1.0])
def test_keyword_match_wins_regardless_of_confidence(confidence):
    """Crisis language always suggests escalation at high priority."""
    decision = evaluate_message("I want to kill myself", confidence)

    assert decision.suggested is True
    assert decision.reason == REASON_KEYWORD_MATCH
    assert decision.priority == Priority.HIGH
    assert "kill myself" in decision.matched_keywords


@pytest.mark.unit
@pytest.mark.parametrize("text", [
    "I WANT TO END IT ALL",
    "sometimes I think about Suicide",
    "I need urgent help needed now",
    "thinking about self-harm again",
])
def test_keyword_match_is_case_insensitive(text):
    decision = evaluate_message(text, 0.99)
    assert decision.suggested is True
    assert decision.reason == REASON_KEYWORD_MATCH


@pytest.mark.unit
def test_low_confidence_suggests_normal_priority():
    decision = evaluate_message("I feel a bit off", 0.4)

    assert decision.suggested is True
    assert decision.reason == REASON_LOW_CONFIDENCE
    assert decision.priority == Priority.NORMAL
    assert decision.matched_keywords == ()


@pytest.mark.unit
def test_threshold_confidence_is_not_low():
    """Fallback replies carry exactly the threshold and must not trigger handoff."""
    decision = evaluate_message("I feel anxious today", LOW_CONFIDENCE_THRESHOLD)
    assert decision.suggested is False
    assert decision.reason is None


@pytest.mark.unit
def test_confident_ordinary_message_not_suggested():
    decision = evaluate_message("I feel anxious today", 0.85)
    assert decision.suggested is False
    assert decision.to_metadata() == {"escalation_suggested": False}


@pytest.mark.unit
def test_decision_metadata_when_suggested():
    metadata = evaluate_message("this is an emergency", 0.9).to_metadata()

    assert metadata == {
        "escalation_suggested": True,
        "escalation_reason": REASON_KEYWORD_MATCH,
        "escalation_priority": "high",
    }


@pytest.mark.unit
@pytest.mark.parametrize("reason,expected", [
    ("This is a crisis", Priority.HIGH),
    ("URGENT please", Priority.HIGH),
    ("thinking about suicide", Priority.HIGH),
    ("medical emergency", Priority.HIGH),
    ("need to talk to someone", Priority.NORMAL),
    ("", Priority.NORMAL),
    (None, Priority.NORMAL),
])
def test_classify_priority(reason, expected):
    assert classify_priority(reason) == expected


@pytest.mark.unit
def test_merge_keywords_adds_normalised_extras():
    merged = merge_keywords(["  Give Up  ", "suicide", ""])

    assert merged[:len(CRISIS_KEYWORDS)] == CRISIS_KEYWORDS
    assert "give up" in merged
    assert merged.count("suicide") == 1


@pytest.mark.unit
def test_extra_keywords_are_matched():
    keywords = merge_keywords(["no way out"])

    assert evaluate_message("I see no way out", 0.9).suggested is False
    assert evaluate_message("I see no way out", 0.9, keywords).suggested is True


@pytest.mark.unit
def test_find_crisis_keywords_handles_empty_text():
    assert find_crisis_keywords("") == ()
    assert find_crisis_keywords(None) == ()
