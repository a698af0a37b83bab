"""
Escalation policy for counseling conversations.
Decides when a human counselor should be suggested and how urgent an
explicit escalation request is.

Pure functions only: no I/O, no state. The result is advisory and never
blocks message delivery.
"""
from dataclasses import dataclass, field
from typing import Iterable, Optional, Tuple

from ..models.schemas import Priority

# Crisis indicators matched as case-insensitive substrings of the message.
CRISIS_KEYWORDS: Tuple[str, ...] = (
    "suicide",
    "suicidal",
    "kill myself",
    "end it all",
    "want to die",
    "not worth living",
    "self-harm",
    "self harm",
    "cut myself",
    "hurt myself",
    "emergency",
    "crisis",
    "urgent help needed",
)

# Words in a free-text escalation reason that make the ticket high priority.
HIGH_PRIORITY_KEYWORDS: Tuple[str, ...] = ("suicide", "crisis", "emergency", "urgent")

LOW_CONFIDENCE_THRESHOLD = 0.6

REASON_KEYWORD_MATCH = "keyword match"
REASON_LOW_CONFIDENCE = "low confidence"


@dataclass(frozen=True)
class EscalationDecision:
    """Outcome of evaluating one user message."""
    suggested: bool
    reason: Optional[str] = None
    priority: Priority = Priority.NORMAL
    matched_keywords: Tuple[str, ...] = field(default_factory=tuple)

    def to_metadata(self) -> dict:
        """Fields attached to the bot turn's metadata."""
        data = {"escalation_suggested": self.suggested}
        if self.suggested:
            data["escalation_reason"] = self.reason
            data["escalation_priority"] = self.priority.value
        return data


def merge_keywords(extra: Optional[Iterable[str]] = None) -> Tuple[str, ...]:
    """Built-in crisis phrases plus configured extras, lower-cased and de-duplicated."""
    merged = list(CRISIS_KEYWORDS)
    for keyword in extra or ():
        keyword = keyword.strip().lower()
        if keyword and keyword not in merged:
            merged.append(keyword)
    return tuple(merged)


def find_crisis_keywords(
    text: str,
    keywords: Iterable[str] = CRISIS_KEYWORDS
) -> Tuple[str, ...]:
    """Return every crisis phrase contained in the lower-cased text."""
    lowered = (text or "").lower()
    return tuple(k for k in keywords if k and k.lower() in lowered)


def evaluate_message(
    text: str,
    confidence: float,
    keywords: Iterable[str] = CRISIS_KEYWORDS
) -> EscalationDecision:
    """
    Decide whether human handoff should be suggested for a message.

    A keyword match always wins, regardless of responder confidence.
    Otherwise a responder confidence below LOW_CONFIDENCE_THRESHOLD suggests
    handoff at normal priority.

    Args:
        text: User message text
        confidence: Responder confidence in [0, 1]
        keywords: Crisis phrases to match

    Returns:
        EscalationDecision
    """
    matched = find_crisis_keywords(text, keywords)
    if matched:
        return EscalationDecision(
            suggested=True,
            reason=REASON_KEYWORD_MATCH,
            priority=Priority.HIGH,
            matched_keywords=matched
        )

    if confidence < LOW_CONFIDENCE_THRESHOLD:
        return EscalationDecision(
            suggested=True,
            reason=REASON_LOW_CONFIDENCE,
            priority=Priority.NORMAL
        )

    return EscalationDecision(suggested=False)


def classify_priority(reason: Optional[str]) -> Priority:
    """Ticket priority for a free-text escalation reason."""
    reason_text = (reason or "").lower()
    if any(keyword in reason_text for keyword in HIGH_PRIORITY_KEYWORDS):
        return Priority.HIGH
    return Priority.NORMAL


__all__ = [
    'CRISIS_KEYWORDS',
    'HIGH_PRIORITY_KEYWORDS',
    'LOW_CONFIDENCE_THRESHOLD',
    'REASON_KEYWORD_MATCH',
    'REASON_LOW_CONFIDENCE',
    'EscalationDecision',
    'merge_keywords',
    'find_crisis_keywords',
    'evaluate_message',
    'classify_priority',
]
