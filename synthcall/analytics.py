"""
Keyword analytics for transcription callbacks.

Deliberately shallow: counts keyword hits, no NLU.
"""

from typing import Any, Dict, Optional

POSITIVE_KEYWORDS = ["thank", "great", "happy", "excellent", "wonderful", "appreciate", "pleased", "satisfied"]
NEGATIVE_KEYWORDS = ["terrible", "frustrated", "angry", "awful", "horrible", "disappointed", "upset", "worst"]
RESOLVED_KEYWORDS = ["resolved", "solved", "fixed", "working now", "problem is solved"]
UNRESOLVED_KEYWORDS = ["not working", "still", "persists", "remains", "issue remains"]
ESCALATION_KEYWORDS = ["supervisor", "manager", "transfer", "speak to", "escalate", "demand"]


def _hits(text: str, keywords) -> int:
    return sum(1 for keyword in keywords if keyword in text)


def analyze_transcription(text: Optional[str]) -> Dict[str, Any]:
    """Sentiment, resolution, escalation and word count for a transcript."""
    if not text or not text.strip():
        return {"sentiment": "neutral", "resolution": "unknown", "escalation": False, "wordCount": 0}

    lower = text.lower()

    positive = _hits(lower, POSITIVE_KEYWORDS)
    negative = _hits(lower, NEGATIVE_KEYWORDS)
    if positive > negative:
        sentiment = "positive"
    elif negative > positive:
        sentiment = "negative"
    else:
        sentiment = "neutral"

    resolved = _hits(lower, RESOLVED_KEYWORDS)
    unresolved = _hits(lower, UNRESOLVED_KEYWORDS)
    if resolved > unresolved:
        resolution = "resolved"
    elif unresolved > resolved:
        resolution = "unresolved"
    else:
        resolution = "unknown"

    return {
        "sentiment": sentiment,
        "resolution": resolution,
        "escalation": _hits(lower, ESCALATION_KEYWORDS) > 0,
        "wordCount": len(text.split()),
    }
