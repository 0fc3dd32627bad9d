"""
Detection of moments where a human agent should take over.

Two independent checks feed the handoff offer:

* :func:`detect_handoff_trigger` looks at the user's message before the
  completion request is made, so an explicit request or a high-intent topic
  (site visit, negotiation, legal, financing) is caught without waiting for
  the model.
* :func:`should_trigger_low_confidence` looks at the finished assistant answer
  (never a partial one) and fires when the stated confidence is low.

User intent wins when both fire; a turn gets at most one offer.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Pattern, Tuple, Union

from .config import LOW_CONFIDENCE_THRESHOLD


class HandoffReason(str, Enum):
    USER_REQUESTED = "userRequested"
    SITE_VISIT = "siteVisit"
    NEGOTIATION = "negotiation"
    LEGAL = "legal"
    FINANCING = "financing"
    LOW_CONFIDENCE = "lowConfidence"


# Checked in this order; the first group with a hit decides the reason.
HANDOFF_TRIGGERS: List[Tuple[HandoffReason, List[str]]] = [
    (
        HandoffReason.USER_REQUESTED,
        [
            "talk to a human", "speak to a human", "speak with a human", "talk to a person",
            "real person", "human agent", "talk to an agent", "speak to an agent",
            "speak with an agent", "connect me with an agent", "connect me to an agent", "customer support",
        ],
    ),
    (
        HandoffReason.SITE_VISIT,
        [
            "site visit", "property visit", "see the property", "visit the property",
            "physical visit", "schedule visit", "book viewing",
        ],
    ),
    (
        HandoffReason.NEGOTIATION,
        ["negotiate", "negotiation", "price negotiation", "make an offer", "bargain", "counter offer"],
    ),
    (
        HandoffReason.LEGAL,
        ["legal", "lawyer", "documentation", "registry", "title deed", "sale deed", "agreement", "contract"],
    ),
    (
        HandoffReason.FINANCING,
        ["loan", "mortgage", "financing", "home loan", "bank loan", "emi", "down payment", "pre-approval"],
    ),
]

HANDOFF_OFFERS: Dict[HandoffReason, Dict[str, str]] = {
    HandoffReason.SITE_VISIT: {
        "title": "Schedule a Property Visit",
        "description": "A verified agent will arrange a personal tour of this property.",
    },
    HandoffReason.NEGOTIATION: {
        "title": "Get Negotiation Assistance",
        "description": "Let an expert handle price negotiations on your behalf.",
    },
    HandoffReason.LEGAL: {
        "title": "Legal Documentation Help",
        "description": "Connect with experts for title verification and legal guidance.",
    },
    HandoffReason.FINANCING: {
        "title": "Mortgage & Financing Consultation",
        "description": "Speak with a mortgage partner about pre-approval and loan options.",
    },
    HandoffReason.LOW_CONFIDENCE: {
        "title": "Get Expert Guidance",
        "description": "This question needs personalized attention from an expert.",
    },
    HandoffReason.USER_REQUESTED: {
        "title": "Connect with a Human Agent",
        "description": "Get personalized assistance from a verified property expert.",
    },
}

CONFIDENCE_RE = re.compile(r"confidence(?:\s+score)?\**\s*[:=\-]?\s*\**\s*(\d{1,3}(?:\.\d+)?)\s*%", re.IGNORECASE)
BUDGET_RE = re.compile(
    r"(?:budget|afford|spend|price range|looking for)[:\s]*(?:rs\.?|pkr|inr|₹|\$)?\s*"
    r"(\d+(?:,\d+)*(?:\.\d+)?)\s*(?:lac|lakh|crore|cr|million|m|k)?",
    re.IGNORECASE,
)


# Inflections a keyword may carry: "loans", "contracts", "legally", "negotiated".
KEYWORD_SUFFIX = r"(?:s|es|d|ed|ly|al)?"


def _compile(keywords: List[str]) -> Pattern[str]:
    alternatives = "|".join(re.escape(k) for k in sorted(keywords, key=len, reverse=True))
    return re.compile(rf"\b(?:{alternatives}){KEYWORD_SUFFIX}\b", re.IGNORECASE)


_TRIGGER_PATTERNS: List[Tuple[HandoffReason, Pattern[str]]] = [
    (reason, _compile(keywords)) for reason, keywords in HANDOFF_TRIGGERS
]


def detect_handoff_trigger(text: str) -> Optional[HandoffReason]:
    if not text:
        return None
    for reason, pattern in _TRIGGER_PATTERNS:
        if pattern.search(text):
            return reason
    return None


def extract_confidence_score(text: str) -> Optional[float]:
    """Read the last "Confidence: NN%" line of an answer as a 0..1 score."""
    if not text:
        return None
    matches = CONFIDENCE_RE.findall(text)
    if not matches:
        return None
    value = float(matches[-1])
    if value > 100:
        return None
    return value / 100.0


def should_trigger_low_confidence(
    signal: Union[str, float, None], *, threshold: float = LOW_CONFIDENCE_THRESHOLD
) -> bool:
    """``signal`` is either a finished answer or an explicit score in [0, 1]."""
    if isinstance(signal, str):
        score = extract_confidence_score(signal)
    else:
        score = signal
    return score is not None and score < threshold


def choose_offer(
    user_trigger: Optional[HandoffReason], low_confidence: bool
) -> Optional[HandoffReason]:
    if user_trigger is not None:
        return user_trigger
    if low_confidence:
        return HandoffReason.LOW_CONFIDENCE
    return None


def handoff_offer_for(reason: Union[HandoffReason, str, None]) -> Dict[str, str]:
    try:
        key = HandoffReason(reason) if reason is not None else HandoffReason.USER_REQUESTED
    except ValueError:
        key = HandoffReason.USER_REQUESTED
    return {"trigger": key.value, **HANDOFF_OFFERS[key]}


@dataclass
class HandoffContext:
    conversation_history: List[Dict[str, str]] = field(default_factory=list)
    property_id: Optional[str] = None
    property_title: Optional[str] = None
    property_location: Optional[str] = None
    confidence_score: Optional[float] = None


def build_handoff_summary(context: HandoffContext) -> str:
    """Plain-text brief for the agent picking up the lead."""
    user_messages = [m.get("content") or "" for m in context.conversation_history if m.get("role") == "user"]
    parts: List[str] = []

    intents: List[str] = []
    for reason, pattern in _TRIGGER_PATTERNS:
        if reason is HandoffReason.USER_REQUESTED:
            continue
        if any(pattern.search(msg) for msg in user_messages):
            intents.append(reason.value)
    if intents:
        parts.append(f"**Buyer Intent:** {', '.join(intents)}")

    if context.property_title or context.property_location:
        location = f" in {context.property_location}" if context.property_location else ""
        parts.append(f"**Property of Interest:** {context.property_title or 'Not specified'}{location}")

    for msg in user_messages:
        match = BUDGET_RE.search(msg)
        if match:
            parts.append(f"**Budget Mentioned:** {match.group(0).strip()}")
            break

    if HandoffReason.FINANCING.value in intents:
        parts.append("**Financing Need:** Yes - User inquired about mortgage/loan options")

    lowered = [msg.lower() for msg in user_messages]
    risk_flags: List[str] = []
    if any("urgent" in msg or "asap" in msg for msg in lowered):
        risk_flags.append("Urgent timeline")
    if any("first time" in msg or "never bought" in msg for msg in lowered):
        risk_flags.append("First-time buyer")
    if risk_flags:
        parts.append(f"**Risk Flags:** {', '.join(risk_flags)}")

    if context.confidence_score is not None:
        parts.append(f"**AI Confidence Score:** {context.confidence_score * 100:.0f}%")

    if user_messages:
        recent = " | ".join(user_messages[-3:])
        parts.append(f"**Recent Queries:** {recent[:200]}...")

    return "\n".join(parts) or "User requested human assistance"
