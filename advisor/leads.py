"""Turn an accepted handoff offer into a lead routed to a verified agent."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from telemetry.logging_utils import get_logger

from .handoff import HandoffContext, HandoffReason, build_handoff_summary

logger = get_logger(__name__)

LOCATION_MATCH_SCORE = 10
PROPERTY_TYPE_MATCH_SCORE = 5
HIGH_PRIORITY_CONFIDENCE = 0.5
CONTACT_CHANNELS = ("phone", "whatsapp", "email")


@dataclass
class HandoffRequest:
    """Contact details entered on the handoff form."""

    name: str
    email: str
    phone: str
    preferred_time: str
    preferred_channel: str = "phone"
    message: Optional[str] = None

    def __post_init__(self) -> None:
        if self.preferred_channel not in CONTACT_CHANNELS:
            raise ValueError(f"preferred_channel must be one of {', '.join(CONTACT_CHANNELS)}")
        for name in ("name", "email", "phone", "preferred_time"):
            if not (getattr(self, name) or "").strip():
                raise ValueError(f"{name} is required")

    def notes(self) -> str:
        lines = [
            f"**Contact:** {self.name}",
            f"**Phone:** {self.phone}",
            f"**Email:** {self.email}",
            f"**Preferred Time:** {self.preferred_time}",
            f"**Preferred Channel:** {self.preferred_channel}",
        ]
        if self.message:
            lines.append(f"**Message:** {self.message}")
        return "\n".join(lines)


@dataclass
class HandoffOutcome:
    success: bool
    lead_id: Optional[str] = None
    agent_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "lead_id": self.lead_id, "agent_id": self.agent_id, "error": self.error}


def _score_agent(agent: Dict[str, Any], location: Optional[str], property_type: Optional[str]) -> int:
    score = 0
    areas: List[str] = agent.get("areas_served") or []
    if location and areas:
        wanted = location.lower()
        if any(area.lower() in wanted or wanted in area.lower() for area in areas):
            score += LOCATION_MATCH_SCORE
    specializations: List[str] = agent.get("specialization") or []
    if property_type and specializations:
        if any(property_type.lower() in spec.lower() for spec in specializations):
            score += PROPERTY_TYPE_MATCH_SCORE
    return score


def find_matching_agent(
    store: Any, *, location: Optional[str] = None, property_type: Optional[str] = None
) -> Optional[str]:
    """Best verified agent by area and specialization; ties keep the store's order."""
    try:
        agents = store.list_verified_agents()
    except Exception:
        logger.warning("agent_lookup_failed", exc_info=True)
        return None
    if not agents:
        logger.info("no_verified_agents")
        return None
    ranked = sorted(agents, key=lambda agent: _score_agent(agent, location, property_type), reverse=True)
    return ranked[0].get("id")


def initiate_handoff(
    store: Any,
    *,
    user_id: Optional[str],
    request: HandoffRequest,
    context: HandoffContext,
    reason: HandoffReason,
    property_type: Optional[str] = None,
) -> HandoffOutcome:
    if not user_id:
        return HandoffOutcome(success=False, error="Please sign in to request agent assistance.")

    summary = build_handoff_summary(context)
    agent_id = find_matching_agent(store, location=context.property_location, property_type=property_type)
    low = context.confidence_score is not None and context.confidence_score < HIGH_PRIORITY_CONFIDENCE
    payload = {
        "user_id": user_id,
        "lead_type": reason.value,
        "status": "new",
        "priority": "high" if low else "medium",
        "property_id": context.property_id,
        "agent_id": agent_id,
        "ai_summary": summary,
        "notes": request.notes(),
    }
    try:
        lead = store.create_lead(payload)
    except Exception:
        logger.error("lead_create_failed", extra={"lead_type": reason.value}, exc_info=True)
        return HandoffOutcome(success=False, error="Unable to process your request. Please try again.")

    try:
        store.log_activity(
            user_id,
            action="ai_handoff",
            entity_type="lead",
            entity_id=lead["id"],
            details={
                "trigger_reason": reason.value,
                "confidence_score": context.confidence_score,
                "ai_summary": summary,
                "assigned_agent": agent_id,
                "property_id": context.property_id,
            },
        )
    except Exception:
        logger.warning("lead_audit_failed", extra={"lead_id": lead["id"]}, exc_info=True)

    logger.info(
        "lead_created",
        extra={"lead_id": lead["id"], "lead_type": reason.value, "agent_id": agent_id, "priority": payload["priority"]},
    )
    return HandoffOutcome(success=True, lead_id=lead["id"], agent_id=agent_id)
