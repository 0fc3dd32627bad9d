from __future__ import annotations

import threading
import uuid
from copy import deepcopy
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class InMemoryStore:
    """Demo-mode store used when Supabase is unavailable."""

    def __init__(self, agents: Optional[List[Dict[str, Any]]] = None) -> None:
        self.conversations: Dict[str, Dict[str, Any]] = {}
        self.messages: Dict[str, List[Dict[str, Any]]] = {}
        self.agents: List[Dict[str, Any]] = [dict(agent) for agent in agents or []]
        self.leads: Dict[str, Dict[str, Any]] = {}
        self.activity_logs: List[Dict[str, Any]] = []
        self.property_analyses: List[Dict[str, Any]] = []
        # Writes arrive from worker threads.
        self._lock = threading.Lock()

    # Conversations/messages -----------------------------------------------
    def create_conversation(
        self,
        user_id: str,
        *,
        property_id: Optional[str] = None,
        title: str = "New Chat",
        context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        convo_id = str(uuid.uuid4())
        convo = {
            "id": convo_id,
            "user_id": user_id,
            "property_id": property_id,
            "title": title,
            "context": deepcopy(context or {}),
            "updated_at": _now_iso(),
            "created_at": _now_iso(),
        }
        with self._lock:
            self.conversations[convo_id] = convo
            self.messages[convo_id] = []
        return dict(convo)

    def get_conversation(self, conversation_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        convo = self.conversations.get(conversation_id)
        if convo and convo["user_id"] == user_id:
            convo = {**convo}
            convo["messages"] = self.list_messages(conversation_id)
            return convo
        return None

    def list_conversations(self, user_id: str, *, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        convos = [c for c in self.conversations.values() if c["user_id"] == user_id]
        convos.sort(key=lambda c: c.get("updated_at") or "", reverse=True)
        if limit:
            convos = convos[:limit]
        return [dict(c) for c in convos]

    def append_message(
        self,
        conversation_id: str,
        *,
        role: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        with self._lock:
            convo = self.conversations.get(conversation_id)
            if not convo:
                raise RuntimeError("Failed to insert message")
            row = {
                "id": str(uuid.uuid4()),
                "conversation_id": conversation_id,
                "role": role,
                "content": content,
                "metadata": deepcopy(metadata or {}),
                "created_at": _now_iso(),
            }
            self.messages.setdefault(conversation_id, []).append(row)
            convo["updated_at"] = _now_iso()
        return dict(row)

    def list_messages(self, conversation_id: str) -> List[Dict[str, Any]]:
        return [dict(m) for m in self.messages.get(conversation_id, [])]

    # Handoff leads ----------------------------------------------------------
    def list_verified_agents(self) -> List[Dict[str, Any]]:
        return [dict(a) for a in self.agents if a.get("verified", True)]

    def create_lead(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        lead = {"id": str(uuid.uuid4()), **deepcopy(payload), "created_at": _now_iso()}
        with self._lock:
            self.leads[lead["id"]] = lead
        return dict(lead)

    def log_activity(
        self,
        user_id: str,
        *,
        action: str,
        entity_type: str,
        entity_id: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        with self._lock:
            self.activity_logs.append(
                {
                    "user_id": user_id,
                    "action": action,
                    "entity_type": entity_type,
                    "entity_id": entity_id,
                    "details": deepcopy(details or {}),
                    "created_at": _now_iso(),
                }
            )

    # Property analyses ------------------------------------------------------
    def save_property_analysis(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        row = {"id": str(uuid.uuid4()), **deepcopy(payload), "created_at": _now_iso()}
        with self._lock:
            self.property_analyses.append(row)
        return dict(row)

    # Health ---------------------------------------------------------------
    def ping(self) -> bool:
        return True
