from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx
from postgrest import APIError

from supabase import Client, create_client
from telemetry.retry import retry_with_backoff

RETRYABLE_ERRORS = (httpx.RemoteProtocolError, httpx.WriteError, httpx.ConnectError, APIError)


class SupabaseStore:
    """Conversation, message and lead records kept in Supabase tables."""

    def __init__(self, url: str, key: str, *, max_retries: int = 3, client: Optional[Client] = None) -> None:
        self.client: Client = client or create_client(url, key)
        self._max_retries = max_retries
        self._retry_backoff_seconds = 0.25

    def _table(self, name: str):
        return self.client.table(name)

    def _with_retry(self, fn: Callable[[], Any], operation: str) -> Any:
        return retry_with_backoff(
            fn,
            retries=self._max_retries,
            base_delay=self._retry_backoff_seconds,
            retry_exceptions=RETRYABLE_ERRORS,
            operation=operation,
        )

    # Conversations/messages -----------------------------------------------

    def create_conversation(
        self,
        user_id: str,
        *,
        property_id: Optional[str] = None,
        title: str = "New Chat",
        context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        convo = {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "property_id": property_id,
            "title": title,
            "context": context or {},
        }
        resp = self._with_retry(lambda: self._table("conversations").insert(convo).execute(), "create_conversation")
        if not resp.data:
            raise RuntimeError("Failed to create conversation")
        return resp.data[0]

    def get_conversation(self, conversation_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        resp = self._with_retry(
            lambda: self._table("conversations")
            .select("*")
            .eq("id", conversation_id)
            .eq("user_id", user_id)
            .maybe_single()
            .execute(),
            "get_conversation",
        )
        convo = resp.data if resp is not None else None
        if not convo:
            return None
        convo["messages"] = self.list_messages(convo["id"])
        return convo

    def list_conversations(self, user_id: str, *, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        query = (
            self._table("conversations")
            .select("id, property_id, title, context, updated_at, created_at")
            .eq("user_id", user_id)
            .order("updated_at", desc=True)
        )
        if limit:
            query = query.limit(limit)
        resp = self._with_retry(lambda: query.execute(), "list_conversations")
        return resp.data or []

    def append_message(
        self,
        conversation_id: str,
        *,
        role: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        row = {
            "conversation_id": conversation_id,
            "role": role,
            "content": content,
            "metadata": metadata or {},
        }
        resp = self._with_retry(lambda: self._table("messages").insert(row).execute(), "append_message")
        if not resp.data:
            raise RuntimeError("Failed to insert message")
        self._with_retry(
            lambda: self._table("conversations")
            .update({"updated_at": datetime.now(timezone.utc).isoformat()})
            .eq("id", conversation_id)
            .execute(),
            "touch_conversation",
        )
        return resp.data[0]

    def list_messages(self, conversation_id: str) -> List[Dict[str, Any]]:
        resp = self._with_retry(
            lambda: self._table("messages")
            .select("role, content, metadata, created_at")
            .eq("conversation_id", conversation_id)
            .order("created_at", desc=False)
            .execute(),
            "list_messages",
        )
        return resp.data or []

    # Handoff leads ----------------------------------------------------------

    def list_verified_agents(self) -> List[Dict[str, Any]]:
        resp = self._with_retry(
            lambda: self._table("agents").select("id, areas_served, specialization").eq("verified", True).execute(),
            "list_verified_agents",
        )
        return resp.data or []

    def create_lead(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        lead = {"id": str(uuid.uuid4()), **payload}
        resp = self._with_retry(lambda: self._table("leads").insert(lead).execute(), "create_lead")
        if not resp.data:
            raise RuntimeError("Failed to create lead")
        return resp.data[0]

    def log_activity(
        self,
        user_id: str,
        *,
        action: str,
        entity_type: str,
        entity_id: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._with_retry(
            lambda: self._table("activity_logs")
            .insert(
                {
                    "user_id": user_id,
                    "action": action,
                    "entity_type": entity_type,
                    "entity_id": entity_id,
                    "details": details or {},
                }
            )
            .execute(),
            "log_activity",
        )

    # Property analyses ------------------------------------------------------

    def save_property_analysis(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        resp = self._with_retry(lambda: self._table("property_analyses").insert(payload).execute(), "save_analysis")
        if not resp.data:
            raise RuntimeError("Failed to store property analysis")
        return resp.data[0]

    def ping(self) -> bool:
        self._with_retry(lambda: self._table("conversations").select("id").limit(1).execute(), "ping")
        return True
