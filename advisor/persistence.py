"""
Insert-and-move-on writes to the conversation store.

Store clients are synchronous, so every call runs in a worker thread. Writes
are chained: each one starts only after the previous one finished, which keeps
the user turn ahead of the assistant turn in the store without the session
ever waiting on either. Failures are logged and recorded, never raised.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional, Set

from storage.memory_store import InMemoryStore
from telemetry.logging_utils import get_logger

from . import config
from .errors import PersistenceWriteFailure

logger = get_logger(__name__)

DEFAULT_TITLE = "New Chat"


def default_store() -> Any:
    """Supabase when it is configured, otherwise an in-process demo store."""
    if config.SUPABASE_URL and config.SUPABASE_SERVICE_ROLE_KEY:
        from storage.supabase_store import SupabaseStore

        return SupabaseStore(
            config.SUPABASE_URL, config.SUPABASE_SERVICE_ROLE_KEY, max_retries=config.STORE_MAX_RETRIES
        )
    logger.warning("supabase_not_configured_using_memory_store")
    return InMemoryStore()


class PersistenceGateway:
    def __init__(self, store: Any) -> None:
        self.store = store
        self.failures: List[PersistenceWriteFailure] = []
        self._tail: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()

    async def create_conversation(self, user_id: str, context: Optional[Dict[str, Any]] = None) -> Optional[str]:
        """Create the conversation row and return its id, or ``None`` when the store refused."""
        context = context or {}
        subject = context.get("property") or {}
        try:
            row = await asyncio.to_thread(
                self.store.create_conversation,
                user_id,
                property_id=subject.get("id"),
                title=subject.get("title") or DEFAULT_TITLE,
                context=context,
            )
        except Exception as exc:
            self._record(PersistenceWriteFailure("create_conversation", exc))
            return None
        conversation_id = row.get("id") if row else None
        logger.info("conversation_created", extra={"conversation_id": conversation_id})
        return conversation_id

    def append_message(
        self,
        conversation_id: str,
        *,
        role: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> asyncio.Task:
        return self._enqueue(
            "append_message",
            self.store.append_message,
            conversation_id,
            role=role,
            content=content,
            metadata=metadata,
        )

    def save_property_analysis(self, payload: Dict[str, Any]) -> asyncio.Task:
        return self._enqueue("save_property_analysis", self.store.save_property_analysis, payload)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def flush(self) -> None:
        """Wait for every write queued so far."""
        while self._pending:
            await asyncio.wait(set(self._pending))

    def _enqueue(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> asyncio.Task:
        previous = self._tail

        async def _run() -> Any:
            if previous is not None and not previous.done():
                await asyncio.wait({previous})
            try:
                return await asyncio.to_thread(fn, *args, **kwargs)
            except Exception as exc:
                self._record(PersistenceWriteFailure(operation, exc))
                return None

        task = asyncio.get_running_loop().create_task(_run())
        self._tail = task
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def _record(self, failure: PersistenceWriteFailure) -> None:
        self.failures.append(failure)
        logger.warning(
            "persistence_write_failed",
            extra={"operation": failure.operation, "error_type": type(failure.original).__name__},
            exc_info=failure.original,
        )
