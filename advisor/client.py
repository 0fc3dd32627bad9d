"""HTTP side of a turn: one streaming POST to the completion relay."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from telemetry.logging_utils import get_logger

from .config import EngineSettings
from .errors import TransportError, UpstreamStatusError

logger = get_logger(__name__)


def build_request_body(
    messages: List[Dict[str, str]],
    *,
    property_context: Optional[Dict[str, Any]] = None,
    user_preferences: Optional[Dict[str, Any]] = None,
    analysis_mode: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "messages": messages,
        "propertyContext": property_context,
        "userPreferences": user_preferences,
        "analysisMode": analysis_mode,
    }


def _error_text(response: httpx.Response) -> Optional[str]:
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, str) and error.strip():
            return error
    return None


class CompletionClient:
    """
    Opens the completion stream for a turn.

    Only the connection is bounded by a timeout; reading the body may take as
    long as the model keeps talking.
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or EngineSettings.from_env()
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.connect_timeout, read=None),
            transport=transport,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "CompletionClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "text/event-stream"}
        if self.settings.chat_key:
            headers["Authorization"] = f"Bearer {self.settings.chat_key}"
        return headers

    @asynccontextmanager
    async def open_stream(
        self,
        messages: List[Dict[str, str]],
        *,
        property_context: Optional[Dict[str, Any]] = None,
        user_preferences: Optional[Dict[str, Any]] = None,
        analysis_mode: Optional[str] = None,
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        """Yield the response body as raw byte chunks.

        Raises :class:`TransportError` when the relay cannot be reached or
        the body breaks off, and :class:`UpstreamStatusError` for a non-2xx
        status.
        """
        body = build_request_body(
            messages,
            property_context=property_context,
            user_preferences=user_preferences,
            analysis_mode=analysis_mode,
        )
        request = self._client.build_request("POST", self.settings.chat_url, json=body, headers=self._headers())
        try:
            response = await self._client.send(request, stream=True)
        except httpx.TransportError as exc:
            logger.warning("completion_connect_failed", extra={"error_type": type(exc).__name__})
            raise TransportError() from exc

        try:
            await self._raise_for_status(response)
            yield self._iter_body(response)
        finally:
            await response.aclose()

    async def _raise_for_status(self, response: httpx.Response) -> None:
        if response.status_code == 204:
            raise TransportError("No response body")
        if response.is_success:
            return
        try:
            await response.aread()
        except httpx.TransportError:
            message = None
        else:
            message = _error_text(response)
        logger.warning("completion_status_error", extra={"status_code": response.status_code})
        raise UpstreamStatusError(response.status_code, message)

    async def _iter_body(self, response: httpx.Response) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_bytes():
                yield chunk
        except httpx.TransportError as exc:
            logger.warning("completion_read_failed", extra={"error_type": type(exc).__name__})
            raise TransportError() from exc
