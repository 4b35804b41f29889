"""
Async client for the clinic REST service.

Every response uses the ``{status, message, data}`` envelope; methods return
the unwrapped ``data``. Transport and HTTP errors propagate as httpx.HTTPError
so the caller decides how stale it is willing to be.
"""
import logging
from typing import Any, Optional

import httpx

from clinicsync.config import API_URL, HTTP_TIMEOUT, MESSAGE_PAGE_SIZE

logger = logging.getLogger(__name__)


class ClinicRestClient:
    def __init__(
        self,
        token: str,
        base_url: str = API_URL,
        timeout: float = HTTP_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        r = await self._client.request(method, path, **kwargs)
        r.raise_for_status()
        if r.status_code == 204 or not r.content:
            return None
        body = r.json()
        if isinstance(body, dict) and "data" in body:
            return body["data"]
        return body

    # ─────────────────────────────────────────────
    # Chat
    # ─────────────────────────────────────────────

    async def get_conversations(self) -> list[dict]:
        return await self._request("GET", "/chat/conversations") or []

    async def get_or_create_conversation(self, doctor_id: str) -> dict:
        return await self._request("POST", "/chat/conversations", json={"doctorId": doctor_id})

    async def get_messages(self, conversation_id: str, page: int = 1, limit: int = MESSAGE_PAGE_SIZE) -> dict:
        """Return ``{"messages": [...oldest first], "pagination": {...}}``."""
        return await self._request(
            "GET",
            f"/chat/conversations/{conversation_id}/messages",
            params={"page": page, "limit": limit},
        ) or {}

    async def mark_read(self, conversation_id: str) -> None:
        await self._request("PUT", f"/chat/conversations/{conversation_id}/read")

    async def delete_conversation(self, conversation_id: str) -> None:
        await self._request("DELETE", f"/chat/conversations/{conversation_id}")

    # ─────────────────────────────────────────────
    # Profile / notifications
    # ─────────────────────────────────────────────

    async def get_user(self, user_id: str) -> dict:
        return await self._request("GET", f"/user/{user_id}") or {}

    async def mark_all_notifications_seen(self) -> dict:
        return await self._request("POST", "/user/mark-all-notification-as-seen")

    async def delete_all_notifications(self) -> dict:
        return await self._request("POST", "/user/delete-all-notifications")
