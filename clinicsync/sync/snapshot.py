"""
Snapshot Loader: fetches authoritative state from the REST service and feeds it
through the same reconciler merges as live events.

Loads may overlap (reconnect reload vs. the user opening a conversation); the
merges are idempotent by id, so overlapping loads commute. Each result is
checked against the owning session after the fetch returns and discarded if
the session has gone away in the meantime.
"""
import asyncio
import functools
import logging
from typing import Any, Callable, Optional

import httpx

from clinicsync.api.rest import ClinicRestClient
from clinicsync.config import MESSAGE_PAGE_SIZE
from clinicsync.errors import MalformedEvent, StaleResponse
from clinicsync.sync.payloads import ConversationRecord, MessageRecord, NotificationRecord, parse
from clinicsync.sync.store import StateReconciler

logger = logging.getLogger(__name__)


def _degrades_to_stale(fn: Callable) -> Callable:
    """A failed or stale load leaves the store as it was and returns None."""

    @functools.wraps(fn)
    async def wrapper(self: "SnapshotLoader", *args: Any, **kwargs: Any) -> Any:
        try:
            return await fn(self, *args, **kwargs)
        except StaleResponse as exc:
            logger.debug(str(exc))
        except httpx.HTTPError as exc:
            logger.warning("%s failed: %s: %s", fn.__name__, type(exc).__name__, exc)
        return None

    return wrapper


class SnapshotLoader:
    def __init__(
        self,
        rest: ClinicRestClient,
        store: StateReconciler,
        identity: Callable[[], Optional[str]],
    ) -> None:
        """
        *identity* returns the current user id, or None once the owning session
        is no longer active. It is read after every fetch, never cached.
        """
        self._rest = rest
        self._store = store
        self._identity = identity

    def _owner(self, operation: str) -> str:
        identity = self._identity()
        if identity is None:
            raise StaleResponse(operation)
        return identity

    @_degrades_to_stale
    async def load_conversations(self) -> Optional[int]:
        self._owner("load_conversations")
        records = await self._rest.get_conversations()
        identity = self._owner("load_conversations")

        applied = 0
        for raw in records:
            try:
                summary = parse(ConversationRecord, "conversation snapshot", raw)
            except MalformedEvent as exc:
                logger.warning(str(exc))
                continue
            self._store.apply_conversation_update(summary, identity=identity, confirmed=True)
            applied += 1
        logger.debug(f"Conversation snapshot applied: {applied} of {len(records)}")
        return applied

    @_degrades_to_stale
    async def load_messages(
        self, conversation_id: str, page: int = 1, page_size: int = MESSAGE_PAGE_SIZE
    ) -> Optional[dict]:
        """Merge one page into the existing sequence. Returns the server's pagination block."""
        self._owner("load_messages")
        data = await self._rest.get_messages(conversation_id, page=page, limit=page_size)
        identity = self._owner("load_messages")

        inserted = 0
        for raw in data.get("messages", []):
            try:
                record = parse(MessageRecord, "message snapshot", raw)
            except MalformedEvent as exc:
                logger.warning(str(exc))
                continue
            if self._store.apply_new_message(conversation_id, record.to_message(), identity=identity, live=False):
                inserted += 1
        logger.debug(f"Message page {page} for {conversation_id}: {inserted} new")
        return data.get("pagination", {})

    @_degrades_to_stale
    async def load_unseen_notifications(self) -> Optional[int]:
        identity = self._owner("load_unseen_notifications")
        user = await self._rest.get_user(identity)
        self._owner("load_unseen_notifications")
        return self.merge_notifications(user.get("unseenNotifications") or [])

    def merge_notifications(self, raw_notifications: list) -> int:
        """Seed from any notification source (profile snapshot, persisted blob)."""
        added = 0
        for raw in raw_notifications:
            try:
                record = parse(NotificationRecord, "notification snapshot", raw)
            except MalformedEvent as exc:
                logger.warning(str(exc))
                continue
            if self._store.apply_notification(record.to_notification()):
                added += 1
        return added

    async def reload(self) -> None:
        """Full repair after a reconnect: conversation list, notifications and the open conversation."""
        loads = [self.load_conversations(), self.load_unseen_notifications()]
        active = self._store.active_conversation_id
        if active is not None:
            loads.append(self.load_messages(active))
        await asyncio.gather(*loads)
