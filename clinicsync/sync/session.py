"""
SyncSession: the single owner of one logged-in identity's realtime state.

Built at login and stopped at logout. It wires the channel's events through
the router into the reconciler, runs snapshot loads, carries out the side
effects the reconciler asks for (read acknowledgements, refetches), and keeps
the persisted credential blob in step with the unseen notification list.
Nothing here is module-global; two sessions never share state.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Coroutine, Optional

import httpx

from clinicsync.api.rest import ClinicRestClient
from clinicsync.errors import AuthMissing
from clinicsync.models import ChannelState, Notification, Session, StoreChange
from clinicsync.sync.channel import ChannelManager
from clinicsync.sync.payloads import (
    ConversationRecord,
    MessagesReadEvent,
    NewMessageEvent,
    NotificationRecord,
    PresenceEvent,
    StopTypingEvent,
    TypingEvent,
    parse,
)
from clinicsync.sync.router import EventRouter
from clinicsync.sync.snapshot import SnapshotLoader
from clinicsync.sync.store import StateReconciler

logger = logging.getLogger(__name__)

PersistFn = Callable[[list[Notification]], Awaitable[None]]
AlertFn = Callable[[Notification], None]


class SyncSession:
    def __init__(
        self,
        session: Session,
        *,
        rest: Optional[ClinicRestClient] = None,
        channel_factory: Callable[[EventRouter], ChannelManager] = ChannelManager,
        store: Optional[StateReconciler] = None,
        persist: Optional[PersistFn] = None,
        drain_timeout: float = 5.0,
    ) -> None:
        self.session = session
        self.store = store or StateReconciler()
        self.router = EventRouter()
        self.rest = rest or ClinicRestClient(session.token)
        self.loader = SnapshotLoader(self.rest, self.store, self._identity)
        self.channel = channel_factory(self.router)
        self.channel.on_reconnect = self.loader.reload
        self.channel.on_auth_lost = self._on_auth_lost
        self.store.schedule_read_ack = self._schedule_read_ack
        self.store.schedule_refresh = self._schedule_refresh

        # Called with the reason when the server stops accepting our token.
        self.on_ended: Optional[Callable[[str], None]] = None

        self._persist = persist
        self._persist_lock = asyncio.Lock()
        self._drain_timeout = drain_timeout
        self._active = False
        self._tasks: set[asyncio.Task] = set()
        self._refresh_task: Optional[asyncio.Task] = None
        self._refresh_pending = False
        self._alert_listeners: list[AlertFn] = []
        self._unsubscribers: list[Callable[[], None]] = []

    # ─────────────────────────────────────────────
    # State
    # ─────────────────────────────────────────────

    @property
    def active(self) -> bool:
        return self._active

    @property
    def connected(self) -> bool:
        return self.channel.connected

    @property
    def state(self) -> ChannelState:
        return self.channel.state

    def _identity(self) -> Optional[str]:
        """Current identity, read at call time; None once the session is stopped."""
        return self.session.user_id if self._active else None

    def on_alert(self, listener: AlertFn) -> Callable[[], None]:
        """Register a presentation-side alert (sound, toast) for each new notification."""
        self._alert_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._alert_listeners:
                self._alert_listeners.remove(listener)

        return unsubscribe

    # ─────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────

    async def start(self) -> ChannelState:
        if not self.session.token:
            raise AuthMissing("no token")
        self._active = True
        self._register_handlers()
        self._unsubscribers.append(self.store.subscribe(self._on_store_change))
        # The persisted blob may hold notifications the server pushed before a restart.
        self.loader.merge_notifications(self.session.unseen_notifications)

        state = await self.channel.open(self.session)
        if self.channel.connected:
            await asyncio.gather(self.loader.load_conversations(), self.loader.load_unseen_notifications())
        else:
            logger.info("Channel not connected yet; snapshot will load on connect")
        return state

    async def stop(self) -> None:
        if not self._active:
            return
        self._active = False
        await self.channel.close()
        self.router.unregister_all()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

        # In-flight fetches may finish; their results are discarded by the identity check.
        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current and not t.done()]
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=self._drain_timeout)
            for task in still_running:
                task.cancel()
        await self.rest.aclose()
        self.store.clear()
        logger.info(f"Sync session for {self.session.user_id} stopped")

    def _register_handlers(self) -> None:
        r = self.router
        r.unregister_all()
        r.register("new-message", self._on_new_message, NewMessageEvent)
        r.register("new-notification", self._on_new_notification, NotificationRecord)
        r.register("user-typing", self._on_typing, TypingEvent)
        r.register("user-stop-typing", self._on_stop_typing, StopTypingEvent)
        r.register("user-online", self._on_user_online, PresenceEvent)
        r.register("user-offline", self._on_user_offline, PresenceEvent)
        r.register("messages-read", self._on_messages_read, MessagesReadEvent)

    def _spawn(self, coro: Coroutine, name: str) -> Optional[asyncio.Task]:
        if not self._active:
            coro.close()
            return None
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _on_auth_lost(self, reason: str) -> None:
        logger.info(f"Credential no longer accepted ({reason}); ending session")
        task = asyncio.create_task(self.stop(), name="sync-session-stop")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        if self.on_ended is not None:
            self.on_ended(reason)

    # ─────────────────────────────────────────────
    # Inbound event handlers
    # ─────────────────────────────────────────────

    def _on_new_message(self, event: NewMessageEvent) -> None:
        identity = self._identity()
        if identity is None:
            return
        conversation_id = event.conversation_id
        known = self.store.conversation(conversation_id) is not None
        self.store.apply_new_message(conversation_id, event.message.to_message(), identity=identity)
        if event.conversation is not None:
            self.store.apply_conversation_update(event.conversation, identity=identity)
        if not known:
            # First sight of this conversation: fetch participants and counts.
            self._schedule_refresh(conversation_id)

    def _on_new_notification(self, record: NotificationRecord) -> None:
        notification = record.to_notification()
        if not self.store.apply_notification(notification):
            return
        for listener in list(self._alert_listeners):
            try:
                listener(notification)
            except Exception as exc:
                logger.warning("Alert listener failed: %s: %s", type(exc).__name__, exc)

    def _on_typing(self, event: TypingEvent) -> None:
        self.store.apply_typing(event.conversation_id, event.user_name)

    def _on_stop_typing(self, event: StopTypingEvent) -> None:
        self.store.clear_typing(event.conversation_id, event.user_name)

    def _on_user_online(self, event: PresenceEvent) -> None:
        self.store.apply_presence(event.user_id, True)

    def _on_user_offline(self, event: PresenceEvent) -> None:
        self.store.apply_presence(event.user_id, False)

    def _on_messages_read(self, event: MessagesReadEvent) -> None:
        if event.user_id is not None and event.user_id == self._identity():
            # Read on another device of ours.
            self.store.apply_messages_read(event.conversation_id)
        else:
            self._schedule_refresh(event.conversation_id)

    # ─────────────────────────────────────────────
    # Side effects requested by the reconciler
    # ─────────────────────────────────────────────

    def _schedule_refresh(self, conversation_id: str) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            # The running fetch may hold a response from before this request.
            self._refresh_pending = True
            return
        self._refresh_task = self._spawn(self._refresh_conversations(), "conversation-refresh")

    async def _refresh_conversations(self) -> None:
        """Load the conversation list, once more if another refresh was asked for meanwhile."""
        while True:
            self._refresh_pending = False
            await self.loader.load_conversations()
            if not self._refresh_pending or not self._active:
                return

    def _schedule_read_ack(self, conversation_id: str) -> None:
        self._spawn(self._acknowledge_read(conversation_id), f"read-ack-{conversation_id}")

    async def _acknowledge_read(self, conversation_id: str) -> None:
        await self.channel.mark_read(conversation_id)
        try:
            await self.rest.mark_read(conversation_id)
        except httpx.HTTPError as exc:
            logger.warning(f"Read acknowledgement for {conversation_id} failed: {exc}")

    def _on_store_change(self, change: StoreChange) -> None:
        if change.kind == "notifications" and self._persist is not None:
            self._spawn(self._persist_notifications(), "persist-notifications")

    async def _persist_notifications(self) -> None:
        async with self._persist_lock:
            # Read inside the lock so the last writer always stores the latest list.
            await self._persist(self.store.unseen_notifications())

    # ─────────────────────────────────────────────
    # User actions
    # ─────────────────────────────────────────────

    async def select_conversation(self, conversation_id: str) -> None:
        self.store.set_active_conversation(conversation_id)
        await self.channel.join_conversation(conversation_id)
        await self.loader.load_messages(conversation_id)
        await self.mark_read(conversation_id)

    def leave_conversation(self) -> None:
        self.store.set_active_conversation(None)

    async def load_older_messages(self, conversation_id: str, page: int) -> Optional[dict]:
        return await self.loader.load_messages(conversation_id, page=page)

    async def mark_read(self, conversation_id: str) -> None:
        self.store.apply_messages_read(conversation_id)
        await self._acknowledge_read(conversation_id)

    async def send_message(self, conversation_id: str, content: str) -> bool:
        content = content.strip()
        if not content:
            return False
        sent = await self.channel.send_message(conversation_id, content)
        await self.channel.stop_typing(conversation_id)
        return sent

    async def notify_typing(self, conversation_id: str) -> bool:
        return await self.channel.typing(conversation_id)

    async def notify_stop_typing(self, conversation_id: str) -> bool:
        return await self.channel.stop_typing(conversation_id)

    async def start_conversation(self, doctor_id: str) -> str:
        """Get or create the conversation with *doctor_id* and merge it. Returns its id."""
        raw = await self.rest.get_or_create_conversation(doctor_id)
        summary = parse(ConversationRecord, "conversation", raw)
        identity = self._identity()
        if identity is not None:
            self.store.apply_conversation_update(summary, identity=identity, confirmed=True)
        return summary.id

    async def delete_conversation(self, conversation_id: str) -> None:
        await self.rest.delete_conversation(conversation_id)
        self.store.remove_conversation(conversation_id)

    async def acknowledge_notifications(self) -> int:
        await self.rest.mark_all_notifications_seen()
        return self.store.apply_notifications_seen()

    async def delete_notifications(self) -> int:
        await self.rest.delete_all_notifications()
        return self.store.apply_notifications_seen()
