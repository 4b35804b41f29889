"""
State Reconciler: the in-memory, observable store that every UI surface reads.

Live channel events and REST snapshots go through the same merge operations
below. Every merge is synchronous (no awaits), so under the asyncio loop two
merges never interleave, and every merge is idempotent with respect to the
identity of what it applies (message id, notification id).

Unread accounting per conversation:
    unread = unread_base + len(unread_live)
where ``unread_base`` is the last server-confirmed count and ``unread_live``
holds the ids of live messages counted since then. A read clears both. A
confirmed snapshot replaces the base and keeps only live ids newer than the
snapshot's last-message time, so a message is never counted twice.
"""
import asyncio
import bisect
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Iterable, Optional

from clinicsync.config import TYPING_TIMEOUT
from clinicsync.errors import ReconciliationConflict
from clinicsync.models import Conversation, Message, Notification, StoreChange
from clinicsync.sync.payloads import ConversationRecord

logger = logging.getLogger(__name__)

Listener = Callable[[StoreChange], None]


def _later(a: Optional[datetime], b: Optional[datetime]) -> Optional[datetime]:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


def _order_key(m: Message) -> tuple:
    return (m.created_at, m.id)


@dataclass
class _Ledger:
    """Bookkeeping behind one public Conversation."""
    conversation: Conversation
    messages: list[Message] = field(default_factory=list)
    message_ids: set[str] = field(default_factory=set)
    unread_base: int = 0
    unread_live: dict[str, datetime] = field(default_factory=dict)
    confirmed_as_of: Optional[datetime] = None   # last-message time of the last confirmed count
    read_watermark: Optional[datetime] = None    # newest message covered by a local read

    def sync_unread(self) -> None:
        self.conversation.unread_count = max(0, self.unread_base) + len(self.unread_live)

    def latest_time(self) -> Optional[datetime]:
        newest = self.messages[-1].created_at if self.messages else None
        return _later(self.conversation.last_message_time, newest)


class StateReconciler:
    def __init__(
        self,
        typing_timeout: float = TYPING_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
        schedule_read_ack: Optional[Callable[[str], None]] = None,
        schedule_refresh: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._typing_timeout = typing_timeout
        self._clock = clock
        # Side effects owned by the session: acknowledge a read / refetch a snapshot.
        self.schedule_read_ack: Callable[[str], None] = schedule_read_ack or (lambda conversation_id: None)
        self.schedule_refresh: Callable[[str], None] = schedule_refresh or (lambda conversation_id: None)

        self._ledgers: dict[str, _Ledger] = {}
        self._notifications: dict[str, Notification] = {}
        self._presence: dict[str, bool] = {}
        self._typing: dict[str, dict[str, float]] = {}
        self._typing_timers: dict[tuple[str, str], asyncio.TimerHandle] = {}
        self._active: Optional[str] = None
        self._listeners: list[Listener] = []

    # ─────────────────────────────────────────────
    # Subscription
    # ─────────────────────────────────────────────

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener* for every StoreChange. Returns the matching detach function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, kind: str, key: Optional[str] = None) -> None:
        change = StoreChange(kind=kind, key=key)
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as exc:
                logger.warning("Store listener failed on %s: %s: %s", kind, type(exc).__name__, exc)

    # ─────────────────────────────────────────────
    # Read path (copies; callers never mutate the store)
    # ─────────────────────────────────────────────

    @property
    def active_conversation_id(self) -> Optional[str]:
        return self._active

    def conversations(self) -> list[Conversation]:
        """All conversations, most recent activity first."""
        ledgers = sorted(
            self._ledgers.values(),
            key=lambda l: (l.conversation.last_message_time is not None,
                           l.conversation.last_message_time or datetime.min),
            reverse=True,
        )
        return [self._copy(l.conversation) for l in ledgers]

    def conversation(self, conversation_id: str) -> Optional[Conversation]:
        ledger = self._ledgers.get(conversation_id)
        return self._copy(ledger.conversation) if ledger else None

    def messages(self, conversation_id: str) -> list[Message]:
        ledger = self._ledgers.get(conversation_id)
        return list(ledger.messages) if ledger else []

    def unread_count(self, conversation_id: str) -> int:
        ledger = self._ledgers.get(conversation_id)
        return ledger.conversation.unread_count if ledger else 0

    def total_unread(self) -> int:
        return sum(l.conversation.unread_count for l in self._ledgers.values())

    def unseen_notifications(self) -> list[Notification]:
        return [replace(n) for n in self._notifications.values()]

    def is_online(self, user_id: str) -> Optional[bool]:
        """True/False when known; None means no presence event has been seen."""
        return self._presence.get(user_id)

    def typing_users(self, conversation_id: str) -> list[str]:
        now = self._clock()
        entries = self._typing.get(conversation_id, {})
        return sorted(name for name, expires in entries.items() if expires > now)

    @staticmethod
    def _copy(conversation: Conversation) -> Conversation:
        return replace(
            conversation,
            participants=list(conversation.participants),
            participant_details=dict(conversation.participant_details),
        )

    def _ledger(self, conversation_id: str) -> _Ledger:
        ledger = self._ledgers.get(conversation_id)
        if ledger is None:
            ledger = _Ledger(conversation=Conversation(id=conversation_id))
            self._ledgers[conversation_id] = ledger
        return ledger

    # ─────────────────────────────────────────────
    # Conversations and messages
    # ─────────────────────────────────────────────

    def apply_new_message(self, conversation_id: str, message: Message, *, identity: str, live: bool = True) -> bool:
        """
        Insert *message* into the conversation's ordered sequence.

        Returns False (and changes nothing) when the id is already present.
        ``live=False`` is used by snapshot loads: the summary carries the
        authoritative unread count, so snapshot messages never count.
        """
        ledger = self._ledger(conversation_id)
        if message.id in ledger.message_ids:
            logger.debug(f"Duplicate message {message.id} in {conversation_id} ignored")
            return False
        if message.conversation_id != conversation_id:
            message = replace(message, conversation_id=conversation_id)

        bisect.insort(ledger.messages, message, key=_order_key)
        ledger.message_ids.add(message.id)

        conv = ledger.conversation
        if conv.last_message_time is None or message.created_at >= conv.last_message_time:
            conv.last_message = message.body
            conv.last_message_time = message.created_at

        acknowledge = False
        if live and message.sender_id != identity:
            if conversation_id == self._active:
                ledger.read_watermark = _later(ledger.read_watermark, message.created_at)
                acknowledge = True
            elif ledger.confirmed_as_of is not None and message.created_at <= ledger.confirmed_as_of:
                logger.debug(f"Message {message.id} already counted by snapshot of {conversation_id}")
            else:
                ledger.unread_live[message.id] = message.created_at
        ledger.sync_unread()

        self._notify("messages", conversation_id)
        self._notify("conversation", conversation_id)
        if acknowledge:
            self.schedule_read_ack(conversation_id)
        return True

    def apply_conversation_update(self, summary: ConversationRecord, *, identity: str, confirmed: bool = False) -> None:
        """
        Upsert summary fields from a push (``confirmed=False``) or a snapshot (``confirmed=True``).

        Last-message fields only move forward in time. A push never changes the
        unread count: message arrival owns increments, and only a read or a
        server-confirmed count may set it.
        """
        ledger = self._ledger(summary.id)
        conv = ledger.conversation
        if summary.participants:
            conv.participants = list(summary.participants)
        if summary.participant_details:
            conv.participant_details = dict(summary.participant_details)

        if summary.last_message_time is not None:
            if conv.last_message_time is None or summary.last_message_time >= conv.last_message_time:
                conv.last_message_time = summary.last_message_time
                if summary.last_message is not None:
                    conv.last_message = summary.last_message
        elif summary.last_message is not None and conv.last_message_time is None:
            conv.last_message = summary.last_message

        incoming = summary.unread_for(identity)
        if incoming is not None:
            if confirmed:
                self._apply_confirmed_unread(ledger, incoming, summary.last_message_time)
            elif incoming != conv.unread_count:
                logger.debug(str(ReconciliationConflict(summary.id, conv.unread_count, incoming)))
        ledger.sync_unread()
        self._notify("conversation", summary.id)

    def _apply_confirmed_unread(self, ledger: _Ledger, count: int, as_of: Optional[datetime]) -> None:
        if ledger.conversation.id == self._active:
            # The open conversation is read as it arrives.
            ledger.unread_base = 0
            ledger.unread_live.clear()
            ledger.confirmed_as_of = _later(ledger.confirmed_as_of, as_of)
            return
        watermark = ledger.read_watermark
        if watermark is not None and as_of is not None and as_of <= watermark:
            # Server state predates our read acknowledgement.
            count = 0
        if as_of is None:
            ledger.unread_live.clear()
        else:
            ledger.unread_live = {mid: t for mid, t in ledger.unread_live.items() if t > as_of}
        ledger.unread_base = count
        ledger.confirmed_as_of = as_of

    def apply_messages_read(self, conversation_id: str) -> None:
        """Optimistically zero the unread count and ask the session for a reconciling refetch."""
        ledger = self._ledger(conversation_id)
        ledger.unread_base = 0
        ledger.unread_live.clear()
        ledger.read_watermark = _later(ledger.read_watermark, ledger.latest_time())
        ledger.sync_unread()
        self._notify("conversation", conversation_id)
        self.schedule_refresh(conversation_id)

    def set_active_conversation(self, conversation_id: Optional[str]) -> None:
        self._active = conversation_id
        self._notify("active", conversation_id)

    def remove_conversation(self, conversation_id: str) -> None:
        if self._ledgers.pop(conversation_id, None) is None:
            return
        self._drop_typing(conversation_id)
        if self._active == conversation_id:
            self._active = None
        self._notify("conversation", conversation_id)

    # ─────────────────────────────────────────────
    # Notifications
    # ─────────────────────────────────────────────

    def apply_notification(self, notification: Notification) -> bool:
        if notification.id in self._notifications:
            logger.debug(f"Duplicate notification {notification.id} ignored")
            return False
        self._notifications[notification.id] = notification
        self._notify("notifications", notification.id)
        return True

    def apply_notifications_seen(self, ids: Optional[Iterable[str]] = None) -> int:
        """Explicit acknowledgement: drop the given ids, or every unseen notification."""
        if ids is None:
            removed = len(self._notifications)
            self._notifications.clear()
        else:
            removed = sum(1 for nid in set(ids) if self._notifications.pop(nid, None) is not None)
        if removed:
            self._notify("notifications")
        return removed

    # ─────────────────────────────────────────────
    # Presence and typing
    # ─────────────────────────────────────────────

    def apply_presence(self, user_id: str, online: bool) -> None:
        self._presence[user_id] = online
        self._notify("presence", user_id)

    def apply_typing(self, conversation_id: str, user_name: str) -> None:
        self._typing.setdefault(conversation_id, {})[user_name] = self._clock() + self._typing_timeout
        self._arm_typing_timer(conversation_id, user_name)
        self._notify("typing", conversation_id)

    def clear_typing(self, conversation_id: str, user_name: Optional[str] = None) -> None:
        """Clear one user's indicator, or all of them when *user_name* is None."""
        if user_name is None:
            changed = self._drop_typing(conversation_id)
        else:
            entries = self._typing.get(conversation_id, {})
            changed = entries.pop(user_name, None) is not None
            self._cancel_typing_timer(conversation_id, user_name)
            if not entries:
                self._typing.pop(conversation_id, None)
        if changed:
            self._notify("typing", conversation_id)

    def _arm_typing_timer(self, conversation_id: str, user_name: str) -> None:
        self._cancel_typing_timer(conversation_id, user_name)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # no loop: reads still filter expired entries
        self._typing_timers[(conversation_id, user_name)] = loop.call_later(
            self._typing_timeout, self._expire_typing, conversation_id, user_name
        )

    def _cancel_typing_timer(self, conversation_id: str, user_name: str) -> None:
        handle = self._typing_timers.pop((conversation_id, user_name), None)
        if handle is not None:
            handle.cancel()

    def _expire_typing(self, conversation_id: str, user_name: str) -> None:
        # Any refresh re-arms the timer, so firing means no refresh arrived in time.
        self._typing_timers.pop((conversation_id, user_name), None)
        entries = self._typing.get(conversation_id)
        if not entries or entries.pop(user_name, None) is None:
            return
        if not entries:
            self._typing.pop(conversation_id, None)
        logger.debug(f"Typing indicator for {user_name} in {conversation_id} expired")
        self._notify("typing", conversation_id)

    def _drop_typing(self, conversation_id: str) -> bool:
        entries = self._typing.pop(conversation_id, None) or {}
        for name in entries:
            self._cancel_typing_timer(conversation_id, name)
        return bool(entries)

    # ─────────────────────────────────────────────
    # Teardown
    # ─────────────────────────────────────────────

    def clear(self) -> None:
        """Forget everything (logout)."""
        for handle in self._typing_timers.values():
            handle.cancel()
        self._typing_timers.clear()
        self._typing.clear()
        self._ledgers.clear()
        self._notifications.clear()
        self._presence.clear()
        self._active = None
        self._notify("reset")
