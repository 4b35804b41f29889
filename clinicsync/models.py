"""
Data models (dataclasses) for ClinicSync.
These are plain Python objects shared by the store, the channel and the API layers.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Any


class ChannelState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


@dataclass
class Session:
    """Identity token plus what the channel needs to authenticate. Owned by the auth boundary."""
    token: str
    user_id: str
    user_name: str = ""
    is_doctor: bool = False
    unseen_notifications: list[dict] = field(default_factory=list)


@dataclass
class Message:
    id: str
    conversation_id: str
    sender_id: str
    sender_name: str
    body: str
    created_at: datetime
    sender_type: str = "user"    # user | doctor
    delivery_state: str = "received"


@dataclass
class Conversation:
    id: str
    participants: list[str] = field(default_factory=list)
    participant_details: dict[str, Any] = field(default_factory=dict)
    last_message: str = ""
    last_message_time: Optional[datetime] = None
    unread_count: int = 0


@dataclass
class Notification:
    id: str
    message: str
    read: bool = False
    created_at: Optional[datetime] = None
    type: Optional[str] = None
    on_click_path: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StoreChange:
    """
    Emitted to store subscribers after every mutation.
    kind: conversation | messages | notifications | presence | typing | active | reset
    """
    kind: str
    key: Optional[str] = None
