"""
Shape validation for inbound channel payloads and REST records.

The server speaks the clinic API's camelCase JSON (Mongo-style ``_id``); these
models accept it, normalise timestamps to UTC and convert to the plain
dataclasses in clinicsync.models.
"""
from datetime import datetime, timezone
from typing import Any, Optional, TypeVar, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from clinicsync.errors import MalformedEvent
from clinicsync.models import Conversation, Message, Notification


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class MessageRecord(_Payload):
    id: str = Field(validation_alias=AliasChoices("_id", "id"))
    conversation_id: str = Field(validation_alias=AliasChoices("conversationId", "conversation_id"))
    sender_id: str = Field(validation_alias=AliasChoices("senderId", "sender_id"))
    sender_name: str = Field(default="", validation_alias=AliasChoices("senderName", "sender_name"))
    sender_type: str = Field(default="user", validation_alias=AliasChoices("senderType", "sender_type"))
    content: str = Field(validation_alias=AliasChoices("content", "body"))
    created_at: datetime = Field(validation_alias=AliasChoices("createdAt", "created_at"))

    @field_validator("created_at")
    @classmethod
    def _as_utc(cls, value):
        return _utc(value)

    def to_message(self) -> Message:
        return Message(
            id=self.id,
            conversation_id=self.conversation_id,
            sender_id=self.sender_id,
            sender_name=self.sender_name,
            sender_type=self.sender_type,
            body=self.content,
            created_at=self.created_at,
        )


class ConversationRecord(_Payload):
    id: str = Field(validation_alias=AliasChoices("_id", "id"))
    participants: list[str] = Field(default_factory=list)
    participant_details: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("participantDetails", "participant_details")
    )
    last_message: Optional[str] = Field(default=None, validation_alias=AliasChoices("lastMessage", "last_message"))
    last_message_time: Optional[datetime] = Field(
        default=None, validation_alias=AliasChoices("lastMessageTime", "last_message_time")
    )
    # The server keeps one counter per participant; a bare int is already resolved.
    unread_count: Union[dict[str, int], int, None] = Field(
        default=None, validation_alias=AliasChoices("unreadCount", "unread_count")
    )

    @field_validator("last_message_time")
    @classmethod
    def _as_utc(cls, value):
        return _utc(value)

    def unread_for(self, identity: str) -> Optional[int]:
        if self.unread_count is None:
            return None
        if isinstance(self.unread_count, int):
            return max(0, self.unread_count)
        return max(0, int(self.unread_count.get(identity, 0)))

    def to_conversation(self) -> Conversation:
        return Conversation(
            id=self.id,
            participants=list(self.participants),
            participant_details=dict(self.participant_details),
            last_message=self.last_message or "",
            last_message_time=self.last_message_time,
        )


class NotificationRecord(_Payload):
    id: str = Field(validation_alias=AliasChoices("_id", "id"))
    message: str
    type: Optional[str] = None
    on_click_path: Optional[str] = Field(default=None, validation_alias=AliasChoices("onClickPath", "on_click_path"))
    data: dict[str, Any] = Field(default_factory=dict)
    read: bool = False
    created_at: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("createdAt", "created_at"))

    @field_validator("created_at")
    @classmethod
    def _as_utc(cls, value):
        return _utc(value)

    def to_notification(self) -> Notification:
        return Notification(
            id=self.id,
            message=self.message,
            read=self.read,
            created_at=self.created_at,
            type=self.type,
            on_click_path=self.on_click_path,
            data=dict(self.data),
        )


class NewMessageEvent(_Payload):
    conversation_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("conversationId", "conversation_id"))
    message: MessageRecord
    conversation: Optional[ConversationRecord] = None

    @model_validator(mode="after")
    def _fill_conversation_id(self):
        # The server nests the id inside the message; older payloads omit the top-level key.
        if self.conversation_id is None:
            self.conversation_id = self.message.conversation_id
        return self


class TypingEvent(_Payload):
    conversation_id: str = Field(validation_alias=AliasChoices("conversationId", "conversation_id"))
    user_name: str = Field(validation_alias=AliasChoices("userName", "user_name"))


class StopTypingEvent(_Payload):
    conversation_id: str = Field(validation_alias=AliasChoices("conversationId", "conversation_id"))
    user_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("userName", "user_name"))


class PresenceEvent(_Payload):
    user_id: str = Field(validation_alias=AliasChoices("userId", "user_id"))


class MessagesReadEvent(_Payload):
    conversation_id: str = Field(validation_alias=AliasChoices("conversationId", "conversation_id"))
    user_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("userId", "user_id"))


P = TypeVar("P", bound=BaseModel)


def parse(model: type[P], event: str, payload: Any) -> P:
    """Validate *payload* against *model*, raising MalformedEvent on any shape error."""
    if not isinstance(payload, dict):
        raise MalformedEvent(event, f"expected an object, got {type(payload).__name__}")
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        raise MalformedEvent(event, f"invalid fields: {fields}") from exc
