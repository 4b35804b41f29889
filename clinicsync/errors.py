"""
Error taxonomy for the realtime sync core.

Only AuthMissing leaves a public operation. Every other condition is caught by
the component that owns its recovery and degrades to "state may be briefly
stale until the next reconnect or snapshot".
"""
from typing import Optional


class SyncError(Exception):
    """Base class for sync-core conditions."""


class AuthMissing(SyncError):
    """No valid credential is available to open a channel (logged-out state)."""

    def __init__(self, reason: str = "no credential") -> None:
        self.reason = reason
        super().__init__(f"Channel not opened: {reason}")


# Same condition, named after the channel contract.
NoCredential = AuthMissing


class TransportError(SyncError):
    """The channel failed to connect or dropped."""

    def __init__(self, message: str, transport: Optional[str] = None) -> None:
        self.transport = transport
        super().__init__(message)


class MalformedEvent(SyncError):
    """An inbound payload failed shape validation."""

    def __init__(self, event: str, detail: str) -> None:
        self.event = event
        self.detail = detail
        super().__init__(f"Malformed '{event}' payload: {detail}")


class StaleResponse(SyncError):
    """A REST fetch resolved after its owning session was torn down."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"Discarding stale response for {operation}")


class ReconciliationConflict(SyncError):
    """An update implied a regression that the merge rules refuse to apply."""

    def __init__(self, conversation_id: str, local: int, incoming: int) -> None:
        self.conversation_id = conversation_id
        self.local = local
        self.incoming = incoming
        super().__init__(
            f"Unread regression ignored for {conversation_id}: local={local} incoming={incoming}"
        )
