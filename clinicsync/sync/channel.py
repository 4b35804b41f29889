"""
Channel Manager: one authenticated Socket.IO channel per Session.

Lifecycle
---------
``open(session)`` tears down any previous channel, then starts a supervisor
task that connects, waits for the connection to end, and reconnects with
bounded, jittered exponential backoff until ``close()``. The Socket.IO
client's own reconnection is disabled so that every reconnect passes through
the resync step below.

Delivery
--------
Inbound events go into a single inbox drained by one pump task, so the router
sees them strictly in receipt order. After a *re*connect the pump is paused
until the ``on_reconnect`` callback (the snapshot reload) finishes; events
received meanwhile wait in the inbox and are delivered afterwards. Events
still queued from the dropped connection are discarded, since the reload
supersedes them.

Every handler and the pump carry the generation they were created for. A
bump of the generation (``open``/``close``) makes anything still in flight
from an older channel a no-op, so nothing reaches the router after ``close()``
returns.
"""
import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional

import socketio
from socketio.exceptions import ConnectionError as SocketConnectionError, SocketIOError

from clinicsync.config import (
    CONNECT_TIMEOUT,
    RECONNECT_BASE_DELAY,
    RECONNECT_JITTER,
    RECONNECT_MAX_DELAY,
    SOCKET_PATH,
    SOCKET_URL,
    TRANSPORTS,
)
from clinicsync.errors import AuthMissing, TransportError
from clinicsync.models import ChannelState, Session
from clinicsync.sync.router import EventRouter

logger = logging.getLogger(__name__)

_CONNECT_FAILURES = (SocketConnectionError, OSError, asyncio.TimeoutError)


def backoff_delay(
    attempt: int,
    base: float = RECONNECT_BASE_DELAY,
    max_delay: float = RECONNECT_MAX_DELAY,
    jitter: float = RECONNECT_JITTER,
) -> float:
    """Delay before reconnect *attempt* (0-based), never above *max_delay*."""
    delay = min(max_delay, base * (2 ** attempt))
    spread = delay * jitter
    return max(0.0, min(max_delay, delay + random.uniform(-spread, spread)))


class ChannelManager:
    def __init__(
        self,
        router: EventRouter,
        *,
        url: str = SOCKET_URL,
        socketio_path: str = SOCKET_PATH,
        transports: Optional[list[str]] = None,
        base_delay: float = RECONNECT_BASE_DELAY,
        max_delay: float = RECONNECT_MAX_DELAY,
        jitter: float = RECONNECT_JITTER,
        connect_timeout: float = CONNECT_TIMEOUT,
        on_reconnect: Optional[Callable[[], Awaitable[None]]] = None,
        on_auth_lost: Optional[Callable[[str], None]] = None,
        client_factory: Callable[..., Any] = socketio.AsyncClient,
    ) -> None:
        self._router = router
        self._url = url
        self._socketio_path = socketio_path
        self._transports = list(transports or TRANSPORTS)
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._jitter = jitter
        self._connect_timeout = connect_timeout
        self.on_reconnect = on_reconnect
        self.on_auth_lost = on_auth_lost
        self._client_factory = client_factory

        self._state = ChannelState.DISCONNECTED
        self._connected = False
        self._connected_listeners: list[Callable[[bool], None]] = []
        self._generation = 0
        # Bumped on every drop; inbox entries from an earlier connection are stale.
        self._epoch = 0
        self._client: Any = None
        self._supervisor: Optional[asyncio.Task] = None
        self._pump: Optional[asyncio.Task] = None
        self._inbox: Optional[asyncio.Queue] = None
        self._ready: Optional[asyncio.Event] = None
        self._rejection: Optional[str] = None
        self.transport: Optional[str] = None

    # ─────────────────────────────────────────────
    # Observables
    # ─────────────────────────────────────────────

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._connected

    def subscribe_connected(self, listener: Callable[[bool], None]) -> Callable[[], None]:
        self._connected_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._connected_listeners:
                self._connected_listeners.remove(listener)

        return unsubscribe

    def _set_state(self, state: ChannelState) -> None:
        if state != self._state:
            logger.debug(f"Channel state {self._state.value} -> {state.value}")
            self._state = state

    def _set_connected(self, value: bool) -> None:
        if value:
            self._set_state(ChannelState.CONNECTED)
        if value == self._connected:
            return
        self._connected = value
        for listener in list(self._connected_listeners):
            try:
                listener(value)
            except Exception as exc:
                logger.warning("Connected listener failed: %s: %s", type(exc).__name__, exc)

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    # ─────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────

    async def open(self, session: Optional[Session]) -> ChannelState:
        """
        Open the channel for *session* and wait for the first connect attempt.

        Raises AuthMissing when there is no token (the logged-out state). A
        failed first attempt is not an error: the channel is then Reconnecting.
        """
        if session is None or not session.token:
            logger.info("No credential available; channel not opened")
            raise AuthMissing("no token")

        self._generation += 1
        generation = self._generation
        await self._teardown()

        self._inbox = asyncio.Queue()
        self._ready = asyncio.Event()
        self._ready.set()
        first_attempt = asyncio.get_running_loop().create_future()
        self._pump = asyncio.create_task(self._run_pump(generation), name=f"channel-pump-{generation}")
        self._supervisor = asyncio.create_task(
            self._supervise(generation, session.token, first_attempt),
            name=f"channel-supervisor-{generation}",
        )
        await first_attempt
        return self._state

    async def close(self) -> None:
        """Release the transport and detach all handlers. No event is delivered after this returns."""
        self._generation += 1
        await self._teardown()
        self._router.unregister_all()
        self._set_state(ChannelState.CLOSED)
        logger.info("Channel closed")

    async def _teardown(self) -> None:
        tasks = [t for t in (self._supervisor, self._pump) if t is not None]
        self._supervisor = self._pump = None
        current = asyncio.current_task()
        for task in tasks:
            if task is not current:
                task.cancel()
        for task in tasks:
            if task is current:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass
        client, self._client = self._client, None
        if client is not None:
            await self._disconnect_quietly(client)
        self._inbox = None
        self._ready = None
        self._set_connected(False)
        if self._state != ChannelState.CLOSED:
            self._set_state(ChannelState.DISCONNECTED)

    @staticmethod
    async def _disconnect_quietly(client: Any) -> None:
        try:
            await client.disconnect()
        except Exception as exc:
            logger.debug("Ignoring error while disconnecting: %s: %s", type(exc).__name__, exc)

    # ─────────────────────────────────────────────
    # Supervisor
    # ─────────────────────────────────────────────

    async def _supervise(self, generation: int, token: str, first_attempt: asyncio.Future) -> None:
        attempt = 0
        try:
            while self._is_current(generation):
                # Once open() has returned, every successful connect is a reconnect.
                reconnecting = first_attempt.done()
                self._set_state(ChannelState.RECONNECTING if reconnecting else ChannelState.CONNECTING)
                if reconnecting:
                    # Hold live events until the snapshot reload has run.
                    self._ready.clear()
                try:
                    client = await self._connect(generation, token)
                except AuthMissing as exc:
                    logger.info(f"Channel credential rejected: {exc.reason}")
                    self._set_state(ChannelState.CLOSED)
                    _resolve(first_attempt)
                    if self.on_auth_lost is not None:
                        self.on_auth_lost(exc.reason)
                    return
                except TransportError as exc:
                    logger.warning(f"Channel connect failed: {exc}")
                else:
                    if not self._is_current(generation):
                        await self._disconnect_quietly(client)
                        return
                    attempt = 0
                    self._client = client
                    self._set_connected(True)
                    _resolve(first_attempt)
                    if reconnecting:
                        await self._resync(generation)
                    await client.wait()
                    self._set_connected(False)
                    self._epoch += 1
                    if not self._is_current(generation):
                        return
                    logger.warning("Channel dropped; reconnecting")

                _resolve(first_attempt)
                delay = backoff_delay(attempt, self._base_delay, self._max_delay, self._jitter)
                attempt += 1
                self._set_state(ChannelState.RECONNECTING)
                logger.info(f"Reconnect attempt {attempt} in {delay:.2f}s")
                await asyncio.sleep(delay)
        finally:
            _resolve(first_attempt)

    async def _connect(self, generation: int, token: str) -> Any:
        """Try each transport in order; return the first connected client."""
        last_error: Optional[BaseException] = None
        for transport in self._transports:
            client = self._client_factory(reconnection=False, logger=False, engineio_logger=False)
            self._bind(client, generation)
            self._rejection = None
            try:
                await client.connect(
                    self._url,
                    auth={"token": token},
                    transports=[transport],
                    socketio_path=self._socketio_path,
                    wait_timeout=self._connect_timeout,
                )
            except asyncio.CancelledError:
                await self._disconnect_quietly(client)
                raise
            except _CONNECT_FAILURES as exc:
                if self._rejection is not None:
                    raise AuthMissing(self._rejection) from exc
                logger.info(f"Transport '{transport}' unavailable: {exc}")
                last_error = exc
                continue
            self.transport = transport
            logger.info(f"Channel connected via {transport}")
            return client
        raise TransportError(f"all transports failed ({last_error})", transport=self._transports[-1] if self._transports else None)

    async def _resync(self, generation: int) -> None:
        if self.on_reconnect is not None:
            try:
                await self.on_reconnect()
            except Exception as exc:
                logger.warning("Reload after reconnect failed: %s: %s", type(exc).__name__, exc)
        if self._is_current(generation) and self._ready is not None:
            self._ready.set()

    def _bind(self, client: Any, generation: int) -> None:
        epoch = self._epoch

        async def on_connect_error(data: Any = None) -> None:
            message = data.get("message", "") if isinstance(data, dict) else str(data or "")
            if _is_rejection(data):
                self._rejection = message
            logger.debug(f"Channel connect_error: {message}")

        async def on_disconnect(*args: Any) -> None:
            logger.debug(f"Channel transport disconnected {args}")

        async def on_any(event: str, *args: Any) -> None:
            if not self._is_current(generation) or self._inbox is None:
                logger.debug(f"Dropping '{event}' from a closed channel")
                return
            self._inbox.put_nowait((epoch, event, args[0] if args else None))

        client.on("connect_error", on_connect_error)
        client.on("disconnect", on_disconnect)
        client.on("*", on_any)

    async def _run_pump(self, generation: int) -> None:
        inbox, ready = self._inbox, self._ready
        while self._is_current(generation):
            epoch, event, payload = await inbox.get()
            await ready.wait()
            if not self._is_current(generation):
                return
            if epoch != self._epoch:
                logger.debug(f"Discarding '{event}' received before the reconnect")
                continue
            await self._router.dispatch(event, payload)

    # ─────────────────────────────────────────────
    # Outbound
    # ─────────────────────────────────────────────

    async def emit(self, event: str, data: dict) -> bool:
        client = self._client
        if not self._connected or client is None:
            logger.debug(f"Not connected; '{event}' not sent")
            return False
        try:
            await client.emit(event, data)
        except SocketIOError as exc:
            logger.warning(f"Emit '{event}' failed: {exc}")
            return False
        return True

    async def join_conversation(self, conversation_id: str) -> bool:
        return await self.emit("join-conversation", {"conversationId": conversation_id})

    async def send_message(self, conversation_id: str, content: str) -> bool:
        return await self.emit("send-message", {"conversationId": conversation_id, "content": content})

    async def typing(self, conversation_id: str) -> bool:
        return await self.emit("typing", {"conversationId": conversation_id})

    async def stop_typing(self, conversation_id: str) -> bool:
        return await self.emit("stop-typing", {"conversationId": conversation_id})

    async def mark_read(self, conversation_id: str) -> bool:
        return await self.emit("mark-read", {"conversationId": conversation_id})


def _is_rejection(data: Any) -> bool:
    """
    True for a connect_error the server sent from its auth middleware.

    The middleware answers with ``{"message": ...}`` for every refusal
    ("Authentication failed", "User not found", ...). Engine.io transport
    failures also reach connect_error, but with the HTTP error body, which
    carries a numeric ``code``; plain network errors carry a string.
    """
    return isinstance(data, dict) and bool(data.get("message")) and "code" not in data


def _resolve(future: asyncio.Future) -> None:
    if not future.done():
        future.set_result(None)
