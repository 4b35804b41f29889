"""
Shared fixtures for the ClinicSync unit tests.

Nothing here talks to a real server: the Socket.IO client is replaced by
FakeSocketServer.factory and the REST boundary by httpx.MockTransport.
"""
import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from socketio.exceptions import ConnectionError as SocketConnectionError

from clinicsync.api.rest import ClinicRestClient
from clinicsync.models import Message, Session

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
ME = "patient-1"
DOCTOR = "doctor-7"


def at(minutes: int) -> datetime:
    return T0 + timedelta(minutes=minutes)


# ─────────────────────────────────────────────
# Fake Socket.IO transport
# ─────────────────────────────────────────────

class FakeSocketClient:
    """Stands in for socketio.AsyncClient: records calls, lets tests push events."""

    # outcome -> connect_error payload sent before the connect fails
    CONNECT_ERRORS = {
        "auth": {"message": "Authentication error"},
        "gone": {"message": "User not found"},
        # engine.io HTTP failures arrive with the server's error body, which carries a code
        "bad-request": {"code": 3, "message": "Bad request"},
    }

    def __init__(self, server: "FakeSocketServer", **kwargs):
        self.server = server
        self.kwargs = kwargs
        self.handlers = {}
        self.emitted = []
        self.connected = False
        self.disconnected = False
        self.connect_args = {}
        self._closed = asyncio.Event()

    def on(self, event, handler=None):
        self.handlers[event] = handler

    async def connect(self, url, auth=None, transports=None, socketio_path=None, wait_timeout=None):
        self.connect_args = {"url": url, "auth": auth, "transports": transports, "socketio_path": socketio_path}
        transport = transports[0]
        self.server.attempts.append(transport)
        outcome = self.server.next_outcome(transport)
        if outcome in self.CONNECT_ERRORS:
            await self.handlers["connect_error"](self.CONNECT_ERRORS[outcome])
            raise SocketConnectionError("One or more namespaces failed to connect")
        if outcome == "fail":
            raise SocketConnectionError("Connection refused by the server")
        if outcome == "hang":
            self.server.pending.append(self)
            await self.server.hold.wait()
        self.connected = True
        self.server.live.append(self)

    async def wait(self):
        await self._closed.wait()

    async def disconnect(self):
        self.connected = False
        self.disconnected = True
        self._closed.set()

    async def emit(self, event, data=None):
        self.emitted.append((event, data))

    async def deliver(self, event, payload):
        """Simulate the server pushing *event*."""
        await self.handlers["*"](event, payload)

    async def drop(self):
        """Simulate the network going away."""
        await self.disconnect()


class FakeSocketServer:
    def __init__(self):
        # transport -> queued outcomes ("ok", "fail", "hang" or a CONNECT_ERRORS key); empty means "ok"
        self.outcomes = {}
        self.attempts = []
        self.clients = []
        self.live = []
        # Clients whose "hang" connect waits here until hold is set.
        self.pending = []
        self.hold = asyncio.Event()

    def script(self, transport, *outcomes):
        self.outcomes.setdefault(transport, []).extend(outcomes)

    def next_outcome(self, transport):
        queued = self.outcomes.get(transport)
        return queued.pop(0) if queued else "ok"

    def factory(self, **kwargs):
        client = FakeSocketClient(self, **kwargs)
        self.clients.append(client)
        return client

    @property
    def current(self):
        return self.live[-1] if self.live else None


# ─────────────────────────────────────────────
# Fake clinic REST service
# ─────────────────────────────────────────────

def envelope(data):
    return httpx.Response(200, json={"status": "success", "message": "ok", "data": data})


def message_json(mid, minute, sender=DOCTOR, cid="C1"):
    return {
        "_id": mid, "conversationId": cid, "senderId": sender, "senderName": "Dr. Who",
        "content": f"body of {mid}", "createdAt": at(minute).isoformat(),
    }


def conversation_json(cid="C1", unread=0, minute=None, last=None):
    raw = {"_id": cid, "participants": [ME, DOCTOR], "unreadCount": {ME: unread, DOCTOR: 0}}
    if minute is not None:
        raw["lastMessageTime"] = at(minute).isoformat()
        raw["lastMessage"] = last or ""
    return raw


class FakeClinicApi:
    """Scriptable stand-in for the clinic REST service."""

    def __init__(self):
        self.conversations = []
        self.messages = {}
        self.user = {"_id": ME, "name": "Pat", "unseenNotifications": []}
        self.requests = []
        self.gate = None

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path, dict(request.url.params)))
        # The list is read on arrival, so a gated response reflects the server as it was then.
        conversations = list(self.conversations)
        if self.gate is not None:
            await self.gate.wait()
        path, method = request.url.path, request.method
        if path.endswith("/chat/conversations"):
            if method == "POST":
                doctor_id = json.loads(request.content)["doctorId"]
                return envelope({"_id": f"conv-{doctor_id}", "participants": [ME, doctor_id],
                                 "unreadCount": {ME: 0, doctor_id: 0}})
            return envelope(conversations)
        if path.endswith("/messages"):
            cid = path.split("/")[-2]
            msgs = self.messages.get(cid, [])
            return envelope({"messages": msgs, "pagination": {"currentPage": 1, "totalPages": 1,
                                                               "totalMessages": len(msgs), "hasMore": False}})
        if path.endswith("/read") or method == "DELETE":
            return envelope(None)
        if path.endswith(f"/user/{ME}"):
            return envelope(self.user)
        if path.endswith("/user/mark-all-notification-as-seen") or path.endswith("/user/delete-all-notifications"):
            self.user["unseenNotifications"] = []
            return envelope(self.user)
        return httpx.Response(404, json={"status": "fail", "message": "not found"})

    def paths(self, method=None):
        return [path for m, path, _ in self.requests if method is None or m == method]

    def client(self):
        return ClinicRestClient("tok-123", base_url="http://clinic.test/api/v1",
                                transport=httpx.MockTransport(self.handler))


@pytest.fixture
def api():
    return FakeClinicApi()


@pytest.fixture
def socket_server():
    return FakeSocketServer()


@pytest.fixture
def session():
    return Session(token="tok-123", user_id=ME, user_name="Pat")


@pytest.fixture
def make_message():
    def _make(mid, minute, sender=DOCTOR, conversation_id="C1", body=None):
        return Message(
            id=mid,
            conversation_id=conversation_id,
            sender_id=sender,
            sender_name="Dr. Who" if sender == DOCTOR else "Pat",
            body=body or f"body of {mid}",
            created_at=at(minute),
        )
    return _make


async def wait_until(predicate, timeout=2.0):
    """Poll *predicate* until true; fails the test after *timeout* seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)
