"""
Unit tests for the local presentation adapter (FastAPI) over httpx.ASGITransport.
The sync session behind it uses the fake Socket.IO client and the fake clinic API.
"""
import asyncio
from contextlib import asynccontextmanager

import httpx
import pytest

import clinicsync.db.database as dbmod
import clinicsync.main as main
from clinicsync.db import credentials
from clinicsync.sync.channel import ChannelManager
from clinicsync.sync.session import SyncSession
from conftest import DOCTOR, ME, conversation_json, message_json, wait_until

BLOB = {
    "token": "tok-123",
    "data": {"user": {"_id": ME, "name": "Pat", "isDoctor": False, "unseenNotifications": []}},
}


@asynccontextmanager
async def adapter(tmp_path, monkeypatch, api, socket_server):
    await dbmod.close_db()
    monkeypatch.setattr(dbmod, "DB_PATH", str(tmp_path / "adapter.db"))

    def factory(session, persist=None):
        return SyncSession(
            session,
            rest=api.client(),
            channel_factory=lambda router: ChannelManager(
                router, url="http://clinic.test", transports=["websocket"],
                base_delay=0.01, max_delay=0.02, jitter=0.0,
                client_factory=socket_server.factory,
            ),
            persist=persist,
            drain_timeout=0.5,
        )

    monkeypatch.setattr(main, "session_factory", factory)
    transport = httpx.ASGITransport(app=main.app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
    finally:
        await main.stop_session()
        await dbmod.close_db()


# ─────────────────────────────────────────────
# No session
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_status_and_reads_without_session(tmp_path, monkeypatch, api, socket_server):
    async with adapter(tmp_path, monkeypatch, api, socket_server) as client:
        r = await client.get("/api/status")
        assert r.status_code == 200
        assert r.json()["active"] is False

        assert (await client.get("/api/conversations")).status_code == 409
        assert (await client.get("/api/notifications")).status_code == 409
        assert (await client.post("/api/conversations/C1/open")).status_code == 409


@pytest.mark.asyncio
async def test_health(tmp_path, monkeypatch, api, socket_server):
    async with adapter(tmp_path, monkeypatch, api, socket_server) as client:
        r = await client.get("/health")
        assert r.json() == {"status": "ok", "service": "ClinicSync"}


# ─────────────────────────────────────────────
# Login / logout
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_login_starts_session_and_persists_blob(tmp_path, monkeypatch, api, socket_server):
    api.conversations = [conversation_json(unread=2, minute=2, last="see you")]
    async with adapter(tmp_path, monkeypatch, api, socket_server) as client:
        r = await client.post("/api/session", json=BLOB)
        assert r.status_code == 201
        assert r.json() == {"user_id": ME, "state": "connected", "connected": True}

        status = (await client.get("/api/status")).json()
        assert status["active"] is True
        assert status["total_unread"] == 2

        conversations = (await client.get("/api/conversations")).json()
        assert [(c["id"], c["unread_count"]) for c in conversations] == [("C1", 2)]

        db = await dbmod.get_db()
        assert (await credentials.load_session(db)).user_id == ME
        assert socket_server.current.connect_args["auth"] == {"token": "tok-123"}


@pytest.mark.asyncio
async def test_login_rejects_blob_without_identity(tmp_path, monkeypatch, api, socket_server):
    async with adapter(tmp_path, monkeypatch, api, socket_server) as client:
        r = await client.post("/api/session", json={"token": "t", "data": {}})
        assert r.status_code == 422
        assert socket_server.clients == []


@pytest.mark.asyncio
async def test_logout_clears_credential(tmp_path, monkeypatch, api, socket_server):
    async with adapter(tmp_path, monkeypatch, api, socket_server) as client:
        await client.post("/api/session", json=BLOB)

        r = await client.delete("/api/session")
        assert r.json() == {"ok": True, "cleared": True}
        assert (await client.get("/api/status")).json()["active"] is False
        db = await dbmod.get_db()
        assert await credentials.load_session(db) is None


# ─────────────────────────────────────────────
# Conversations
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_open_conversation_and_read_messages(tmp_path, monkeypatch, api, socket_server):
    api.conversations = [conversation_json(unread=1, minute=1, last="body of m1")]
    api.messages["C1"] = [message_json("m1", 1)]
    async with adapter(tmp_path, monkeypatch, api, socket_server) as client:
        await client.post("/api/session", json=BLOB)

        r = await client.post("/api/conversations/C1/open")
        assert r.json() == {"ok": True, "active": "C1"}

        body = (await client.get("/api/conversations/C1/messages")).json()
        assert [m["id"] for m in body["messages"]] == ["m1"]
        assert body["unread_count"] == 0
        assert body["typing"] == []


@pytest.mark.asyncio
async def test_send_message(tmp_path, monkeypatch, api, socket_server):
    async with adapter(tmp_path, monkeypatch, api, socket_server) as client:
        await client.post("/api/session", json=BLOB)

        r = await client.post("/api/conversations/C1/messages", json={"content": "hello"})
        assert r.status_code == 202
        assert ("send-message", {"conversationId": "C1", "content": "hello"}) in socket_server.current.emitted

        r = await client.post("/api/conversations/C1/messages", json={"content": "  "})
        assert r.status_code == 422


@pytest.mark.asyncio
async def test_start_conversation(tmp_path, monkeypatch, api, socket_server):
    async with adapter(tmp_path, monkeypatch, api, socket_server) as client:
        await client.post("/api/session", json=BLOB)

        r = await client.post("/api/conversations", json={"doctor_id": DOCTOR})
        assert r.status_code == 201
        assert r.json()["id"] == f"conv-{DOCTOR}"


# ─────────────────────────────────────────────
# Notifications, presence, events
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_notifications_and_acknowledgement(tmp_path, monkeypatch, api, socket_server):
    api.user["unseenNotifications"] = [{"_id": "n1", "message": "Appointment approved"}]
    async with adapter(tmp_path, monkeypatch, api, socket_server) as client:
        await client.post("/api/session", json=BLOB)

        listed = (await client.get("/api/notifications")).json()
        assert [n["id"] for n in listed] == ["n1"]

        r = await client.post("/api/notifications/seen")
        assert r.json() == {"ok": True, "removed": 1}
        assert (await client.get("/api/notifications")).json() == []


@pytest.mark.asyncio
async def test_presence_unknown_until_event(tmp_path, monkeypatch, api, socket_server):
    async with adapter(tmp_path, monkeypatch, api, socket_server) as client:
        await client.post("/api/session", json=BLOB)

        assert (await client.get(f"/api/presence/{DOCTOR}")).json() == {"user_id": DOCTOR, "online": None}
        await socket_server.current.deliver("user-online", {"userId": DOCTOR})
        await wait_until(lambda: main._sync.store.is_online(DOCTOR) is True)
        assert (await client.get(f"/api/presence/{DOCTOR}")).json()["online"] is True


@pytest.mark.asyncio
async def test_store_changes_fan_out_to_subscribers(tmp_path, monkeypatch, api, socket_server):
    queue: asyncio.Queue = asyncio.Queue()
    main._subscribers.add(queue)
    try:
        async with adapter(tmp_path, monkeypatch, api, socket_server) as client:
            await client.post("/api/session", json=BLOB)
            await socket_server.current.deliver(
                "new-notification", {"_id": "n9", "message": "Dr. Who accepted your request"})
            await wait_until(lambda: main._sync.store.unseen_notifications() != [])

            seen = []
            while not queue.empty():
                seen.append(queue.get_nowait())
            kinds = [event for event, _ in seen]
            assert ("connection", {"connected": True}) in seen
            assert ("session", {"active": True, "user_id": ME}) in seen
            assert ("store", {"kind": "notifications", "key": "n9"}) in seen
            assert "alert" in kinds
    finally:
        main._subscribers.discard(queue)


@pytest.mark.asyncio
async def test_load_history_merges_older_page(tmp_path, monkeypatch, api, socket_server):
    api.messages["C1"] = [message_json("m1", 1), message_json("m2", 2)]
    async with adapter(tmp_path, monkeypatch, api, socket_server) as client:
        await client.post("/api/session", json=BLOB)

        r = await client.post("/api/conversations/C1/history", params={"page": 2})
        assert r.json()["count"] == 2
        assert r.json()["pagination"]["hasMore"] is False
        assert api.requests[-1][2] == {"page": "2", "limit": "50"}
