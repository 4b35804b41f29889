"""
ClinicSync main entry point.

Starts a local FastAPI server that owns at most one SyncSession and exposes
its read/subscribe contract to a presentation layer:
  1. REST reads of the reconciled store (conversations, messages, notifications, presence)
  2. User actions (login/logout, open a conversation, send, acknowledge)
  3. An SSE stream at /events carrying store changes, connectivity and alerts
"""
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from clinicsync.config import CLIENT_VERSION, HOST, PORT, get_config_dict, save_config_dict
from clinicsync.db import credentials
from clinicsync.db.database import close_db, get_db
from clinicsync.errors import AuthMissing
from clinicsync.models import Conversation, Message, Notification, Session
from clinicsync.sync.session import SyncSession

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("clinicsync")

# Replaced in tests to inject a fake channel and REST boundary.
session_factory = SyncSession

_sync: Optional[SyncSession] = None
_subscribers: set[asyncio.Queue] = set()
_detach: list = []


# ─────────────────────────────────────────────
# Session ownership
# ─────────────────────────────────────────────

def _broadcast(event_type: str, payload: dict) -> None:
    for queue in list(_subscribers):
        queue.put_nowait((event_type, payload))


async def _persist_unseen(notifications: list[Notification]) -> None:
    db = await get_db()
    await credentials.update_unseen_notifications(db, notifications)


def _on_session_ended(sync: SyncSession, reason: str) -> None:
    global _sync
    if _sync is not sync:
        return
    _sync = None
    for detach in _detach:
        detach()
    _detach.clear()
    _broadcast("session", {"active": False, "reason": reason})
    asyncio.create_task(_forget_credential(), name="forget-credential")


async def _forget_credential() -> None:
    db = await get_db()
    await credentials.clear(db)


async def start_session(session: Session) -> SyncSession:
    """Stop any running session, then start one for *session*."""
    global _sync
    await stop_session()
    sync = session_factory(session, persist=_persist_unseen)
    sync.on_ended = lambda reason: _on_session_ended(sync, reason)
    _detach.append(sync.store.subscribe(
        lambda change: _broadcast("store", {"kind": change.kind, "key": change.key})
    ))
    _detach.append(sync.on_alert(lambda n: _broadcast("alert", _notification_dict(n))))
    _detach.append(sync.channel.subscribe_connected(
        lambda connected: _broadcast("connection", {"connected": connected})
    ))
    _sync = sync
    try:
        await sync.start()
    except AuthMissing:
        _sync = None
        for detach in _detach:
            detach()
        _detach.clear()
        await sync.rest.aclose()
        raise
    _broadcast("session", {"active": True, "user_id": session.user_id})
    return sync


async def stop_session() -> None:
    global _sync
    sync, _sync = _sync, None
    for detach in _detach:
        detach()
    _detach.clear()
    if sync is not None:
        await sync.stop()
        _broadcast("session", {"active": False, "reason": "logout"})


def _require_session() -> SyncSession:
    if _sync is None or not _sync.active:
        raise HTTPException(status_code=409, detail="no active session")
    return _sync


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: resume the persisted login, if any
    db = await get_db()
    session = await credentials.load_session(db)
    if session is not None:
        try:
            await start_session(session)
        except AuthMissing as e:
            logger.info(f"Persisted credential not usable: {e}")
    else:
        logger.info("No persisted credential; waiting for login")
    logger.info(f"ClinicSync running at http://{HOST}:{PORT}")
    yield
    # Shutdown: end the session and close DB
    await stop_session()
    await close_db()


app = FastAPI(
    title="ClinicSync",
    description="Realtime event-sync client for the clinic messaging and notification service.",
    version=CLIENT_VERSION,
    lifespan=lifespan,
)


# ─────────────────────────────────────────────
# Serialization
# ─────────────────────────────────────────────

def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _conversation_dict(c: Conversation) -> dict:
    return {"id": c.id, "participants": c.participants, "participant_details": c.participant_details,
            "last_message": c.last_message, "last_message_time": _iso(c.last_message_time),
            "unread_count": c.unread_count}


def _message_dict(m: Message) -> dict:
    return {"id": m.id, "conversation_id": m.conversation_id, "sender_id": m.sender_id,
            "sender_name": m.sender_name, "sender_type": m.sender_type, "body": m.body,
            "created_at": _iso(m.created_at), "delivery_state": m.delivery_state}


def _notification_dict(n: Notification) -> dict:
    out = asdict(n)
    out["created_at"] = _iso(n.created_at)
    return out


# ─────────────────────────────────────────────
# SSE stream of store changes
# ─────────────────────────────────────────────

@app.get("/events")
async def sse_stream(request: Request):
    """
    SSE stream consumed by the presentation layer.
    Each store change is announced by kind/key; clients re-read what they render.
    """
    queue: asyncio.Queue = asyncio.Queue()
    _subscribers.add(queue)

    async def event_generator():
        try:
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event_type, payload = await asyncio.wait_for(queue.get(), timeout=15)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield f"event: {event_type}\ndata: {json.dumps(payload)}\n\n"
        finally:
            _subscribers.discard(queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


# ─────────────────────────────────────────────
# Session (login / logout)
# ─────────────────────────────────────────────

class LoginBlob(BaseModel):
    token: str
    data: dict


@app.get("/api/status")
async def api_status():
    if _sync is None or not _sync.active:
        return {"active": False, "connected": False, "state": None, "user_id": None}
    return {"active": True, "connected": _sync.connected, "state": _sync.state.value,
            "user_id": _sync.session.user_id, "user_name": _sync.session.user_name,
            "total_unread": _sync.store.total_unread()}


@app.post("/api/session", status_code=201)
async def api_login(body: LoginBlob):
    blob = body.model_dump()
    session = credentials.session_from_blob(blob)
    if session is None:
        raise HTTPException(status_code=422, detail="credential blob has no token or user id")
    db = await get_db()
    await credentials.save_blob(db, blob)
    try:
        sync = await start_session(session)
    except AuthMissing as e:
        raise HTTPException(status_code=401, detail=e.reason)
    return {"user_id": session.user_id, "state": sync.state.value, "connected": sync.connected}


@app.delete("/api/session")
async def api_logout():
    await stop_session()
    db = await get_db()
    removed = await credentials.clear(db)
    return {"ok": True, "cleared": removed}


# ─────────────────────────────────────────────
# Conversations and messages
# ─────────────────────────────────────────────

class MessageCreate(BaseModel):
    content: str


class ConversationCreate(BaseModel):
    doctor_id: str


@app.get("/api/conversations")
async def api_conversations():
    sync = _require_session()
    return [_conversation_dict(c) for c in sync.store.conversations()]


@app.post("/api/conversations", status_code=201)
async def api_start_conversation(body: ConversationCreate):
    sync = _require_session()
    conversation_id = await sync.start_conversation(body.doctor_id)
    return _conversation_dict(sync.store.conversation(conversation_id))


@app.delete("/api/conversations/{conversation_id}")
async def api_delete_conversation(conversation_id: str):
    sync = _require_session()
    await sync.delete_conversation(conversation_id)
    return {"ok": True}


@app.get("/api/conversations/{conversation_id}/messages")
async def api_messages(conversation_id: str):
    sync = _require_session()
    return {
        "messages": [_message_dict(m) for m in sync.store.messages(conversation_id)],
        "typing": sync.store.typing_users(conversation_id),
        "unread_count": sync.store.unread_count(conversation_id),
    }


@app.post("/api/conversations/{conversation_id}/open")
async def api_open_conversation(conversation_id: str):
    sync = _require_session()
    await sync.select_conversation(conversation_id)
    return {"ok": True, "active": conversation_id}


@app.post("/api/conversations/{conversation_id}/history")
async def api_load_history(conversation_id: str, page: int = 2):
    sync = _require_session()
    pagination = await sync.load_older_messages(conversation_id, page)
    if pagination is None:
        raise HTTPException(status_code=503, detail="history not available right now")
    return {"pagination": pagination, "count": len(sync.store.messages(conversation_id))}


@app.post("/api/conversations/{conversation_id}/close")
async def api_close_conversation(conversation_id: str):
    sync = _require_session()
    if sync.store.active_conversation_id == conversation_id:
        sync.leave_conversation()
    return {"ok": True}


@app.post("/api/conversations/{conversation_id}/messages", status_code=202)
async def api_send_message(conversation_id: str, body: MessageCreate):
    sync = _require_session()
    if not body.content.strip():
        raise HTTPException(status_code=422, detail="empty message")
    sent = await sync.send_message(conversation_id, body.content)
    if not sent:
        raise HTTPException(status_code=503, detail="channel not connected")
    return {"ok": True}


@app.post("/api/conversations/{conversation_id}/typing")
async def api_typing(conversation_id: str, active: bool = True):
    sync = _require_session()
    if active:
        sent = await sync.notify_typing(conversation_id)
    else:
        sent = await sync.notify_stop_typing(conversation_id)
    return {"ok": sent}


# ─────────────────────────────────────────────
# Notifications and presence
# ─────────────────────────────────────────────

@app.get("/api/notifications")
async def api_notifications():
    sync = _require_session()
    return [_notification_dict(n) for n in sync.store.unseen_notifications()]


@app.post("/api/notifications/seen")
async def api_notifications_seen():
    sync = _require_session()
    removed = await sync.acknowledge_notifications()
    return {"ok": True, "removed": removed}


@app.delete("/api/notifications")
async def api_notifications_delete():
    sync = _require_session()
    removed = await sync.delete_notifications()
    return {"ok": True, "removed": removed}


@app.get("/api/presence/{user_id}")
async def api_presence(user_id: str):
    sync = _require_session()
    return {"user_id": user_id, "online": sync.store.is_online(user_id)}


# ─────────────────────────────────────────────
# Settings
# ─────────────────────────────────────────────

@app.get("/api/settings")
async def api_settings():
    return get_config_dict()


@app.put("/api/settings")
async def api_settings_update(body: dict):
    # Takes effect on the next start; running connections keep their settings.
    save_config_dict(body)
    return {"ok": True, "restart_required": True}


# ─────────────────────────────────────────────
# Health check
# ─────────────────────────────────────────────

@app.get("/health")
async def health():
    return {"status": "ok", "service": "ClinicSync"}


# ─────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run("clinicsync.main:app", host=HOST, port=PORT, reload=True)
