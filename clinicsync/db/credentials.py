"""
Persisted credential blob.

The blob is the login response the clinic API hands out:
``{"token": ..., "data": {"user": {"_id", "name", "isDoctor", "unseenNotifications": [...]}}}``.
It is read at startup to build the Session and rewritten whenever the unseen
notification list changes, so a restart does not lose unseen state before the
channel is back.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Optional

import aiosqlite

from clinicsync.models import Notification, Session

logger = logging.getLogger(__name__)

DEFAULT_KEY = "user"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _user(blob: dict) -> dict:
    data = blob.get("data") if isinstance(blob.get("data"), dict) else {}
    user = data.get("user")
    return user if isinstance(user, dict) else {}


async def load_blob(db: aiosqlite.Connection, key: str = DEFAULT_KEY) -> Optional[dict]:
    async with db.execute("SELECT blob FROM credentials WHERE key = ?", (key,)) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    try:
        blob = json.loads(row["blob"])
    except ValueError as e:
        logger.warning(f"Stored credential blob '{key}' is not valid JSON: {e}")
        return None
    return blob if isinstance(blob, dict) else None


async def save_blob(db: aiosqlite.Connection, blob: dict, key: str = DEFAULT_KEY) -> None:
    await db.execute(
        "INSERT INTO credentials (key, blob, updated_at) VALUES (?, ?, ?) "
        "ON CONFLICT(key) DO UPDATE SET blob = excluded.blob, updated_at = excluded.updated_at",
        (key, json.dumps(blob), _now()),
    )
    await db.commit()


async def clear(db: aiosqlite.Connection, key: str = DEFAULT_KEY) -> bool:
    async with db.execute("DELETE FROM credentials WHERE key = ?", (key,)) as cur:
        deleted = cur.rowcount
    await db.commit()
    return deleted > 0


def session_from_blob(blob: Optional[dict]) -> Optional[Session]:
    """Build a Session, or None when the blob carries no usable token/identity."""
    if not blob or not blob.get("token"):
        return None
    user = _user(blob)
    user_id = user.get("_id") or user.get("id")
    if not user_id:
        logger.warning("Credential blob has a token but no user id; ignoring it")
        return None
    unseen = user.get("unseenNotifications")
    return Session(
        token=str(blob["token"]),
        user_id=str(user_id),
        user_name=user.get("name", ""),
        is_doctor=bool(user.get("isDoctor", False)),
        unseen_notifications=list(unseen) if isinstance(unseen, list) else [],
    )


async def load_session(db: aiosqlite.Connection, key: str = DEFAULT_KEY) -> Optional[Session]:
    return session_from_blob(await load_blob(db, key))


def notification_to_dict(n: Notification) -> dict:
    out = {"_id": n.id, "message": n.message, "read": n.read, "data": n.data}
    if n.type is not None:
        out["type"] = n.type
    if n.on_click_path is not None:
        out["onClickPath"] = n.on_click_path
    if n.created_at is not None:
        out["createdAt"] = n.created_at.isoformat()
    return out


async def update_unseen_notifications(
    db: aiosqlite.Connection, notifications: list[Notification], key: str = DEFAULT_KEY
) -> bool:
    """Rewrite the denormalized unseen list inside the stored blob. False if nothing is stored."""
    blob = await load_blob(db, key)
    if blob is None:
        return False
    data = blob.setdefault("data", {})
    user = data.setdefault("user", {})
    user["unseenNotifications"] = [notification_to_dict(n) for n in notifications]
    await save_blob(db, blob, key)
    return True
