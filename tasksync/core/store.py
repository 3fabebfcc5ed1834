from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import aiosqlite
import orjson

from . import proto

"""
Store adapter
-------------
The collaboration layer only *asks* the durable store three things:
  1. does this user exist and is it active?        (identity gate)
  2. who may see / join this task?                  (room joins)
  3. what tasks does this user hold right now?      (full refresh on reconnect)

Task documents are stored whole (the shape the CRUD layer returns) with
task_shares as an index for (3). The seeding helpers exist for development
and tests; filtering, pagination and validation live in the CRUD layer.
"""

log = logging.getLogger("tasksync.store")

SCHEMA = """
CREATE TABLE IF NOT EXISTS users(
    user_id   TEXT PRIMARY KEY,
    name      TEXT NOT NULL DEFAULT '',
    email     TEXT NOT NULL DEFAULT '',
    is_active INTEGER NOT NULL DEFAULT 1
);
CREATE TABLE IF NOT EXISTS tasks(
    task_id    TEXT PRIMARY KEY,
    owner_id   TEXT NOT NULL,
    doc        TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS task_shares(
    task_id    TEXT NOT NULL REFERENCES tasks(task_id) ON DELETE CASCADE,
    user_id    TEXT NOT NULL,
    permission TEXT NOT NULL DEFAULT 'read',
    PRIMARY KEY (task_id, user_id)
);
CREATE INDEX IF NOT EXISTS idx_task_shares_user ON task_shares(user_id);
CREATE INDEX IF NOT EXISTS idx_tasks_owner ON tasks(owner_id);
"""


def utc_stamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(slots=True)
class UserRecord:
    user_id: str
    name: str
    email: str
    is_active: bool


class Store:
    def __init__(self, path: str = "tasksync.db") -> None:
        self.path = path
        self._db: Optional[aiosqlite.Connection] = None

    async def open(self) -> "Store":
        self._db = await aiosqlite.connect(self.path)
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._db.executescript(SCHEMA)
        await self._db.commit()
        log.info("Opened store %s", self.path)
        return self

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> "Store":
        return await self.open()

    async def __aexit__(self, *exc) -> None:
        await self.close()

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("store is not open")
        return self._db

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def upsert_user(self, user_id: str, name: str = "", email: str = "", is_active: bool = True) -> UserRecord:
        await self.db.execute(
            "INSERT INTO users(user_id,name,email,is_active) VALUES(?,?,?,?) "
            "ON CONFLICT(user_id) DO UPDATE SET name=excluded.name, email=excluded.email, is_active=excluded.is_active",
            (user_id, name, email, int(is_active)),
        )
        await self.db.commit()
        return UserRecord(user_id, name, email, is_active)

    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        cur = await self.db.execute("SELECT user_id,name,email,is_active FROM users WHERE user_id=?", (user_id,))
        row = await cur.fetchone()
        if not row:
            return None
        return UserRecord(row[0], row[1], row[2], bool(row[3]))

    async def set_active(self, user_id: str, is_active: bool) -> None:
        await self.db.execute("UPDATE users SET is_active=? WHERE user_id=?", (int(is_active), user_id))
        await self.db.commit()

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def save_task(self, doc: Dict[str, Any], *, touch: bool = True) -> Dict[str, Any]:
        doc = dict(doc)
        task_id = proto.task_id_of(doc)
        owner, _ = proto.task_parties(doc)
        doc.setdefault("id", task_id)
        doc.setdefault("sharedWith", [])
        if touch or "updatedAt" not in doc:
            doc["updatedAt"] = utc_stamp()
        await self.db.execute(
            "INSERT INTO tasks(task_id,owner_id,doc,updated_at) VALUES(?,?,?,?) "
            "ON CONFLICT(task_id) DO UPDATE SET owner_id=excluded.owner_id, doc=excluded.doc, updated_at=excluded.updated_at",
            (task_id, owner, orjson.dumps(doc).decode("utf-8"), doc["updatedAt"]),
        )
        await self.db.execute("DELETE FROM task_shares WHERE task_id=?", (task_id,))
        for entry in doc["sharedWith"]:
            uid = proto.ref_id(entry.get("user"))
            if uid and uid != owner:
                await self.db.execute(
                    "INSERT OR REPLACE INTO task_shares(task_id,user_id,permission) VALUES(?,?,?)",
                    (task_id, uid, entry.get("permission", "read")),
                )
        await self.db.commit()
        return doc

    async def get_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        cur = await self.db.execute("SELECT doc FROM tasks WHERE task_id=?", (task_id,))
        row = await cur.fetchone()
        return orjson.loads(row[0]) if row else None

    async def tasks_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        cur = await self.db.execute(
            "SELECT doc FROM tasks WHERE owner_id=? "
            "OR task_id IN (SELECT task_id FROM task_shares WHERE user_id=?) "
            "ORDER BY updated_at DESC",
            (user_id, user_id),
        )
        rows = await cur.fetchall()
        return [orjson.loads(r[0]) for r in rows]

    async def share_task(self, task_id: str, user_id: str, permission: str = "read") -> Dict[str, Any]:
        if permission not in proto.PERMISSION_RANK:
            raise ValueError(f"unknown permission {permission!r}")
        doc = await self._require_task(task_id)
        shared = [e for e in doc.get("sharedWith") or [] if proto.ref_id(e.get("user")) != user_id]
        shared.append({"user": user_id, "permission": permission, "sharedAt": utc_stamp()})
        doc["sharedWith"] = shared
        return await self.save_task(doc)

    async def unshare_task(self, task_id: str, user_id: str) -> Dict[str, Any]:
        doc = await self._require_task(task_id)
        doc["sharedWith"] = [e for e in doc.get("sharedWith") or [] if proto.ref_id(e.get("user")) != user_id]
        return await self.save_task(doc)

    async def delete_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        """Returns the document as it was, so the caller can compute the audience."""

        doc = await self.get_task(task_id)
        if doc is None:
            return None
        await self.db.execute("DELETE FROM tasks WHERE task_id=?", (task_id,))
        await self.db.commit()
        return doc

    async def has_permission(self, task_id: str, user_id: str, level: str = "read") -> bool:
        doc = await self.get_task(task_id)
        if doc is None:
            return False
        return proto.has_permission(doc, user_id, level)

    async def _require_task(self, task_id: str) -> Dict[str, Any]:
        doc = await self.get_task(task_id)
        if doc is None:
            raise KeyError(task_id)
        return doc


__all__ = ["Store", "UserRecord", "SCHEMA", "utc_stamp"]
