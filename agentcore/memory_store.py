import logging
import uuid
from typing import Any, Dict, List, Optional

from .db import Database, _json_dumps, _json_loads, utc_now
from .errors import NotFound, ValidationError

logger = logging.getLogger("uvicorn.error")

MESSAGE_ROLES = {"system", "user", "assistant", "tool"}


def _thread_from_row(row: Any) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "name": row["name"],
        "metadata": _json_loads(row["metadata_json"], {}),
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def _message_from_row(row: Any) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "seq": row["seq"],
        "thread_id": row["thread_id"],
        "role": row["role"],
        "content": row["content"],
        "tool_name": row["tool_name"],
        "tool_call_id": row["tool_call_id"],
        "metadata": _json_loads(row["metadata_json"], {}),
        "created_at": row["created_at"],
    }


class MemoryThreadStore:
    """Durable threads: an append-only message log plus one state blob per (thread, agent).

    Messages are ordered by an autoincrement sequence, so creation order is
    preserved even when timestamps collide. Concurrent writers on the same
    thread are not serialized here.
    """

    def __init__(self, db: Database):
        self.db = db

    async def create_thread(
        self,
        name: str = "New thread",
        thread_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        thread_id = thread_id or uuid.uuid4().hex
        now = utc_now()
        await self.db.execute(
            "INSERT OR IGNORE INTO memory_threads(id, name, metadata_json, created_at, updated_at) VALUES (?,?,?,?,?)",
            (thread_id, name, _json_dumps(metadata or {}), now, now),
        )
        thread = await self.get_thread(thread_id)
        assert thread is not None
        return thread

    async def get_thread(self, thread_id: str) -> Optional[Dict[str, Any]]:
        row = await self.db.fetchone(
            "SELECT id, name, metadata_json, created_at, updated_at FROM memory_threads WHERE id=?",
            (thread_id,),
        )
        return _thread_from_row(row) if row else None

    async def list_threads(self, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        rows = await self.db.fetchall(
            "SELECT id, name, metadata_json, created_at, updated_at FROM memory_threads "
            "ORDER BY updated_at DESC, id ASC LIMIT ? OFFSET ?",
            (limit, offset),
        )
        return [_thread_from_row(row) for row in rows]

    async def load_messages(self, thread_id: str) -> List[Dict[str, Any]]:
        rows = await self.db.fetchall(
            "SELECT seq, id, thread_id, role, content, tool_name, tool_call_id, metadata_json, created_at "
            "FROM messages WHERE thread_id=? ORDER BY seq ASC",
            (thread_id,),
        )
        return [_message_from_row(row) for row in rows]

    async def append_message(
        self,
        thread_id: str,
        role: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
        tool_name: Optional[str] = None,
        tool_call_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if role not in MESSAGE_ROLES:
            raise ValidationError(f"Unknown message role: {role}")
        if role == "system":
            message = await self.ensure_system_message(thread_id, content, metadata)
            return message
        message_id = uuid.uuid4().hex
        now = utc_now()
        async with self.db.transaction() as db:
            await self._require_thread(db, thread_id)
            cursor = await db.execute(
                "INSERT INTO messages(id, thread_id, role, content, tool_name, tool_call_id, metadata_json, created_at) "
                "VALUES (?,?,?,?,?,?,?,?)",
                (message_id, thread_id, role, content, tool_name, tool_call_id, _json_dumps(metadata or {}), now),
            )
            seq = cursor.lastrowid
            await cursor.close()
            await db.execute("UPDATE memory_threads SET updated_at=? WHERE id=?", (now, thread_id))
        return {
            "id": message_id,
            "seq": seq,
            "thread_id": thread_id,
            "role": role,
            "content": content,
            "tool_name": tool_name,
            "tool_call_id": tool_call_id,
            "metadata": metadata or {},
            "created_at": now,
        }

    async def ensure_system_message(
        self,
        thread_id: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Insert the thread's system message unless one exists; return whichever is stored."""
        now = utc_now()
        async with self.db.transaction() as db:
            await self._require_thread(db, thread_id)
            # The partial unique index on (thread_id) WHERE role='system' backs this up
            # for writers using separate connections.
            cursor = await db.execute(
                "INSERT OR IGNORE INTO messages(id, thread_id, role, content, tool_name, tool_call_id, metadata_json, created_at) "
                "SELECT ?,?,?,?,?,?,?,? WHERE NOT EXISTS "
                "(SELECT 1 FROM messages WHERE thread_id=? AND role='system')",
                (
                    uuid.uuid4().hex,
                    thread_id,
                    "system",
                    content,
                    None,
                    None,
                    _json_dumps(metadata or {}),
                    now,
                    thread_id,
                ),
            )
            inserted = cursor.rowcount > 0
            await cursor.close()
            if inserted:
                await db.execute("UPDATE memory_threads SET updated_at=? WHERE id=?", (now, thread_id))
            cursor = await db.execute(
                "SELECT seq, id, thread_id, role, content, tool_name, tool_call_id, metadata_json, created_at "
                "FROM messages WHERE thread_id=? AND role='system'",
                (thread_id,),
            )
            row = await cursor.fetchone()
            await cursor.close()
        return _message_from_row(row)

    async def load_agent_state(self, thread_id: str, agent_id: str) -> Optional[Dict[str, Any]]:
        row = await self.db.fetchone(
            "SELECT thread_id, agent_id, state_json, created_at, updated_at FROM agent_states "
            "WHERE thread_id=? AND agent_id=?",
            (thread_id, agent_id),
        )
        if not row:
            return None
        return {
            "memory_thread_id": row["thread_id"],
            "agent_id": row["agent_id"],
            "state_data": _json_loads(row["state_json"], {}),
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    async def save_agent_state(self, thread_id: str, agent_id: str, state: Dict[str, Any]) -> None:
        now = utc_now()
        await self.db.execute(
            "INSERT INTO agent_states(thread_id, agent_id, state_json, created_at, updated_at) VALUES (?,?,?,?,?) "
            "ON CONFLICT(thread_id, agent_id) DO UPDATE SET state_json=excluded.state_json, updated_at=excluded.updated_at",
            (thread_id, agent_id, _json_dumps(state), now, now),
        )

    async def delete_thread(self, thread_id: str) -> bool:
        async with self.db.transaction() as db:
            cursor = await db.execute("DELETE FROM memory_threads WHERE id=?", (thread_id,))
            deleted = cursor.rowcount > 0
            await cursor.close()
            await db.execute("DELETE FROM messages WHERE thread_id=?", (thread_id,))
            await db.execute("DELETE FROM agent_states WHERE thread_id=?", (thread_id,))
        if deleted:
            logger.info("Deleted memory thread %s", thread_id)
        return deleted

    async def _require_thread(self, db: Any, thread_id: str) -> None:
        cursor = await db.execute("SELECT 1 FROM memory_threads WHERE id=?", (thread_id,))
        row = await cursor.fetchone()
        await cursor.close()
        if not row:
            raise NotFound(f"Thread not found: {thread_id}")
