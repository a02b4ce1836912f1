import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, List, Optional, Tuple

import aiosqlite


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True)


def _json_loads(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except ValueError:
        return default


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS memory_threads(
                    id TEXT PRIMARY KEY,
                    name TEXT,
                    metadata_json TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS messages(
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT UNIQUE,
                    thread_id TEXT,
                    role TEXT,
                    content TEXT,
                    tool_name TEXT,
                    tool_call_id TEXT,
                    metadata_json TEXT,
                    created_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_messages_thread ON messages(thread_id, seq);
                CREATE UNIQUE INDEX IF NOT EXISTS idx_messages_single_system
                    ON messages(thread_id) WHERE role='system';
                CREATE TABLE IF NOT EXISTS agent_states(
                    thread_id TEXT,
                    agent_id TEXT,
                    state_json TEXT,
                    created_at TEXT,
                    updated_at TEXT,
                    PRIMARY KEY(thread_id, agent_id)
                );
                CREATE TABLE IF NOT EXISTS agents(
                    id TEXT PRIMARY KEY,
                    name TEXT,
                    description TEXT,
                    model TEXT,
                    temperature REAL,
                    max_tokens INTEGER,
                    system_prompt TEXT,
                    persona_id TEXT,
                    tools_json TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS personas(
                    id TEXT PRIMARY KEY,
                    name TEXT,
                    description TEXT,
                    traits_json TEXT,
                    system_prompt_template TEXT,
                    model_settings_json TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS persona_scores(
                    persona_id TEXT PRIMARY KEY,
                    usage_count INTEGER DEFAULT 0,
                    feedback_count INTEGER DEFAULT 0,
                    average_rating REAL DEFAULT 0,
                    success_count INTEGER DEFAULT 0,
                    failure_count INTEGER DEFAULT 0,
                    average_latency_ms REAL DEFAULT 0,
                    adaptability_score REAL DEFAULT 0,
                    last_used_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS persona_feedback(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    persona_id TEXT,
                    rating REAL,
                    comment TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS workflows(
                    id TEXT PRIMARY KEY,
                    name TEXT,
                    description TEXT,
                    status TEXT,
                    current_step_index INTEGER DEFAULT 0,
                    metadata_json TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS workflow_steps(
                    id TEXT PRIMARY KEY,
                    workflow_id TEXT,
                    position INTEGER,
                    agent_id TEXT,
                    input TEXT,
                    thread_id TEXT,
                    status TEXT,
                    result TEXT,
                    error TEXT,
                    metadata_json TEXT,
                    created_at TEXT,
                    updated_at TEXT,
                    UNIQUE(workflow_id, position)
                );
                CREATE TABLE IF NOT EXISTS events(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT,
                    seq INTEGER,
                    event_type TEXT,
                    payload_json TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS configs(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    created_at TEXT,
                    payload_json TEXT
                );
                """
            )
            await db.commit()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Open a connection holding the write lock until the block exits."""
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                await db.rollback()
                raise
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> int:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(query, params)
            rowcount = cursor.rowcount
            await cursor.close()
            await db.commit()
            return rowcount

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    async def add_event(self, run_id: str, event_type: str, payload: dict) -> dict:
        created_at = utc_now()
        # seq is allocated under the write lock.
        async with self.transaction() as db:
            cursor = await db.execute("SELECT MAX(seq) AS seq FROM events WHERE run_id=?", (run_id,))
            row = await cursor.fetchone()
            await cursor.close()
            seq = int(row["seq"] or 0) + 1
            await db.execute(
                "INSERT INTO events(run_id, seq, event_type, payload_json, created_at) VALUES (?,?,?,?,?)",
                (run_id, seq, event_type, _json_dumps(payload), created_at),
            )
        return {"run_id": run_id, "seq": seq, "event_type": event_type, "payload": payload, "created_at": created_at}

    async def list_events(self, run_id: str, after_seq: int = 0) -> List[dict]:
        rows = await self.fetchall(
            "SELECT seq, event_type, payload_json, created_at FROM events WHERE run_id=? AND seq>? ORDER BY seq ASC",
            (run_id, after_seq),
        )
        return [
            {
                "seq": row["seq"],
                "event_type": row["event_type"],
                "payload": _json_loads(row["payload_json"], {}),
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    async def save_config(self, payload: dict) -> None:
        await self.execute(
            "INSERT INTO configs(created_at, payload_json) VALUES (?,?)", (utc_now(), _json_dumps(payload))
        )

    async def get_latest_config(self) -> Optional[dict]:
        row = await self.fetchone("SELECT payload_json FROM configs ORDER BY id DESC LIMIT 1")
        if not row:
            return None
        return _json_loads(row["payload_json"], {})
