"""AgentRoom — Database layer (SQLite via aiosqlite).

Serves as the message store and the agent directory for the delegation core,
plus the channel/membership CRUD the HTTP surface needs.
"""

import logging
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import aiosqlite

from .runtime_config import DB_PATH

logger = logging.getLogger("agentroom.db")

DEFAULT_AGENT_ID = "00000000-0000-0000-0000-000000000001"
RESEARCH_AGENT_ID = "00000000-0000-0000-0000-000000000002"
DEFAULT_CHANNEL_ID = "main"

AUTHOR_TYPES = {"user", "agent", "system"}
MEMBER_TYPES = {"user", "agent"}
CAPABILITY_CLASSES = {"general", "research"}
ALLOWED_AGENT_UPDATE_FIELDS = {
    "name",
    "description",
    "system_instructions",
    "capability",
    "model",
}

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    display_name TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS agents (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE COLLATE NOCASE,
    description TEXT NOT NULL DEFAULT '',
    system_instructions TEXT NOT NULL DEFAULT '',
    capability TEXT NOT NULL DEFAULT 'general',
    model TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS channels (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    created_by TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS channel_members (
    channel_id TEXT NOT NULL,
    member_type TEXT NOT NULL,
    member_id TEXT NOT NULL,
    joined_at TEXT NOT NULL,
    PRIMARY KEY (channel_id, member_type, member_id)
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    channel_id TEXT NOT NULL,
    author_type TEXT NOT NULL,
    author_id TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_messages_channel_order
    ON messages (channel_id, created_at, id);

CREATE TABLE IF NOT EXISTS delegation_claims (
    trigger_id TEXT PRIMARY KEY,
    channel_id TEXT,
    agent_id TEXT,
    depth INTEGER,
    claimed_at TEXT NOT NULL
);
"""

BUILTIN_AGENTS = [
    {
        "id": DEFAULT_AGENT_ID,
        "name": "assistant",
        "description": "General channel assistant. Coordinates work and delegates research.",
        "system_instructions": "You are a helpful assistant in a chat channel.",
        "capability": "general",
    },
    {
        "id": RESEARCH_AGENT_ID,
        "name": "researcher",
        "description": "Looks things up on the web and reports back with sources.",
        "system_instructions": (
            "You are a careful researcher. Search before answering, cite the sources "
            "you used, and say plainly when you could not confirm something."
        ),
        "capability": "research",
    },
]

_clock_lock = threading.Lock()
_last_stamp: Optional[datetime] = None


def _next_timestamp(requested: Optional[datetime] = None) -> str:
    """Strictly increasing UTC timestamp for this process.

    Messages created back to back (fan-out placeholders) must keep their
    insertion order even when the wall clock does not advance between them.
    A `requested` time (timezone-aware) is used when it is later than every
    stamp handed out so far.
    """
    global _last_stamp
    with _clock_lock:
        if requested is not None:
            now = requested.astimezone(timezone.utc)
        else:
            now = datetime.now(timezone.utc)
        if _last_stamp is not None and now <= _last_stamp:
            now = _last_stamp + timedelta(microseconds=1)
        _last_stamp = now
        return now.isoformat(timespec="microseconds")


async def get_db() -> aiosqlite.Connection:
    """Get a database connection."""
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(str(DB_PATH))
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA busy_timeout=5000")
    return db


async def init_db():
    """Create all tables and seed the built-in agents and default channel."""
    db = await get_db()
    try:
        await db.executescript(SCHEMA)
        await _run_migrations(db)
        await _seed_agents(db)
        await _seed_channels(db)
        await db.commit()
    finally:
        await db.close()


async def _run_migrations(db: aiosqlite.Connection):
    """Non-destructive schema migrations for existing local DBs."""
    await _ensure_column(db, "messages", "updated_at", "TEXT")
    await _ensure_column(db, "agents", "model", "TEXT")


async def _ensure_column(db: aiosqlite.Connection, table: str, column: str, column_def: str):
    rows = await db.execute(f"PRAGMA table_info({table})")
    cols = {row["name"] for row in await rows.fetchall()}
    if column not in cols:
        await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {column_def}")


async def _seed_agents(db: aiosqlite.Connection):
    for agent in BUILTIN_AGENTS:
        existing = await db.execute(
            "SELECT id FROM agents WHERE id = ? OR name = ?",
            (agent["id"], agent["name"]),
        )
        if await existing.fetchone():
            continue
        await db.execute(
            """INSERT INTO agents (id, name, description, system_instructions, capability, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                agent["id"],
                agent["name"],
                agent["description"],
                agent["system_instructions"],
                agent["capability"],
                _next_timestamp(),
            ),
        )


async def _seed_channels(db: aiosqlite.Connection):
    """Create the default room with the built-in agents as members."""
    existing = await db.execute("SELECT id FROM channels WHERE id = ?", (DEFAULT_CHANNEL_ID,))
    if await existing.fetchone():
        return
    stamp = _next_timestamp()
    await db.execute(
        "INSERT INTO channels (id, name, created_by, created_at) VALUES (?, ?, ?, ?)",
        (DEFAULT_CHANNEL_ID, "General", None, stamp),
    )
    for agent in BUILTIN_AGENTS:
        await db.execute(
            """INSERT OR IGNORE INTO channel_members (channel_id, member_type, member_id, joined_at)
               VALUES (?, 'agent', ?, ?)""",
            (DEFAULT_CHANNEL_ID, agent["id"], stamp),
        )


# ── Users ──────────────────────────────────────────────────

async def ensure_user(user_id: str, display_name: Optional[str] = None):
    db = await get_db()
    try:
        await db.execute(
            "INSERT OR IGNORE INTO users (id, display_name, created_at) VALUES (?, ?, ?)",
            (user_id, display_name or user_id, _next_timestamp()),
        )
        await db.commit()
    finally:
        await db.close()


# ── Channels & membership ──────────────────────────────────

async def create_channel(name: str, created_by: Optional[str] = None,
                         channel_id: Optional[str] = None) -> dict:
    channel_id = channel_id or str(uuid.uuid4())
    stamp = _next_timestamp()
    db = await get_db()
    try:
        await db.execute(
            "INSERT INTO channels (id, name, created_by, created_at) VALUES (?, ?, ?, ?)",
            (channel_id, name, created_by, stamp),
        )
        if created_by:
            await db.execute(
                "INSERT OR IGNORE INTO users (id, display_name, created_at) VALUES (?, ?, ?)",
                (created_by, created_by, stamp),
            )
            await db.execute(
                """INSERT OR IGNORE INTO channel_members (channel_id, member_type, member_id, joined_at)
                   VALUES (?, 'user', ?, ?)""",
                (channel_id, created_by, stamp),
            )
        await db.commit()
        row = await db.execute("SELECT * FROM channels WHERE id = ?", (channel_id,))
        return dict(await row.fetchone())
    finally:
        await db.close()


async def get_channel(channel_id: str) -> Optional[dict]:
    db = await get_db()
    try:
        row = await db.execute("SELECT * FROM channels WHERE id = ?", (channel_id,))
        result = await row.fetchone()
        return dict(result) if result else None
    finally:
        await db.close()


async def get_channels() -> list[dict]:
    db = await get_db()
    try:
        rows = await db.execute("SELECT * FROM channels ORDER BY created_at, id")
        return [dict(r) for r in await rows.fetchall()]
    finally:
        await db.close()


async def delete_channel(channel_id: str) -> bool:
    """Remove a channel with its members, messages and trigger claims."""
    db = await get_db()
    try:
        await db.execute("DELETE FROM messages WHERE channel_id = ?", (channel_id,))
        await db.execute("DELETE FROM channel_members WHERE channel_id = ?", (channel_id,))
        await db.execute("DELETE FROM delegation_claims WHERE channel_id = ?", (channel_id,))
        cursor = await db.execute("DELETE FROM channels WHERE id = ?", (channel_id,))
        await db.commit()
        return cursor.rowcount > 0
    finally:
        await db.close()


async def add_channel_member(channel_id: str, member_type: str, member_id: str) -> bool:
    """Add a member. Returns False when the membership already existed."""
    if member_type not in MEMBER_TYPES:
        raise ValueError(f"Unknown member type: {member_type}")
    db = await get_db()
    try:
        cursor = await db.execute(
            """INSERT OR IGNORE INTO channel_members (channel_id, member_type, member_id, joined_at)
               VALUES (?, ?, ?, ?)""",
            (channel_id, member_type, member_id, _next_timestamp()),
        )
        await db.commit()
        return cursor.rowcount > 0
    finally:
        await db.close()


async def is_channel_member(channel_id: str, member_type: str, member_id: str) -> bool:
    db = await get_db()
    try:
        row = await db.execute(
            """SELECT 1 FROM channel_members
               WHERE channel_id = ? AND member_type = ? AND member_id = ?""",
            (channel_id, member_type, member_id),
        )
        return await row.fetchone() is not None
    finally:
        await db.close()


async def get_channel_members(channel_id: str) -> list[dict]:
    db = await get_db()
    try:
        rows = await db.execute(
            """SELECT cm.member_type, cm.member_id, cm.joined_at,
                      COALESCE(a.name, u.display_name, cm.member_id) AS name
               FROM channel_members cm
               LEFT JOIN agents a ON cm.member_type = 'agent' AND a.id = cm.member_id
               LEFT JOIN users u ON cm.member_type = 'user' AND u.id = cm.member_id
               WHERE cm.channel_id = ?
               ORDER BY cm.member_type, name""",
            (channel_id,),
        )
        return [dict(r) for r in await rows.fetchall()]
    finally:
        await db.close()


async def list_channel_agents(channel_id: str, exclude_agent_id: Optional[str] = None) -> list[dict]:
    """Agents that are members of a channel, optionally minus one."""
    db = await get_db()
    try:
        rows = await db.execute(
            """SELECT a.* FROM agents a
               JOIN channel_members cm
                 ON cm.member_type = 'agent' AND cm.member_id = a.id
               WHERE cm.channel_id = ?
               ORDER BY a.name COLLATE NOCASE""",
            (channel_id,),
        )
        agents = [dict(r) for r in await rows.fetchall()]
    finally:
        await db.close()
    if exclude_agent_id:
        agents = [a for a in agents if a["id"] != exclude_agent_id]
    return agents


# ── Agents ─────────────────────────────────────────────────

async def create_agent(name: str, description: str, system_instructions: str,
                       capability: str = "general", model: Optional[str] = None,
                       agent_id: Optional[str] = None) -> dict:
    if capability not in CAPABILITY_CLASSES:
        raise ValueError(f"Unknown capability class: {capability}")
    agent_id = agent_id or str(uuid.uuid4())
    db = await get_db()
    try:
        await db.execute(
            """INSERT INTO agents (id, name, description, system_instructions, capability, model, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (agent_id, name, description, system_instructions, capability, model, _next_timestamp()),
        )
        await db.commit()
        row = await db.execute("SELECT * FROM agents WHERE id = ?", (agent_id,))
        return dict(await row.fetchone())
    finally:
        await db.close()


async def get_agents() -> list[dict]:
    db = await get_db()
    try:
        rows = await db.execute("SELECT * FROM agents ORDER BY name COLLATE NOCASE")
        return [dict(r) for r in await rows.fetchall()]
    finally:
        await db.close()


async def get_agent(agent_id: str) -> Optional[dict]:
    db = await get_db()
    try:
        row = await db.execute("SELECT * FROM agents WHERE id = ?", (agent_id,))
        result = await row.fetchone()
        return dict(result) if result else None
    finally:
        await db.close()


async def get_agent_by_name(name: str) -> Optional[dict]:
    db = await get_db()
    try:
        row = await db.execute("SELECT * FROM agents WHERE name = ? COLLATE NOCASE", (name,))
        result = await row.fetchone()
        return dict(result) if result else None
    finally:
        await db.close()


async def update_agent(agent_id: str, updates: dict) -> Optional[dict]:
    filtered = {k: v for k, v in updates.items() if k in ALLOWED_AGENT_UPDATE_FIELDS}
    if not filtered:
        return await get_agent(agent_id)
    if "capability" in filtered and filtered["capability"] not in CAPABILITY_CLASSES:
        raise ValueError(f"Unknown capability class: {filtered['capability']}")

    assignments = ", ".join(f"{field} = ?" for field in filtered.keys())
    params = list(filtered.values()) + [agent_id]

    db = await get_db()
    try:
        cursor = await db.execute(f"UPDATE agents SET {assignments} WHERE id = ?", params)
        await db.commit()
        if cursor.rowcount == 0:
            return None
        row = await db.execute("SELECT * FROM agents WHERE id = ?", (agent_id,))
        result = await row.fetchone()
        return dict(result) if result else None
    finally:
        await db.close()


# ── Messages ───────────────────────────────────────────────

async def insert_message(channel_id: str, author_type: str, author_id: str, content: str,
                         message_id: Optional[str] = None,
                         created_at: Optional[datetime] = None) -> dict:
    if author_type not in AUTHOR_TYPES:
        raise ValueError(f"Unknown author type: {author_type}")
    message_id = message_id or str(uuid.uuid4())
    db = await get_db()
    try:
        await db.execute(
            """INSERT INTO messages (id, channel_id, author_type, author_id, content, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (message_id, channel_id, author_type, author_id, content, _next_timestamp(created_at)),
        )
        await db.commit()
        row = await db.execute("SELECT * FROM messages WHERE id = ?", (message_id,))
        return dict(await row.fetchone())
    finally:
        await db.close()


async def update_message_content(message_id: str, content: str) -> Optional[dict]:
    """Overwrite one message's content. Returns None if the id is unknown."""
    db = await get_db()
    try:
        cursor = await db.execute(
            "UPDATE messages SET content = ?, updated_at = ? WHERE id = ?",
            (content, datetime.now(timezone.utc).isoformat(timespec="microseconds"), message_id),
        )
        await db.commit()
        if cursor.rowcount == 0:
            return None
        row = await db.execute("SELECT * FROM messages WHERE id = ?", (message_id,))
        result = await row.fetchone()
        return dict(result) if result else None
    finally:
        await db.close()


async def get_message(message_id: str) -> Optional[dict]:
    db = await get_db()
    try:
        row = await db.execute("SELECT * FROM messages WHERE id = ?", (message_id,))
        result = await row.fetchone()
        return dict(result) if result else None
    finally:
        await db.close()


async def get_history(channel_id: str, limit: int = 50) -> list[dict]:
    """Most recent `limit` messages, oldest first, ordered by (created_at, id)."""
    db = await get_db()
    try:
        rows = await db.execute(
            """SELECT * FROM messages WHERE channel_id = ?
               ORDER BY created_at DESC, id DESC LIMIT ?""",
            (channel_id, limit),
        )
        results = [dict(r) for r in await rows.fetchall()]
        results.reverse()
        return results
    finally:
        await db.close()


# ── Delegation claims ──────────────────────────────────────

async def claim_trigger(trigger_id: str, channel_id: Optional[str] = None,
                        agent_id: Optional[str] = None, depth: Optional[int] = None) -> bool:
    """Record that a trigger is being processed. False if someone got there first."""
    db = await get_db()
    try:
        cursor = await db.execute(
            """INSERT OR IGNORE INTO delegation_claims (trigger_id, channel_id, agent_id, depth, claimed_at)
               VALUES (?, ?, ?, ?, ?)""",
            (trigger_id, channel_id, agent_id, depth, _next_timestamp()),
        )
        await db.commit()
        return cursor.rowcount > 0
    finally:
        await db.close()
