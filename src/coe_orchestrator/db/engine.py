"""SQLite database connection management and schema initialization."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS tickets (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    status TEXT DEFAULT 'open' CHECK (status IN ('open', 'in-progress', 'blocked', 'done', 'pending')),
    type TEXT DEFAULT 'unset' CHECK (type IN ('ai_to_human', 'human_to_ai', 'answer_agent', 'unset')),
    description TEXT DEFAULT '',
    priority INTEGER DEFAULT 2 CHECK (priority BETWEEN 1 AND 3),
    creator TEXT DEFAULT 'system',
    assignee TEXT,
    task_id TEXT,
    version INTEGER NOT NULL DEFAULT 1,
    resolution TEXT,
    thread TEXT DEFAULT '[]',
    conversation_history TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ticket_dependencies (
    ticket_id TEXT NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
    depends_on_ticket_id TEXT NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
    PRIMARY KEY (ticket_id, depends_on_ticket_id)
);

CREATE INDEX IF NOT EXISTS idx_tickets_status ON tickets(status);
"""


def _run_migrations(conn: sqlite3.Connection):
    """Run schema migrations idempotently."""
    migrations = [
        "ALTER TABLE tickets ADD COLUMN conversation_history TEXT",
        "ALTER TABLE tickets ADD COLUMN resolution TEXT",
    ]
    for sql in migrations:
        try:
            conn.execute(sql)
        except sqlite3.OperationalError:
            pass  # Column already exists


def init_db(db_path: Path) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed.

    The connection runs in autocommit mode; multi-statement writes go
    through ``with_transaction`` which issues its own BEGIN/COMMIT. It may
    be handed to a worker thread, but only one thread may use it at a time.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(
        str(db_path), isolation_level=None, timeout=1.0, check_same_thread=False
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA)
    _run_migrations(conn)
    return conn


@contextmanager
def get_db(db_path: Path):
    """Context manager for database connections."""
    conn = init_db(db_path)
    try:
        yield conn
    finally:
        conn.close()
