"""Ticket store: version-checked CRUD over SQLite with change subscriptions."""

import itertools
import json
import logging
import secrets
import sqlite3
import string
import time
from collections.abc import Callable
from dataclasses import fields
from datetime import datetime
from typing import Any

from coe_orchestrator.core.conflict import check_version, increment_version
from coe_orchestrator.core.dependencies import would_create_cycle
from coe_orchestrator.core.locking import LockManager
from coe_orchestrator.core.transaction import SqliteExecutor, with_retry, with_transaction
from coe_orchestrator.db.models import ThreadMessage, Ticket, TicketStatus, TicketType, utcnow
from coe_orchestrator.errors import DependencyCycleError, TicketNotFoundError, VersionConflictError

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset({
    "title", "status", "type", "description", "priority", "creator", "assignee",
    "task_id", "resolution", "thread", "conversation_history",
})

ChangeCallback = Callable[[str, Ticket], None]

_ID_ALPHABET = string.digits + string.ascii_lowercase


def new_ticket_id() -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(6))
    return f"TICKET-{int(time.time() * 1000)}-{suffix}"


# ── Row-to-model helpers ────────────────────────────────────────────────────


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)


def _dump_thread(thread: list[ThreadMessage]) -> str:
    return json.dumps([
        {
            "role": m.role,
            "content": m.content,
            "createdAt": m.created_at.isoformat() if m.created_at else None,
        }
        for m in thread
    ])


def _load_thread(raw: str | None) -> list[ThreadMessage]:
    if not raw:
        return []
    return [
        ThreadMessage(role=m["role"], content=m["content"], created_at=_parse_dt(m.get("createdAt")))
        for m in json.loads(raw)
    ]


def _row_to_ticket(row: sqlite3.Row) -> Ticket:
    return Ticket(
        id=row["id"],
        title=row["title"],
        status=TicketStatus(row["status"]),
        type=TicketType.parse(row["type"]),
        description=row["description"] or "",
        priority=row["priority"],
        creator=row["creator"],
        assignee=row["assignee"],
        task_id=row["task_id"],
        version=row["version"],
        resolution=row["resolution"],
        thread=_load_thread(row["thread"]),
        conversation_history=row["conversation_history"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _to_column(name: str, value: Any) -> Any:
    if name == "thread":
        return _dump_thread(value or [])
    if name == "status":
        return TicketStatus(value).value
    if name == "type":
        return TicketType.parse(value).value
    return value


def ticket_snapshot(ticket: Ticket) -> dict[str, Any]:
    """Field map of a ticket, used as a merge snapshot."""
    return {f.name: getattr(ticket, f.name) for f in fields(ticket)}


class Subscription:
    """Handle returned by ``TicketStore.on_change``; ``dispose`` stops delivery."""

    def __init__(self, store: "TicketStore", token: int):
        self._store = store
        self._token = token

    @property
    def active(self) -> bool:
        return self._token in self._store._subscribers

    def dispose(self) -> None:
        self._store._subscribers.pop(self._token, None)


class TicketStore:
    def __init__(
        self,
        conn: sqlite3.Connection,
        locks: LockManager | None = None,
        now: Callable[[], datetime] = utcnow,
    ):
        self.conn = conn
        self.executor = SqliteExecutor(conn)
        self.locks = locks or LockManager()
        self._now = now
        self._subscribers: dict[int, ChangeCallback] = {}
        self._tokens = itertools.count(1)

    # ── Subscriptions ──────────────────────────────────────────────────────

    def on_change(self, callback: ChangeCallback) -> Subscription:
        token = next(self._tokens)
        self._subscribers[token] = callback
        return Subscription(self, token)

    def _notify(self, event: str, ticket: Ticket) -> None:
        for callback in list(self._subscribers.values()):
            try:
                callback(event, ticket)
            except Exception:
                logger.exception("Ticket change subscriber failed on %s %s", event, ticket.id)

    def _transact(self, body, mode: str = "IMMEDIATE"):
        result = with_transaction(self.executor, body, mode)
        if not result.committed:
            raise result.error
        return result.value

    # ── Reads ──────────────────────────────────────────────────────────────

    def get(self, ticket_id: str) -> Ticket | None:
        row = self.conn.execute("SELECT * FROM tickets WHERE id = ?", (ticket_id,)).fetchone()
        if not row:
            return None
        ticket = _row_to_ticket(row)
        ticket.depends_on = self._dependencies_of(ticket_id)
        return ticket

    def list_tickets(self, status: str | None = None) -> list[Ticket]:
        query = "SELECT * FROM tickets"
        params: list = []
        if status:
            query += " WHERE status = ?"
            params.append(status)
        query += " ORDER BY created_at ASC, rowid ASC"

        deps = self.dependency_graph()
        tickets = []
        for row in self.conn.execute(query, params).fetchall():
            ticket = _row_to_ticket(row)
            ticket.depends_on = list(deps.get(ticket.id, []))
            tickets.append(ticket)
        return tickets

    def _dependencies_of(self, ticket_id: str) -> list[str]:
        rows = self.conn.execute(
            "SELECT depends_on_ticket_id FROM ticket_dependencies WHERE ticket_id = ? "
            "ORDER BY depends_on_ticket_id",
            (ticket_id,),
        ).fetchall()
        return [r["depends_on_ticket_id"] for r in rows]

    def dependency_graph(self) -> dict[str, list[str]]:
        graph: dict[str, list[str]] = {}
        rows = self.conn.execute(
            "SELECT ticket_id, depends_on_ticket_id FROM ticket_dependencies "
            "ORDER BY ticket_id, depends_on_ticket_id"
        ).fetchall()
        for row in rows:
            graph.setdefault(row["ticket_id"], []).append(row["depends_on_ticket_id"])
        return graph

    # ── Writes ─────────────────────────────────────────────────────────────

    def create(
        self,
        title: str,
        *,
        status: TicketStatus | str = TicketStatus.OPEN,
        type: TicketType | str | None = TicketType.UNSET,
        description: str = "",
        priority: int = 2,
        creator: str = "system",
        assignee: str | None = None,
        task_id: str | None = None,
        resolution: str | None = None,
        thread: list[ThreadMessage] | None = None,
        conversation_history: str | None = None,
    ) -> Ticket:
        """Create a ticket at version 1."""
        if not title.strip():
            raise ValueError("Ticket title must not be empty")
        if priority not in (1, 2, 3):
            raise ValueError(f"Priority must be 1, 2 or 3, got {priority}")

        ticket = Ticket(
            id=new_ticket_id(),
            title=title,
            status=TicketStatus(status),
            type=type if isinstance(type, TicketType) else TicketType.parse(type),
            description=description,
            priority=priority,
            creator=creator,
            assignee=assignee,
            task_id=task_id,
            version=1,
            resolution=resolution,
            thread=list(thread or []),
            conversation_history=conversation_history,
        )
        now = self._now().isoformat(timespec="microseconds")

        def body(tx):
            tx.run(
                """INSERT INTO tickets (id, title, status, type, description, priority, creator,
                       assignee, task_id, version, resolution, thread, conversation_history,
                       created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?, ?)""",
                (
                    ticket.id, ticket.title, ticket.status.value, ticket.type.value,
                    ticket.description, ticket.priority, ticket.creator, ticket.assignee,
                    ticket.task_id, ticket.resolution, _dump_thread(ticket.thread),
                    ticket.conversation_history, now, now,
                ),
            )

        with_retry(lambda: self._transact(body))
        created = self.get(ticket.id)
        logger.info("Created ticket %s: %s", created.id, created.title)
        self._notify("created", created)
        return created

    def update(
        self,
        ticket_id: str,
        changes: dict[str, Any],
        expected_version: int | None = None,
    ) -> Ticket | None:
        """Apply ``changes`` and bump the version by one.

        Returns None if the ticket does not exist. When ``expected_version``
        is given and differs from the stored version, raises
        VersionConflictError and writes nothing.
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        columns = {name: _to_column(name, value) for name, value in changes.items()}

        def body(tx):
            row = tx.get("SELECT version FROM tickets WHERE id = ?", (ticket_id,))
            if row is None:
                return False
            current = row["version"]
            if expected_version is not None:
                check = check_version(ticket_id, expected_version, current, sorted(changes))
                if not check.valid:
                    raise VersionConflictError(check.conflict)

            assignments = "".join(f"{name} = ?, " for name in columns)
            tx.run(
                f"UPDATE tickets SET {assignments}version = ?, updated_at = ? "
                "WHERE id = ? AND version = ?",
                (
                    *columns.values(),
                    increment_version(current),
                    self._now().isoformat(timespec="microseconds"),
                    ticket_id,
                    current,
                ),
            )
            return True

        if not with_retry(lambda: self._transact(body)):
            return None

        ticket = self.get(ticket_id)
        self._notify("updated", ticket)
        return ticket

    def append_message(self, ticket_id: str, role: str, content: str) -> Ticket:
        """Append a message to a ticket's thread, re-reading on version conflicts."""
        for attempt in range(3):
            ticket = self.get(ticket_id)
            if ticket is None:
                raise TicketNotFoundError(ticket_id)
            thread = ticket.thread + [ThreadMessage(role=role, content=content, created_at=self._now())]
            try:
                return self.update(ticket_id, {"thread": thread}, expected_version=ticket.version)
            except VersionConflictError:
                if attempt == 2:
                    raise
                logger.info("Thread append on %s raced another writer, re-reading", ticket_id)

    # ── Dependencies ───────────────────────────────────────────────────────

    def add_dependency(self, ticket_id: str, depends_on: str) -> None:
        """Record that ``ticket_id`` depends on ``depends_on``.

        Both tickets are locked in canonical order for the duration of the write.
        """
        with self.locks.hold([ticket_id, depends_on], holder=f"dependency:{ticket_id}"):
            for tid in (ticket_id, depends_on):
                if self.get(tid) is None:
                    raise TicketNotFoundError(tid)

            cycle = would_create_cycle(self.dependency_graph(), ticket_id, depends_on)
            if cycle:
                raise DependencyCycleError(cycle)

            def body(tx):
                tx.run(
                    "INSERT OR IGNORE INTO ticket_dependencies (ticket_id, depends_on_ticket_id) "
                    "VALUES (?, ?)",
                    (ticket_id, depends_on),
                )

            with_retry(lambda: self._transact(body))
        logger.info("Ticket %s now depends on %s", ticket_id, depends_on)

    def remove_dependency(self, ticket_id: str, depends_on: str) -> bool:
        with self.locks.hold([ticket_id, depends_on], holder=f"dependency:{ticket_id}"):
            def body(tx):
                cur = tx.get(
                    "SELECT 1 FROM ticket_dependencies "
                    "WHERE ticket_id = ? AND depends_on_ticket_id = ?",
                    (ticket_id, depends_on),
                )
                tx.run(
                    "DELETE FROM ticket_dependencies "
                    "WHERE ticket_id = ? AND depends_on_ticket_id = ?",
                    (ticket_id, depends_on),
                )
                return cur is not None

            return with_retry(lambda: self._transact(body))


def ticket_to_dict(ticket: Ticket) -> dict:
    return {
        "id": ticket.id,
        "title": ticket.title,
        "status": ticket.status.value,
        "type": ticket.type.value,
        "priority": ticket.priority,
        "description": ticket.description,
        "creator": ticket.creator,
        "assignee": ticket.assignee,
        "task_id": ticket.task_id,
        "version": ticket.version,
        "resolution": ticket.resolution,
        "depends_on": ticket.depends_on,
        "thread": [
            {
                "role": m.role,
                "content": m.content,
                "created_at": m.created_at.isoformat() if m.created_at else None,
            }
            for m in ticket.thread
        ],
        "created_at": ticket.created_at.isoformat() if ticket.created_at else None,
        "updated_at": ticket.updated_at.isoformat() if ticket.updated_at else None,
    }
