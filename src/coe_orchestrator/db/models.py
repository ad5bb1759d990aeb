"""Data models for the COE orchestrator."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class TicketStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in-progress"
    BLOCKED = "blocked"
    DONE = "done"
    PENDING = "pending"


class TicketType(str, Enum):
    """Who a ticket's conversation is addressed to. Every consumer matches exhaustively."""

    AI_TO_HUMAN = "ai_to_human"
    HUMAN_TO_AI = "human_to_ai"
    ANSWER_AGENT = "answer_agent"
    UNSET = "unset"

    @classmethod
    def parse(cls, value: str | None) -> "TicketType":
        if not value:
            return cls.UNSET
        return cls(value)


class TaskStatus(str, Enum):
    READY = "ready"
    RUNNING = "running"
    BLOCKED = "blocked"
    DONE = "done"
    FAILED = "failed"


WORKABLE_STATUSES = (TicketStatus.OPEN, TicketStatus.IN_PROGRESS)

_PRIORITY_LEVELS = {"P0": 1, "P1": 1, "P2": 2, "P3": 3}


def priority_from_level(level: str) -> int:
    """Map a P0-P3 level onto the 1 (highest) to 3 (lowest) ticket scale.

    P0 and P1 both map to 1.
    """
    try:
        return _PRIORITY_LEVELS[level.strip().upper()]
    except KeyError:
        raise ValueError(f"Unknown priority level: {level}") from None


@dataclass
class ThreadMessage:
    role: str
    content: str
    created_at: datetime | None = None


@dataclass
class Ticket:
    id: str
    title: str
    status: TicketStatus = TicketStatus.OPEN
    type: TicketType = TicketType.UNSET
    description: str = ""
    priority: int = 2
    creator: str = "system"
    assignee: str | None = None
    task_id: str | None = None
    version: int = 1
    resolution: str | None = None
    thread: list[ThreadMessage] = field(default_factory=list)
    conversation_history: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    depends_on: list[str] = field(default_factory=list)


@dataclass
class Task:
    """In-memory scheduling projection of an open or in-progress ticket."""

    id: str
    ticket_id: str
    title: str
    priority: int = 2
    status: TaskStatus = TaskStatus.READY
    created_at: datetime | None = None
    depends_on: list[str] = field(default_factory=list)
    last_picked_at: datetime | None = None
    blocked_at: datetime | None = None
    estimated_minutes: int = 20


@dataclass
class FailureRecord:
    reason: str
    failed_criteria: list[str] | None = None
    failed_tests: list[str] | None = None
    timestamp: datetime | None = None


@dataclass
class RetryState:
    task_id: str
    retry_count: int = 0
    max_retries: int = 3
    failures: list[FailureRecord] = field(default_factory=list)
    first_failure_at: datetime | None = None
    escalated: bool = False
    escalated_at: datetime | None = None


@dataclass
class LockInfo:
    resource_id: str
    holder: str
    acquired_at: float
    timeout_seconds: float

    def expired(self, now: float) -> bool:
        return now - self.acquired_at > self.timeout_seconds


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
