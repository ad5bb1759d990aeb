"""Task queue, stall detection, failure escalation and agent routing.

Tasks are one-to-one with tickets (a task's id is its ticket's id). The
queue is a projection of the ticket store: tickets in open or in-progress
status become tasks, dequeued oldest first. Store change notifications
only mark the projection dirty; it is rebuilt lazily before the next queue
operation.

Store work behind the async operations runs on one worker thread, so
SQLite busy waits, retry backoff and escalation notices never stall the
event loop. Running it on a single thread also serializes it.
"""

import asyncio
import functools
import logging
import re
import sqlite3
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, assert_never

from coe_orchestrator.core.agents import (
    ANSWER_SYSTEM_PROMPT,
    CLASSIFIER_SYSTEM_PROMPT,
    PLANNING_SYSTEM_PROMPT,
    VERIFICATION_SYSTEM_PROMPT,
    AgentBackend,
)
from coe_orchestrator.core.conflict import attempt_merge
from coe_orchestrator.core.retry import EscalationInfo, RetryLimitManager
from coe_orchestrator.core.tickets import Subscription, TicketStore, ticket_snapshot
from coe_orchestrator.db.models import (
    WORKABLE_STATUSES,
    Task,
    TaskStatus,
    Ticket,
    TicketStatus,
    TicketType,
    utcnow,
)
from coe_orchestrator.errors import (
    AgentError,
    AnswerTimeoutError,
    CoeError,
    OrchestratorNotInitializedError,
    TicketNotFoundError,
    VersionConflictError,
)

logger = logging.getLogger(__name__)

DEFAULT_STALL_TIMEOUT = 30.0
DEFAULT_ANSWER_TIMEOUT = 45.0

REPORT_STATUSES = ("done", "failed", "blocked", "partial")
REPORT_WRITE_ATTEMPTS = 3

ACTION_KEYWORDS = ("ticket", "create", "fix", "implement")

_VERDICT = re.compile(r"\b(PASS|FAIL)\b", re.IGNORECASE)

EscalationNotifier = Callable[[Ticket], None]

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _creation_key(task: Task) -> datetime:
    return task.created_at or _EPOCH


class ModeFlag:
    """Runtime manual/auto switch. Never persisted."""

    def __init__(self, auto: bool = False):
        self._auto = auto

    @property
    def auto(self) -> bool:
        return self._auto

    def set_auto(self, auto: bool) -> None:
        if auto != self._auto:
            logger.info("Switching to %s mode", "auto" if auto else "manual")
        self._auto = auto


@dataclass
class VerificationResult:
    passed: bool
    explanation: str

    def summary(self) -> str:
        return f"{'PASS' if self.passed else 'FAIL'} - {self.explanation}"


@dataclass
class TaskReport:
    success: bool
    task_id: str
    status: str
    message: str
    ticket: Ticket | None = None
    verification: VerificationResult | None = None
    escalation_ticket_id: str | None = None


class Orchestrator:
    def __init__(
        self,
        store: TicketStore,
        agent: AgentBackend,
        retries: RetryLimitManager,
        mode: ModeFlag,
        stall_timeout_seconds: float = DEFAULT_STALL_TIMEOUT,
        clock: Callable[[], datetime] = utcnow,
        notifier: EscalationNotifier | None = None,
    ):
        self.store = store
        self.agent = agent
        self.retries = retries
        self.mode = mode
        self.stall_timeout_seconds = stall_timeout_seconds
        self._clock = clock
        self._notifier = notifier
        self._worker: ThreadPoolExecutor | None = None

        self._initialized = False
        self._dirty = False
        self._subscription: Subscription | None = None

        self._queue: list[Task] = []
        self._running: list[Task] = []
        self._stalled: list[Task] = []
        self._stall_escalated: set[str] = set()
        self._ticket_status: dict[str, TicketStatus] = {}

        self._observed: set[str] = set()
        self._thread_lengths: dict[str, int] = {}
        self._chat_histories: dict[str, list[dict]] = {}

        self.last_picked_title: str | None = None
        self.last_picked_at: datetime | None = None

    # ── Lifecycle ──────────────────────────────────────────────────────────

    def initialize(self) -> None:
        """Load workable tickets and subscribe to store changes.

        A store failure while loading is logged and leaves the queue empty.
        """
        try:
            tickets = self.store.list_tickets()
        except (sqlite3.Error, CoeError):
            logger.exception("Failed to load tickets; starting with an empty queue")
            tickets = []

        for ticket in tickets:
            self._observed.add(ticket.id)
            self._thread_lengths[ticket.id] = len(ticket.thread)
        self._project(tickets)

        self._subscription = self.store.on_change(self._on_ticket_change)
        self._initialized = True
        logger.info(
            "Orchestrator initialized with %d queued tasks (stall timeout %gs)",
            len(self._queue), self.stall_timeout_seconds,
        )

    def close(self) -> None:
        if self._subscription:
            self._subscription.dispose()
            self._subscription = None
        if self._worker:
            self._worker.shutdown(wait=True)
            self._worker = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise OrchestratorNotInitializedError()

    def _on_ticket_change(self, event: str, ticket: Ticket) -> None:
        self._dirty = True

    async def offload(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """Run blocking store work on the worker thread and await its result."""
        if self._worker is None:
            self._worker = ThreadPoolExecutor(max_workers=1, thread_name_prefix="coe-store")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._worker, functools.partial(fn, *args, **kwargs))

    # ── Queue projection ───────────────────────────────────────────────────

    def refresh_queue(self, force: bool = False) -> None:
        """Rebuild the task projection from the store if it changed."""
        self._require_initialized()
        if not (self._dirty or force):
            return
        self._dirty = False
        tickets = self.store.list_tickets()
        self._apply_mode_gate(tickets)
        self._project(tickets)

    def _apply_mode_gate(self, tickets: list[Ticket]) -> None:
        """Park newly observed human-facing tickets as pending in manual mode."""
        for ticket in tickets:
            if ticket.id in self._observed:
                continue
            self._observed.add(ticket.id)
            if ticket.type != TicketType.AI_TO_HUMAN or ticket.status != TicketStatus.OPEN:
                continue
            if self.mode.auto:
                logger.info("Auto mode: routing %s to the queue", ticket.id)
                continue
            logger.info("Manual mode: ticket %s pending approval", ticket.id)
            try:
                updated = self._update_ticket(ticket, {"status": TicketStatus.PENDING})
            except VersionConflictError:
                logger.warning("Could not park %s as pending; it changed underneath us", ticket.id)
                continue
            ticket.status = updated.status
            ticket.version = updated.version

    def _project(self, tickets: list[Ticket]) -> None:
        self._ticket_status = {t.id: t.status for t in tickets}
        workable = {t.id: t for t in tickets if t.status in WORKABLE_STATUSES}

        def keep(tasks: list[Task]) -> list[Task]:
            kept = []
            for task in tasks:
                ticket = workable.get(task.id)
                if ticket is None:
                    continue
                task.title = ticket.title
                task.priority = ticket.priority
                task.depends_on = list(ticket.depends_on)
                kept.append(task)
            return kept

        self._queue = keep(self._queue)
        self._running = keep(self._running)
        self._stalled = keep(self._stalled)

        tracked = {t.id for t in self._queue + self._running + self._stalled}
        for ticket in workable.values():
            if ticket.id in tracked:
                continue
            self._queue.append(
                Task(
                    id=ticket.id,
                    ticket_id=ticket.id,
                    title=ticket.title,
                    priority=ticket.priority,
                    created_at=ticket.created_at,
                    depends_on=list(ticket.depends_on),
                )
            )

        self._queue.sort(key=_creation_key)
        for task in self._queue:
            task.status = TaskStatus.READY if self._dependencies_met(task) else TaskStatus.BLOCKED

    def _dependencies_met(self, task: Task) -> bool:
        return all(
            self._ticket_status.get(dep, TicketStatus.DONE) == TicketStatus.DONE
            for dep in task.depends_on
        )

    def _find_task(self, task_id: str) -> Task | None:
        for task in self._queue + self._running + self._stalled:
            if task.id == task_id:
                return task
        return None

    def _untrack(self, task_id: str) -> Task | None:
        task = self._find_task(task_id)
        if task is None:
            return None
        for bucket in (self._queue, self._running, self._stalled):
            if task in bucket:
                bucket.remove(task)
        return task

    # ── Ticket writes ──────────────────────────────────────────────────────

    def _update_ticket(self, ticket: Ticket, changes: dict[str, Any]) -> Ticket:
        """Version-checked write that merges with a concurrent writer when it can."""
        try:
            updated = self.store.update(ticket.id, changes, expected_version=ticket.version)
        except VersionConflictError:
            current = self.store.get(ticket.id)
            if current is None:
                raise TicketNotFoundError(ticket.id) from None
            merge = attempt_merge(ticket_snapshot(ticket), ticket_snapshot(current), changes)
            if not merge.auto_merged:
                logger.warning(
                    "Ticket %s changed concurrently; fields need manual merge: %s",
                    ticket.id, ", ".join(merge.manual_fields),
                )
                raise
            logger.info("Ticket %s changed concurrently; changes merged", ticket.id)
            merged = {name: merge.merged[name] for name in changes}
            updated = self.store.update(ticket.id, merged, expected_version=current.version)
        if updated is None:
            raise TicketNotFoundError(ticket.id)
        return updated

    def _escalate(self, title: str, description: str, **fields) -> Ticket:
        ticket = self.store.create(
            title,
            status=TicketStatus.BLOCKED,
            description=description,
            creator="system",
            **fields,
        )
        if self._notifier:
            try:
                self._notifier(ticket)
            except Exception:
                logger.exception("Escalation notification failed for %s", ticket.id)
        return ticket

    # ── Queue operations ───────────────────────────────────────────────────

    async def get_next_task(self, filter: str = "ready") -> Task | None:
        """Dequeue the oldest workable task and mark it running.

        ``filter="blocked"`` instead peeks at the oldest stalled task, and
        ``filter="all"`` ignores unmet dependencies.
        """
        self._require_initialized()
        return await self.offload(self._pick_next, filter)

    def _pick_next(self, filter: str) -> Task | None:
        self.refresh_queue()
        self.check_stalled_tasks()

        if filter == "blocked":
            return self._stalled[0] if self._stalled else None

        candidates = self._queue if filter == "all" else [
            t for t in self._queue if t.status == TaskStatus.READY
        ]
        if not candidates:
            logger.info("No pending tasks in queue")
            return None

        task = candidates[0]
        ticket = self.store.get(task.ticket_id)
        if ticket is None:
            self._queue.remove(task)
            logger.warning("Ticket %s vanished before pickup", task.ticket_id)
            return None

        try:
            self._update_ticket(ticket, {"status": TicketStatus.IN_PROGRESS})
        except (VersionConflictError, sqlite3.Error, CoeError) as e:
            logger.warning("Failed to pick task %s: %s. Leaving it queued.", task.id, e)
            return None

        now = self._clock()
        self._queue.remove(task)
        task.status = TaskStatus.RUNNING
        task.last_picked_at = now
        self._running.append(task)
        self._ticket_status[task.id] = TicketStatus.IN_PROGRESS

        self.last_picked_title = task.title
        self.last_picked_at = now
        logger.info("Task picked: %s - %s", task.id, task.title)
        return task

    def check_stalled_tasks(self) -> list[Ticket]:
        """Escalate running tasks idle past the stall timeout, at most once per task."""
        self._require_initialized()
        now = self._clock()
        created = []
        for task in list(self._running):
            if task.last_picked_at is None or task.id in self._stall_escalated:
                continue
            idle = (now - task.last_picked_at).total_seconds()
            if idle <= self.stall_timeout_seconds:
                continue

            try:
                ticket = self._escalate(
                    f"P1 BLOCKED: {task.title}",
                    f"Task idle for {round(idle)}s (timeout: {self.stall_timeout_seconds:g}s)",
                    priority=1,
                    assignee="Clarity Agent",
                    task_id=task.id,
                )
            except (sqlite3.Error, CoeError):
                logger.exception("Failed to create blocked ticket for %s", task.id)
                continue

            self._stall_escalated.add(task.id)
            self._running.remove(task)
            task.status = TaskStatus.BLOCKED
            task.blocked_at = now
            self._stalled.append(task)
            created.append(ticket)
            logger.warning("Created P1 blocked ticket %s for stalled task %s", ticket.id, task.id)
        return created

    async def report_task_done(
        self,
        task_id: str,
        status: str,
        notes: str | None = None,
        code_diff: str | None = None,
        task_description: str | None = None,
        failed_criteria: list[str] | None = None,
        failed_tests: list[str] | None = None,
    ) -> TaskReport:
        """Apply a completion report to the task's ticket.

        ``failed`` goes through the retry manager: the ticket is reopened
        while retries remain, and blocked with one escalation ticket when
        the limit is reached. A ``done`` report with a code diff is verified
        first; a failing verdict counts as a failure.
        """
        self._require_initialized()
        if status not in REPORT_STATUSES:
            raise ValueError(f"Invalid status: {status}")

        ticket = await self.offload(self.store.get, task_id)
        if ticket is None:
            raise TicketNotFoundError(task_id)

        verification = None
        reason = notes or "Task reported as failed"
        if status == "done" and code_diff is not None:
            verification = await self.route_to_verification_agent(
                task_description or ticket.title, code_diff, task_id=task_id
            )
            if not verification.passed:
                status = "failed"
                reason = f"Verification failed: {verification.explanation}"

        return await self.offload(
            self._apply_report,
            task_id,
            status,
            notes,
            reason,
            failed_criteria,
            failed_tests,
            verification,
        )

    def _apply_report(
        self,
        task_id: str,
        status: str,
        notes: str | None,
        reason: str,
        failed_criteria: list[str] | None,
        failed_tests: list[str] | None,
        verification: VerificationResult | None,
    ) -> TaskReport:
        """Write the report to the ticket, then update queue and retry state.

        Nothing in memory changes until the ticket write has succeeded, so a
        write that loses to another writer leaves the task as it was.
        """
        match status:
            case "done":
                new_status = TicketStatus.DONE
            case "partial":
                new_status = TicketStatus.IN_PROGRESS
            case "blocked":
                new_status = TicketStatus.BLOCKED
            case "failed":
                retryable = self.retries.can_retry_after_failure(task_id)
                new_status = TicketStatus.OPEN if retryable else TicketStatus.BLOCKED
            case _:
                raise ValueError(f"Invalid status: {status}")

        updated = self._write_report(task_id, status, new_status, notes)

        escalation = None
        match status:
            case "done":
                self.retries.reset_retries(task_id)
                self._untrack(task_id)
                message = f"Task {task_id} marked done"
            case "partial":
                task = self._find_task(task_id)
                if task and task.status == TaskStatus.RUNNING:
                    task.last_picked_at = self._clock()
                message = f"Task {task_id} progress recorded"
            case "blocked":
                self._untrack(task_id)
                message = f"Task {task_id} marked blocked"
            case "failed":
                check = self.retries.record_failure(task_id, reason, failed_criteria, failed_tests)
                if check.can_retry:
                    self._requeue(task_id)
                    message = (
                        f"Task {task_id} failed; retry {check.current_count} of "
                        f"{check.current_count + check.remaining}"
                    )
                else:
                    self._untrack(task_id)
                    if check.should_escalate:
                        escalation = self._escalate_retries(updated, check.escalation)
                        self.retries.mark_escalated(task_id)
                        message = f"Task {task_id} hit its retry limit and was escalated"
                    else:
                        message = f"Task {task_id} failed again; already escalated"

        logger.info("Task %s reported %s", task_id, status)
        return TaskReport(
            success=True,
            task_id=task_id,
            status=updated.status.value,
            message=message,
            ticket=updated,
            verification=verification,
            escalation_ticket_id=escalation.id if escalation else None,
        )

    def _write_report(
        self, task_id: str, status: str, new_status: TicketStatus, notes: str | None
    ) -> Ticket:
        """Version-checked report write, rebuilt from a fresh read after a lost race."""
        for attempt in range(REPORT_WRITE_ATTEMPTS):
            ticket = self.store.get(task_id)
            if ticket is None:
                raise TicketNotFoundError(task_id)
            changes: dict[str, Any] = {"status": new_status}
            if notes:
                changes["description"] = f"{ticket.description}\n\n[{status}] {notes}".strip()
            if new_status == TicketStatus.DONE:
                changes["resolution"] = notes or "Completed"
            try:
                updated = self.store.update(task_id, changes, expected_version=ticket.version)
            except VersionConflictError:
                if attempt == REPORT_WRITE_ATTEMPTS - 1:
                    logger.warning("Report on %s kept losing to other writers", task_id)
                    raise
                logger.info("Report on %s raced another writer, re-reading", task_id)
                continue
            if updated is None:
                raise TicketNotFoundError(task_id)
            return updated

    def _requeue(self, task_id: str) -> None:
        task = self._untrack(task_id)
        if task is None:
            return
        task.status = TaskStatus.READY
        task.last_picked_at = None
        task.blocked_at = None
        self._stall_escalated.discard(task_id)
        self._queue.append(task)
        self._queue.sort(key=_creation_key)

    def _escalate_retries(self, ticket: Ticket, info: EscalationInfo) -> Ticket:
        evidence = "\n".join(f"- {e}" for e in info.evidence) or "- None"
        escalation = self._escalate(
            f"ESCALATED: {ticket.title}",
            f"Recommendation: {info.recommendation}\n\n{info.failure_summary}\n\nEvidence:\n{evidence}",
            priority=1,
            assignee="Clarity Agent",
            task_id=ticket.id,
        )
        logger.warning(
            "Task %s escalated after %d failures (%s)",
            ticket.id, info.total_retries, info.recommendation,
        )
        return escalation

    def queue_status(self) -> dict:
        self._require_initialized()
        self.refresh_queue()
        blocked_p1 = [
            t for t in self.store.list_tickets(status=TicketStatus.BLOCKED.value)
            if is_blocked_p1(t)
        ]
        return {
            "isEmpty": not self._queue,
            "queueCount": len(self._queue),
            "runningCount": len(self._running),
            "blockedP1Count": len(blocked_p1),
            "lastPickedTitle": self.last_picked_title,
            "lastPickedAt": self.last_picked_at.isoformat() if self.last_picked_at else None,
        }

    def queue_details(self) -> dict:
        self._require_initialized()
        self.refresh_queue()
        return {
            "queueTitles": [t.title for t in self._queue],
            "runningTitles": [t.title for t in self._running],
            "stalledTitles": [t.title for t in self._stalled],
            "blockedP1Titles": [
                t.title for t in self.store.list_tickets(status=TicketStatus.BLOCKED.value)
                if is_blocked_p1(t)
            ],
            "lastPickedTitle": self.last_picked_title,
        }

    # ── Agent routing ──────────────────────────────────────────────────────

    async def route_to_planning_agent(self, task_description: str) -> str:
        logger.info("Routing task to planning agent: %s", task_description[:80])
        return await self.agent.complete(task_description, system_prompt=PLANNING_SYSTEM_PROMPT)

    async def route_to_verification_agent(
        self, task_description: str, code_diff: str, task_id: str | None = None
    ) -> VerificationResult:
        """Ask the verification agent for a PASS/FAIL verdict on a diff.

        A FAIL (including an empty diff or an unreadable verdict) also
        creates a blocked VERIFICATION FAILED ticket.
        """
        if not code_diff.strip():
            result = VerificationResult(False, "No code diff provided for verification.")
        else:
            response = await self.agent.complete(
                f"Task: {task_description}\nCode diff: {code_diff}",
                system_prompt=VERIFICATION_SYSTEM_PROMPT,
            )
            content = response.strip()
            match = _VERDICT.search(content)
            if match:
                explanation = re.sub(r"^[:\-\s]+", "", content[match.end():]).strip()
                result = VerificationResult(match.group(1).upper() == "PASS", explanation)
            else:
                logger.warning("Ambiguous verification response: %s", content[:100])
                result = VerificationResult(
                    False, "Ambiguous response from verification; defaulting to FAIL."
                )

        if not result.passed:
            await self.offload(
                self._escalate,
                f"VERIFICATION FAILED: {task_description or 'Unknown Task'}",
                f"Explanation: {result.explanation}\n\nCode diff:\n{code_diff}",
                priority=2,
                assignee="Clarity Agent",
                task_id=task_id,
            )
        return result

    async def route_to_answer_agent(self, question: str) -> str:
        if not question.strip():
            return "Please ask a question."
        answer = await self.agent.complete(question, system_prompt=ANSWER_SYSTEM_PROMPT)
        if not answer:
            logger.warning("Answer agent returned an empty response")
            return "Could not generate an answer."
        lowered = answer.lower()
        if any(k in lowered for k in ACTION_KEYWORDS):
            suffix = "..." if len(question) > 50 else ""
            await self.offload(
                self._escalate,
                f"ANSWER NEEDS ACTION: {question[:50]}{suffix}",
                f"Question: {question}\n\nAnswer:\n{answer}",
                priority=2,
                assignee="Clarity Agent",
            )
        return answer

    async def answer_question(self, question: str, chat_id: str | None = None) -> tuple[str, str]:
        """Answer with the conversation history kept per ``chat_id``.

        Returns the answer and the chat id used.
        """
        chat_id = chat_id or f"chat-{uuid.uuid4().hex[:12]}"
        history = self._chat_histories.setdefault(chat_id, [])
        answer = await self.agent.complete(
            question, system_prompt=ANSWER_SYSTEM_PROMPT, history=list(history)
        )
        history.append({"role": "user", "content": question})
        history.append({"role": "assistant", "content": answer})
        return answer, chat_id

    async def ask_question(
        self,
        question: str,
        chat_id: str | None = None,
        timeout_seconds: float = DEFAULT_ANSWER_TIMEOUT,
        request_id: str | None = None,
    ) -> tuple[str, str]:
        """Race ``answer_question`` against a timeout.

        The agent call is not cancelled; a late answer is discarded. On
        timeout a blocked ticket is created so the question is not lost,
        and AnswerTimeoutError is raised.
        """
        call = asyncio.ensure_future(self.answer_question(question, chat_id))
        done, _ = await asyncio.wait({call}, timeout=timeout_seconds)
        if call in done:
            return call.result()

        call.add_done_callback(_discard_late_result)
        request_id = request_id or uuid.uuid4().hex[:8]
        logger.warning("Question %s timed out after %gs", request_id, timeout_seconds)
        ticket = await self.offload(
            self._escalate,
            f"TIMEOUT: Answer needed for question ({request_id})",
            f"Question: {question}\n\nNo answer within {timeout_seconds:g}s.",
            type=TicketType.AI_TO_HUMAN,
            priority=2,
        )
        raise AnswerTimeoutError(timeout_seconds, ticket.id)

    # ── Conversation routing ───────────────────────────────────────────────

    async def process_conversation_ticket(self, ticket_id: str) -> str | None:
        """Route the newest user message on a ticket; returns the agent used."""
        ticket = await self.offload(self.store.get, ticket_id)
        if ticket is None:
            logger.warning("Conversation ticket %s not found", ticket_id)
            return None
        return await self._process_conversation(ticket)

    async def process_pending_conversations(self) -> list[str]:
        routed = []
        for ticket in await self.offload(self.store.list_tickets):
            if len(ticket.thread) > self._thread_lengths.get(ticket.id, 0):
                if await self._process_conversation(ticket):
                    routed.append(ticket.id)
        return routed

    async def _process_conversation(self, ticket: Ticket) -> str | None:
        thread = ticket.thread
        if len(thread) <= self._thread_lengths.get(ticket.id, 0):
            return None
        self._thread_lengths[ticket.id] = len(thread)
        last = thread[-1]
        if last.role != "user":
            return None

        ticket = await self.offload(
            self._append, ticket.id, "system", "Status: Reviewing request..."
        )
        route = await self.conversation_route(ticket.type, last.content)
        match route:
            case "planning":
                await self.offload(self._append, ticket.id, "system", "Status: Building a plan...")
                plan = await self.route_to_planning_agent(last.content)
                await self.offload(
                    self._append,
                    ticket.id,
                    "assistant",
                    f"Plan ready:\n{plan}\n\nDo you approve this plan?",
                )
            case "verification":
                await self.offload(
                    self._append,
                    ticket.id,
                    "assistant",
                    "Please provide the code diff or changes you want verified.",
                )
            case _:
                history = [
                    {"role": m.role, "content": m.content}
                    for m in ticket.thread[:-2]
                    if m.role in ("user", "assistant")
                ]
                answer = await self.agent.complete(
                    last.content, system_prompt=ANSWER_SYSTEM_PROMPT, history=history
                )
                await self.offload(self._append, ticket.id, "assistant", answer)
        return route

    def _append(self, ticket_id: str, role: str, content: str) -> Ticket:
        updated = self.store.append_message(ticket_id, role, content)
        self._thread_lengths[ticket_id] = len(updated.thread)
        return updated

    async def conversation_route(self, ticket_type: TicketType, message: str) -> str:
        match ticket_type:
            case TicketType.AI_TO_HUMAN:
                return "planning"
            case TicketType.ANSWER_AGENT:
                return "answer"
            case TicketType.HUMAN_TO_AI | TicketType.UNSET:
                return await self.classify_intent(message)
            case _:
                assert_never(ticket_type)

    async def classify_intent(self, message: str) -> str:
        try:
            response = await self.agent.complete(message, system_prompt=CLASSIFIER_SYSTEM_PROMPT)
        except AgentError as e:
            logger.error("Conversation classification failed: %s", e)
            return "answer"
        normalized = response.strip().lower()
        if "planning" in normalized:
            return "planning"
        if "verification" in normalized:
            return "verification"
        return "answer"

    # ── Periodic upkeep ────────────────────────────────────────────────────

    async def tick(self) -> None:
        """One upkeep pass: refresh, stall scan, and auto-mode conversation routing."""
        await self.offload(self._scan)
        if self.mode.auto:
            await self.process_pending_conversations()

    def _scan(self) -> None:
        self.refresh_queue()
        self.check_stalled_tasks()

    async def run(self, interval_seconds: float = 5.0) -> None:
        """Tick forever. A failed pass is logged and the next one runs on schedule."""
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Orchestrator upkeep failed")
            await asyncio.sleep(interval_seconds)


def is_blocked_p1(ticket: Ticket) -> bool:
    if ticket.status != TicketStatus.BLOCKED:
        return False
    title = ticket.title.lower()
    return title.startswith(("p1 blocked", "[p1]", "p1:"))


def _discard_late_result(future: asyncio.Future) -> None:
    if future.cancelled():
        return
    if exc := future.exception():
        logger.warning("Late answer failed after timeout: %s", exc)
    else:
        logger.info("Discarding answer that arrived after timeout")


def queue_snapshot(store: TicketStore) -> dict:
    """Queue summary computed from the store alone, for processes without a live queue."""
    tickets = store.list_tickets()
    open_tickets = [t for t in tickets if t.status == TicketStatus.OPEN]
    return {
        "open_count": len(open_tickets),
        "in_progress_count": sum(1 for t in tickets if t.status == TicketStatus.IN_PROGRESS),
        "pending_count": sum(1 for t in tickets if t.status == TicketStatus.PENDING),
        "blocked_p1_count": sum(1 for t in tickets if is_blocked_p1(t)),
        "next_title": open_tickets[0].title if open_tickets else None,
    }
