"""Tests for the task queue, stall escalation, retries and agent routing."""

import asyncio
import sqlite3
import tempfile
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from coe_orchestrator.app import build_context
from coe_orchestrator.config import Config
from coe_orchestrator.core.orchestrator import ModeFlag, Orchestrator, is_blocked_p1
from coe_orchestrator.core.retry import RetryLimitManager
from coe_orchestrator.db.models import TaskStatus, ThreadMessage, TicketStatus, TicketType
from coe_orchestrator.errors import (
    AgentError,
    AnswerTimeoutError,
    OrchestratorNotInitializedError,
    TicketNotFoundError,
    VersionConflictError,
)


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


class ScriptedAgent:
    """Agent backend that replays canned responses."""

    def __init__(self, *responses, default="ok", delay: float = 0):
        self.responses = list(responses)
        self.default = default
        self.delay = delay
        self.calls = []

    async def complete(self, prompt, *, system_prompt=None, history=None):
        self.calls.append({"prompt": prompt, "system_prompt": system_prompt, "history": history})
        if self.delay:
            await asyncio.sleep(self.delay)
        response = self.responses.pop(0) if self.responses else self.default
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def agent():
    return ScriptedAgent()


@pytest.fixture
def app(clock, agent):
    """Fully wired services over a temporary database."""
    with tempfile.TemporaryDirectory() as tmp:
        config = Config(db_path=Path(tmp) / "test.db")
        ctx = build_context(config, agent=agent, clock=clock)
        yield ctx
        ctx.close()


class EditingAgent(ScriptedAgent):
    """Edits a ticket's description while its answer is pending."""

    def __init__(self, store, ticket_id, *responses):
        super().__init__(*responses)
        self.store = store
        self.ticket_id = ticket_id

    async def complete(self, prompt, *, system_prompt=None, history=None):
        self.store.update(self.ticket_id, {"description": "Edited during review"})
        return await super().complete(prompt, system_prompt=system_prompt, history=history)


def _add(app, clock, title, **fields):
    clock.advance(1)
    return app.store.create(title, **fields)


def _titles(tickets):
    return [t.title for t in tickets]


class TestQueueOrder:
    def test_fifo_by_creation_time(self, app, clock):
        for title in ("First", "Second", "Third"):
            _add(app, clock, title)

        picked = [asyncio.run(app.orchestrator.get_next_task()) for _ in range(3)]
        assert [t.title for t in picked] == ["First", "Second", "Third"]
        assert asyncio.run(app.orchestrator.get_next_task()) is None

    def test_pick_marks_running_and_in_progress(self, app, clock):
        ticket = _add(app, clock, "Fix bug")

        task = asyncio.run(app.orchestrator.get_next_task())
        assert task.id == ticket.id
        assert task.ticket_id == ticket.id
        assert task.status == TaskStatus.RUNNING
        assert task.last_picked_at == clock.now
        stored = app.store.get(ticket.id)
        assert stored.status == TicketStatus.IN_PROGRESS
        assert stored.version == 2

    def test_only_open_and_in_progress_are_queued(self, app, clock):
        _add(app, clock, "Done already", status="done")
        _add(app, clock, "Blocked", status="blocked")
        _add(app, clock, "Resumed", status="in-progress")
        _add(app, clock, "Fresh")

        first = asyncio.run(app.orchestrator.get_next_task())
        second = asyncio.run(app.orchestrator.get_next_task())
        assert (first.title, second.title) == ("Resumed", "Fresh")
        assert asyncio.run(app.orchestrator.get_next_task()) is None

    def test_tickets_created_later_are_picked_up(self, app, clock):
        assert asyncio.run(app.orchestrator.get_next_task()) is None
        _add(app, clock, "Late arrival")
        task = asyncio.run(app.orchestrator.get_next_task())
        assert task.title == "Late arrival"

    def test_unmet_dependency_holds_task_back(self, app, clock):
        later = _add(app, clock, "Needs schema")
        schema = _add(app, clock, "Create schema")
        app.store.add_dependency(later.id, schema.id)

        task = asyncio.run(app.orchestrator.get_next_task())
        assert task.title == "Create schema"
        assert asyncio.run(app.orchestrator.get_next_task()) is None

        asyncio.run(app.orchestrator.report_task_done(schema.id, "done"))
        task = asyncio.run(app.orchestrator.get_next_task())
        assert task.title == "Needs schema"

    def test_all_filter_ignores_dependencies(self, app, clock):
        later = _add(app, clock, "Needs schema")
        schema = _add(app, clock, "Create schema")
        app.store.add_dependency(later.id, schema.id)

        task = asyncio.run(app.orchestrator.get_next_task("all"))
        assert task.title == "Needs schema"


class TestInitialization:
    def test_uninitialized_orchestrator_rejects_queue_calls(self, app, agent):
        orch = Orchestrator(app.store, agent, RetryLimitManager(), ModeFlag())
        with pytest.raises(OrchestratorNotInitializedError):
            asyncio.run(orch.get_next_task())
        with pytest.raises(OrchestratorNotInitializedError):
            asyncio.run(orch.report_task_done("TICKET-1", "done"))
        with pytest.raises(OrchestratorNotInitializedError):
            orch.queue_status()

    def test_store_failure_on_load_leaves_empty_queue(self, app, clock, agent, monkeypatch):
        _add(app, clock, "Unreachable")

        def broken(*args, **kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(app.store, "list_tickets", broken)
        orch = Orchestrator(app.store, agent, RetryLimitManager(), ModeFlag(), clock=clock)
        orch.initialize()

        assert orch.initialized
        assert asyncio.run(orch.get_next_task()) is None

    def test_close_stops_change_tracking(self, app, clock):
        app.orchestrator.close()
        assert not app.orchestrator.initialized
        with pytest.raises(OrchestratorNotInitializedError):
            asyncio.run(app.orchestrator.get_next_task())


class TestStallDetection:
    def test_idle_task_gets_one_p1_ticket(self, app, clock):
        ticket = _add(app, clock, "Fix bug")
        asyncio.run(app.orchestrator.get_next_task())

        clock.advance(31)
        created = app.orchestrator.check_stalled_tasks()
        assert len(created) == 1
        blocker = created[0]
        assert blocker.title == "P1 BLOCKED: Fix bug"
        assert blocker.status == TicketStatus.BLOCKED
        assert blocker.priority == 1
        assert blocker.task_id == ticket.id
        assert blocker.description == "Task idle for 31s (timeout: 30s)"

        clock.advance(60)
        assert app.orchestrator.check_stalled_tasks() == []
        asyncio.run(app.orchestrator.get_next_task())
        blocked = app.store.list_tickets(status="blocked")
        assert _titles(blocked) == ["P1 BLOCKED: Fix bug"]

    def test_scan_runs_on_get_next_task(self, app, clock):
        _add(app, clock, "Fix bug")
        asyncio.run(app.orchestrator.get_next_task())
        clock.advance(45)

        asyncio.run(app.orchestrator.get_next_task())
        assert app.orchestrator.queue_status()["blockedP1Count"] == 1

    def test_busy_task_within_timeout_is_left_alone(self, app, clock):
        _add(app, clock, "Fix bug")
        asyncio.run(app.orchestrator.get_next_task())
        clock.advance(30)
        assert app.orchestrator.check_stalled_tasks() == []

    def test_blocked_filter_returns_stalled_task(self, app, clock):
        _add(app, clock, "Fix bug")
        asyncio.run(app.orchestrator.get_next_task())
        assert asyncio.run(app.orchestrator.get_next_task("blocked")) is None

        clock.advance(31)
        stalled = asyncio.run(app.orchestrator.get_next_task("blocked"))
        assert stalled.title == "Fix bug"
        assert stalled.status == TaskStatus.BLOCKED

    def test_escalations_reach_the_notifier(self, app, clock, agent):
        app.orchestrator.close()
        sent = []
        orch = Orchestrator(
            app.store, agent, RetryLimitManager(), ModeFlag(), clock=clock, notifier=sent.append
        )
        orch.initialize()
        _add(app, clock, "Fix bug")
        asyncio.run(orch.get_next_task())
        clock.advance(31)
        orch.check_stalled_tasks()
        orch.close()
        assert [t.title for t in sent] == ["P1 BLOCKED: Fix bug"]


class TestReportTaskDone:
    def test_done_closes_ticket(self, app, clock):
        ticket = _add(app, clock, "Fix bug", description="Crash on save")
        asyncio.run(app.orchestrator.get_next_task())

        report = asyncio.run(app.orchestrator.report_task_done(ticket.id, "done", notes="Patched"))
        assert report.success
        assert report.status == "done"
        stored = app.store.get(ticket.id)
        assert stored.status == TicketStatus.DONE
        assert stored.resolution == "Patched"
        assert stored.description == "Crash on save\n\n[done] Patched"

    def test_partial_keeps_ticket_in_progress(self, app, clock):
        ticket = _add(app, clock, "Fix bug")
        asyncio.run(app.orchestrator.get_next_task())
        clock.advance(25)

        asyncio.run(app.orchestrator.report_task_done(ticket.id, "partial", notes="Half way"))
        assert app.store.get(ticket.id).status == TicketStatus.IN_PROGRESS
        clock.advance(25)
        assert app.orchestrator.check_stalled_tasks() == []

    def test_blocked_report_blocks_ticket(self, app, clock):
        ticket = _add(app, clock, "Fix bug")
        asyncio.run(app.orchestrator.get_next_task())
        asyncio.run(app.orchestrator.report_task_done(ticket.id, "blocked"))
        assert app.store.get(ticket.id).status == TicketStatus.BLOCKED
        assert asyncio.run(app.orchestrator.get_next_task()) is None

    def test_unknown_ticket(self, app):
        with pytest.raises(TicketNotFoundError):
            asyncio.run(app.orchestrator.report_task_done("TICKET-missing", "done"))

    def test_failure_reopens_until_limit_then_escalates_once(self, app, clock):
        ticket = _add(app, clock, "Flaky import")

        for attempt in (1, 2):
            task = asyncio.run(app.orchestrator.get_next_task())
            assert task.id == ticket.id
            report = asyncio.run(app.orchestrator.report_task_done(
                ticket.id, "failed", notes=f"Attempt {attempt} failed"
            ))
            assert report.status == "open"
            assert report.escalation_ticket_id is None

        asyncio.run(app.orchestrator.get_next_task())
        report = asyncio.run(app.orchestrator.report_task_done(ticket.id, "failed", notes="Still broken"))
        assert report.status == "blocked"
        escalation = app.store.get(report.escalation_ticket_id)
        assert escalation.title == "ESCALATED: Flaky import"
        assert escalation.priority == 1
        assert escalation.status == TicketStatus.BLOCKED
        assert "Recommendation: change-approach" in escalation.description
        assert app.retries.get_state(ticket.id).escalated

        again = asyncio.run(app.orchestrator.report_task_done(ticket.id, "failed", notes="Again"))
        assert again.escalation_ticket_id is None
        escalations = [t for t in app.store.list_tickets() if t.title.startswith("ESCALATED:")]
        assert len(escalations) == 1

    def test_done_resets_retry_count(self, app, clock):
        ticket = _add(app, clock, "Fix bug")
        asyncio.run(app.orchestrator.get_next_task())
        asyncio.run(app.orchestrator.report_task_done(ticket.id, "failed"))
        assert app.retries.check_retry(ticket.id).current_count == 1

        asyncio.run(app.orchestrator.get_next_task())
        asyncio.run(app.orchestrator.report_task_done(ticket.id, "done"))
        assert app.retries.get_state(ticket.id) is None

    def test_failing_verification_counts_as_failure(self, app, clock, agent):
        agent.responses = ["FAIL - the null check is missing"]
        ticket = _add(app, clock, "Fix bug")
        asyncio.run(app.orchestrator.get_next_task())

        report = asyncio.run(app.orchestrator.report_task_done(
            ticket.id, "done", code_diff="+ return value"
        ))
        assert not report.verification.passed
        assert report.verification.explanation == "the null check is missing"
        assert report.status == "open"
        failed = [t for t in app.store.list_tickets() if t.title.startswith("VERIFICATION FAILED:")]
        assert len(failed) == 1
        assert failed[0].status == TicketStatus.BLOCKED

    def test_passing_verification_closes_ticket(self, app, clock, agent):
        agent.responses = ["PASS: meets the criteria"]
        ticket = _add(app, clock, "Fix bug")
        asyncio.run(app.orchestrator.get_next_task())

        report = asyncio.run(app.orchestrator.report_task_done(
            ticket.id, "done", code_diff="+ if value is None: return"
        ))
        assert report.verification.passed
        assert report.status == "done"

    def test_edit_during_verification_is_kept(self, app, clock):
        ticket = _add(app, clock, "Fix bug", description="Crash on save")
        asyncio.run(app.orchestrator.get_next_task())
        app.orchestrator.agent = EditingAgent(app.store, ticket.id, "PASS - fine")

        report = asyncio.run(app.orchestrator.report_task_done(
            ticket.id, "done", notes="Patched", code_diff="+ return value"
        ))
        assert report.status == "done"
        stored = app.store.get(ticket.id)
        assert stored.description == "Edited during review\n\n[done] Patched"
        assert stored.version == 4
        assert app.orchestrator.queue_status()["runningCount"] == 0

    def test_failed_report_after_edit_counts_once(self, app, clock):
        ticket = _add(app, clock, "Fix bug")
        asyncio.run(app.orchestrator.get_next_task())
        app.orchestrator.agent = EditingAgent(app.store, ticket.id, "FAIL - no tests")

        report = asyncio.run(app.orchestrator.report_task_done(
            ticket.id, "done", notes="Tried", code_diff="+ return value"
        ))
        assert report.status == "open"
        assert app.retries.get_state(ticket.id).retry_count == 1
        assert app.store.get(ticket.id).description == "Edited during review\n\n[failed] Tried"
        assert not [t for t in app.store.list_tickets() if t.title.startswith("ESCALATED:")]

    def test_lost_write_leaves_task_and_retries_alone(self, app, clock, monkeypatch):
        ticket = _add(app, clock, "Fix bug")
        asyncio.run(app.orchestrator.get_next_task())
        app.retries.set_max_retries(ticket.id, 1)

        real_update = app.store.update

        def racing_update(ticket_id, changes, expected_version=None):
            if expected_version is not None:
                real_update(ticket_id, {"assignee": "someone-else"})
            return real_update(ticket_id, changes, expected_version=expected_version)

        monkeypatch.setattr(app.store, "update", racing_update)
        with pytest.raises(VersionConflictError):
            asyncio.run(app.orchestrator.report_task_done(ticket.id, "failed", notes="Broke"))

        assert app.retries.get_state(ticket.id).retry_count == 0
        assert app.store.get(ticket.id).status == TicketStatus.IN_PROGRESS
        assert app.orchestrator.queue_status()["runningCount"] == 1
        assert not [t for t in app.store.list_tickets() if t.title.startswith("ESCALATED:")]


class TestModeGate:
    def test_manual_mode_parks_new_human_facing_tickets(self, app, clock):
        ticket = _add(app, clock, "Which database?", type=TicketType.AI_TO_HUMAN)
        assert asyncio.run(app.orchestrator.get_next_task()) is None
        assert app.store.get(ticket.id).status == TicketStatus.PENDING

    def test_auto_mode_routes_them_to_the_queue(self, app, clock):
        app.mode.set_auto(True)
        ticket = _add(app, clock, "Which database?", type=TicketType.AI_TO_HUMAN)
        task = asyncio.run(app.orchestrator.get_next_task())
        assert task.id == ticket.id

    def test_other_ticket_types_are_not_gated(self, app, clock):
        _add(app, clock, "Refactor parser", type=TicketType.HUMAN_TO_AI)
        assert asyncio.run(app.orchestrator.get_next_task()).title == "Refactor parser"


class TestConversationRouting:
    def _ticket_with_message(self, app, clock, ticket_type, text):
        ticket = _add(app, clock, "Conversation", type=ticket_type, status="blocked")
        return app.store.append_message(ticket.id, "user", text)

    def test_human_facing_ticket_goes_to_planning(self, app, clock, agent):
        agent.responses = ["1. Add model\n2. Add view"]
        ticket = self._ticket_with_message(app, clock, TicketType.AI_TO_HUMAN, "Build login")

        route = asyncio.run(app.orchestrator.process_conversation_ticket(ticket.id))
        assert route == "planning"
        thread = app.store.get(ticket.id).thread
        assert thread[-1].role == "assistant"
        assert thread[-1].content.startswith("Plan ready:\n1. Add model")
        assert agent.calls[0]["system_prompt"].startswith("You are a Planning agent")

    def test_answer_agent_ticket_goes_to_answer(self, app, clock, agent):
        agent.responses = ["Use pathlib."]
        ticket = self._ticket_with_message(app, clock, TicketType.ANSWER_AGENT, "How to join paths?")

        assert asyncio.run(app.orchestrator.process_conversation_ticket(ticket.id)) == "answer"
        assert app.store.get(ticket.id).thread[-1].content == "Use pathlib."

    def test_untyped_ticket_is_classified(self, app, clock, agent):
        agent.responses = ["verification"]
        ticket = self._ticket_with_message(app, clock, TicketType.UNSET, "Check my change")

        assert asyncio.run(app.orchestrator.process_conversation_ticket(ticket.id)) == "verification"
        assert "code diff" in app.store.get(ticket.id).thread[-1].content

    def test_classifier_failure_falls_back_to_answer(self, app, agent):
        agent.responses = [AgentError("offline")]
        route = asyncio.run(app.orchestrator.conversation_route(TicketType.HUMAN_TO_AI, "hi"))
        assert route == "answer"

    def test_message_is_processed_once(self, app, clock, agent):
        ticket = self._ticket_with_message(app, clock, TicketType.ANSWER_AGENT, "Question")
        assert asyncio.run(app.orchestrator.process_conversation_ticket(ticket.id)) == "answer"
        assert asyncio.run(app.orchestrator.process_conversation_ticket(ticket.id)) is None
        assert len(agent.calls) == 1

    def test_pending_conversations_are_swept(self, app, clock, agent):
        first = self._ticket_with_message(app, clock, TicketType.ANSWER_AGENT, "One")
        second = self._ticket_with_message(app, clock, TicketType.ANSWER_AGENT, "Two")
        routed = asyncio.run(app.orchestrator.process_pending_conversations())
        assert routed == [first.id, second.id]


class TestAgentRoutes:
    def test_ambiguous_verdict_is_a_failure(self, app, agent):
        agent.responses = ["Looks reasonable"]
        result = asyncio.run(app.orchestrator.route_to_verification_agent("Task", "+x"))
        assert not result.passed
        assert result.summary().startswith("FAIL - ")

    def test_empty_diff_fails_without_agent_call(self, app, agent):
        result = asyncio.run(app.orchestrator.route_to_verification_agent("Task", "   "))
        assert not result.passed
        assert agent.calls == []

    def test_actionable_answer_creates_ticket(self, app, agent):
        agent.responses = ["You should fix the config loader."]
        answer = asyncio.run(app.orchestrator.route_to_answer_agent("Why does startup fail?"))
        assert answer == "You should fix the config loader."
        titles = _titles(app.store.list_tickets())
        assert titles == ["ANSWER NEEDS ACTION: Why does startup fail?"]

    def test_empty_question(self, app, agent):
        assert asyncio.run(app.orchestrator.route_to_answer_agent("  ")) == "Please ask a question."
        assert agent.calls == []


class TestAskQuestion:
    def test_history_is_kept_per_chat(self, app, agent):
        agent.responses = ["Answer one", "Answer two"]
        answer, chat_id = asyncio.run(app.orchestrator.ask_question("Q1"))
        assert answer == "Answer one"

        answer, same_chat = asyncio.run(app.orchestrator.ask_question("Q2", chat_id=chat_id))
        assert answer == "Answer two"
        assert same_chat == chat_id
        assert agent.calls[1]["history"] == [
            {"role": "user", "content": "Q1"},
            {"role": "assistant", "content": "Answer one"},
        ]

    def test_timeout_creates_ticket_and_raises(self, app):
        app.orchestrator.agent = ScriptedAgent(delay=0.5)

        async def ask():
            with pytest.raises(AnswerTimeoutError) as exc:
                await app.orchestrator.ask_question("Slow?", timeout_seconds=0.05, request_id="req-1")
            await asyncio.sleep(0.6)
            return exc.value

        error = asyncio.run(ask())
        ticket = app.store.get(error.ticket_id)
        assert ticket.title == "TIMEOUT: Answer needed for question (req-1)"
        assert ticket.type == TicketType.AI_TO_HUMAN
        assert ticket.status == TicketStatus.BLOCKED
        assert "Slow?" in ticket.description


class TestQueueStatus:
    def test_counts(self, app, clock):
        _add(app, clock, "A")
        _add(app, clock, "B")
        _add(app, clock, "P1 BLOCKED: old stall", status="blocked", priority=1)
        asyncio.run(app.orchestrator.get_next_task())

        status = app.orchestrator.queue_status()
        assert status["queueCount"] == 1
        assert status["runningCount"] == 1
        assert status["blockedP1Count"] == 1
        assert status["lastPickedTitle"] == "A"

    def test_queue_details(self, app, clock):
        _add(app, clock, "A")
        _add(app, clock, "B")
        asyncio.run(app.orchestrator.get_next_task())
        details = app.orchestrator.queue_details()
        assert details["queueTitles"] == ["B"]
        assert details["runningTitles"] == ["A"]

    def test_is_blocked_p1(self, app, clock):
        p1 = _add(app, clock, "[P1] urgent", status="blocked")
        other = _add(app, clock, "Blocked on review", status="blocked")
        assert is_blocked_p1(p1)
        assert not is_blocked_p1(other)


class TestConcurrentWrites:
    def test_disjoint_change_is_merged(self, app, clock):
        ticket = _add(app, clock, "Fix bug")
        app.store.update(ticket.id, {"assignee": "amy"})

        updated = app.orchestrator._update_ticket(ticket, {"status": TicketStatus.IN_PROGRESS})
        assert updated.status == TicketStatus.IN_PROGRESS
        assert updated.assignee == "amy"
        assert updated.version == 3

    def test_same_field_change_is_not_overwritten(self, app, clock):
        ticket = _add(app, clock, "Fix bug")
        app.store.update(ticket.id, {"status": "blocked"})

        with pytest.raises(VersionConflictError) as exc:
            app.orchestrator._update_ticket(ticket, {"status": TicketStatus.IN_PROGRESS})
        assert exc.value.conflict.actual_version == 2
        stored = app.store.get(ticket.id)
        assert stored.status == TicketStatus.BLOCKED
        assert stored.version == 2


class TestWorkerThread:
    def _orchestrator(self, app, clock, agent, notifier):
        app.orchestrator.close()
        orch = Orchestrator(
            app.store, agent, RetryLimitManager(), ModeFlag(), clock=clock, notifier=notifier
        )
        orch.initialize()
        return orch

    def test_escalation_notice_runs_off_the_event_loop(self, app, clock, agent):
        threads = []
        orch = self._orchestrator(
            app, clock, agent, lambda ticket: threads.append(threading.current_thread())
        )
        _add(app, clock, "Fix bug")
        asyncio.run(orch.get_next_task())
        clock.advance(31)
        asyncio.run(orch.get_next_task())
        orch.close()

        assert len(threads) == 1
        assert threads[0] is not threading.main_thread()
        assert threads[0].name.startswith("coe-store")

    def test_slow_notice_does_not_stall_the_loop(self, app, clock, agent):
        orch = self._orchestrator(app, clock, agent, lambda ticket: time.sleep(0.3))
        _add(app, clock, "Fix bug")
        asyncio.run(orch.get_next_task())
        clock.advance(31)

        async def scenario():
            beats = 0

            async def heartbeat():
                nonlocal beats
                while True:
                    await asyncio.sleep(0.01)
                    beats += 1

            beat = asyncio.create_task(heartbeat())
            await orch.get_next_task()
            beat.cancel()
            return beats

        beats = asyncio.run(scenario())
        orch.close()
        assert beats >= 10


class TestUpkeep:
    def test_failed_pass_does_not_stop_the_loop(self, app, monkeypatch):
        calls = []

        async def flaky_tick():
            calls.append(len(calls))
            if len(calls) == 1:
                raise ValueError("Unknown ticket type: legacy")
            raise asyncio.CancelledError()

        monkeypatch.setattr(app.orchestrator, "tick", flaky_tick)
        with pytest.raises(asyncio.CancelledError):
            asyncio.run(app.orchestrator.run(interval_seconds=0))
        assert calls == [0, 1]

    def test_tick_scans_for_stalls(self, app, clock):
        _add(app, clock, "Fix bug")
        asyncio.run(app.orchestrator.get_next_task())
        clock.advance(31)
        asyncio.run(app.orchestrator.tick())
        assert app.orchestrator.queue_status()["blockedP1Count"] == 1
