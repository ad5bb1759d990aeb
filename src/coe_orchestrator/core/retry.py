"""Per-task failure counting and escalation recommendations."""

import logging
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from coe_orchestrator.db.models import FailureRecord, RetryState, utcnow

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3

CRITICAL_KEYWORDS = ("required", "critical", "must", "security")


def is_critical(criterion: str) -> bool:
    text = criterion.lower()
    return any(k in text for k in CRITICAL_KEYWORDS)


def format_duration(seconds: float) -> str:
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m"
    return f"{minutes // 60}h {minutes % 60}m"


@dataclass
class EscalationInfo:
    task_id: str
    total_retries: int
    failure_summary: str
    recommendation: str  # manual-fix | change-approach | skip
    evidence: list[str] = field(default_factory=list)


@dataclass
class RetryCheck:
    can_retry: bool
    current_count: int
    remaining: int
    should_escalate: bool
    escalation: EscalationInfo | None = None


class RetryLimitManager:
    """Tracks failures per task and decides when to stop retrying.

    A task moves from clean, through counted failures, to the retry limit
    where ``should_escalate`` is set. ``mark_escalated`` is terminal until
    ``reset_retries`` clears the task's state.
    """

    def __init__(
        self,
        default_max_retries: int = DEFAULT_MAX_RETRIES,
        now: Callable[[], datetime] = utcnow,
    ):
        self.default_max_retries = default_max_retries
        self._now = now
        self._states: dict[str, RetryState] = {}

    def _state(self, task_id: str) -> RetryState:
        state = self._states.get(task_id)
        if state is None:
            state = RetryState(task_id=task_id, max_retries=self.default_max_retries)
            self._states[task_id] = state
        return state

    def record_failure(
        self,
        task_id: str,
        reason: str,
        failed_criteria: list[str] | None = None,
        failed_tests: list[str] | None = None,
    ) -> RetryCheck:
        state = self._state(task_id)
        now = self._now()
        if state.first_failure_at is None:
            state.first_failure_at = now

        state.retry_count += 1
        state.failures.append(
            FailureRecord(
                reason=reason,
                failed_criteria=failed_criteria,
                failed_tests=failed_tests,
                timestamp=now,
            )
        )
        logger.warning(
            "Task %s failure #%d/%d: %s",
            task_id, state.retry_count, state.max_retries, reason,
        )
        return self.check_retry(task_id)

    def check_retry(self, task_id: str) -> RetryCheck:
        state = self._states.get(task_id)
        if state is None:
            return RetryCheck(
                can_retry=True,
                current_count=0,
                remaining=self.default_max_retries,
                should_escalate=False,
            )

        at_limit = state.retry_count >= state.max_retries
        check = RetryCheck(
            can_retry=not at_limit and not state.escalated,
            current_count=state.retry_count,
            remaining=max(0, state.max_retries - state.retry_count),
            should_escalate=at_limit and not state.escalated,
        )
        if check.should_escalate:
            check.escalation = self._escalation_info(state)
        return check

    def can_retry_after_failure(self, task_id: str) -> bool:
        """What ``record_failure(task_id, ...)`` would report as ``can_retry``."""
        state = self._states.get(task_id)
        if state is None:
            return self.default_max_retries > 1
        return not state.escalated and state.retry_count + 1 < state.max_retries

    def _escalation_info(self, state: RetryState) -> EscalationInfo:
        reasons = list(dict.fromkeys(f.reason for f in state.failures))
        test_counts: Counter[str] = Counter()
        criteria: list[str] = []
        for failure in state.failures:
            test_counts.update(set(failure.failed_tests or []))
            for c in failure.failed_criteria or []:
                if c not in criteria:
                    criteria.append(c)

        recurring_tests = sorted(t for t, n in test_counts.items() if n > 1)
        has_critical = any(is_critical(c) for c in criteria)
        all_non_critical = bool(criteria) and not has_critical

        evidence = []
        if recurring_tests:
            evidence.append("Same test(s) failing repeatedly: " + ", ".join(recurring_tests))
        if len(reasons) > 1:
            evidence.append(
                f"{len(reasons)} different failure reasons; the current approach may be wrong"
            )
        if all_non_critical:
            evidence.append("Failing criteria look non-critical; consider skipping")

        if recurring_tests and has_critical:
            recommendation = "manual-fix"
        elif len(reasons) > 1:
            recommendation = "change-approach"
        elif all_non_critical and not recurring_tests:
            recommendation = "skip"
        else:
            recommendation = "manual-fix"

        span = 0.0
        if state.failures and state.first_failure_at:
            span = (state.failures[-1].timestamp - state.first_failure_at).total_seconds()
        all_tests = sorted(test_counts)
        summary = "\n".join([
            f"{state.retry_count} retry attempts over {format_duration(span)}",
            f"Failed tests: {', '.join(all_tests) if all_tests else 'None'}",
            f"Failed criteria: {'; '.join(criteria[:3]) if criteria else 'None'}",
            f"Reasons: {'; '.join(reasons)}",
        ])

        return EscalationInfo(
            task_id=state.task_id,
            total_retries=state.retry_count,
            failure_summary=summary,
            recommendation=recommendation,
            evidence=evidence,
        )

    def mark_escalated(self, task_id: str) -> None:
        state = self._states.get(task_id)
        if state is None or state.escalated:
            return
        state.escalated = True
        state.escalated_at = self._now()
        logger.info("Task %s marked as escalated", task_id)

    def reset_retries(self, task_id: str) -> None:
        if self._states.pop(task_id, None) is not None:
            logger.info("Reset retries for task %s", task_id)

    def get_state(self, task_id: str) -> RetryState | None:
        return self._states.get(task_id)

    def get_tasks_at_limit(self) -> list[RetryState]:
        return [
            s for s in self._states.values()
            if s.retry_count >= s.max_retries and not s.escalated
        ]

    def get_escalated_tasks(self) -> list[RetryState]:
        return [s for s in self._states.values() if s.escalated]

    def set_max_retries(self, task_id: str, max_retries: int) -> None:
        """Set a per-task limit, creating state for tasks that have not failed yet."""
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self._state(task_id).max_retries = max_retries

    def clear(self) -> None:
        self._states.clear()
