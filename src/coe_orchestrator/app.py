"""Composition root: builds one fully wired set of orchestrator services."""

import logging
import sqlite3
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime

from coe_orchestrator.config import Config, get_config
from coe_orchestrator.core.agents import AgentBackend, ClaudeCliBackend
from coe_orchestrator.core.locking import LockManager
from coe_orchestrator.core.orchestrator import ModeFlag, Orchestrator
from coe_orchestrator.core.retry import RetryLimitManager
from coe_orchestrator.core.tickets import TicketStore
from coe_orchestrator.db.engine import init_db
from coe_orchestrator.db.models import utcnow
from coe_orchestrator.integrations.slack import escalation_notifier

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    config: Config
    db: sqlite3.Connection
    locks: LockManager
    store: TicketStore
    retries: RetryLimitManager
    mode: ModeFlag
    orchestrator: Orchestrator

    def close(self) -> None:
        self.orchestrator.close()
        self.db.close()


def build_context(
    config: Config | None = None,
    agent: AgentBackend | None = None,
    clock: Callable[[], datetime] | None = None,
    initialize: bool = True,
) -> AppContext:
    """Construct and wire every service once. Tests pass a fake agent and clock."""
    config = config or get_config()
    db = init_db(config.db_path)
    locks = LockManager()
    clock = clock or utcnow
    store = TicketStore(db, locks, now=clock)
    retries = RetryLimitManager(default_max_retries=config.max_retries)
    mode = ModeFlag(auto=config.auto_mode)

    orchestrator = Orchestrator(
        store,
        agent or ClaudeCliBackend(model=config.agent_model),
        retries,
        mode,
        stall_timeout_seconds=config.stall_timeout_seconds,
        clock=clock,
        notifier=escalation_notifier(config.slack_bot_token, config.slack_channel),
    )
    if initialize:
        orchestrator.initialize()

    return AppContext(
        config=config,
        db=db,
        locks=locks,
        store=store,
        retries=retries,
        mode=mode,
        orchestrator=orchestrator,
    )


@contextmanager
def app_context(config: Config | None = None, **kwargs) -> Iterator[AppContext]:
    """Build the services on entry, close the database on exit."""
    app = build_context(config, **kwargs)
    try:
        yield app
    finally:
        app.close()
