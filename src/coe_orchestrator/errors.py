"""Exception types shared across the orchestrator."""


class CoeError(Exception):
    """Base class for orchestrator errors."""


class OrchestratorNotInitializedError(CoeError):
    def __init__(self):
        super().__init__("Orchestrator not initialized")


class TicketNotFoundError(CoeError):
    def __init__(self, ticket_id: str):
        super().__init__(f"Ticket not found: {ticket_id}")
        self.ticket_id = ticket_id


class VersionConflictError(CoeError):
    """Raised when a write's expected version does not match the stored one."""

    def __init__(self, conflict):
        super().__init__(conflict.message)
        self.conflict = conflict


class LockUnavailableError(CoeError):
    def __init__(self, resource_id: str, holder: str | None):
        super().__init__(f"Resource {resource_id} is locked by {holder}")
        self.resource_id = resource_id
        self.holder = holder


class StoreBusyError(CoeError):
    """Raised when a transient store error persists past the retry cap."""


class AnswerTimeoutError(CoeError):
    def __init__(self, timeout_seconds: float, ticket_id: str | None):
        super().__init__(f"Answer timed out after {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds
        self.ticket_id = ticket_id


class InvalidParamsError(CoeError):
    """Raised by protocol handlers when request params have the wrong shape."""


class DependencyCycleError(CoeError):
    def __init__(self, cycle: list[str]):
        super().__init__("Dependency cycle: " + " -> ".join(cycle))
        self.cycle = cycle


class AgentError(CoeError):
    """Raised when an LLM agent call fails."""
