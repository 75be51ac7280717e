"""
Tandem error types.

Each failure mode of the mandate chain has its own exception so the
orchestrator can decide between failing a task, asking for more input,
or reporting a downstream outage.
"""


class TandemError(Exception):
    """Base error for all Tandem operations."""
    pass


class ConfigError(TandemError):
    """Agent configuration is missing or malformed."""
    pass


# Mandate and payload errors
class ValidationError(TandemError):
    """A mandate or request field is missing, malformed, or inconsistent."""
    def __init__(self, field: str, message: str):
        self.field = field
        self.reason = message
        super().__init__(f"{field}: {message}")


class MandateSignatureError(ValidationError):
    """Merchant or user authorization does not verify against the contents."""
    def __init__(self, field: str, message: str):
        super().__init__(field, message)


# Authorization errors
class UnauthorizedCaller(TandemError):
    """Extension not activated, or caller identity not on the allow-list."""
    pass


class InvalidToken(TandemError):
    """Credential token is unknown, unbound, or bound to another mandate."""
    pass


class InvalidTokenState(TandemError):
    """Credential token is already bound to a different payment mandate."""
    def __init__(self, bound_to: str, requested: str):
        self.bound_to = bound_to
        self.requested = requested
        super().__init__(
            f"Token already bound to payment mandate {bound_to}, cannot bind to {requested}"
        )


# Dispatch errors
class UnknownOperation(TandemError):
    """Tool selection returned a name with no registered handler."""
    def __init__(self, name: str, available: list[str]):
        self.name = name
        self.available = available
        super().__init__(
            f"Unknown operation '{name}'. Available: {', '.join(sorted(available))}"
        )


class DownstreamFailure(TandemError):
    """A call to another agent errored or returned a failed task."""
    pass


class DownstreamTimeout(DownstreamFailure):
    """A call to another agent did not answer in time."""
    def __init__(self, target: str, timeout_seconds: float):
        self.target = target
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Downstream unavailable: {target} did not respond within {timeout_seconds:g}s"
        )


# Task errors
class ChallengeMismatch(TandemError):
    """Challenge response did not match. The task stays input-required."""
    pass


class TaskNotCancelable(TandemError):
    """Task is already completed or canceled."""
    def __init__(self, task_id: str, state: str):
        self.task_id = task_id
        self.state = state
        super().__init__(f"Task {task_id} cannot be canceled in state {state}")


class TaskNotFound(TandemError):
    """Task id is not known to this agent."""
    pass
