"""
Generic task orchestrator.

Every agent role runs the same request loop; what differs per role is
configuration handed in at construction:

* ``operations``: operation name -> handler
* ``selector``: maps the request's free text to an operation name
* ``caller_policy``: optional check on the caller's declared identity
* ``supported_extensions``: protocol extensions this agent speaks

Request loop for one inbound message, serialized per task id:

    1. terminal task?            -> return it unchanged
    2. extension negotiation     -> UnauthorizedCaller without the AP2 URI
    3. caller policy             -> UnauthorizedCaller (before any parsing)
    4. submitted/input-required  -> working
    5. parse envelope, require signed payment mandates
    6. select operation          -> UnknownOperation if unmapped
    7. run handler               -> completed | input-required | failed
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Iterable, Mapping, Optional, Protocol, Sequence

from .audit import AuditSink, EventType, MemoryAuditSink
from .config import AP2_EXTENSION_URI
from .errors import ChallengeMismatch, TandemError, UnauthorizedCaller, UnknownOperation, ValidationError
from .message import (
    PAYMENT_MANDATE_DATA_KEY,
    SHOPPING_AGENT_ID_KEY,
    Artifact,
    DataPart,
    Envelope,
    Message,
    MessageRole,
    Part,
    TextPart,
    data_artifact,
)
from .task import Task, TaskState, TaskStore, new_task_id


logger = logging.getLogger(__name__)


@dataclass
class AgentResponse:
    task: Task
    activated_extensions: frozenset[str]

    @property
    def state(self) -> TaskState:
        return self.task.state

    def to_dict(self) -> dict[str, Any]:
        return {
            "task": self.task.to_dict(),
            "activated_extensions": sorted(self.activated_extensions),
        }


class ToolSelector(Protocol):
    def select(self, prompt: str, operations: Sequence[str]) -> Optional[str]: ...


class KeywordToolSelector:
    """Rule-based stand-in for an LLM tool picker.

    An exact operation name wins; otherwise the first rule with a keyword
    found in the lower-cased prompt decides.
    """

    def __init__(self, rules: Sequence[tuple[str, Sequence[str]]]):
        self.rules = [(name, tuple(k.lower() for k in keywords)) for name, keywords in rules]

    def select(self, prompt: str, operations: Sequence[str]) -> Optional[str]:
        text = prompt.strip().lower()
        if text in operations:
            return text
        for name, keywords in self.rules:
            if any(k in text for k in keywords):
                return name
        return None


class AllowListPolicy:
    """Rejects callers whose declared agent id is missing or unknown."""

    def __init__(self, allowed: Iterable[str], key: str = SHOPPING_AGENT_ID_KEY):
        self.allowed = frozenset(allowed)
        self.key = key

    def __call__(self, message: Message) -> None:
        agent_id = message.find_data(self.key)
        if not agent_id:
            raise UnauthorizedCaller(f"Unauthorized Request: Missing {self.key}.")
        if agent_id not in self.allowed:
            raise UnauthorizedCaller(f"Unauthorized Request: Unknown agent '{agent_id}'.")


CallerPolicy = Callable[[Message], None]


def agent_message(text: Optional[str] = None, data: Optional[Mapping[str, Any]] = None) -> Optional[Message]:
    parts: list[Part] = []
    if text:
        parts.append(TextPart(text))
    if data:
        parts.append(DataPart(dict(data)))
    return Message(parts=parts, role=MessageRole.AGENT) if parts else None


class OperationContext:
    """What a handler sees: the parsed request and a way to report its outcome.

    Artifacts and the outcome are buffered and only applied once the
    handler returns, so a handler that raises leaves no partial results.
    """

    def __init__(
        self,
        orchestrator: TaskOrchestrator,
        task: Task,
        message: Message,
        envelope: Envelope,
        previous_state: TaskState,
        activated_extensions: frozenset[str],
    ):
        self._orchestrator = orchestrator
        self.task = task
        self.message = message
        self.envelope = envelope
        self.previous_state = previous_state
        self.activated_extensions = activated_extensions
        self._artifacts: list[Artifact] = []
        self._outcome: Optional[tuple[TaskState, Optional[Message]]] = None

    @property
    def task_id(self) -> str:
        return self.task.id

    @property
    def context_id(self) -> str:
        return self.task.context_id

    @property
    def agent_name(self) -> str:
        return self._orchestrator.name

    @property
    def is_follow_up(self) -> bool:
        return self.previous_state is TaskState.INPUT_REQUIRED

    def add_artifact(self, data: Mapping[str, Any], name: Optional[str] = None) -> None:
        self._artifacts.append(data_artifact(data, name=name))

    def complete(self, text: Optional[str] = None, data: Optional[Mapping[str, Any]] = None) -> None:
        self._set_outcome(TaskState.COMPLETED, agent_message(text, data))

    def require_input(self, text: str, data: Optional[Mapping[str, Any]] = None) -> None:
        self._set_outcome(TaskState.INPUT_REQUIRED, agent_message(text, data))

    def audit(self, event_type: EventType, **fields: Any) -> None:
        self._orchestrator.audit_event(
            event_type, task_id=self.task_id, context_id=self.context_id, **fields
        )

    def _set_outcome(self, state: TaskState, message: Optional[Message]) -> None:
        if self._outcome is not None:
            raise RuntimeError(f"Outcome for task {self.task_id} already set")
        self._outcome = (state, message)

    def _apply(self) -> None:
        state, message = self._outcome or (TaskState.COMPLETED, None)
        self.task.artifacts.extend(self._artifacts)
        self._orchestrator._transition(self.task, state, message)


Handler = Callable[[OperationContext], None]


class TaskOrchestrator:
    """Runs one agent's request loop over a role-specific operation table."""

    def __init__(
        self,
        name: str,
        operations: Mapping[str, Handler],
        selector: ToolSelector,
        supported_extensions: Iterable[str] = (AP2_EXTENSION_URI,),
        caller_policy: Optional[CallerPolicy] = None,
        task_store: Optional[TaskStore] = None,
        audit: Optional[AuditSink] = None,
        on_terminal: Optional[Callable[[Task], None]] = None,
        role: Optional[str] = None,
        card_extras: Optional[Mapping[str, Any]] = None,
    ):
        if not operations:
            raise ValueError("An orchestrator needs at least one operation")
        self.name = name
        self.role = role
        self.operations = dict(operations)
        self.selector = selector
        self.supported_extensions = frozenset(supported_extensions)
        self.caller_policy = caller_policy
        self.tasks = task_store or TaskStore()
        self.audit = audit if audit is not None else MemoryAuditSink()
        self._on_terminal = on_terminal
        self.card_extras = dict(card_extras or {})

    # ── Public API ────────────────────────────────────────────────

    def handle(self, message: Message, requested_extensions: Iterable[str] = ()) -> AgentResponse:
        requested = frozenset(requested_extensions)
        activated = requested & self.supported_extensions
        task_id = message.task_id or new_task_id()
        logger.info(
            "%s: message %s for task %s, requested extensions: %s",
            self.name, message.message_id, task_id, sorted(requested) or "none",
        )

        with self.tasks.lock(task_id):
            task, created = self.tasks.get_or_create(task_id, message.context_id)
            if task.is_terminal:
                logger.warning(
                    "%s: task %s is already %s, ignoring message %s",
                    self.name, task.id, task.state.value, message.message_id,
                )
                return AgentResponse(task.snapshot(), activated)

            message = replace(message, task_id=task.id, context_id=task.context_id)
            task.history.append(message)
            self._record_inbound(task, message)
            self._run(task, message, activated)
            return AgentResponse(task.snapshot(), activated)

    def get_task(self, task_id: str) -> Task:
        return self.tasks.snapshot(task_id)

    def cancel(self, task_id: str) -> Task:
        task = self.tasks.cancel(task_id)
        logger.info("%s: task %s canceled", self.name, task_id)
        self.audit_event(
            EventType.TASK_TRANSITION, task_id=task_id, context_id=task.context_id,
            details={"state": TaskState.CANCELED.value},
        )
        if self._on_terminal is not None:
            self._on_terminal(task)
        return task

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "role": self.role,
            "extensions": sorted(self.supported_extensions),
            "operations": sorted(self.operations),
            **self.card_extras,
        }

    def audit_event(self, event_type: EventType, **fields: Any) -> None:
        """Forward an event to the audit sink. Sink failures are logged, never raised."""
        try:
            self.audit.log(event_type, agent=self.name, **fields)
        except Exception:
            logger.warning("%s: audit sink failed for %s", self.name, event_type.value, exc_info=True)

    # ── Request loop ──────────────────────────────────────────────

    def _run(self, task: Task, message: Message, activated: frozenset[str]) -> None:
        try:
            if AP2_EXTENSION_URI not in activated:
                raise UnauthorizedCaller(f"Payment extension not activated: {AP2_EXTENSION_URI}")
            if self.caller_policy is not None:
                self.caller_policy(message)

            previous_state = task.state
            self._transition(task, TaskState.WORKING)

            envelope = Envelope.parse(message)
            if envelope.payment_mandate is not None and not envelope.payment_mandate.is_signed:
                raise ValidationError(
                    PAYMENT_MANDATE_DATA_KEY, "User authorization not found in PaymentMandate."
                )

            operation = self.selector.select(envelope.prompt, list(self.operations))
            handler = self.operations.get(operation or "")
            if handler is None:
                raise UnknownOperation(operation or envelope.prompt[:60], list(self.operations))
            logger.info("%s: task %s -> %s", self.name, task.id, operation)

            context = OperationContext(self, task, message, envelope, previous_state, activated)
            handler(context)
            context._apply()
        except ChallengeMismatch as e:
            self._transition(task, TaskState.INPUT_REQUIRED, agent_message(str(e)))
        except UnauthorizedCaller as e:
            logger.warning("%s: rejected caller on task %s: %s", self.name, task.id, e)
            self.audit_event(
                EventType.CALLER_REJECTED, task_id=task.id, context_id=task.context_id,
                success=False, reason=str(e),
            )
            self._fail(task, f"An error occurred: {e}")
        except TandemError as e:
            logger.warning("%s: task %s failed: %s", self.name, task.id, e)
            self._fail(task, f"An error occurred: {e}")
        except Exception as e:
            logger.exception("%s: unexpected error on task %s", self.name, task.id)
            self._fail(task, f"An unexpected error occurred: {e}")

    def _fail(self, task: Task, reason: str) -> None:
        if task.is_terminal:
            return
        self._transition(task, TaskState.FAILED, agent_message(reason))

    def _transition(self, task: Task, state: TaskState, message: Optional[Message] = None) -> None:
        previous = task.state
        task.transition(state, message)
        self.audit_event(
            EventType.TASK_TRANSITION,
            task_id=task.id,
            context_id=task.context_id,
            success=state is not TaskState.FAILED,
            reason=message.text if message is not None and state is TaskState.FAILED else None,
            details={"from": previous.value, "to": state.value},
        )
        if state.is_terminal and self._on_terminal is not None:
            try:
                self._on_terminal(task)
            except Exception:
                logger.warning("%s: terminal hook failed for task %s", self.name, task.id, exc_info=True)

    def _record_inbound(self, task: Task, message: Message) -> None:
        self.audit_event(
            EventType.MESSAGE_RECEIVED,
            task_id=task.id,
            context_id=task.context_id,
            details={
                "texts": message.texts,
                "data": [p.data for p in message.parts if isinstance(p, DataPart)],
            },
        )
