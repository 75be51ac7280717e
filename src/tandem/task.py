"""
Task state machine.

    submitted ──> working ──> completed
                    │  ^
                    v  │
               input-required

Any non-terminal state may move to ``failed`` or ``canceled``.
``completed``, ``failed`` and ``canceled`` are terminal.
"""

from __future__ import annotations

import copy
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterator, Mapping, Optional

from .errors import TaskNotCancelable, TaskNotFound
from .locks import KeyedLock
from .mandate import format_timestamp, parse_timestamp, utcnow
from .message import Artifact, Message


class TaskState(str, Enum):
    SUBMITTED = "submitted"
    WORKING = "working"
    INPUT_REQUIRED = "input-required"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELED})

_TRANSITIONS: dict[TaskState, frozenset[TaskState]] = {
    TaskState.SUBMITTED: frozenset({TaskState.WORKING, TaskState.FAILED, TaskState.CANCELED}),
    TaskState.WORKING: frozenset({
        TaskState.COMPLETED,
        TaskState.INPUT_REQUIRED,
        TaskState.FAILED,
        TaskState.CANCELED,
    }),
    TaskState.INPUT_REQUIRED: frozenset({TaskState.WORKING, TaskState.FAILED, TaskState.CANCELED}),
}


@dataclass
class TaskStatus:
    state: TaskState
    message: Optional[Message] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "message": self.message.to_dict() if self.message else None,
            "timestamp": format_timestamp(self.timestamp),
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> TaskStatus:
        message = d.get("message")
        return cls(
            state=TaskState(d["state"]),
            message=Message.from_dict(message) if message else None,
            timestamp=parse_timestamp(d.get("timestamp") or utcnow(), "status.timestamp"),
        )


@dataclass
class Task:
    """Conversation state for one request chain."""

    id: str
    context_id: str
    status: TaskStatus = field(default_factory=lambda: TaskStatus(TaskState.SUBMITTED))
    history: list[Message] = field(default_factory=list)
    artifacts: list[Artifact] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def state(self) -> TaskState:
        return self.status.state

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def status_text(self) -> str:
        return self.status.message.text if self.status.message else ""

    def transition(self, state: TaskState, message: Optional[Message] = None) -> None:
        allowed = _TRANSITIONS.get(self.state, frozenset())
        if state not in allowed:
            raise ValueError(f"Illegal task transition {self.state.value} -> {state.value}")
        self.status = TaskStatus(state=state, message=message)

    def find_artifact_data(self, key: str) -> Any:
        """Value under ``key`` in the most recent artifact that carries it."""
        for artifact in reversed(self.artifacts):
            value = artifact.find_data(key)
            if value is not None:
                return value
        if self.status.message is not None:
            return self.status.message.find_data(key)
        return None

    def artifact_data(self, key: str) -> list[Any]:
        """Every value under ``key`` across artifacts, in order."""
        values = []
        for artifact in self.artifacts:
            value = artifact.find_data(key)
            if value is not None:
                values.append(value)
        return values

    def snapshot(self) -> Task:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "context_id": self.context_id,
            "status": self.status.to_dict(),
            "history": [m.to_dict() for m in self.history],
            "artifacts": [a.to_dict() for a in self.artifacts],
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> Task:
        return cls(
            id=str(d["id"]),
            context_id=str(d["context_id"]),
            status=TaskStatus.from_dict(d["status"]),
            history=[Message.from_dict(m) for m in d.get("history") or []],
            artifacts=[Artifact.from_dict(a) for a in d.get("artifacts") or []],
            metadata=dict(d.get("metadata") or {}),
        )


class TaskStore:
    """In-memory tasks with one mutex per task id."""

    def __init__(self):
        self._tasks: dict[str, Task] = {}
        self._table_lock = threading.Lock()
        self._task_locks = KeyedLock()

    @contextmanager
    def lock(self, task_id: str) -> Iterator[None]:
        """Serialize every transition of ``task_id``."""
        with self._task_locks.hold(task_id):
            yield

    def get(self, task_id: str) -> Optional[Task]:
        with self._table_lock:
            return self._tasks.get(task_id)

    def get_or_create(self, task_id: Optional[str], context_id: Optional[str]) -> tuple[Task, bool]:
        """Return ``(task, created)``. Call while holding ``lock(task_id)``."""
        with self._table_lock:
            if task_id and task_id in self._tasks:
                return self._tasks[task_id], False
            task = Task(id=task_id or new_task_id(), context_id=context_id or uuid.uuid4().hex)
            self._tasks[task.id] = task
            return task, True

    def snapshot(self, task_id: str) -> Task:
        with self.lock(task_id):
            task = self.get(task_id)
            if task is None:
                raise TaskNotFound(f"Task {task_id} not found")
            return task.snapshot()

    def cancel(self, task_id: str) -> Task:
        """Cancel a live task. Completed or canceled tasks raise ``TaskNotCancelable``."""
        with self.lock(task_id):
            task = self.get(task_id)
            if task is None:
                raise TaskNotFound(f"Task {task_id} not found")
            if task.state in (TaskState.COMPLETED, TaskState.CANCELED, TaskState.FAILED):
                raise TaskNotCancelable(task_id, task.state.value)
            task.transition(TaskState.CANCELED)
            return task.snapshot()

    def __len__(self) -> int:
        with self._table_lock:
            return len(self._tasks)


def new_task_id() -> str:
    return uuid.uuid4().hex
