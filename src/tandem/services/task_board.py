"""Task board: task state derived from agent turns."""

import logging
import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from ..lib.errors import InvalidTaskTransition, UnknownTask
from ..models.identity import Identity
from ..models.task import TASK_TRANSITIONS, Task, TaskStatus
from ..models.turn import Turn
from .conversation_log import SessionLock, WriteToken


logger = logging.getLogger(__name__)

TASK_ID_PATTERN = re.compile(r"^T(\d+)$")

# op -> target status; "complete" is resolved from the reported result
OP_TARGETS = {
    "assign": TaskStatus.ASSIGNED,
    "start": TaskStatus.IN_PROGRESS,
    "review": TaskStatus.REVIEW,
    "fail": TaskStatus.BLOCKED,
    "block": TaskStatus.BLOCKED,
    "reject": TaskStatus.REJECTED,
}

SUPPORTED_OPS = frozenset(OP_TARGETS) | {"propose", "complete"}

RESULT_KEYS = ("build_ok", "tests_passed")


@dataclass(frozen=True)
class TaskUpdate:
    """One applied task change."""
    op: str
    task_id: str
    from_status: Optional[str]
    to_status: str


def _task_number(task_id: str) -> int:
    match = TASK_ID_PATTERN.match(task_id)
    return int(match.group(1)) if match else 0


def reported_results(op: Dict[str, Any]) -> Dict[str, Any]:
    """Build and test outcomes a ``complete`` op reports."""
    return {key: op[key] for key in RESULT_KEYS if key in op}


def extract_task_ops(intent: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Task operations carried by an intent under ``task`` or ``tasks``."""
    if not intent:
        return []
    raw = intent.get("task", intent.get("tasks"))
    if raw is None:
        return []
    ops = raw if isinstance(raw, list) else [raw]
    return [op for op in ops if isinstance(op, dict)]


class TaskBoard:
    """
    Tasks for one session.

    Every mutation builds a new mapping and swaps it in, so readers get
    immutable snapshots without locking. Mutations require the session write
    token shared with the conversation log, and each turn's operations apply
    all-or-nothing.
    """

    def __init__(self, session_id: str, lock: SessionLock):
        self.session_id = session_id
        self.lock = lock
        self._tasks: Mapping[str, Task] = MappingProxyType({})
        self._counter = 0

    def snapshot(self) -> Mapping[str, Task]:
        return self._tasks

    def get(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise UnknownTask(f"Task {task_id} does not exist in session {self.session_id}", task_id=task_id)
        return task

    def list_tasks(self, status: Optional[TaskStatus] = None) -> Tuple[Task, ...]:
        tasks = sorted(self._tasks.values(), key=lambda t: _task_number(t.task_id))
        if status is not None:
            tasks = [t for t in tasks if t.status == TaskStatus(status)]
        return tuple(tasks)

    def open_tasks(self) -> Tuple[Task, ...]:
        return tuple(t for t in self.list_tasks() if t.is_open)

    def has_open_tasks(self) -> bool:
        return any(t.is_open for t in self._tasks.values())

    def validate_ops(self, ops: Iterable[Dict[str, Any]]) -> List[str]:
        """Problems ``ops`` would hit against the current board, without applying anything."""
        problems = []
        statuses = {task_id: TaskStatus(task.status) for task_id, task in self._tasks.items()}
        counter = self._counter
        for op in ops:
            name = op.get("op")
            if name not in SUPPORTED_OPS:
                problems.append(f"unsupported task op: {name!r}")
                continue
            if name == "propose":
                if not str(op.get("title", "")).strip():
                    problems.append("propose requires a title")
                counter += 1
                statuses[f"T{counter}"] = TaskStatus.PROPOSED
                continue
            task_id = str(op.get("task_id", ""))
            current = statuses.get(task_id)
            if current is None:
                problems.append(f"unknown task: {op.get('task_id')!r}")
                continue
            if name == "complete" and not reported_results(op):
                problems.append(f"{task_id}: complete requires a build_ok or tests_passed result")
                continue
            target = self._resolve_target(name, op)
            if target not in TASK_TRANSITIONS.get(current, frozenset()):
                problems.append(f"{task_id}: {current.value} -> {target.value} is not allowed")
                continue
            if name == "assign" and op.get("assignee", Identity.TANGANAKA_SAN.value) not in (
                    Identity.CHINGA_BAVA.value, Identity.TANGANAKA_SAN.value):
                problems.append(f"{task_id}: tasks can only be assigned to agents")
                continue
            statuses[task_id] = target
        return problems

    @staticmethod
    def _resolve_target(name: str, op: Dict[str, Any]) -> TaskStatus:
        if name == "complete":
            results = reported_results(op)
            succeeded = bool(results) and all(value is True for value in results.values())
            return TaskStatus.DONE if succeeded else TaskStatus.BLOCKED
        return OP_TARGETS[name]

    def apply_turn(self, turn: Turn, token: WriteToken) -> List[TaskUpdate]:
        """
        Apply the task operations carried by an agent-authored turn.

        Args:
            turn: Appended turn whose intent may carry task operations
            token: Session write token

        Returns:
            Applied updates, in order

        Raises:
            SessionLocked: If ``token`` is not the current holder
            UnknownTask: If an operation names a task that does not exist
            InvalidTaskTransition: If an operation is not a legal transition
        """
        self.lock.validate(token)

        if not Identity(turn.author).is_agent:
            return []
        ops = extract_task_ops(turn.intent)
        if not ops:
            return []

        tasks: Dict[str, Task] = dict(self._tasks)
        counter = self._counter
        updates: List[TaskUpdate] = []

        for op in ops:
            name = op.get("op")
            if name not in SUPPORTED_OPS:
                raise InvalidTaskTransition(f"Unsupported task op: {name!r}", op=name)

            if name == "propose":
                counter += 1
                task = Task(
                    task_id=f"T{counter}",
                    session_id=self.session_id,
                    title=str(op.get("title", "")),
                    description=str(op.get("description", "")),
                    created_by=turn.author,
                    linked_turns=[turn.sequence],
                )
                tasks[task.task_id] = task
                updates.append(TaskUpdate("propose", task.task_id, None, task.status))
                continue

            task_id = str(op.get("task_id", ""))
            task = tasks.get(task_id)
            if task is None:
                raise UnknownTask(f"Task {task_id} does not exist in session {self.session_id}", task_id=task_id)

            if name == "complete" and not reported_results(op):
                raise InvalidTaskTransition(
                    f"Task {task_id} cannot complete without a build_ok or tests_passed result",
                    task_id=task_id
                )

            target = self._resolve_target(name, op)
            changes: Dict[str, Any] = {}
            if name == "assign":
                assignee = op.get("assignee", Identity.TANGANAKA_SAN.value)
                if assignee not in (Identity.CHINGA_BAVA.value, Identity.TANGANAKA_SAN.value):
                    raise InvalidTaskTransition(f"Tasks can only be assigned to agents, not {assignee!r}", task_id=task_id)
                changes["assigned_to"] = assignee

            try:
                updated = task.transitioned(
                    target, turn.sequence, turn.author, reason=op.get("reason"), **changes
                )
            except ValueError as e:
                raise InvalidTaskTransition(str(e), task_id=task_id, op=name, status=task.status)

            tasks[task_id] = updated
            updates.append(TaskUpdate(name, task_id, task.status, updated.status))

        self._tasks = MappingProxyType(tasks)
        self._counter = counter
        for update in updates:
            logger.info(f"Task {update.task_id}: {update.from_status} -> {update.to_status} (turn {turn.sequence})")
        return updates

    def restore(self, tasks: Iterable[Task]) -> None:
        """Load persisted tasks into an empty board."""
        if self._tasks:
            raise ValueError(f"Cannot restore into non-empty task board for session {self.session_id}")
        loaded = {task.task_id: task for task in tasks}
        self._tasks = MappingProxyType(loaded)
        self._counter = max((_task_number(t) for t in loaded), default=0)
