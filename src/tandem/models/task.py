"""Task model with its lifecycle state machine."""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Any, Set

from pydantic import BaseModel, Field, field_validator


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PROPOSED = "proposed"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    REVIEW = "review"
    DONE = "done"
    REJECTED = "rejected"


TASK_TRANSITIONS: Dict[TaskStatus, Set[TaskStatus]] = {
    TaskStatus.PROPOSED: {TaskStatus.ASSIGNED, TaskStatus.REJECTED},
    TaskStatus.ASSIGNED: {
        TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED, TaskStatus.REVIEW,
        TaskStatus.DONE, TaskStatus.REJECTED,
    },
    TaskStatus.IN_PROGRESS: {TaskStatus.BLOCKED, TaskStatus.REVIEW, TaskStatus.DONE, TaskStatus.REJECTED},
    TaskStatus.BLOCKED: {TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS, TaskStatus.DONE, TaskStatus.REJECTED},
    TaskStatus.REVIEW: {TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED, TaskStatus.DONE, TaskStatus.REJECTED},
    TaskStatus.DONE: set(),
    TaskStatus.REJECTED: set(),
}

TERMINAL_STATUSES = frozenset({TaskStatus.DONE, TaskStatus.REJECTED})


class TaskTransition(BaseModel):
    """One recorded status change."""

    from_status: Optional[TaskStatus] = Field(None, description="Previous status, None on creation")
    to_status: TaskStatus = Field(..., description="New status")
    turn_sequence: int = Field(..., ge=1, description="Turn that caused the change")
    actor: str = Field(..., description="Identity that caused the change")
    reason: Optional[str] = Field(None, description="Optional explanation")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    class Config:
        """Pydantic configuration."""

        use_enum_values = True


class Task(BaseModel):
    """
    A unit of work tracked on the task board.

    Tasks are only ever changed through the board, which replaces the stored
    object on every change so published snapshots never move under a reader.
    """

    task_id: str = Field(..., description="Per-session task identifier (T1, T2, ...)")
    session_id: str = Field(..., description="Owning session")
    title: str = Field(..., min_length=1, max_length=500, description="Short task title")
    description: str = Field(default="", description="Longer description")
    status: TaskStatus = Field(default=TaskStatus.PROPOSED, description="Current lifecycle state")
    created_by: str = Field(..., description="Identity that proposed the task")
    assigned_to: Optional[str] = Field(None, description="Identity responsible for the task")
    linked_turns: List[int] = Field(default_factory=list, description="Turns that touched the task")
    history: List[TaskTransition] = Field(default_factory=list, description="Status changes")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    class Config:
        """Pydantic configuration."""

        use_enum_values = True

    @field_validator("title")
    @classmethod
    def validate_title(cls, v):
        """Strip and reject blank titles."""
        if not v.strip():
            raise ValueError("title cannot be empty")
        return v.strip()

    @property
    def is_open(self) -> bool:
        return TaskStatus(self.status) not in TERMINAL_STATUSES

    def can_transition_to(self, new_status: TaskStatus) -> bool:
        return TaskStatus(new_status) in TASK_TRANSITIONS[TaskStatus(self.status)]

    def transitioned(
        self,
        new_status: TaskStatus,
        turn_sequence: int,
        actor: str,
        reason: Optional[str] = None,
        **changes: Any
    ) -> "Task":
        """
        Return a copy of the task moved to ``new_status``.

        Args:
            new_status: Target status
            turn_sequence: Turn that drives the change
            actor: Identity behind the change
            reason: Optional explanation
            **changes: Other fields to update on the copy

        Returns:
            The new Task; the receiver is left untouched

        Raises:
            ValueError: If the transition is not legal
        """
        target = TaskStatus(new_status)
        if not self.can_transition_to(target):
            raise ValueError(f"Illegal task transition {self.status} -> {target.value}")

        transition = TaskTransition(
            from_status=TaskStatus(self.status),
            to_status=target,
            turn_sequence=turn_sequence,
            actor=actor,
            reason=reason,
        )
        linked = list(self.linked_turns)
        if turn_sequence not in linked:
            linked.append(turn_sequence)

        update = {
            "status": target.value,
            "linked_turns": linked,
            "history": list(self.history) + [transition],
            "updated_at": datetime.now(timezone.utc),
        }
        update.update(changes)
        return self.model_copy(update=update, deep=True)
