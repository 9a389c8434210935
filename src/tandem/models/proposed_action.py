"""ProposedAction model: a state-changing effect awaiting approval."""

from datetime import datetime, timezone, timedelta
from enum import Enum
from typing import Dict, List, Optional, Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator


class ActionKind(str, Enum):
    """Effects an agent may request."""

    NONE = "none"
    FILE_WRITE = "file_write"
    APPLY_DIFF = "apply_diff"
    REPO_PUSH = "repo_push"
    REPO_MERGE = "repo_merge"
    SECRET_ACCESS = "secret_access"


class ActionClassification(str, Enum):
    """Whether an action needs the user's approval."""

    SAFE = "safe"
    DESTRUCTIVE = "destructive"


class EffectClass(str, Enum):
    """How far-reaching an action's effect is."""

    NONE = "none"
    REVERSIBLE_LOCAL = "reversible_local"
    DESTRUCTIVE = "destructive"


class ApprovalState(str, Enum):
    """Approval lifecycle."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class ExecutionState(str, Enum):
    """Execution lifecycle, which starts once approval is resolved."""

    NOT_STARTED = "not_started"
    EXECUTING = "executing"
    EXECUTED = "executed"
    FAILED = "failed"
    DISCARDED = "discarded"


# Payload keys that would carry secret material in the clear.
RAW_SECRET_KEYS = ("password", "secret_value", "api_key", "private_key", "token_value", "plaintext")


def raw_secret_paths(value: Any, prefix: str = "") -> List[str]:
    """Dotted paths of every key, at any depth, named in RAW_SECRET_KEYS."""
    found: List[str] = []
    if isinstance(value, dict):
        for key, item in value.items():
            path = f"{prefix}.{key}" if prefix else str(key)
            if str(key).lower() in RAW_SECRET_KEYS:
                found.append(path)
            else:
                found.extend(raw_secret_paths(item, path))
    elif isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            found.extend(raw_secret_paths(item, f"{prefix}[{index}]"))
    return found


class ActionResult(BaseModel):
    """Outcome reported by an action executor."""

    action_id: str = Field(..., description="Executed action")
    success: bool = Field(..., description="Whether the effect was applied")
    summary: str = Field(default="", description="Human-readable outcome")
    details: Dict[str, Any] = Field(default_factory=dict, description="Executor-specific details")
    completed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ProposedAction(BaseModel):
    """
    A state-changing effect requested by an agent.

    Destructive actions stay ``pending`` until the user decides or the approval
    window closes; only ``approved`` actions are ever handed to an executor.
    """

    action_id: str = Field(default_factory=lambda: f"act-{uuid4().hex[:12]}", description="Action identifier")
    session_id: str = Field(..., description="Owning session")
    kind: ActionKind = Field(..., description="Requested effect")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Effect descriptor (path, diff, ref, credential_handle)")
    description: str = Field(default="", description="What the agent says the action does")
    proposed_by: str = Field(..., description="Proposing identity")
    source_turn: Optional[int] = Field(None, ge=1, description="Turn that carries the proposal")
    classification: ActionClassification = Field(..., description="safe or destructive")
    effect: EffectClass = Field(..., description="Effect class")
    approval_state: ApprovalState = Field(default=ApprovalState.PENDING, description="Approval state")
    execution_state: ExecutionState = Field(default=ExecutionState.NOT_STARTED, description="Execution state")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: Optional[datetime] = Field(None, description="End of the approval window")
    decided_at: Optional[datetime] = Field(None, description="When approval was resolved")
    decided_by: Optional[str] = Field(None, description="Who resolved approval")
    result: Optional[ActionResult] = Field(None, description="Execution outcome")
    history: List[Dict[str, Any]] = Field(default_factory=list, description="State changes")

    class Config:
        """Pydantic configuration."""

        use_enum_values = True
        validate_assignment = True

    @field_validator("payload")
    @classmethod
    def reject_raw_secrets(cls, v):
        """Secrets travel as opaque handles, never as values."""
        paths = raw_secret_paths(v)
        if paths:
            raise ValueError(f"payload key '{paths[0]}' would carry raw secret material; use credential_handle")
        return v

    @model_validator(mode="after")
    def validate_secret_handle(self):
        """Secret access needs an opaque credential handle."""
        if self.kind == ActionKind.SECRET_ACCESS and not self.payload.get("credential_handle"):
            raise ValueError("secret_access requires a credential_handle in the payload")
        return self

    @property
    def is_destructive(self) -> bool:
        return self.classification == ActionClassification.DESTRUCTIVE

    @property
    def is_pending(self) -> bool:
        return self.approval_state == ApprovalState.PENDING

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Whether a pending action has outlived its approval window."""
        if self.expires_at is None or not self.is_pending:
            return False
        return (now or datetime.now(timezone.utc)) >= self.expires_at

    def record(self, event: str, **details: Any) -> None:
        self.history.append({
            "event": event,
            "approval_state": self.approval_state,
            "execution_state": self.execution_state,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **details,
        })

    @staticmethod
    def window_end(seconds: float, start: Optional[datetime] = None) -> datetime:
        return (start or datetime.now(timezone.utc)) + timedelta(seconds=seconds)
