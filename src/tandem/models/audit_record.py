"""AuditRecord model for gate decisions and orchestration events."""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator


class EventType(str, Enum):
    """Audit event type enumeration."""

    ACTION = "action"
    DECISION = "decision"
    ERROR = "error"
    ROUTING = "routing"
    SESSION = "session"
    TASK = "task"


class ResultStatus(str, Enum):
    """Operation result status enumeration."""

    SUCCESS = "success"
    FAILURE = "failure"
    BLOCKED = "blocked"
    TIMEOUT = "timeout"
    PENDING = "pending"


SENSITIVE_KEYS = (
    'password', 'token', 'key', 'secret', 'credential',
    'auth', 'authorization', 'cookie'
)


class AuditRecord(BaseModel):
    """
    Compliance log entry for gate transitions and orchestration events.

    Metadata is sanitized on construction; credential handles and similar
    values never reach the audit trail in readable form.
    """

    record_id: str = Field(default_factory=lambda: str(uuid4()), description="Unique identifier for the audit record")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), description="When the event occurred")
    event_type: EventType = Field(..., description="Type of event")
    session_id: Optional[str] = Field(None, description="Related session")
    actor: Optional[str] = Field(None, description="Identity that triggered the event")
    action: str = Field(..., description="Specific operation performed")
    result: ResultStatus = Field(..., description="Outcome of the operation")
    reason: Optional[str] = Field(None, description="Rationale or error detail")
    action_id: Optional[str] = Field(None, description="Related ProposedAction")
    turn_sequence: Optional[int] = Field(None, description="Related turn")
    trace_id: Optional[str] = Field(None, description="OpenTelemetry trace identifier for correlation")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Additional event metadata (sanitized)")

    class Config:
        """Pydantic configuration."""

        use_enum_values = True

    @field_validator('action')
    @classmethod
    def validate_action(cls, v):
        """Validate action is not empty."""
        if not v.strip():
            raise ValueError("action cannot be empty")
        return v.strip()

    @field_validator('metadata')
    @classmethod
    def sanitize_sensitive_data(cls, v):
        """Redact values stored under sensitive keys, recursively."""
        if not isinstance(v, dict):
            return v

        sanitized = {}
        for key, value in v.items():
            key_lower = str(key).lower()
            if any(sensitive in key_lower for sensitive in SENSITIVE_KEYS):
                sanitized[key] = "[REDACTED]"
            elif isinstance(value, dict):
                sanitized[key] = cls.sanitize_sensitive_data(value)
            else:
                sanitized[key] = value
        return sanitized

    def to_log_entry(self) -> Dict[str, Any]:
        """Flatten into the ``extra`` dict understood by the structured formatter."""
        entry = {
            "audit_record_id": self.record_id,
            "event_type": self.event_type,
            "action": self.action,
            "result": self.result,
        }
        for name in ("session_id", "actor", "reason", "action_id", "turn_sequence", "trace_id"):
            value = getattr(self, name)
            if value is not None:
                entry[name] = value
        if self.metadata:
            entry["metadata"] = self.metadata
        return entry
