"""Session model: the conversation container for one project."""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from .routing import RouterPolicy


class SessionStatus(str, Enum):
    """Session lifecycle."""

    ACTIVE = "active"
    ARCHIVED = "archived"


class Session(BaseModel):
    """One conversation per project, opened with the project and archived on deletion."""

    session_id: str = Field(default_factory=lambda: str(uuid4()), description="Session identifier")
    project_id: str = Field(..., description="Project this session belongs to")
    status: SessionStatus = Field(default=SessionStatus.ACTIVE, description="Lifecycle state")
    router_policy: RouterPolicy = Field(default_factory=RouterPolicy, description="Routing overrides")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    archived_at: Optional[datetime] = Field(None, description="When the session was archived")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Additional session metadata")

    class Config:
        """Pydantic configuration."""

        use_enum_values = True
        validate_assignment = True

    @field_validator("project_id")
    @classmethod
    def validate_project_id(cls, v):
        """Project id must be non-empty."""
        if not v.strip():
            raise ValueError("project_id cannot be empty")
        return v.strip()

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    def archive(self) -> None:
        now = datetime.now(timezone.utc)
        self.status = SessionStatus.ARCHIVED
        self.archived_at = now
        self.updated_at = now

    def touch(self) -> None:
        self.updated_at = datetime.now(timezone.utc)
