"""Turn model: one immutable entry in a session's conversation log."""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Any, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator

from .identity import Identity


class TurnKind(str, Enum):
    """Kind of turn."""

    MESSAGE = "message"
    SYSTEM = "system"


class TurnDraft(BaseModel):
    """
    A turn before it has been sequenced.

    Carries everything a Turn does except the sequence number and timestamp,
    which the conversation log assigns on append.
    """

    author: Identity = Field(..., description="Identity that authored the turn")
    kind: TurnKind = Field(default=TurnKind.MESSAGE, description="Message or system turn")
    content: str = Field(default="", description="Free-text content")
    intent: Optional[Dict[str, Any]] = Field(None, description="Structured intent")
    proposed_action_id: Optional[str] = Field(None, description="ProposedAction referenced by the turn")
    in_reply_to: Optional[int] = Field(None, ge=1, description="Sequence number this turn answers or corrects")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Routing and timing metadata")

    class Config:
        """Pydantic configuration."""

        use_enum_values = True

    @model_validator(mode="after")
    def validate_body(self):
        """A turn needs text or a structured intent."""
        if not self.content.strip() and not self.intent:
            raise ValueError("turn requires content or intent")
        if self.kind == TurnKind.SYSTEM and self.author != Identity.SYSTEM:
            raise ValueError("system turns must be authored by the system identity")
        return self


class Turn(BaseModel):
    """An appended, sequenced and immutable turn."""

    sequence: int = Field(..., ge=1, description="Gapless per-session sequence number")
    session_id: str = Field(..., description="Owning session")
    author: Identity = Field(..., description="Identity that authored the turn")
    kind: TurnKind = Field(default=TurnKind.MESSAGE, description="Message or system turn")
    content: str = Field(default="", description="Free-text content")
    intent: Optional[Dict[str, Any]] = Field(None, description="Structured intent")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), description="Append time")
    proposed_action_id: Optional[str] = Field(None, description="ProposedAction referenced by the turn")
    in_reply_to: Optional[int] = Field(None, ge=1, description="Sequence number this turn answers or corrects")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Routing and timing metadata")

    class Config:
        """Pydantic configuration."""

        use_enum_values = True
        frozen = True

    @field_validator("session_id")
    @classmethod
    def validate_session_id(cls, v):
        """Session id must be non-empty."""
        if not v.strip():
            raise ValueError("session_id cannot be empty")
        return v

    @classmethod
    def from_draft(cls, draft: TurnDraft, session_id: str, sequence: int) -> "Turn":
        return cls(sequence=sequence, session_id=session_id, **draft.model_dump())

    @property
    def key(self) -> Tuple[str, int]:
        """Storage key."""
        return (self.session_id, self.sequence)

    def to_record(self) -> Dict[str, Any]:
        """Serialize for persistence."""
        return self.model_dump(mode="json")

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Turn":
        return cls.model_validate(record)
