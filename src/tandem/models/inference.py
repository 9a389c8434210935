"""Inference request and response models."""

from enum import Enum
from typing import Dict, List, Optional, Any

from pydantic import BaseModel, Field


class InferenceStatus(str, Enum):
    """Terminal state of an inference stream."""

    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class PromptMessage(BaseModel):
    """One entry of the prompt sent to a backend."""

    role: str = Field(..., description="system, user or assistant")
    author: Optional[str] = Field(None, description="Identity that authored the entry")
    content: str = Field(..., description="Entry text")


class InferencePayload(BaseModel):
    """Backend-agnostic request body."""

    system_prompt: str = Field(default="", description="Role prompt of the responding identity")
    messages: List[PromptMessage] = Field(default_factory=list, description="Conversation context")
    max_output_tokens: int = Field(default=1024, ge=1, description="Output token limit")
    temperature: float = Field(default=0.2, ge=0.0, le=2.0, description="Sampling temperature")
    context: Dict[str, Any] = Field(default_factory=dict, description="Structured context such as open tasks")

    def estimated_tokens(self) -> int:
        """Rough token estimate, four characters per token."""
        chars = len(self.system_prompt) + sum(len(m.content) for m in self.messages)
        return chars // 4 + self.max_output_tokens


class InferenceChunk(BaseModel):
    """A partial piece of streamed output."""

    request_id: str = Field(..., description="Request the chunk belongs to")
    index: int = Field(..., ge=0, description="Position of the chunk within the stream")
    text: str = Field(..., description="Chunk text")


class InferenceResult(BaseModel):
    """Terminal outcome of one inference call."""

    request_id: str = Field(..., description="Request identifier")
    backend_id: str = Field(..., description="Backend that produced the result")
    content: str = Field(default="", description="Full response text")
    intent: Optional[Dict[str, Any]] = Field(None, description="Structured intent emitted by the model")
    status: InferenceStatus = Field(default=InferenceStatus.COMPLETED, description="Terminal status")
    tokens_used: int = Field(default=0, ge=0, description="Tokens consumed")
    cost_usd: float = Field(default=0.0, ge=0.0, description="Estimated cost")
    duration_ms: float = Field(default=0.0, ge=0.0, description="Wall time")
    attempts: List[str] = Field(default_factory=list, description="Backends tried, in order")
    error: Optional[str] = Field(None, description="Error detail when not completed")

    class Config:
        """Pydantic configuration."""

        use_enum_values = True

    @property
    def fell_back(self) -> bool:
        return len(self.attempts) > 1
