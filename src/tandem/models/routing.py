"""Routing models: backend capabilities, health and route requests."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Set
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from .inference import InferencePayload


class PrivacyTier(str, Enum):
    """Where a backend runs."""

    LOCAL = "local"
    REMOTE = "remote"


class PrivacyRequirement(str, Enum):
    """Privacy demanded by a request."""

    LOCAL_ONLY = "local_only"
    ANY = "any"


class HealthState(str, Enum):
    """Last self-reported health of a backend."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"


class CapabilityProfile(BaseModel):
    """What a backend can do and what it costs."""

    max_context_tokens: int = Field(..., ge=1, description="Context window size in tokens")
    tokens_per_second: float = Field(default=0.0, ge=0.0, description="Observed generation throughput")
    availability: float = Field(default=1.0, ge=0.0, le=1.0, description="Fraction of time the backend is reachable")
    cost_per_1k_tokens: float = Field(default=0.0, ge=0.0, description="Estimated cost per thousand tokens")
    streaming: bool = Field(default=True, description="Whether the backend streams partial output")
    embeddings: bool = Field(default=False, description="Whether the backend can compute embeddings")
    privacy_tier: PrivacyTier = Field(..., description="Local or remote")

    class Config:
        """Pydantic configuration."""

        use_enum_values = True


class AdapterDescriptor(BaseModel):
    """Router-side view of one registered backend."""

    backend_id: str = Field(..., description="Unique backend identifier")
    capability: CapabilityProfile = Field(..., description="Capability profile")
    health: HealthState = Field(default=HealthState.HEALTHY, description="Last known health")
    health_reported_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When health was last reported"
    )
    health_detail: Optional[str] = Field(None, description="Reason attached to the last report")

    class Config:
        """Pydantic configuration."""

        use_enum_values = True

    @field_validator("backend_id")
    @classmethod
    def validate_backend_id(cls, v):
        """Backend ids must be non-empty."""
        if not v.strip():
            raise ValueError("backend_id cannot be empty")
        return v.strip()

    @property
    def tier(self) -> PrivacyTier:
        return PrivacyTier(self.capability.privacy_tier)

    @property
    def state(self) -> HealthState:
        return HealthState(self.health)


class RouteRequirements(BaseModel):
    """Capability profile a request needs."""

    min_context_tokens: int = Field(default=1, ge=1, description="Smallest acceptable context window")
    streaming_required: bool = Field(default=False, description="Backend must stream")
    privacy: PrivacyRequirement = Field(default=PrivacyRequirement.ANY, description="Privacy requirement")
    embeddings_required: bool = Field(default=False, description="Backend must compute embeddings")

    class Config:
        """Pydantic configuration."""

        use_enum_values = True

    def satisfied_by(self, capability: CapabilityProfile) -> bool:
        if capability.max_context_tokens < self.min_context_tokens:
            return False
        if self.streaming_required and not capability.streaming:
            return False
        if self.embeddings_required and not capability.embeddings:
            return False
        return True


class RouterPolicy(BaseModel):
    """Per-session routing overrides."""

    prefer_tier: PrivacyTier = Field(default=PrivacyTier.LOCAL, description="Tier tried first")
    local_only: bool = Field(default=False, description="Never route to remote backends")
    excluded_backends: List[str] = Field(default_factory=list, description="Backends never selected")

    class Config:
        """Pydantic configuration."""

        use_enum_values = True


class RouteRequest(BaseModel):
    """A single routing decision request. Never persisted."""

    request_id: str = Field(default_factory=lambda: str(uuid4()), description="Request identifier")
    session_id: Optional[str] = Field(None, description="Session that issued the request")
    requirements: RouteRequirements = Field(default_factory=RouteRequirements, description="Capability requirements")
    payload: InferencePayload = Field(default_factory=InferencePayload, description="Inference payload")
    attempted: Set[str] = Field(default_factory=set, description="Backends already tried in this request")

    def mark_attempted(self, backend_id: str) -> None:
        self.attempted.add(backend_id)
