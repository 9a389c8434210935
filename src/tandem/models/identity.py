"""Conversation identities and their role profiles."""

from enum import Enum
from typing import Dict, List, Optional, Any

from pydantic import BaseModel, Field, field_validator

from .routing import PrivacyRequirement, RouteRequirements


class Identity(str, Enum):
    """Authors that may appear on a turn."""

    USER = "user"
    CHINGA_BAVA = "chinga_bava"
    TANGANAKA_SAN = "tanganaka_san"
    SYSTEM = "system"

    @property
    def is_agent(self) -> bool:
        return self in (Identity.CHINGA_BAVA, Identity.TANGANAKA_SAN)


class AgentRole(str, Enum):
    """Role an agent identity plays in the project."""

    PROJECT_MANAGER = "project_manager"
    DEVELOPER = "developer"


class IdentityProfile(BaseModel):
    """
    Configuration data describing an agent identity.

    Roles differ only in prompt and capability requirements, so a new role is
    a new profile rather than a new class.
    """

    identity: str = Field(..., description="Identity this profile configures")
    role: AgentRole = Field(..., description="Role played in the project")
    display_name: str = Field(..., description="Human-readable name")
    role_prompt: str = Field(..., description="System prompt prepended to every request")
    min_context_tokens: int = Field(default=2048, ge=1, description="Minimum context window required")
    streaming_required: bool = Field(default=True, description="Whether responses must stream")
    privacy: PrivacyRequirement = Field(default=PrivacyRequirement.ANY, description="Privacy requirement")
    max_output_tokens: int = Field(default=1024, ge=1, description="Output token limit")
    execution_keywords: List[str] = Field(default_factory=list, description="Words that direct a request to this role")

    class Config:
        """Pydantic configuration."""

        use_enum_values = True

    @field_validator("identity")
    @classmethod
    def validate_identity(cls, v):
        """Only agent identities carry a profile."""
        if v not in (Identity.CHINGA_BAVA.value, Identity.TANGANAKA_SAN.value):
            raise ValueError(f"identity must be an agent identity, got {v!r}")
        return v

    def requirements(self, context_tokens: Optional[int] = None, local_only: bool = False) -> RouteRequirements:
        """Build the capability requirements for a request made by this role."""
        privacy = PrivacyRequirement.LOCAL_ONLY if local_only else PrivacyRequirement(self.privacy)
        return RouteRequirements(
            min_context_tokens=max(context_tokens or 0, self.min_context_tokens),
            streaming_required=self.streaming_required,
            privacy=privacy,
        )


DEFAULT_PROFILES: Dict[str, Dict[str, Any]] = {
    Identity.CHINGA_BAVA.value: {
        "identity": Identity.CHINGA_BAVA.value,
        "role": AgentRole.PROJECT_MANAGER.value,
        "display_name": "Chinga Bava",
        "role_prompt": (
            "You are chinga_bava, the project manager. Break user requests into tasks, "
            "assign them and track their status. Emit task updates as a JSON intent."
        ),
        "min_context_tokens": 1024,
        "max_output_tokens": 1024,
    },
    Identity.TANGANAKA_SAN.value: {
        "identity": Identity.TANGANAKA_SAN.value,
        "role": AgentRole.DEVELOPER.value,
        "display_name": "Tanganaka San",
        "role_prompt": (
            "You are tanganaka_san, the developer. Implement assigned tasks and propose "
            "file writes or diffs as actions. Report build and test results as a JSON intent."
        ),
        "min_context_tokens": 2048,
        "max_output_tokens": 2048,
        "execution_keywords": [
            "implement", "build", "fix", "write", "code", "run", "test",
            "apply", "refactor", "debug", "execute", "commit", "push", "merge",
        ],
    },
}


class IdentityRegistry:
    """Holds the profile for each agent identity."""

    def __init__(self, profiles: Optional[Dict[str, Dict[str, Any]]] = None):
        self._profiles: Dict[str, IdentityProfile] = {}
        for identity, data in DEFAULT_PROFILES.items():
            self.register(IdentityProfile(**data))
        for identity, data in (profiles or {}).items():
            merged = dict(DEFAULT_PROFILES.get(identity, {}))
            merged.update(data)
            merged["identity"] = identity
            self.register(IdentityProfile(**merged))

    def register(self, profile: IdentityProfile) -> None:
        self._profiles[profile.identity] = profile

    def get(self, identity: str) -> IdentityProfile:
        key = Identity(identity).value
        if key not in self._profiles:
            raise KeyError(f"No profile registered for identity: {key}")
        return self._profiles[key]

    def agents(self) -> List[IdentityProfile]:
        return list(self._profiles.values())
