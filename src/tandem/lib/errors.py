"""Error taxonomy for the orchestration engine."""

from typing import Dict, Optional, Any


class OrchestrationError(Exception):
    """Base class for engine errors.

    Attributes:
        code: Stable machine-readable error code
        retryable: Whether the caller may retry the same call unchanged
        details: Extra context for system turns and API responses
    """

    code = "orchestration_error"
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class SessionLocked(OrchestrationError):
    """Another writer holds the session."""

    code = "session_locked"
    retryable = True


class UnknownSession(OrchestrationError):
    code = "unknown_session"


class SessionArchived(OrchestrationError):
    code = "session_archived"


class NoCapableAdapter(OrchestrationError):
    """No registered backend satisfies the request after policy filtering."""

    code = "no_capable_adapter"


class InferenceTimeout(OrchestrationError):
    code = "inference_timeout"


class InferenceFailed(OrchestrationError):
    """Backend error during inference. Transient: a fallback may succeed."""

    code = "inference_failed"
    retryable = True


class InferenceCancelled(OrchestrationError):
    code = "inference_cancelled"


class UnknownAction(OrchestrationError):
    code = "unknown_action"


class AlreadyResolved(OrchestrationError):
    code = "already_resolved"


class ActionExpired(OrchestrationError):
    code = "action_expired"


class ActionNotApproved(OrchestrationError):
    code = "action_not_approved"


class UnknownTask(OrchestrationError):
    code = "unknown_task"


class InvalidTaskTransition(OrchestrationError):
    code = "invalid_task_transition"


def error_code(error: BaseException) -> Optional[str]:
    """Code for an engine error, None for anything else."""
    if isinstance(error, OrchestrationError):
        return error.code
    return None
