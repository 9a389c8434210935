"""Model router: picks the backend that serves a request."""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from ..lib.errors import NoCapableAdapter
from ..lib.logging_config import get_audit_logger
from ..lib.metrics import get_metrics
from ..models.routing import (
    AdapterDescriptor, HealthState, PrivacyRequirement, PrivacyTier,
    RouteRequest, RouterPolicy
)


logger = logging.getLogger(__name__)


class ModelRouter:
    """
    Deterministic backend selection over last-known adapter health.

    Policy, applied in order:

    1. drop remote backends when the request or session policy is local-only
    2. drop unavailable and excluded backends, and degraded backends already
       tried in this request or that failed within the retry window
    3. keep backends whose capability satisfies the request, preferring the
       policy's tier and falling back to the other tier only by capability
    4. pick the smallest context-window slack
    5. break ties by lowest cost, then backend id

    The router never probes backends. Adapters push health through
    ``report_health``, which may be called from any thread.
    """

    def __init__(
        self,
        policy: Optional[RouterPolicy] = None,
        degraded_retry_window_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.default_policy = policy or RouterPolicy()
        self.degraded_retry_window_seconds = degraded_retry_window_seconds
        self._clock = clock
        self._descriptors: Dict[str, AdapterDescriptor] = {}
        self._failures: Dict[str, float] = {}
        self._lock = threading.Lock()
        self.audit_logger = get_audit_logger()
        self.metrics = get_metrics()

    def register(self, descriptor: AdapterDescriptor) -> None:
        with self._lock:
            self._descriptors[descriptor.backend_id] = descriptor.model_copy(deep=True)
        logger.info(
            f"Registered backend {descriptor.backend_id} "
            f"({descriptor.capability.privacy_tier}, {descriptor.capability.max_context_tokens} tokens)"
        )

    def unregister(self, backend_id: str) -> None:
        with self._lock:
            self._descriptors.pop(backend_id, None)
            self._failures.pop(backend_id, None)

    def get(self, backend_id: str) -> Optional[AdapterDescriptor]:
        with self._lock:
            descriptor = self._descriptors.get(backend_id)
        return descriptor.model_copy(deep=True) if descriptor else None

    def descriptors(self) -> List[AdapterDescriptor]:
        """Snapshot of all registered descriptors, ordered by backend id."""
        with self._lock:
            snapshot = [d.model_copy(deep=True) for d in self._descriptors.values()]
        return sorted(snapshot, key=lambda d: d.backend_id)

    def report_health(self, backend_id: str, state: HealthState, detail: Optional[str] = None) -> None:
        """Record an adapter's self-reported health."""
        with self._lock:
            current = self._descriptors.get(backend_id)
            if current is None:
                logger.warning(f"Health report for unknown backend {backend_id}")
                return
            self._descriptors[backend_id] = current.model_copy(update={
                "health": HealthState(state).value,
                "health_reported_at": datetime.now(timezone.utc),
                "health_detail": detail,
            })
            if HealthState(state) == HealthState.HEALTHY:
                self._failures.pop(backend_id, None)

    def record_outcome(self, backend_id: str, success: bool) -> None:
        """Record a request outcome; failures open the degraded retry window."""
        with self._lock:
            if success:
                self._failures.pop(backend_id, None)
            else:
                self._failures[backend_id] = self._clock()

    def _exclusion_reason(
        self,
        descriptor: AdapterDescriptor,
        request: RouteRequest,
        excluded: Iterable[str],
        local_only: bool,
        now: float
    ) -> Optional[str]:
        if local_only and descriptor.tier == PrivacyTier.REMOTE:
            return "remote backend excluded by local-only privacy"
        if descriptor.backend_id in excluded:
            return "excluded"
        if descriptor.state == HealthState.UNAVAILABLE:
            return "unavailable"
        if descriptor.state == HealthState.DEGRADED:
            if descriptor.backend_id in request.attempted:
                return "degraded and already attempted"
            failed_at = self._failures.get(descriptor.backend_id)
            if failed_at is not None and now - failed_at < self.degraded_retry_window_seconds:
                return "degraded and failed within retry window"
        if not request.requirements.satisfied_by(descriptor.capability):
            return "insufficient capability"
        return None

    def candidates(
        self,
        request: RouteRequest,
        exclude: Iterable[str] = (),
        policy: Optional[RouterPolicy] = None
    ) -> Tuple[List[AdapterDescriptor], Dict[str, str]]:
        """
        Eligible descriptors in preference order, plus the reason each other backend was dropped.

        Args:
            request: Route request with capability requirements
            exclude: Backend ids never to return
            policy: Session routing policy, defaults to the router's policy

        Returns:
            (ordered eligible descriptors, {backend_id: reason} for dropped backends)
        """
        policy = policy or self.default_policy
        local_only = (
            PrivacyRequirement(request.requirements.privacy) == PrivacyRequirement.LOCAL_ONLY
            or policy.local_only
        )
        excluded = set(exclude) | set(policy.excluded_backends)
        preferred = PrivacyTier(policy.prefer_tier)

        with self._lock:
            snapshot = list(self._descriptors.values())
            now = self._clock()
            rejected: Dict[str, str] = {}
            eligible: List[AdapterDescriptor] = []
            for descriptor in snapshot:
                reason = self._exclusion_reason(descriptor, request, excluded, local_only, now)
                if reason:
                    rejected[descriptor.backend_id] = reason
                else:
                    eligible.append(descriptor)

        required = request.requirements.min_context_tokens

        def rank(descriptor: AdapterDescriptor):
            capability = descriptor.capability
            return (
                0 if descriptor.tier == preferred else 1,
                capability.max_context_tokens - required,
                capability.cost_per_1k_tokens,
                descriptor.backend_id,
            )

        ordered = sorted(eligible, key=rank)
        return [d.model_copy(deep=True) for d in ordered], rejected

    def select(
        self,
        request: RouteRequest,
        exclude: Iterable[str] = (),
        policy: Optional[RouterPolicy] = None
    ) -> AdapterDescriptor:
        """
        Select the backend for ``request``.

        Raises:
            NoCapableAdapter: If no backend survives the policy filters
        """
        ordered, rejected = self.candidates(request, exclude, policy)
        if not ordered:
            logger.warning(f"No capable backend for request {request.request_id}: {rejected}")
            self.metrics.record_routing(None, None)
            self.audit_logger.log_routing_event(
                request.request_id, None, "no_capable_adapter",
                session_id=request.session_id, metadata={"rejected": rejected}
            )
            raise NoCapableAdapter(
                f"No backend can serve request {request.request_id}",
                request_id=request.request_id,
                rejected=rejected
            )

        chosen = ordered[0]
        logger.debug(f"Routed request {request.request_id} to {chosen.backend_id}")
        self.metrics.record_routing(chosen.backend_id, chosen.tier.value)
        self.audit_logger.log_routing_event(
            request.request_id, chosen.backend_id, "selected",
            session_id=request.session_id,
            metadata={"tier": chosen.tier.value, "attempted": sorted(request.attempted)}
        )
        return chosen
