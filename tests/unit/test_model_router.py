"""
Unit tests for the model router.

Covers capability filtering, privacy, health handling, the degraded retry
window and deterministic tie-breaking.
"""

import pytest

from tandem.lib.errors import NoCapableAdapter
from tandem.models.routing import (
    AdapterDescriptor, CapabilityProfile, HealthState, PrivacyRequirement,
    RouteRequest, RouteRequirements, RouterPolicy
)
from tandem.services.model_router import ModelRouter


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def descriptor(backend_id: str, tier: str, context: int, cost: float = 0.0, **kwargs) -> AdapterDescriptor:
    return AdapterDescriptor(
        backend_id=backend_id,
        capability=CapabilityProfile(
            max_context_tokens=context, privacy_tier=tier, cost_per_1k_tokens=cost
        ),
        **kwargs
    )


def request(tokens: int, **kwargs) -> RouteRequest:
    return RouteRequest(requirements=RouteRequirements(min_context_tokens=tokens, **kwargs))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def router(clock):
    router = ModelRouter(degraded_retry_window_seconds=30.0, clock=clock)
    router.register(descriptor("local-2k", "local", 2048))
    router.register(descriptor("remote-32k", "remote", 32768, cost=0.01))
    return router


class TestCapabilityRouting:
    """Tests for capability and privacy filtering."""

    def test_small_request_goes_local(self, router):
        assert router.select(request(1000)).backend_id == "local-2k"

    def test_large_request_falls_to_remote_by_capability(self, router):
        assert router.select(request(8000)).backend_id == "remote-32k"

    def test_local_only_request_fails_when_no_local_fits(self, router):
        with pytest.raises(NoCapableAdapter) as exc_info:
            router.select(request(8000, privacy=PrivacyRequirement.LOCAL_ONLY))

        rejected = exc_info.value.details["rejected"]
        assert rejected["remote-32k"] == "remote backend excluded by local-only privacy"
        assert rejected["local-2k"] == "insufficient capability"

    def test_session_policy_local_only(self, router):
        with pytest.raises(NoCapableAdapter):
            router.select(request(8000), policy=RouterPolicy(local_only=True))

    def test_prefer_remote_policy(self, router):
        chosen = router.select(request(1000), policy=RouterPolicy(prefer_tier="remote"))
        assert chosen.backend_id == "remote-32k"

    def test_excluded_backends_skipped(self, router):
        assert router.select(request(1000), exclude=["local-2k"]).backend_id == "remote-32k"

    def test_streaming_requirement(self, router):
        router.register(AdapterDescriptor(
            backend_id="local-batch",
            capability=CapabilityProfile(max_context_tokens=1024, privacy_tier="local", streaming=False),
        ))
        assert router.select(request(512, streaming_required=True)).backend_id == "local-2k"


class TestDeterminism:
    """Tests for stable tie-breaking."""

    def test_smallest_slack_wins(self, router):
        router.register(descriptor("local-8k", "local", 8192))
        assert router.select(request(1500)).backend_id == "local-2k"
        assert router.select(request(4000)).backend_id == "local-8k"

    def test_ties_broken_by_cost_then_id(self):
        router = ModelRouter()
        router.register(descriptor("b-local", "local", 4096, cost=0.0))
        router.register(descriptor("a-local", "local", 4096, cost=0.0))
        router.register(descriptor("c-local", "local", 4096, cost=0.5))

        results = {router.select(request(100)).backend_id for _ in range(10)}
        assert results == {"a-local"}

    def test_candidates_ordering(self, router):
        ordered, rejected = router.candidates(request(1000))
        assert [d.backend_id for d in ordered] == ["local-2k", "remote-32k"]
        assert rejected == {}


class TestHealth:
    """Tests for health reports and the degraded retry window."""

    def test_unavailable_backend_never_selected(self, router):
        router.report_health("local-2k", HealthState.UNAVAILABLE, "process exited")
        assert router.select(request(1000)).backend_id == "remote-32k"
        assert router.get("local-2k").health_detail == "process exited"

    def test_degraded_backend_still_eligible(self, router):
        router.report_health("local-2k", HealthState.DEGRADED)
        assert router.select(request(1000)).backend_id == "local-2k"

    def test_degraded_failure_within_window_skipped(self, router, clock):
        router.report_health("local-2k", HealthState.DEGRADED)
        router.record_outcome("local-2k", success=False)

        clock.now += 10
        assert router.select(request(1000)).backend_id == "remote-32k"

        clock.now += 25
        assert router.select(request(1000)).backend_id == "local-2k"

    def test_degraded_already_attempted_skipped(self, router):
        router.report_health("local-2k", HealthState.DEGRADED)
        routed = request(1000)
        routed.mark_attempted("local-2k")
        assert router.select(routed).backend_id == "remote-32k"

    def test_healthy_report_clears_failure(self, router):
        router.report_health("local-2k", HealthState.DEGRADED)
        router.record_outcome("local-2k", success=False)
        router.report_health("local-2k", HealthState.HEALTHY)
        router.report_health("local-2k", HealthState.DEGRADED)
        assert router.select(request(1000)).backend_id == "local-2k"

    def test_unknown_backend_report_ignored(self, router):
        router.report_health("ghost", HealthState.HEALTHY)
        assert [d.backend_id for d in router.descriptors()] == ["local-2k", "remote-32k"]

    def test_returned_descriptor_is_a_copy(self, router):
        chosen = router.select(request(1000))
        chosen.health = HealthState.UNAVAILABLE
        assert router.get("local-2k").state == HealthState.HEALTHY
