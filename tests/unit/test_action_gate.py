"""
Unit tests for the action gate.

Tests classification of proposed actions, the approval state machine,
expiry, execution and audit records.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from tandem.lib.config import ActionGateConfig
from tandem.lib.errors import ActionExpired, ActionNotApproved, AlreadyResolved, UnknownAction
from tandem.models.proposed_action import (
    ActionClassification, ActionKind, ApprovalState, EffectClass, ExecutionState
)
from tandem.services.action_gate import ActionGate

from fakes import RecordingActionExecutor


class ManualClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def clocked_gate(sandbox, repo_dir, clock):
    gate = ActionGate(
        approval_window_seconds=900,
        sandbox_root=str(sandbox),
        tracked_paths=[str(repo_dir)],
        clock=clock
    )
    gate.register_executor(ActionKind.APPLY_DIFF, RecordingActionExecutor())
    return gate


class TestClassification:
    """Tests for safe/destructive classification."""

    def test_write_inside_sandbox_is_safe(self, gate, sandbox):
        classification, effect = gate.classify(ActionKind.FILE_WRITE, {"path": str(sandbox / "notes.md")})
        assert classification == ActionClassification.SAFE
        assert effect == EffectClass.REVERSIBLE_LOCAL

    def test_relative_write_resolves_into_sandbox(self, gate):
        classification, _ = gate.classify(ActionKind.FILE_WRITE, {"path": "drafts/plan.md"})
        assert classification == ActionClassification.SAFE

    def test_write_escaping_sandbox_is_destructive(self, gate, tmp_path):
        for path in ("../outside.txt", str(tmp_path / "elsewhere.txt")):
            classification, _ = gate.classify(ActionKind.FILE_WRITE, {"path": path})
            assert classification == ActionClassification.DESTRUCTIVE

    def test_diff_to_tracked_file_is_destructive(self, gate, repo_dir):
        classification, _ = gate.classify(ActionKind.APPLY_DIFF, {"path": str(repo_dir / "app.py"), "diff": "+x"})
        assert classification == ActionClassification.DESTRUCTIVE

    def test_diff_to_untracked_file_is_safe(self, gate, sandbox):
        classification, _ = gate.classify(ActionKind.APPLY_DIFF, {"path": str(sandbox / "scratch.py"), "diff": "+x"})
        assert classification == ActionClassification.SAFE

    def test_diff_without_path_is_destructive(self, gate):
        classification, _ = gate.classify(ActionKind.APPLY_DIFF, {"diff": "+x"})
        assert classification == ActionClassification.DESTRUCTIVE

    def test_custom_tracking_predicate(self, sandbox):
        gate = ActionGate(sandbox_root=str(sandbox), is_tracked=lambda path: path.endswith(".lock"))
        classification, _ = gate.classify(ActionKind.APPLY_DIFF, {"path": "deps.lock", "diff": "+x"})
        assert classification == ActionClassification.DESTRUCTIVE

    def test_default_config_diff_outside_sandbox_needs_approval(self):
        config = ActionGateConfig()
        gate = ActionGate(
            approval_window_seconds=config.approval_window_seconds,
            sandbox_root=config.sandbox_root,
            tracked_paths=config.tracked_paths,
            untracked_paths=config.untracked_paths
        )

        action = gate.propose(
            "s1", ActionKind.APPLY_DIFF, {"path": "/home/me/project/src/app.py", "diff": "+x"},
            proposed_by="tanganaka_san"
        )
        assert action.classification == ActionClassification.DESTRUCTIVE
        assert action.approval_state == ApprovalState.PENDING

    def test_untracked_root_allows_diff_unless_tracked(self, sandbox, tmp_path):
        scratch = tmp_path / "scratch"
        gate = ActionGate(
            sandbox_root=str(sandbox),
            tracked_paths=[str(scratch / "pinned")],
            untracked_paths=[str(scratch)]
        )

        classification, _ = gate.classify(ActionKind.APPLY_DIFF, {"path": str(scratch / "tmp.py"), "diff": "+x"})
        assert classification == ActionClassification.SAFE
        classification, _ = gate.classify(ActionKind.APPLY_DIFF, {"path": str(scratch / "pinned" / "a.py"), "diff": "+x"})
        assert classification == ActionClassification.DESTRUCTIVE

    def test_tracked_root_inside_sandbox_wins(self, sandbox):
        gate = ActionGate(sandbox_root=str(sandbox), tracked_paths=[str(sandbox / "repo")])
        classification, _ = gate.classify(ActionKind.APPLY_DIFF, {"path": "repo/app.py", "diff": "+x"})
        assert classification == ActionClassification.DESTRUCTIVE

    @pytest.mark.parametrize("payload", ["oops", ["path", "x"], {"path": 42}])
    def test_malformed_payload_raises_type_error(self, gate, payload):
        with pytest.raises(TypeError):
            gate.classify(ActionKind.FILE_WRITE, payload)

    @pytest.mark.parametrize("kind,payload", [
        (ActionKind.REPO_PUSH, {"ref": "main"}),
        (ActionKind.REPO_MERGE, {"ref": "feature"}),
        (ActionKind.SECRET_ACCESS, {"credential_handle": "vault:deploy"}),
    ])
    def test_always_destructive_kinds(self, gate, kind, payload):
        classification, effect = gate.classify(kind, payload)
        assert classification == ActionClassification.DESTRUCTIVE
        assert effect == EffectClass.DESTRUCTIVE

    def test_none_is_safe_without_effect(self, gate):
        assert gate.classify(ActionKind.NONE, {}) == (ActionClassification.SAFE, EffectClass.NONE)


class TestApprovalFlow:
    """Tests for propose, decide and execute."""

    @pytest.mark.asyncio
    async def test_destructive_action_waits_then_executes_once_approved(self, gate, action_executor, repo_dir):
        action = gate.propose(
            "s1", ActionKind.APPLY_DIFF, {"path": str(repo_dir / "app.py"), "diff": "+x"},
            proposed_by="tanganaka_san", source_turn=3
        )
        assert action.approval_state == ApprovalState.PENDING
        assert action.expires_at - action.created_at == timedelta(seconds=900)

        with pytest.raises(ActionNotApproved):
            await gate.execute(action.action_id)
        assert action_executor.executed == []

        decided = gate.decide(action.action_id, approved=True)
        assert decided.approval_state == ApprovalState.APPROVED
        assert decided.decided_by == "user"

        result = await gate.execute(action.action_id)
        assert result.success
        assert len(action_executor.executed) == 1
        assert gate.get(action.action_id).execution_state == ExecutionState.EXECUTED

        with pytest.raises(AlreadyResolved):
            await gate.execute(action.action_id)

    def test_safe_action_auto_approved(self, gate, sandbox):
        action = gate.propose("s1", ActionKind.FILE_WRITE, {"path": str(sandbox / "a.txt")}, proposed_by="tanganaka_san")
        assert action.approval_state == ApprovalState.APPROVED
        assert action.decided_by == "gate"

    def test_reject_discards(self, gate):
        action = gate.propose("s1", ActionKind.REPO_PUSH, {"ref": "main"}, proposed_by="tanganaka_san")
        rejected = gate.decide(action.action_id, approved=False)
        assert rejected.approval_state == ApprovalState.REJECTED
        assert rejected.execution_state == ExecutionState.DISCARDED

    def test_second_decision_already_resolved(self, gate):
        action = gate.propose("s1", ActionKind.REPO_PUSH, {"ref": "main"}, proposed_by="tanganaka_san")
        gate.decide(action.action_id, approved=True)
        with pytest.raises(AlreadyResolved):
            gate.decide(action.action_id, approved=False)
        assert gate.get(action.action_id).approval_state == ApprovalState.APPROVED

    def test_unknown_action(self, gate):
        with pytest.raises(UnknownAction):
            gate.decide("act-missing", approved=True)
        with pytest.raises(UnknownAction):
            gate.get("act-missing")

    @pytest.mark.asyncio
    async def test_executor_error_recorded_as_failure(self, gate, repo_dir):
        class Exploding(RecordingActionExecutor):
            async def execute(self, action):
                raise OSError("disk full")

        gate.register_executor(ActionKind.REPO_MERGE, Exploding())
        action = gate.propose("s1", ActionKind.REPO_MERGE, {"ref": "feature"}, proposed_by="tanganaka_san")
        gate.decide(action.action_id, approved=True)

        result = await gate.execute(action.action_id)
        assert not result.success
        assert "disk full" in result.summary
        assert gate.get(action.action_id).execution_state == ExecutionState.FAILED

    @pytest.mark.asyncio
    async def test_missing_executor_fails_cleanly(self, sandbox):
        gate = ActionGate(sandbox_root=str(sandbox))
        action = gate.propose("s1", ActionKind.REPO_PUSH, {"ref": "main"}, proposed_by="tanganaka_san")
        gate.decide(action.action_id, approved=True)
        result = await gate.execute(action.action_id)
        assert not result.success

    def test_list_actions_filters(self, gate, sandbox):
        gate.propose("s1", ActionKind.REPO_PUSH, {"ref": "main"}, proposed_by="tanganaka_san")
        gate.propose("s1", ActionKind.FILE_WRITE, {"path": str(sandbox / "a")}, proposed_by="tanganaka_san")
        gate.propose("s2", ActionKind.REPO_PUSH, {"ref": "main"}, proposed_by="tanganaka_san")

        assert len(gate.list_actions("s1")) == 2
        assert len(gate.list_actions("s1", pending_only=True)) == 1
        assert len(gate.list_actions()) == 3


class TestExpiry:
    """Tests for the approval window."""

    def test_decision_after_window_raises_expired(self, clocked_gate, clock, repo_dir):
        action = clocked_gate.propose(
            "s1", ActionKind.APPLY_DIFF, {"path": str(repo_dir / "app.py"), "diff": "+x"}, proposed_by="tanganaka_san"
        )
        clock.advance(901)

        with pytest.raises(ActionExpired):
            clocked_gate.decide(action.action_id, approved=True)

        stored = clocked_gate.get(action.action_id)
        assert stored.approval_state == ApprovalState.EXPIRED
        assert stored.execution_state == ExecutionState.DISCARDED
        with pytest.raises(AlreadyResolved):
            clocked_gate.decide(action.action_id, approved=True)

    def test_expire_stale_only_touches_closed_windows(self, clocked_gate, clock):
        old = clocked_gate.propose("s1", ActionKind.REPO_PUSH, {"ref": "a"}, proposed_by="tanganaka_san")
        clock.advance(600)
        fresh = clocked_gate.propose("s1", ActionKind.REPO_PUSH, {"ref": "b"}, proposed_by="tanganaka_san")
        clock.advance(400)

        expired = clocked_gate.expire_stale()
        assert [a.action_id for a in expired] == [old.action_id]
        assert clocked_gate.get(fresh.action_id).is_pending

    def test_expire_session(self, gate):
        first = gate.propose("s1", ActionKind.REPO_PUSH, {"ref": "a"}, proposed_by="tanganaka_san")
        other = gate.propose("s2", ActionKind.REPO_PUSH, {"ref": "a"}, proposed_by="tanganaka_san")

        expired = gate.expire_session("s1")
        assert [a.action_id for a in expired] == [first.action_id]
        assert gate.get(other.action_id).is_pending

    @pytest.mark.asyncio
    async def test_expired_action_never_executes(self, clocked_gate, clock):
        action = clocked_gate.propose("s1", ActionKind.REPO_PUSH, {"ref": "a"}, proposed_by="tanganaka_san")
        clock.advance(1000)
        clocked_gate.expire_stale()
        with pytest.raises(ActionNotApproved):
            await clocked_gate.execute(action.action_id)


class TestWaitForDecision:
    """Tests for waiting on a pending action."""

    @pytest.mark.asyncio
    async def test_wait_returns_on_decision(self, gate):
        action = gate.propose("s1", ActionKind.REPO_PUSH, {"ref": "main"}, proposed_by="tanganaka_san")

        waiter = asyncio.create_task(gate.wait_for_decision(action.action_id, timeout=2))
        await asyncio.sleep(0.01)
        gate.decide(action.action_id, approved=True)

        decided = await waiter
        assert decided.approval_state == ApprovalState.APPROVED

    @pytest.mark.asyncio
    async def test_wait_times_out_into_expiry(self, gate):
        action = gate.propose("s1", ActionKind.REPO_PUSH, {"ref": "main"}, proposed_by="tanganaka_san")
        with pytest.raises(ActionExpired):
            await gate.wait_for_decision(action.action_id, timeout=0.05)
        assert gate.get(action.action_id).approval_state == ApprovalState.EXPIRED

    @pytest.mark.asyncio
    async def test_wait_on_resolved_action_returns_immediately(self, gate):
        action = gate.propose("s1", ActionKind.REPO_PUSH, {"ref": "main"}, proposed_by="tanganaka_san")
        gate.decide(action.action_id, approved=False)
        resolved = await gate.wait_for_decision(action.action_id)
        assert resolved.approval_state == ApprovalState.REJECTED


class TestAuditTrail:
    """Tests for audit records produced by the gate."""

    @pytest.mark.asyncio
    async def test_records_follow_the_action(self, gate, action_executor):
        action = gate.propose(
            "s1", ActionKind.SECRET_ACCESS, {"credential_handle": "vault:deploy"},
            proposed_by="tanganaka_san", source_turn=4
        )
        gate.decide(action.action_id, approved=True, decided_by="alice")
        await gate.execute(action.action_id)

        records = gate.get_audit_records(action_id=action.action_id)
        assert [r.action for r in records] == [
            "propose:secret_access", "approved:secret_access", "execute:secret_access"
        ]
        assert records[1].actor == "alice"
        assert records[0].turn_sequence == 4
        assert records[0].metadata["payload"]["credential_handle"] == "[REDACTED]"
        assert gate.get_audit_records(session_id="other") == []


class SlowExecutor(RecordingActionExecutor):
    """Records the gate's view of each action while its effect is in flight."""

    def __init__(self, gate: ActionGate):
        super().__init__()
        self.gate = gate
        self.states_seen = []

    async def execute(self, action):
        self.states_seen.append(self.gate.get(action.action_id).approval_state)
        await asyncio.sleep(0.01)
        return await super().execute(action)


class TestConcurrentDecisions:
    """Tests for decisions and executions racing on one action."""

    @pytest.mark.asyncio
    async def test_executions_racing_a_decision_never_run_while_pending(self, gate):
        executor = SlowExecutor(gate)
        gate.register_executor(ActionKind.REPO_PUSH, executor)
        action = gate.propose("s1", ActionKind.REPO_PUSH, {"ref": "main"}, proposed_by="tanganaka_san")

        async def approve_later():
            await asyncio.sleep(0.005)
            gate.decide(action.action_id, approved=True)

        async def execute_soon(delay):
            await asyncio.sleep(delay)
            return await gate.execute(action.action_id)

        outcomes = await asyncio.gather(
            approve_later(),
            *(execute_soon(delay) for delay in (0, 0, 0.002, 0.01, 0.01, 0.02)),
            return_exceptions=True
        )

        errors = [o for o in outcomes[1:] if isinstance(o, Exception)]
        successes = [o for o in outcomes[1:] if not isinstance(o, Exception)]
        assert len(successes) == 1
        assert all(isinstance(e, (ActionNotApproved, AlreadyResolved)) for e in errors)
        assert sum(isinstance(e, ActionNotApproved) for e in errors) >= 2
        assert executor.states_seen == [ApprovalState.APPROVED]
        assert len(executor.executed) == 1

    @pytest.mark.asyncio
    async def test_threaded_decisions_resolve_once(self, gate):
        action = gate.propose("s1", ActionKind.REPO_MERGE, {"ref": "feature"}, proposed_by="tanganaka_san")

        def decide(approved):
            try:
                return gate.decide(action.action_id, approved=approved)
            except AlreadyResolved as e:
                return e

        outcomes = await asyncio.gather(*(asyncio.to_thread(decide, i % 2 == 0) for i in range(10)))

        accepted = [o for o in outcomes if not isinstance(o, AlreadyResolved)]
        assert len(accepted) == 1
        stored = gate.get(action.action_id)
        assert stored.approval_state == accepted[0].approval_state
        decisions = [r for r in gate.get_audit_records(action_id=action.action_id) if r.action.startswith(("approved", "rejected"))]
        assert len(decisions) == 1

    @pytest.mark.asyncio
    async def test_rejection_racing_execution_never_runs(self, gate):
        executor = SlowExecutor(gate)
        gate.register_executor(ActionKind.REPO_PUSH, executor)
        action = gate.propose("s1", ActionKind.REPO_PUSH, {"ref": "main"}, proposed_by="tanganaka_san")

        async def reject():
            gate.decide(action.action_id, approved=False)

        outcomes = await asyncio.gather(
            gate.execute(action.action_id), reject(), gate.execute(action.action_id),
            return_exceptions=True
        )

        assert isinstance(outcomes[0], ActionNotApproved)
        assert isinstance(outcomes[2], ActionNotApproved)
        assert executor.executed == []


class TestRetention:
    """Tests for forgetting settled actions and bounding the audit trail."""

    @pytest.mark.asyncio
    async def test_prune_forgets_only_settled_actions(self, sandbox, clock):
        gate = ActionGate(sandbox_root=str(sandbox), retention_seconds=60, clock=clock)
        gate.register_executor(ActionKind.FILE_WRITE, RecordingActionExecutor())
        pending = gate.propose("s1", ActionKind.REPO_PUSH, {"ref": "a"}, proposed_by="tanganaka_san")
        rejected = gate.propose("s1", ActionKind.REPO_PUSH, {"ref": "b"}, proposed_by="tanganaka_san")
        gate.decide(rejected.action_id, approved=False)
        executed = gate.propose("s1", ActionKind.FILE_WRITE, {"path": "a.txt"}, proposed_by="tanganaka_san")
        await gate.execute(executed.action_id)
        approved = gate.propose("s1", ActionKind.FILE_WRITE, {"path": "b.txt"}, proposed_by="tanganaka_san")

        assert gate.prune() == []

        clock.advance(61)
        pruned = gate.prune()

        assert sorted(pruned) == sorted([rejected.action_id, executed.action_id])
        with pytest.raises(UnknownAction):
            gate.get(rejected.action_id)
        assert gate.get_audit_records(action_id=executed.action_id) == []
        assert gate.get(pending.action_id).is_pending
        assert gate.get(approved.action_id).execution_state == ExecutionState.NOT_STARTED
        assert gate.get_audit_records(action_id=pending.action_id)

    def test_retention_disabled_keeps_everything(self, sandbox, clock):
        gate = ActionGate(sandbox_root=str(sandbox), retention_seconds=None, clock=clock)
        action = gate.propose("s1", ActionKind.REPO_PUSH, {"ref": "a"}, proposed_by="tanganaka_san")
        gate.decide(action.action_id, approved=False)
        clock.advance(10 ** 6)

        assert gate.prune() == []
        assert gate.get(action.action_id).approval_state == ApprovalState.REJECTED

    def test_audit_trail_is_capped(self, sandbox):
        gate = ActionGate(sandbox_root=str(sandbox), max_audit_records=3)
        ids = [
            gate.propose("s1", ActionKind.REPO_PUSH, {"ref": str(i)}, proposed_by="tanganaka_san").action_id
            for i in range(5)
        ]

        records = gate.get_audit_records()
        assert len(records) == 3
        assert [r.action_id for r in records] == ids[2:]
