"""Action gate: classification, approval and execution of proposed actions."""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple

from ..lib.errors import ActionExpired, ActionNotApproved, AlreadyResolved, UnknownAction
from ..lib.logging_config import get_audit_logger
from ..lib.metrics import get_metrics
from ..lib.observability import approval_span
from ..models.audit_record import AuditRecord, EventType, ResultStatus
from ..models.proposed_action import (
    ActionClassification, ActionKind, ActionResult, ApprovalState, EffectClass,
    ExecutionState, ProposedAction
)


logger = logging.getLogger(__name__)

ALWAYS_DESTRUCTIVE = frozenset({ActionKind.REPO_PUSH, ActionKind.REPO_MERGE, ActionKind.SECRET_ACCESS})


class ActionExecutor(ABC):
    """External collaborator that applies an approved action."""

    @abstractmethod
    async def execute(self, action: ProposedAction) -> ActionResult:
        """Apply ``action`` and report the outcome."""


class ActionGate:
    """
    Owns every ProposedAction and its approval state machine.

    ``pending -> approved -> executed``, ``pending -> rejected -> discarded``
    and ``pending -> expired -> discarded``. Safe actions are approved on
    proposal. Nothing that is not ``approved`` reaches an executor.

    The gate performs no I/O of its own besides audit records; effects run in
    registered ActionExecutors.
    """

    def __init__(
        self,
        approval_window_seconds: float = 900.0,
        sandbox_root: Optional[str] = None,
        tracked_paths: Optional[Iterable[str]] = None,
        untracked_paths: Optional[Iterable[str]] = None,
        is_tracked: Optional[Callable[[str], bool]] = None,
        retention_seconds: Optional[float] = 3600.0,
        max_audit_records: int = 10000,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        self.approval_window_seconds = approval_window_seconds
        self.sandbox_root = Path(sandbox_root).expanduser().resolve() if sandbox_root else None
        self.tracked_paths = [Path(p).expanduser().resolve() for p in (tracked_paths or [])]
        self.untracked_paths = [Path(p).expanduser().resolve() for p in (untracked_paths or [])]
        self._is_tracked = is_tracked
        self._clock = clock
        self._actions: Dict[str, ProposedAction] = {}
        self._executors: Dict[str, ActionExecutor] = {}
        self._waiters: Dict[str, List[Tuple[asyncio.AbstractEventLoop, asyncio.Event]]] = {}
        self.retention_seconds = retention_seconds
        self._audit_records: Deque[AuditRecord] = deque(maxlen=max_audit_records)
        self._lock = threading.Lock()
        self.audit_logger = get_audit_logger()
        self.metrics = get_metrics()

    def register_executor(self, kind: ActionKind, executor: ActionExecutor) -> None:
        self._executors[ActionKind(kind).value] = executor

    # Classification

    def _resolve(self, path: str) -> Path:
        candidate = Path(path).expanduser()
        if not candidate.is_absolute() and self.sandbox_root is not None:
            candidate = self.sandbox_root / candidate
        return candidate.resolve()

    def _inside_sandbox(self, path: Optional[str]) -> bool:
        if not path or self.sandbox_root is None:
            return False
        return self._resolve(path).is_relative_to(self.sandbox_root)

    def _tracked(self, path: Optional[str]) -> bool:
        """
        Whether a diff target must be treated as tracked.

        A target is untracked only when it is shown to be: it resolves inside
        the sandbox or under a configured untracked root, and neither the
        tracked roots nor the ``is_tracked`` predicate claim it.
        """
        if not path:
            return True
        if self._is_tracked is not None and self._is_tracked(path):
            return True
        resolved = self._resolve(path)
        if self._under(resolved, self.tracked_paths):
            return True
        return not (self._inside_sandbox(path) or self._under(resolved, self.untracked_paths))

    @staticmethod
    def _under(resolved: Path, roots: List[Path]) -> bool:
        return any(resolved == root or resolved.is_relative_to(root) for root in roots)

    def classify(self, kind: ActionKind, payload: Dict[str, Any]) -> Tuple[ActionClassification, EffectClass]:
        """
        Classify an action.

        Writes outside the sandbox, diffs to files not shown to be untracked,
        pushes, merges and secret access are destructive. Everything else is
        safe.

        Raises:
            ValueError: If ``kind`` is not a known action kind
            TypeError: If the payload is not an object or its path is not a string
        """
        kind = ActionKind(kind)
        if not isinstance(payload, dict):
            raise TypeError(f"action payload must be an object, not {type(payload).__name__}")
        path = payload.get("path") or payload.get("target")
        if path is not None and not isinstance(path, str):
            raise TypeError(f"action path must be a string, not {type(path).__name__}")

        if kind in ALWAYS_DESTRUCTIVE:
            return ActionClassification.DESTRUCTIVE, EffectClass.DESTRUCTIVE
        if kind == ActionKind.FILE_WRITE:
            if self._inside_sandbox(path):
                return ActionClassification.SAFE, EffectClass.REVERSIBLE_LOCAL
            return ActionClassification.DESTRUCTIVE, EffectClass.DESTRUCTIVE
        if kind == ActionKind.APPLY_DIFF:
            if self._tracked(path):
                return ActionClassification.DESTRUCTIVE, EffectClass.DESTRUCTIVE
            return ActionClassification.SAFE, EffectClass.REVERSIBLE_LOCAL
        return ActionClassification.SAFE, EffectClass.NONE

    # State machine

    def propose(
        self,
        session_id: str,
        kind: ActionKind,
        payload: Dict[str, Any],
        proposed_by: str,
        source_turn: Optional[int] = None,
        description: str = ""
    ) -> ProposedAction:
        """
        Register a new action. Safe actions come back already approved.

        Raises:
            pydantic.ValidationError: If the payload carries raw secret material
        """
        classification, effect = self.classify(kind, payload)
        now = self._clock()
        action = ProposedAction(
            session_id=session_id,
            kind=kind,
            payload=dict(payload),
            description=description,
            proposed_by=proposed_by,
            source_turn=source_turn,
            classification=classification,
            effect=effect,
            created_at=now,
            expires_at=ProposedAction.window_end(self.approval_window_seconds, now),
        )
        action.record("proposed")

        if classification == ActionClassification.SAFE:
            action.approval_state = ApprovalState.APPROVED
            action.decided_at = now
            action.decided_by = "gate"
            action.record("auto_approved")

        with self._lock:
            self._actions[action.action_id] = action
            snapshot = action.model_copy(deep=True)

        self.metrics.record_action_proposed(snapshot.kind, snapshot.classification)
        self._audit(snapshot, "propose", ResultStatus.PENDING if snapshot.is_pending else ResultStatus.SUCCESS)
        logger.info(
            f"Action {snapshot.action_id} ({snapshot.kind}) proposed by {proposed_by}: "
            f"{snapshot.classification}, {snapshot.approval_state}"
        )
        return snapshot

    def get(self, action_id: str) -> ProposedAction:
        with self._lock:
            action = self._actions.get(action_id)
            if action is None:
                raise UnknownAction(f"Action {action_id} was never proposed", action_id=action_id)
            return action.model_copy(deep=True)

    def list_actions(self, session_id: Optional[str] = None, pending_only: bool = False) -> List[ProposedAction]:
        with self._lock:
            actions = [a.model_copy(deep=True) for a in self._actions.values()]
        if session_id is not None:
            actions = [a for a in actions if a.session_id == session_id]
        if pending_only:
            actions = [a for a in actions if a.is_pending]
        return sorted(actions, key=lambda a: a.created_at)

    def _expire_locked(self, action: ProposedAction) -> None:
        action.approval_state = ApprovalState.EXPIRED
        action.execution_state = ExecutionState.DISCARDED
        action.decided_at = self._clock()
        action.decided_by = "gate"
        action.record("expired")

    def decide(self, action_id: str, approved: bool, decided_by: str = "user") -> ProposedAction:
        """
        Record the user's decision on a pending action.

        Raises:
            UnknownAction: If the action was never proposed
            AlreadyResolved: If the action is no longer pending
            ActionExpired: If the approval window closed first
        """
        with approval_span(action_id, "decision"):
            expired = False
            with self._lock:
                action = self._actions.get(action_id)
                if action is None:
                    raise UnknownAction(f"Action {action_id} was never proposed", action_id=action_id)
                if not action.is_pending:
                    raise AlreadyResolved(
                        f"Action {action_id} is already {action.approval_state}",
                        action_id=action_id,
                        approval_state=action.approval_state
                    )
                if action.is_expired(self._clock()):
                    self._expire_locked(action)
                    expired = True
                elif approved:
                    action.approval_state = ApprovalState.APPROVED
                else:
                    action.approval_state = ApprovalState.REJECTED
                    action.execution_state = ExecutionState.DISCARDED

                if not expired:
                    action.decided_at = self._clock()
                    action.decided_by = decided_by
                    action.record("approved" if approved else "rejected", decided_by=decided_by)
                snapshot = action.model_copy(deep=True)

        self._notify(action_id)
        if expired:
            self.metrics.record_action_decision(snapshot.kind, "expired")
            self._audit(snapshot, "expire", ResultStatus.TIMEOUT)
            raise ActionExpired(f"Action {action_id} expired before a decision", action_id=action_id)

        result = "approved" if approved else "rejected"
        self.metrics.record_action_decision(snapshot.kind, result)
        self._audit(snapshot, result, ResultStatus.SUCCESS if approved else ResultStatus.BLOCKED, actor=decided_by)
        return snapshot

    async def execute(self, action_id: str) -> ActionResult:
        """
        Hand an approved action to its executor.

        Raises:
            UnknownAction: If the action was never proposed
            ActionNotApproved: If the action is not approved
            AlreadyResolved: If execution already started
        """
        with self._lock:
            action = self._actions.get(action_id)
            if action is None:
                raise UnknownAction(f"Action {action_id} was never proposed", action_id=action_id)
            if action.approval_state != ApprovalState.APPROVED:
                raise ActionNotApproved(
                    f"Action {action_id} is {action.approval_state}, not approved",
                    action_id=action_id,
                    approval_state=action.approval_state
                )
            if action.execution_state != ExecutionState.NOT_STARTED:
                raise AlreadyResolved(
                    f"Action {action_id} is already {action.execution_state}",
                    action_id=action_id
                )
            action.execution_state = ExecutionState.EXECUTING
            action.record("executing")
            snapshot = action.model_copy(deep=True)

        executor = self._executors.get(snapshot.kind)
        if executor is None and snapshot.kind == ActionKind.NONE:
            result = ActionResult(action_id=action_id, success=True, summary="No effect to apply")
        elif executor is None:
            result = ActionResult(
                action_id=action_id,
                success=False,
                summary=f"No executor registered for {snapshot.kind}"
            )
        else:
            try:
                result = await executor.execute(snapshot)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Executor for {snapshot.kind} failed on {action_id}: {e}")
                result = ActionResult(action_id=action_id, success=False, summary=f"Executor error: {e}")

        with self._lock:
            action = self._actions[action_id]
            action.result = result
            action.execution_state = ExecutionState.EXECUTED if result.success else ExecutionState.FAILED
            action.record("executed" if result.success else "execution_failed")
            snapshot = action.model_copy(deep=True)

        self._audit(
            snapshot, "execute", ResultStatus.SUCCESS if result.success else ResultStatus.FAILURE,
            reason=result.summary
        )
        return result

    def expire_stale(self, now: Optional[datetime] = None) -> List[ProposedAction]:
        """Expire every pending action whose window has closed."""
        now = now or self._clock()
        return self._expire_where(lambda action: action.is_expired(now))

    def expire_session(self, session_id: str) -> List[ProposedAction]:
        """Expire every pending action of a session, regardless of its window."""
        return self._expire_where(lambda action: action.session_id == session_id and action.is_pending)

    def _expire_where(self, predicate: Callable[[ProposedAction], bool]) -> List[ProposedAction]:
        expired: List[ProposedAction] = []
        with self._lock:
            for action in self._actions.values():
                if predicate(action):
                    self._expire_locked(action)
                    expired.append(action.model_copy(deep=True))

        for action in expired:
            self._notify(action.action_id)
            self.metrics.record_action_decision(action.kind, "expired")
            self._audit(action, "expire", ResultStatus.TIMEOUT)
            logger.info(f"Action {action.action_id} expired without a decision")
        return expired

    def prune(self, now: Optional[datetime] = None) -> List[str]:
        """
        Forget settled actions decided more than ``retention_seconds`` ago.

        Pending, approved-but-unexecuted and executing actions are kept, as
        is everything when retention is disabled. Audit records of the
        forgotten actions go with them.

        Returns:
            Ids of the forgotten actions
        """
        if self.retention_seconds is None:
            return []
        cutoff = (now or self._clock()) - timedelta(seconds=self.retention_seconds)
        with self._lock:
            stale = [
                action_id for action_id, action in self._actions.items()
                if self._settled(action) and action.decided_at is not None and action.decided_at <= cutoff
            ]
            for action_id in stale:
                del self._actions[action_id]
                self._waiters.pop(action_id, None)
            if stale:
                forgotten = set(stale)
                kept = [r for r in self._audit_records if r.action_id not in forgotten]
                self._audit_records.clear()
                self._audit_records.extend(kept)
        if stale:
            logger.info(f"Pruned {len(stale)} settled actions")
        return stale

    @staticmethod
    def _settled(action: ProposedAction) -> bool:
        return action.execution_state in (
            ExecutionState.EXECUTED, ExecutionState.FAILED, ExecutionState.DISCARDED
        )

    async def wait_for_decision(self, action_id: str, timeout: Optional[float] = None) -> ProposedAction:
        """
        Suspend until the action leaves ``pending``.

        Without ``timeout`` the wait lasts until the approval window closes.

        Raises:
            UnknownAction: If the action was never proposed
            ActionExpired: If the window closes first
        """
        action = self.get(action_id)
        if not action.is_pending:
            return action

        if timeout is None:
            timeout = max((action.expires_at - self._clock()).total_seconds(), 0.0)

        event = asyncio.Event()
        with self._lock:
            self._waiters.setdefault(action_id, []).append((asyncio.get_running_loop(), event))

        # Decided between the first read and registering the waiter
        if not self.get(action_id).is_pending:
            event.set()

        try:
            await asyncio.wait_for(event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            with self._lock:
                current = self._actions[action_id]
                if current.is_pending:
                    self._expire_locked(current)
                    snapshot = current.model_copy(deep=True)
                else:
                    snapshot = None
            if snapshot is not None:
                self._notify(action_id)
                self.metrics.record_action_decision(snapshot.kind, "expired")
                self._audit(snapshot, "expire", ResultStatus.TIMEOUT)
                raise ActionExpired(f"No decision on {action_id} within {timeout}s", action_id=action_id)
        finally:
            with self._lock:
                waiters = self._waiters.get(action_id, [])
                self._waiters[action_id] = [w for w in waiters if w[1] is not event]

        action = self.get(action_id)
        if action.approval_state == ApprovalState.EXPIRED:
            raise ActionExpired(f"Action {action_id} expired", action_id=action_id)
        return action

    def _notify(self, action_id: str) -> None:
        with self._lock:
            waiters = self._waiters.pop(action_id, [])
        for loop, event in waiters:
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is loop:
                event.set()
            else:
                loop.call_soon_threadsafe(event.set)

    def restore(self, actions: Iterable[ProposedAction]) -> None:
        """Load persisted actions."""
        with self._lock:
            for action in actions:
                self._actions[action.action_id] = action.model_copy(deep=True)

    # Audit

    def _audit(
        self,
        action: ProposedAction,
        operation: str,
        result: ResultStatus,
        actor: Optional[str] = None,
        reason: Optional[str] = None
    ) -> None:
        record = AuditRecord(
            event_type=EventType.DECISION if operation in ("approved", "rejected", "expire") else EventType.ACTION,
            session_id=action.session_id,
            actor=actor or action.proposed_by,
            action=f"{operation}:{action.kind}",
            result=result,
            reason=reason,
            action_id=action.action_id,
            turn_sequence=action.source_turn,
            metadata={
                "classification": action.classification,
                "approval_state": action.approval_state,
                "execution_state": action.execution_state,
                "payload": action.payload,
            }
        )
        with self._lock:
            self._audit_records.append(record)
        self.audit_logger.log_record(record)
        self.audit_logger.log_action_event(
            operation, action.action_id, action.kind, action.classification,
            session_id=action.session_id, actor=actor or action.proposed_by
        )

    def get_audit_records(
        self,
        session_id: Optional[str] = None,
        action_id: Optional[str] = None
    ) -> List[AuditRecord]:
        with self._lock:
            records = list(self._audit_records)
        if session_id is not None:
            records = [r for r in records if r.session_id == session_id]
        if action_id is not None:
            records = [r for r in records if r.action_id == action_id]
        return records
