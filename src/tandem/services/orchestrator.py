"""Orchestrator: turn handling, responder selection, inference and action flow."""

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from pydantic import ValidationError

from ..lib.config import TandemConfig
from ..lib.errors import (
    ActionExpired, AlreadyResolved, InferenceCancelled, InferenceFailed, InferenceTimeout,
    InvalidTaskTransition, NoCapableAdapter, OrchestrationError, SessionArchived, UnknownAction,
    UnknownSession, UnknownTask
)
from ..lib.logging_config import get_audit_logger
from ..lib.observability import turn_span
from ..models.identity import Identity, IdentityRegistry
from ..models.inference import InferencePayload, InferenceResult, PromptMessage
from ..models.interaction import ActionDecision, Interaction
from ..models.proposed_action import ActionKind, ApprovalState, ProposedAction
from ..models.routing import PrivacyTier, RouteRequest, RouterPolicy
from ..models.session import Session
from ..models.task import Task
from ..models.turn import Turn, TurnDraft, TurnKind
from .action_gate import ActionExecutor, ActionGate
from .command_adapter import CommandBackendAdapter
from .conversation_log import ConversationLog, LogSubscription, SessionLock, WriteToken
from .embedding_cache import EmbeddingCache
from .inference_executor import InferenceExecutor
from .model_router import ModelRouter
from .session_registry import SessionClaims, SessionRegistry
from .state_store import JsonlStateStore, StateStore
from .task_board import TaskBoard, TaskUpdate, extract_task_ops


logger = logging.getLogger(__name__)

DIRECTED_PATTERN = re.compile(r"^\s*@(chinga_bava|tanganaka_san)\b[:,]?\s*", re.IGNORECASE)
FENCED_INTENT_PATTERN = re.compile(r"```(?:json|intent)\s*\n(.*?)```", re.DOTALL)


def extract_intent(content: str) -> Optional[Dict[str, Any]]:
    """Structured intent embedded in response text as a fenced json/intent block."""
    for block in FENCED_INTENT_PATTERN.findall(content or ""):
        try:
            data = json.loads(block)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return None


@dataclass
class SessionRuntime:
    """In-memory state of one open session."""
    session: Session
    lock: SessionLock
    log: ConversationLog
    board: TaskBoard
    submit_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @classmethod
    def create(cls, session: Session) -> "SessionRuntime":
        lock = SessionLock(session.session_id)
        return cls(
            session=session,
            lock=lock,
            log=ConversationLog(session.session_id, lock),
            board=TaskBoard(session.session_id, lock),
        )


class Orchestrator:
    """
    Coordinates turns between the user and the agent identities.

    A user turn is appended, a responder is chosen, inference runs outside
    the session write token while chunks stream to subscribers, and the
    response is re-validated against the current task board before it is
    appended. Task updates and proposed actions are derived from the appended
    agent turn. Every failure ends up in the log as a system turn.
    """

    def __init__(
        self,
        executor: InferenceExecutor,
        gate: ActionGate,
        identities: Optional[IdentityRegistry] = None,
        store: Optional[StateStore] = None,
        owner_id: Optional[str] = None,
        inference_timeout: Optional[float] = None,
        sweep_interval_seconds: float = 30.0,
        context_turns: int = 20,
        claims: Optional[SessionClaims] = None
    ):
        """Initialize the orchestrator.

        Args:
            executor: Inference executor with registered backends
            gate: Action gate with registered action executors
            identities: Agent identity profiles
            store: Optional persistence for sessions, turns, tasks and actions
            owner_id: Identifier of this instance for session ownership
            inference_timeout: Per-attempt timeout, defaults to the executor's
            sweep_interval_seconds: How often pending actions are checked for expiry
            context_turns: Number of recent turns sent as prompt context
            claims: Session ownership table, shared process-wide by default
        """
        self.logger = logging.getLogger(__name__)
        self.executor = executor
        self.gate = gate
        self.identities = identities or IdentityRegistry()
        self.store = store
        self.owner_id = owner_id or f"orchestrator-{uuid4().hex[:8]}"
        self.inference_timeout = inference_timeout
        self.sweep_interval_seconds = sweep_interval_seconds
        self.context_turns = context_turns
        self.registry = SessionRegistry(self.owner_id, store=store, claims=claims)
        self.audit_logger = get_audit_logger()
        self._runtimes: Dict[str, SessionRuntime] = {}
        self._sweeper: Optional[asyncio.Task] = None

    @classmethod
    def from_config(
        cls,
        config: TandemConfig,
        action_executors: Optional[Dict[ActionKind, ActionExecutor]] = None
    ) -> "Orchestrator":
        """Build the full engine from configuration."""
        router = ModelRouter(
            policy=RouterPolicy(prefer_tier=config.router.prefer_tier, local_only=config.router.local_only),
            degraded_retry_window_seconds=config.router.degraded_retry_window_seconds
        )
        cache = EmbeddingCache(
            max_entries=config.embedding_cache.max_entries,
            max_bytes=config.embedding_cache.max_bytes
        )
        executor = InferenceExecutor(
            router,
            cache=cache,
            default_timeout=config.executor.default_timeout_seconds,
            max_fallback_attempts=config.executor.max_fallback_attempts,
            fallback_on_remote_timeout=config.executor.fallback_on_remote_timeout,
            embedding_model_id=config.embedding_cache.model_id
        )
        for backend in config.backends.values():
            if backend.enabled:
                executor.register_adapter(CommandBackendAdapter.from_config(backend))

        gate = ActionGate(
            approval_window_seconds=config.action_gate.approval_window_seconds,
            sandbox_root=config.action_gate.sandbox_root,
            tracked_paths=config.action_gate.tracked_paths,
            untracked_paths=config.action_gate.untracked_paths,
            retention_seconds=config.action_gate.retention_seconds,
            max_audit_records=config.action_gate.max_audit_records
        )
        for kind, action_executor in (action_executors or {}).items():
            gate.register_executor(kind, action_executor)

        store = JsonlStateStore(config.storage.directory) if config.storage.enabled else None
        return cls(
            executor,
            gate,
            identities=IdentityRegistry(config.identities),
            store=store,
            sweep_interval_seconds=config.action_gate.sweep_interval_seconds
        )

    @property
    def router(self) -> ModelRouter:
        return self.executor.router

    # Lifecycle

    async def start(self) -> None:
        """Start the background expiry sweeper."""
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop())
        self.logger.info(f"Orchestrator {self.owner_id} started")

    async def shutdown(self) -> None:
        """Stop background work and release session ownership."""
        self.logger.info(f"Shutting down orchestrator {self.owner_id}")
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None
        for runtime in self._runtimes.values():
            runtime.log.close_subscriptions()
        self.registry.release_all()
        self.logger.info(f"Orchestrator {self.owner_id} shutdown complete")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                await self.expire_stale_actions()
            except Exception as e:
                self.logger.error(f"Expiry sweep failed: {e}")

    async def expire_stale_actions(self) -> List[ProposedAction]:
        """Expire pending actions past their window, log each expiry and prune settled actions."""
        expired = self.gate.expire_stale()
        for action in expired:
            runtime = self._runtimes.get(action.session_id)
            if runtime is None:
                continue
            await self._append_system(
                runtime,
                f"Action {action.action_id} ({action.kind}) expired without a decision and was discarded.",
                metadata={"event": "action_expired", "error_code": ActionExpired.code},
                proposed_action_id=action.action_id,
                in_reply_to=action.source_turn
            )
            await self._persist(actions=[action])
        self.gate.prune()
        return expired

    # Sessions

    async def open_session(self, project_id: str, router_policy: Optional[RouterPolicy] = None) -> Session:
        """Open the session for ``project_id``, reusing the active one if it exists."""
        existing = self.registry.find_by_project(project_id)
        if existing is not None:
            return existing
        session = await self.registry.open(project_id, router_policy or self.router.default_policy)
        self._runtimes[session.session_id] = SessionRuntime.create(session)
        return session

    async def recover_session(self, session_id: str) -> Session:
        """Rebuild a persisted session's log, tasks and actions."""
        if session_id in self._runtimes:
            return self._runtimes[session_id].session
        session = await self.registry.load(session_id)
        runtime = SessionRuntime.create(session)
        runtime.log.restore(await self.store.load_turns(session_id))
        runtime.board.restore(await self.store.load_tasks(session_id))
        self.gate.restore(await self.store.load_actions(session_id))
        self._runtimes[session_id] = runtime
        self.logger.info(f"Recovered session {session_id} with {len(runtime.log)} turns")
        return session

    async def archive_session(self, session_id: str) -> Session:
        """Archive a session; its pending actions expire."""
        runtime = self._active_runtime(session_id)
        async with runtime.submit_lock:
            session = await self.registry.archive(session_id)
            expired = self.gate.expire_session(session_id)
            await self._persist(actions=expired)
        runtime.log.close_subscriptions()
        return session

    def get_session(self, session_id: str) -> Session:
        return self.registry.get(session_id)

    def list_sessions(self, include_archived: bool = False) -> List[Session]:
        return self.registry.list_sessions(include_archived)

    def _runtime(self, session_id: str) -> SessionRuntime:
        runtime = self._runtimes.get(session_id)
        if runtime is None:
            raise UnknownSession(f"Session {session_id} is not open", session_id=session_id)
        return runtime

    def _active_runtime(self, session_id: str) -> SessionRuntime:
        self.registry.require_active(session_id)
        return self._runtime(session_id)

    # Reads

    def subscribe(self, session_id: str, replay_from: Optional[int] = None) -> LogSubscription:
        """Follow a session's log. On an archived session only the replay is delivered."""
        runtime = self._runtime(session_id)
        subscription = runtime.log.subscribe(replay_from)
        if not runtime.session.is_active:
            subscription.close()
        return subscription

    def read_range(self, session_id: str, from_seq: int = 1, to_seq: Optional[int] = None) -> Tuple[Turn, ...]:
        return self._runtime(session_id).log.read_range(from_seq, to_seq)

    def list_tasks(self, session_id: str) -> Tuple[Task, ...]:
        return self._runtime(session_id).board.list_tasks()

    def get_task(self, session_id: str, task_id: str) -> Task:
        return self._runtime(session_id).board.get(task_id)

    def pending_actions(self, session_id: str) -> List[ProposedAction]:
        self._runtime(session_id)
        return self.gate.list_actions(session_id, pending_only=True)

    def get_action(self, action_id: str) -> ProposedAction:
        return self.gate.get(action_id)

    # Turn submission

    async def submit_turn(
        self,
        session_id: str,
        author: str,
        content: str,
        intent: Optional[Dict[str, Any]] = None,
        in_reply_to: Optional[int] = None
    ) -> Interaction:
        """
        Append a turn and run the resulting interaction.

        User turns get a response from the selected agent identity. Agent
        turns are interpreted directly: task updates and proposed actions.

        Args:
            session_id: Target session
            author: user, chinga_bava or tanganaka_san
            content: Turn text
            intent: Optional structured intent
            in_reply_to: Optional sequence number the turn answers

        Returns:
            Interaction with every turn appended along the way

        Raises:
            UnknownSession, SessionArchived: If the session cannot take turns
            SessionLocked: If another writer holds the session (retryable)
            ValueError: If the author is not a submittable identity or the turn is empty
        """
        identity = Identity(author)
        if identity == Identity.SYSTEM:
            raise ValueError("system turns cannot be submitted by callers")
        runtime = self._active_runtime(session_id)

        with turn_span(session_id, identity.value):
            if identity == Identity.USER:
                return await self._handle_user_turn(runtime, content, intent, in_reply_to)
            return await self._handle_agent_turn(runtime, identity, content, intent, in_reply_to)

    async def _handle_user_turn(
        self,
        runtime: SessionRuntime,
        content: str,
        intent: Optional[Dict[str, Any]],
        in_reply_to: Optional[int]
    ) -> Interaction:
        draft = TurnDraft(author=Identity.USER, content=content, intent=intent, in_reply_to=in_reply_to)

        async with runtime.submit_lock:
            with runtime.lock.hold(self.owner_id) as token:
                input_turn = runtime.log.append(draft, token)
                responder = self._select_responder(runtime, input_turn)
                request = self._build_route_request(runtime, responder, input_turn)
            await self._persist(turns=[input_turn])

        interaction = Interaction(
            session_id=runtime.session.session_id,
            input_turn=input_turn,
            responder=responder.value,
            turns=[input_turn]
        )
        self.logger.info(
            f"Turn {input_turn.sequence} in session {runtime.session.session_id} routed to {responder.value}"
        )

        def publish(attempt, chunk):
            runtime.log.publish_chunk(input_turn.sequence, attempt, chunk)

        try:
            result = await self.executor.run_routed(
                request,
                timeout=self.inference_timeout,
                on_chunk=publish,
                policy=runtime.session.router_policy
            )
        except (NoCapableAdapter, InferenceTimeout, InferenceFailed, InferenceCancelled) as e:
            self.logger.warning(f"Inference for turn {input_turn.sequence} failed: {e.code}: {e.message}")
            failure = await self._append_system(
                runtime,
                f"{responder.value} could not respond: {e.message}",
                metadata={"event": "inference_failed", "error_code": e.code, "attempts": sorted(request.attempted)},
                in_reply_to=input_turn.sequence
            )
            if failure is not None:
                interaction.turns.append(failure)
            interaction.error_code = e.code
            interaction.error_message = e.message
            interaction.attempts = sorted(request.attempted)
            return interaction

        interaction.backend_id = result.backend_id
        interaction.attempts = list(result.attempts)
        await self._commit_response(runtime, interaction, responder, result)
        return interaction

    async def _commit_response(
        self,
        runtime: SessionRuntime,
        interaction: Interaction,
        responder: Identity,
        result: InferenceResult
    ) -> None:
        intent = result.intent if result.intent is not None else extract_intent(result.content)
        metadata = {
            "backend_id": result.backend_id,
            "attempts": list(result.attempts),
            "tokens_used": result.tokens_used,
            "cost_usd": result.cost_usd,
            "duration_ms": round(result.duration_ms, 2),
        }
        await self._commit_agent_turn(
            runtime, interaction, responder, result.content, intent,
            in_reply_to=interaction.input_turn.sequence, metadata=metadata
        )

    async def _handle_agent_turn(
        self,
        runtime: SessionRuntime,
        author: Identity,
        content: str,
        intent: Optional[Dict[str, Any]],
        in_reply_to: Optional[int]
    ) -> Interaction:
        interaction = await self._commit_agent_turn(
            runtime, None, author, content, intent,
            in_reply_to=in_reply_to, metadata={"source": "external"}
        )
        interaction.responder = author.value
        return interaction

    async def _commit_agent_turn(
        self,
        runtime: SessionRuntime,
        interaction: Optional[Interaction],
        author: Identity,
        content: str,
        intent: Optional[Dict[str, Any]],
        in_reply_to: Optional[int],
        metadata: Dict[str, Any]
    ) -> Interaction:
        """
        Append an agent turn and apply what it carries.

        Task operations are re-validated against the board as it is now,
        which may have moved on while inference ran. The proposed action, if
        any, is registered before the append so the turn can reference it.
        """
        session_id = runtime.session.session_id
        action_intent = (intent or {}).get("action")
        appended: List[Turn] = []
        action: Optional[ProposedAction] = None
        updates: List[TaskUpdate] = []

        async with runtime.submit_lock:
            if not runtime.session.is_active:
                self.logger.warning(
                    f"Discarding {author.value} turn for session {session_id}, archived while it was prepared"
                )
                if interaction is None:
                    raise SessionArchived(f"Session {session_id} is archived", session_id=session_id)
                interaction.error_code = SessionArchived.code
                interaction.error_message = f"Session {session_id} was archived before the response was committed"
                return interaction

            with runtime.lock.hold(self.owner_id) as token:
                problems = runtime.board.validate_ops(extract_task_ops(intent))

                action_error = None
                if isinstance(action_intent, dict):
                    try:
                        action = self.gate.propose(
                            session_id,
                            ActionKind(action_intent.get("kind", ActionKind.NONE.value)),
                            action_intent.get("payload") or {},
                            proposed_by=author.value,
                            source_turn=runtime.log.next_sequence,
                            description=str(action_intent.get("description", ""))
                        )
                    except ValidationError as e:
                        # errors() messages never echo the rejected payload
                        action_error = "; ".join(error["msg"] for error in e.errors())
                    except (ValueError, TypeError) as e:
                        action_error = str(e)
                elif action_intent is not None:
                    action_error = "action must be an object with kind and payload"

                turn = runtime.log.append(
                    TurnDraft(
                        author=author,
                        content=content if content.strip() or intent else "(empty response)",
                        intent=intent,
                        proposed_action_id=action.action_id if action else None,
                        in_reply_to=in_reply_to,
                        metadata=metadata
                    ),
                    token
                )
                appended.append(turn)

                if problems:
                    appended.append(self._append_locked(
                        runtime, token,
                        f"Task update from turn {turn.sequence} was not applied: {'; '.join(problems)}",
                        metadata={"event": "task_update_rejected", "error_code": InvalidTaskTransition.code},
                        in_reply_to=turn.sequence
                    ))
                else:
                    try:
                        updates = runtime.board.apply_turn(turn, token)
                    except (InvalidTaskTransition, UnknownTask) as e:
                        appended.append(self._append_locked(
                            runtime, token,
                            f"Task update from turn {turn.sequence} was not applied: {e.message}",
                            metadata={"event": "task_update_rejected", "error_code": e.code},
                            in_reply_to=turn.sequence
                        ))

                if action_error:
                    appended.append(self._append_locked(
                        runtime, token,
                        f"Action requested in turn {turn.sequence} was refused: {action_error}",
                        metadata={"event": "action_refused", "error_code": "invalid_action"},
                        in_reply_to=turn.sequence
                    ))
                elif action is not None and action.is_pending:
                    appended.append(self._append_locked(
                        runtime, token,
                        f"Action {action.action_id} ({action.kind}) needs your approval.",
                        metadata={"event": "approval_requested", "classification": action.classification},
                        proposed_action_id=action.action_id,
                        in_reply_to=turn.sequence
                    ))

            tasks = [runtime.board.get(u.task_id) for u in updates]
            await self._persist(turns=appended, tasks=tasks, actions=[action] if action else [])

        if interaction is None:
            interaction = Interaction(session_id=session_id, input_turn=appended[0], turns=[])
        interaction.turns.extend(appended)
        interaction.task_updates.extend(
            {"op": u.op, "task_id": u.task_id, "from_status": u.from_status, "to_status": u.to_status}
            for u in updates
        )

        if action is not None:
            if action.approval_state == ApprovalState.APPROVED:
                outcome = await self._execute_action(runtime, action.action_id)
                if outcome is not None:
                    interaction.turns.append(outcome)
                action = self.gate.get(action.action_id)
            interaction.actions.append(action)
        return interaction

    # Actions

    async def decide_action(self, action_id: str, approved: bool, decided_by: str = "user") -> ActionDecision:
        """
        Approve or reject a pending action.

        Gate errors are returned in the decision and logged as system turns;
        they are never raised to the caller.
        """
        try:
            action = self.gate.get(action_id)
        except UnknownAction as e:
            return ActionDecision(action_id=action_id, accepted=False, approved=approved,
                                  error_code=e.code, error_message=e.message)

        runtime = self._runtimes.get(action.session_id)
        decision = ActionDecision(action_id=action_id, accepted=False, approved=approved)

        try:
            self.gate.decide(action_id, approved, decided_by)
        except (ActionExpired, AlreadyResolved) as e:
            decision.error_code = e.code
            decision.error_message = e.message
            decision.action = self.gate.get(action_id)
            if runtime is not None:
                turn = await self._append_system(
                    runtime,
                    f"Decision on action {action_id} was not applied: {e.message}",
                    metadata={"event": "decision_refused", "error_code": e.code},
                    proposed_action_id=action_id,
                    in_reply_to=action.source_turn
                )
                if turn is not None:
                    decision.turns.append(turn)
                await self._persist(actions=[decision.action])
            return decision

        decision.accepted = True
        if runtime is None:
            decision.action = self.gate.get(action_id)
            return decision

        if approved:
            turn = await self._execute_action(runtime, action_id)
            decision.action = self.gate.get(action_id)
            decision.result = decision.action.result
        else:
            decision.action = self.gate.get(action_id)
            turn = await self._append_system(
                runtime,
                f"Action {action_id} ({action.kind}) was rejected and discarded.",
                metadata={"event": "action_rejected", "decided_by": decided_by},
                proposed_action_id=action_id,
                in_reply_to=action.source_turn
            )
            await self._persist(actions=[decision.action])
        if turn is not None:
            decision.turns.append(turn)
        return decision

    async def _execute_action(self, runtime: SessionRuntime, action_id: str) -> Optional[Turn]:
        """Execute an approved action and log its result as a system turn."""
        try:
            result = await self.gate.execute(action_id)
        except OrchestrationError as e:
            self.logger.error(f"Action {action_id} could not be executed: {e.message}")
            return await self._append_system(
                runtime,
                f"Action {action_id} could not be executed: {e.message}",
                metadata={"event": "action_failed", "error_code": e.code},
                proposed_action_id=action_id
            )

        action = self.gate.get(action_id)
        verb = "executed" if result.success else "failed"
        turn = await self._append_system(
            runtime,
            f"Action {action_id} ({action.kind}) {verb}: {result.summary}",
            metadata={"event": f"action_{verb}", "success": result.success, "details": result.details},
            proposed_action_id=action_id,
            in_reply_to=action.source_turn
        )
        await self._persist(actions=[action])
        return turn

    # Helpers

    def _select_responder(self, runtime: SessionRuntime, turn: Turn) -> Identity:
        """
        Pick the agent that answers a user turn.

        An explicit ``@identity`` prefix or an intent ``target`` wins. Otherwise
        execution requests go to the developer while tasks are open, and
        everything else goes to the project manager.
        """
        match = DIRECTED_PATTERN.match(turn.content or "")
        if match:
            return Identity(match.group(1).lower())

        target = (turn.intent or {}).get("target")
        if target in (Identity.CHINGA_BAVA.value, Identity.TANGANAKA_SAN.value):
            return Identity(target)

        if runtime.board.has_open_tasks() and self._is_execution_request(turn.content or ""):
            return Identity.TANGANAKA_SAN
        return Identity.CHINGA_BAVA

    def _is_execution_request(self, text: str) -> bool:
        words = set(re.findall(r"[a-z_]+", text.lower()))
        keywords = self.identities.get(Identity.TANGANAKA_SAN).execution_keywords
        return any(keyword in words for keyword in keywords)

    def _build_route_request(self, runtime: SessionRuntime, responder: Identity, turn: Turn) -> RouteRequest:
        profile = self.identities.get(responder)
        first = max(1, turn.sequence - self.context_turns + 1)
        history = runtime.log.read_range(first, turn.sequence)

        messages = []
        for past in history:
            if past.author == Identity.SYSTEM:
                role = "system"
            elif past.author == responder:
                role = "assistant"
            else:
                role = "user"
            text = past.content
            if past.intent:
                text = f"{text}\n[intent] {json.dumps(past.intent, sort_keys=True)}".strip()
            messages.append(PromptMessage(role=role, author=past.author, content=text))

        payload = InferencePayload(
            system_prompt=profile.role_prompt,
            messages=messages,
            max_output_tokens=profile.max_output_tokens,
            context={
                "session_id": runtime.session.session_id,
                "project_id": runtime.session.project_id,
                "responder": responder.value,
                "open_tasks": [
                    {"task_id": t.task_id, "title": t.title, "status": t.status, "assigned_to": t.assigned_to}
                    for t in runtime.board.open_tasks()
                ],
            }
        )
        policy = runtime.session.router_policy
        return RouteRequest(
            session_id=runtime.session.session_id,
            requirements=profile.requirements(
                context_tokens=payload.estimated_tokens(),
                local_only=policy.local_only
            ),
            payload=payload
        )

    def _append_locked(
        self,
        runtime: SessionRuntime,
        token: WriteToken,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
        proposed_action_id: Optional[str] = None,
        in_reply_to: Optional[int] = None
    ) -> Turn:
        draft = TurnDraft(
            author=Identity.SYSTEM,
            kind=TurnKind.SYSTEM,
            content=content,
            proposed_action_id=proposed_action_id,
            in_reply_to=in_reply_to,
            metadata=metadata or {}
        )
        return runtime.log.append(draft, token)

    async def _append_system(
        self,
        runtime: SessionRuntime,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
        proposed_action_id: Optional[str] = None,
        in_reply_to: Optional[int] = None
    ) -> Optional[Turn]:
        """Append a system turn; archived sessions take no more turns."""
        if not runtime.session.is_active:
            self.logger.info(f"Dropping system turn for archived session {runtime.session.session_id}: {content}")
            return None
        async with runtime.submit_lock:
            with runtime.lock.hold(self.owner_id) as token:
                turn = self._append_locked(runtime, token, content, metadata, proposed_action_id, in_reply_to)
            await self._persist(turns=[turn])
        return turn

    async def _persist(
        self,
        turns: Optional[List[Turn]] = None,
        tasks: Optional[List[Task]] = None,
        actions: Optional[List[ProposedAction]] = None
    ) -> None:
        if self.store is None:
            return
        for turn in turns or []:
            await self.store.append_turn(turn)
        for task in tasks or []:
            await self.store.save_task(task)
        for action in actions or []:
            await self.store.save_action(self.gate.get(action.action_id))

    def describe_backends(self) -> List[Dict[str, Any]]:
        """Router view of every backend, for status surfaces."""
        return [
            {
                "backend_id": d.backend_id,
                "privacy_tier": d.capability.privacy_tier,
                "max_context_tokens": d.capability.max_context_tokens,
                "cost_per_1k_tokens": d.capability.cost_per_1k_tokens,
                "health": d.health,
                "health_reported_at": d.health_reported_at.isoformat(),
                "is_local": d.tier == PrivacyTier.LOCAL,
            }
            for d in self.router.descriptors()
        ]
