"""Session registry: one session per project, one owning orchestrator per session."""

import logging
import threading
from typing import Dict, List, Optional

from ..lib.errors import SessionArchived, SessionLocked, UnknownSession
from ..lib.logging_config import get_audit_logger
from ..lib.metrics import get_metrics
from ..models.routing import RouterPolicy
from ..models.session import Session
from .state_store import StateStore


logger = logging.getLogger(__name__)


class SessionClaims:
    """Which orchestrator instance holds write ownership of which session."""

    def __init__(self):
        self._owners: Dict[str, str] = {}
        self._lock = threading.Lock()

    def claim(self, session_id: str, owner: str) -> None:
        with self._lock:
            current = self._owners.get(session_id)
            if current is not None and current != owner:
                raise SessionLocked(
                    f"Session {session_id} is owned by orchestrator {current}",
                    session_id=session_id,
                    holder=current
                )
            self._owners[session_id] = owner

    def release(self, session_id: str, owner: str) -> None:
        with self._lock:
            if self._owners.get(session_id) == owner:
                del self._owners[session_id]

    def owner(self, session_id: str) -> Optional[str]:
        with self._lock:
            return self._owners.get(session_id)


# Shared by every orchestrator in the process
process_claims = SessionClaims()


class SessionRegistry:
    """Session records owned by one orchestrator instance."""

    def __init__(self, owner_id: str, store: Optional[StateStore] = None, claims: Optional[SessionClaims] = None):
        self.owner_id = owner_id
        self.store = store
        self.claims = claims or process_claims
        self._sessions: Dict[str, Session] = {}
        self.audit_logger = get_audit_logger()
        self.metrics = get_metrics()

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def get(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise UnknownSession(f"Session {session_id} is not open", session_id=session_id)
        return session

    def require_active(self, session_id: str) -> Session:
        session = self.get(session_id)
        if not session.is_active:
            raise SessionArchived(f"Session {session_id} is archived", session_id=session_id)
        return session

    def find_by_project(self, project_id: str) -> Optional[Session]:
        for session in self._sessions.values():
            if session.project_id == project_id and session.is_active:
                return session
        return None

    def list_sessions(self, include_archived: bool = False) -> List[Session]:
        sessions = sorted(self._sessions.values(), key=lambda s: s.created_at)
        if include_archived:
            return sessions
        return [s for s in sessions if s.is_active]

    async def open(self, project_id: str, router_policy: Optional[RouterPolicy] = None) -> Session:
        """Create the session for ``project_id``."""
        session = Session(project_id=project_id, router_policy=router_policy or RouterPolicy())
        self.claims.claim(session.session_id, self.owner_id)
        self._sessions[session.session_id] = session
        if self.store:
            await self.store.save_session(session)

        self.metrics.record_session_opened()
        self.audit_logger.log_session_event("opened", session.session_id, actor=self.owner_id,
                                            metadata={"project_id": project_id})
        logger.info(f"Opened session {session.session_id} for project {project_id}")
        return session

    async def load(self, session_id: str) -> Session:
        """Claim and load a persisted session."""
        if self.store is None:
            raise UnknownSession(f"No store configured to load session {session_id}", session_id=session_id)
        session = await self.store.load_session(session_id)
        if session is None:
            raise UnknownSession(f"Session {session_id} is not stored", session_id=session_id)
        self.claims.claim(session_id, self.owner_id)
        self._sessions[session_id] = session
        if session.is_active:
            self.metrics.record_session_opened()
        self.audit_logger.log_session_event("recovered", session_id, actor=self.owner_id)
        return session

    async def archive(self, session_id: str) -> Session:
        session = self.require_active(session_id)
        session.archive()
        if self.store:
            await self.store.save_session(session)
        self.claims.release(session_id, self.owner_id)
        self.metrics.record_session_archived()
        self.audit_logger.log_session_event("archived", session_id, actor=self.owner_id)
        logger.info(f"Archived session {session_id}")
        return session

    def release_all(self) -> None:
        for session_id in list(self._sessions):
            self.claims.release(session_id, self.owner_id)
