"""Persistence interface for sessions, turns, tasks and actions."""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

import aiofiles

from ..models.proposed_action import ProposedAction
from ..models.session import Session
from ..models.task import Task
from ..models.turn import Turn


logger = logging.getLogger(__name__)


class StateStore(ABC):
    """
    Durable storage keyed by (session_id, sequence) for turns and by id for
    everything else. Only opaque credential handles are ever written.
    """

    @abstractmethod
    async def save_session(self, session: Session) -> None:
        """Create or replace a session record."""

    @abstractmethod
    async def load_session(self, session_id: str) -> Optional[Session]:
        """Load a session record, None if absent."""

    @abstractmethod
    async def list_sessions(self) -> List[Session]:
        """All stored sessions."""

    @abstractmethod
    async def append_turn(self, turn: Turn) -> None:
        """Persist a turn. Turns for one session arrive in sequence order."""

    @abstractmethod
    async def load_turns(self, session_id: str) -> List[Turn]:
        """All turns of a session in sequence order."""

    @abstractmethod
    async def save_task(self, task: Task) -> None:
        """Create or replace a task record."""

    @abstractmethod
    async def load_tasks(self, session_id: str) -> List[Task]:
        """All tasks of a session."""

    @abstractmethod
    async def save_action(self, action: ProposedAction) -> None:
        """Create or replace a proposed action record."""

    @abstractmethod
    async def load_actions(self, session_id: str) -> List[ProposedAction]:
        """All proposed actions of a session."""


class JsonlStateStore(StateStore):
    """
    File-backed store for development and tests.

    Layout::

        {root}/{session_id}/session.json
        {root}/{session_id}/turns.jsonl
        {root}/{session_id}/tasks/{task_id}.json
        {root}/{session_id}/actions/{action_id}.json
    """

    def __init__(self, root: str):
        self.root = Path(root).expanduser()
        self._turn_locks: Dict[str, asyncio.Lock] = {}

    def _session_dir(self, session_id: str) -> Path:
        return self.root / session_id

    async def _write_json(self, path: Path, data: Dict) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        async with aiofiles.open(tmp, 'w') as f:
            await f.write(json.dumps(data, indent=2, default=str))
        tmp.replace(path)

    async def _read_json(self, path: Path) -> Optional[Dict]:
        if not path.exists():
            return None
        async with aiofiles.open(path, 'r') as f:
            content = await f.read()
        return json.loads(content)

    async def _read_dir(self, directory: Path) -> List[Dict]:
        if not directory.exists():
            return []
        records = []
        for path in sorted(directory.glob("*.json")):
            data = await self._read_json(path)
            if data is not None:
                records.append(data)
        return records

    async def save_session(self, session: Session) -> None:
        await self._write_json(self._session_dir(session.session_id) / "session.json", session.model_dump(mode="json"))

    async def load_session(self, session_id: str) -> Optional[Session]:
        data = await self._read_json(self._session_dir(session_id) / "session.json")
        return Session(**data) if data else None

    async def list_sessions(self) -> List[Session]:
        if not self.root.exists():
            return []
        sessions = []
        for session_dir in sorted(p for p in self.root.iterdir() if p.is_dir()):
            session = await self.load_session(session_dir.name)
            if session is not None:
                sessions.append(session)
        return sessions

    async def append_turn(self, turn: Turn) -> None:
        lock = self._turn_locks.setdefault(turn.session_id, asyncio.Lock())
        path = self._session_dir(turn.session_id) / "turns.jsonl"
        async with lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(path, 'a') as f:
                await f.write(json.dumps(turn.to_record(), default=str) + "\n")

    async def load_turns(self, session_id: str) -> List[Turn]:
        path = self._session_dir(session_id) / "turns.jsonl"
        if not path.exists():
            return []
        turns = []
        async with aiofiles.open(path, 'r') as f:
            async for line in f:
                if line.strip():
                    turns.append(Turn.from_record(json.loads(line)))
        return sorted(turns, key=lambda t: t.sequence)

    async def save_task(self, task: Task) -> None:
        path = self._session_dir(task.session_id) / "tasks" / f"{task.task_id}.json"
        await self._write_json(path, task.model_dump(mode="json"))

    async def load_tasks(self, session_id: str) -> List[Task]:
        return [Task(**data) for data in await self._read_dir(self._session_dir(session_id) / "tasks")]

    async def save_action(self, action: ProposedAction) -> None:
        path = self._session_dir(action.session_id) / "actions" / f"{action.action_id}.json"
        await self._write_json(path, action.model_dump(mode="json"))

    async def load_actions(self, session_id: str) -> List[ProposedAction]:
        return [ProposedAction(**data) for data in await self._read_dir(self._session_dir(session_id) / "actions")]
