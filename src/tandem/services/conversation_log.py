"""Append-only conversation log with single-writer discipline."""

import asyncio
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterable, Iterator, List, Optional, Tuple, Union
from uuid import uuid4

from ..lib.errors import SessionLocked
from ..lib.metrics import get_metrics
from ..models.inference import InferenceChunk
from ..models.turn import Turn, TurnDraft


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WriteToken:
    """Proof of holding a session's write lock."""
    session_id: str
    holder: str
    token_id: str = field(default_factory=lambda: uuid4().hex)


class SessionLock:
    """
    Non-blocking write lock for one session.

    Contention is reported, never queued: ``acquire`` raises SessionLocked
    when another writer holds the session, and callers retry or serialize
    among themselves. Usable from any thread.
    """

    def __init__(self, session_id: str):
        self.session_id = session_id
        self._lock = threading.Lock()
        self._token: Optional[WriteToken] = None

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    @property
    def holder(self) -> Optional[str]:
        token = self._token
        return token.holder if token else None

    def acquire(self, holder: str) -> WriteToken:
        if not self._lock.acquire(blocking=False):
            get_metrics().record_lock_conflict(self.session_id)
            raise SessionLocked(
                f"Session {self.session_id} is locked by {self.holder}",
                session_id=self.session_id,
                holder=self.holder
            )
        self._token = WriteToken(self.session_id, holder)
        return self._token

    def validate(self, token: WriteToken) -> None:
        """Raise SessionLocked unless ``token`` is the current holder."""
        if token is None or self._token is None or token.token_id != self._token.token_id:
            raise SessionLocked(
                f"Write token for session {self.session_id} is not held",
                session_id=self.session_id
            )

    def release(self, token: WriteToken) -> None:
        self.validate(token)
        self._token = None
        self._lock.release()

    @contextmanager
    def hold(self, holder: str) -> Iterator[WriteToken]:
        token = self.acquire(holder)
        try:
            yield token
        finally:
            self.release(token)


@dataclass(frozen=True)
class TurnAppended:
    """A turn was appended to the log."""
    turn: Turn

    @property
    def event_type(self) -> str:
        return "turn"


@dataclass(frozen=True)
class ChunkPublished:
    """A partial inference chunk for a turn that is not yet appended."""
    session_id: str
    parent_sequence: int
    attempt: int
    chunk: InferenceChunk

    @property
    def event_type(self) -> str:
        return "chunk"


LogEvent = Union[TurnAppended, ChunkPublished]

_CLOSED = object()


class LogSubscription:
    """Async iterator over log events, fed from any thread."""

    def __init__(self, log: "ConversationLog", loop: asyncio.AbstractEventLoop):
        self._log = log
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _put(self, item) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self._loop:
            self._queue.put_nowait(item)
            return
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)
        except RuntimeError:
            # Subscriber's loop is gone
            self._closed = True

    def deliver(self, event: LogEvent) -> None:
        if not self._closed:
            self._put(event)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._log._unsubscribe(self)
            self._put(_CLOSED)

    def __aiter__(self) -> "LogSubscription":
        return self

    async def __anext__(self) -> LogEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def get(self, timeout: Optional[float] = None) -> LogEvent:
        """Next event, or StopAsyncIteration once closed."""
        return await asyncio.wait_for(self.__anext__(), timeout=timeout)


class ConversationLog:
    """
    Ordered, append-only list of turns for one session.

    Sequence numbers start at 1 and are gapless. Appends are atomic and
    single-writer; reads take no lock and always see a consistent prefix.
    """

    def __init__(self, session_id: str, lock: Optional[SessionLock] = None):
        self.session_id = session_id
        self.lock = lock or SessionLock(session_id)
        self._turns: List[Turn] = []
        self._subscribers: List[LogSubscription] = []
        self._publish_lock = threading.Lock()
        self.metrics = get_metrics()

    def __len__(self) -> int:
        return len(self._turns)

    @property
    def latest_sequence(self) -> int:
        return len(self._turns)

    @property
    def next_sequence(self) -> int:
        return len(self._turns) + 1

    def append(self, draft: TurnDraft, token: Optional[WriteToken] = None) -> Turn:
        """
        Sequence and store a turn.

        Args:
            draft: Turn body
            token: Write token of the caller; without one the call takes the
                session lock for its own duration

        Returns:
            The appended Turn

        Raises:
            SessionLocked: If another writer holds the session
        """
        if token is None:
            with self.lock.hold("append"):
                return self._append(draft)
        self.lock.validate(token)
        return self._append(draft)

    def _append(self, draft: TurnDraft) -> Turn:
        with self._publish_lock:
            turn = Turn.from_draft(draft, self.session_id, len(self._turns) + 1)
            self._turns.append(turn)
            subscribers = list(self._subscribers)

        self.metrics.record_turn(turn.author, turn.kind)
        logger.debug(f"Appended turn {turn.sequence} by {turn.author} to session {self.session_id}")

        event = TurnAppended(turn)
        for subscription in subscribers:
            subscription.deliver(event)
        return turn

    def read_range(self, from_seq: int = 1, to_seq: Optional[int] = None) -> Tuple[Turn, ...]:
        """Turns with ``from_seq <= sequence <= to_seq``, in order."""
        snapshot = self._turns
        end = len(snapshot) if to_seq is None else min(to_seq, len(snapshot))
        start = max(from_seq, 1)
        if start > end:
            return ()
        return tuple(snapshot[start - 1:end])

    def get(self, sequence: int) -> Optional[Turn]:
        turns = self.read_range(sequence, sequence)
        return turns[0] if turns else None

    def publish_chunk(self, parent_sequence: int, attempt: int, chunk: InferenceChunk) -> None:
        """Forward a partial inference chunk to subscribers without storing it."""
        event = ChunkPublished(self.session_id, parent_sequence, attempt, chunk)
        with self._publish_lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription.deliver(event)

    def subscribe(self, replay_from: Optional[int] = None) -> LogSubscription:
        """
        Subscribe to appends and chunks. Must be called from a running event loop.

        Args:
            replay_from: Deliver already-appended turns from this sequence first
        """
        subscription = LogSubscription(self, asyncio.get_running_loop())
        with self._publish_lock:
            if replay_from is not None:
                for turn in self._turns[max(replay_from, 1) - 1:]:
                    subscription.deliver(TurnAppended(turn))
            self._subscribers.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: LogSubscription) -> None:
        with self._publish_lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    def close_subscriptions(self) -> None:
        with self._publish_lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription.close()

    def restore(self, turns: Iterable[Turn]) -> None:
        """Load persisted turns into an empty log.

        Raises:
            ValueError: If the log is not empty or the turns are not gapless
        """
        if self._turns:
            raise ValueError(f"Cannot restore into non-empty log for session {self.session_id}")

        ordered = sorted(turns, key=lambda t: t.sequence)
        for expected, turn in enumerate(ordered, start=1):
            if turn.sequence != expected:
                raise ValueError(f"Gap in persisted turns: expected {expected}, found {turn.sequence}")
            if turn.session_id != self.session_id:
                raise ValueError(f"Turn {turn.sequence} belongs to session {turn.session_id}")
        self._turns = list(ordered)
