"""Base inference backend adapter with common functionality."""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Union

from ..models.inference import InferenceChunk, InferencePayload, InferenceResult
from ..models.routing import AdapterDescriptor, CapabilityProfile, HealthState


logger = logging.getLogger(__name__)

InferenceEvent = Union[InferenceChunk, InferenceResult]
HealthListener = Callable[[str, HealthState, Optional[str]], None]


class BackendAdapter(ABC):
    """
    Base class for inference backends, local runtimes and remote providers alike.

    ``infer`` yields zero or more ``InferenceChunk`` objects followed by exactly
    one ``InferenceResult``. Health is pushed to listeners (normally the model
    router) whenever the adapter learns something new; the router never polls.
    """

    def __init__(self, descriptor: AdapterDescriptor):
        """Initialize the base adapter.

        Args:
            descriptor: Backend id, capability profile and initial health
        """
        self.descriptor = descriptor
        self.logger = logging.getLogger(f"{__name__}.{descriptor.backend_id}")
        self._health = HealthState(descriptor.health)
        self._last_health_check = datetime.now(timezone.utc)
        self._listeners: List[HealthListener] = []
        self._active_requests: Dict[str, asyncio.Task] = {}
        self._monitor_task: Optional[asyncio.Task] = None

    @property
    def backend_id(self) -> str:
        return self.descriptor.backend_id

    @property
    def capability(self) -> CapabilityProfile:
        return self.descriptor.capability

    @property
    def health(self) -> HealthState:
        return self._health

    @abstractmethod
    def infer(self, request_id: str, payload: InferencePayload) -> AsyncIterator[InferenceEvent]:
        """Stream a response for ``payload``.

        Args:
            request_id: Unique request identifier, also the handle for ``cancel``
            payload: Backend-agnostic request body

        Yields:
            InferenceChunk objects, then one InferenceResult
        """

    @abstractmethod
    async def health_check(self) -> HealthState:
        """Probe the backend and return its current health."""

    async def cancel(self, request_id: str) -> bool:
        """Best-effort cancellation of an in-flight request.

        Returns:
            True if something was cancelled
        """
        task = self._active_requests.get(request_id)
        if task and not task.done():
            task.cancel()
            return True
        return False

    def track_request(self, request_id: str, task: asyncio.Task) -> None:
        """Register the task serving ``request_id`` so ``cancel`` and ``stop`` can reach it."""
        self._active_requests[request_id] = task

    def untrack_request(self, request_id: str) -> None:
        self._active_requests.pop(request_id, None)

    async def embed(self, text: str) -> List[float]:
        """Compute an embedding vector for ``text``."""
        raise NotImplementedError(f"Backend {self.backend_id} does not compute embeddings")

    def on_health_change(self, listener: HealthListener) -> None:
        """Register a callback invoked with (backend_id, state, detail) on every report."""
        self._listeners.append(listener)

    def report_health(self, state: HealthState, detail: Optional[str] = None) -> None:
        """Record and push a health observation."""
        state = HealthState(state)
        if state != self._health:
            self.logger.info(f"Backend {self.backend_id} health {self._health.value} -> {state.value}")
        self._health = state
        self._last_health_check = datetime.now(timezone.utc)
        for listener in list(self._listeners):
            listener(self.backend_id, state, detail)

    async def refresh_health(self) -> HealthState:
        """Run ``health_check`` and report the outcome."""
        try:
            state = await self.health_check()
            detail = None
        except (OSError, RuntimeError, asyncio.TimeoutError) as e:
            self.logger.error(f"Health check failed: {e}")
            state, detail = HealthState.UNAVAILABLE, str(e)
        self.report_health(state, detail)
        return state

    async def _monitor(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            await self.refresh_health()

    async def start(self, health_interval_seconds: Optional[float] = None) -> None:
        """Start the adapter, optionally with a periodic health monitor."""
        self.logger.info(f"Starting backend adapter {self.backend_id}")
        await self.refresh_health()
        if health_interval_seconds:
            self._monitor_task = asyncio.create_task(self._monitor(health_interval_seconds))
        self.logger.info(f"Backend adapter {self.backend_id} started with health {self._health.value}")

    async def stop(self) -> None:
        """Stop the adapter and cancel in-flight work."""
        self.logger.info(f"Stopping backend adapter {self.backend_id}")

        tasks = [t for t in self._active_requests.values() if not t.done()]
        if self._monitor_task:
            tasks.append(self._monitor_task)
            self._monitor_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._active_requests.clear()
        self.logger.info(f"Backend adapter {self.backend_id} stopped")

    def get_backend_info(self) -> Dict[str, Any]:
        return {
            "backend_id": self.backend_id,
            "privacy_tier": self.capability.privacy_tier,
            "max_context_tokens": self.capability.max_context_tokens,
            "health": self._health.value,
            "last_health_check": self._last_health_check.isoformat(),
            "active_requests": len(self._active_requests),
        }

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"backend_id='{self.backend_id}', "
            f"tier='{self.capability.privacy_tier}', "
            f"health='{self._health.value}'"
            f")"
        )
