"""Inference executor: runs routed requests with streaming, timeout, cancellation and fallback."""

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional, Union

from ..lib.errors import (
    InferenceCancelled, InferenceFailed, InferenceTimeout, NoCapableAdapter, OrchestrationError
)
from ..lib.logging_config import get_audit_logger
from ..lib.metrics import get_metrics
from ..lib.observability import inference_span
from ..models.inference import InferenceChunk, InferencePayload, InferenceResult, InferenceStatus
from ..models.routing import (
    AdapterDescriptor, PrivacyTier, RouteRequest, RouteRequirements, RouterPolicy
)
from .backend_adapter import BackendAdapter
from .embedding_cache import EmbeddingCache
from .model_router import ModelRouter


logger = logging.getLogger(__name__)

ChunkCallback = Callable[[int, InferenceChunk], None]

_END = object()


class InferenceStream:
    """
    One running inference call.

    Iterate it for chunks, then ``await stream.result()`` for the terminal
    outcome. ``await stream.cancel()`` guarantees that no chunk is delivered
    after it returns.
    """

    def __init__(
        self,
        adapter: BackendAdapter,
        request_id: str,
        payload: InferencePayload,
        timeout: float,
        session_id: Optional[str] = None
    ):
        self.adapter = adapter
        self.request_id = request_id
        self.payload = payload
        self.timeout = timeout
        self.session_id = session_id
        self.status: Optional[InferenceStatus] = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._result: Optional[InferenceResult] = None
        self._error: Optional[OrchestrationError] = None
        self._done = asyncio.Event()
        self._cancelled = False
        self._task: Optional[asyncio.Task] = None
        self._started_at = 0.0
        self.metrics = get_metrics()
        self.audit_logger = get_audit_logger()

    @property
    def backend_id(self) -> str:
        return self.adapter.backend_id

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def start(self) -> "InferenceStream":
        self._started_at = time.perf_counter()
        self._task = asyncio.create_task(self._run())
        self.adapter.track_request(self.request_id, self._task)
        return self

    async def _pump(self) -> None:
        async for event in self.adapter.infer(self.request_id, self.payload):
            if self._cancelled:
                break
            if isinstance(event, InferenceChunk):
                self._queue.put_nowait(event)
            elif isinstance(event, InferenceResult):
                self._result = event

    async def _cancel_backend(self) -> None:
        try:
            await self.adapter.cancel(self.request_id)
        except Exception as e:
            # The stream still settles on its own outcome
            logger.warning(f"Backend cancel for {self.request_id} failed: {e}")

    async def _run(self) -> None:
        with inference_span(self.backend_id, self.request_id, self.session_id):
            try:
                await asyncio.wait_for(self._pump(), timeout=self.timeout)
                if self._cancelled:
                    raise InferenceCancelled(f"Request {self.request_id} cancelled")
                if self._result is None:
                    raise InferenceFailed(
                        f"Backend {self.backend_id} ended without a result",
                        backend_id=self.backend_id
                    )
                self.status = InferenceStatus.COMPLETED
            except asyncio.TimeoutError:
                logger.warning(f"Request {self.request_id} timed out after {self.timeout}s on {self.backend_id}")
                await self._cancel_backend()
                self.status = InferenceStatus.TIMEOUT
                self._error = InferenceTimeout(
                    f"Backend {self.backend_id} did not finish within {self.timeout}s",
                    backend_id=self.backend_id,
                    request_id=self.request_id
                )
            except asyncio.CancelledError:
                self.status = InferenceStatus.CANCELLED
                self._error = InferenceCancelled(f"Request {self.request_id} cancelled", backend_id=self.backend_id)
            except InferenceCancelled as e:
                self.status = InferenceStatus.CANCELLED
                self._error = e
            except OrchestrationError as e:
                self.status = InferenceStatus.FAILED
                self._error = e
            except Exception as e:
                logger.error(f"Backend {self.backend_id} raised during request {self.request_id}: {e}")
                self.status = InferenceStatus.FAILED
                self._error = InferenceFailed(str(e), backend_id=self.backend_id, request_id=self.request_id)
            finally:
                duration_ms = (time.perf_counter() - self._started_at) * 1000
                status = (self.status or InferenceStatus.FAILED).value
                self.metrics.record_inference(self.backend_id, status, duration_ms)
                self.audit_logger.log_inference_event(
                    self.request_id, self.backend_id, status,
                    duration_ms=duration_ms,
                    cost_usd=self._result.cost_usd if self._result else None
                )
                self.adapter.untrack_request(self.request_id)
                self._done.set()
                self._queue.put_nowait(_END)

    def __aiter__(self) -> "InferenceStream":
        return self

    async def __anext__(self) -> InferenceChunk:
        if self._cancelled:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END or self._cancelled:
            raise StopAsyncIteration
        return item

    async def result(self) -> InferenceResult:
        """Wait for the terminal outcome.

        Raises:
            InferenceTimeout, InferenceFailed, InferenceCancelled
        """
        await self._done.wait()
        if self._error is not None:
            raise self._error
        if self._result is None:
            raise InferenceFailed(
                f"Request {self.request_id} on {self.backend_id} settled without a result",
                backend_id=self.backend_id
            )
        return self._result

    async def cancel(self) -> None:
        """Stop delivery and ask the backend to abandon the request."""
        if self._done.is_set():
            self._cancelled = True
            return
        self._cancelled = True
        await self._cancel_backend()
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)


class InferenceExecutor:
    """Owns backend adapters and executes routed inference with fallback."""

    def __init__(
        self,
        router: ModelRouter,
        cache: Optional[EmbeddingCache] = None,
        default_timeout: float = 60.0,
        max_fallback_attempts: int = 1,
        fallback_on_remote_timeout: bool = False,
        embedding_model_id: str = "default"
    ):
        self.router = router
        self.cache = cache
        self.default_timeout = default_timeout
        self.max_fallback_attempts = max_fallback_attempts
        self.fallback_on_remote_timeout = fallback_on_remote_timeout
        self.embedding_model_id = embedding_model_id
        self._adapters: Dict[str, BackendAdapter] = {}
        self.metrics = get_metrics()

    def register_adapter(self, adapter: BackendAdapter) -> None:
        """Register an adapter with the executor and its descriptor with the router."""
        self._adapters[adapter.backend_id] = adapter
        self.router.register(adapter.descriptor)
        adapter.on_health_change(self.router.report_health)

    def unregister_adapter(self, backend_id: str) -> None:
        self._adapters.pop(backend_id, None)
        self.router.unregister(backend_id)

    def get_adapter(self, backend_id: str) -> BackendAdapter:
        if backend_id not in self._adapters:
            raise NoCapableAdapter(f"Backend {backend_id} is not registered", backend_id=backend_id)
        return self._adapters[backend_id]

    def adapters(self) -> List[BackendAdapter]:
        return list(self._adapters.values())

    async def start(self, health_interval_seconds: Optional[float] = None) -> None:
        for adapter in self._adapters.values():
            await adapter.start(health_interval_seconds)

    async def stop(self) -> None:
        for adapter in self._adapters.values():
            await adapter.stop()

    def run(
        self,
        descriptor: Union[AdapterDescriptor, str],
        payload: InferencePayload,
        timeout: Optional[float] = None,
        request_id: Optional[str] = None,
        session_id: Optional[str] = None
    ) -> InferenceStream:
        """
        Start inference on one backend.

        Args:
            descriptor: Descriptor (or id) of the backend to use
            payload: Request body
            timeout: Seconds before the stream fails with InferenceTimeout
            request_id: Identifier passed to the backend
            session_id: Session for tracing

        Returns:
            A started InferenceStream
        """
        backend_id = descriptor if isinstance(descriptor, str) else descriptor.backend_id
        adapter = self.get_adapter(backend_id)
        stream = InferenceStream(
            adapter,
            request_id or f"req-{time.monotonic_ns()}",
            payload,
            timeout or self.default_timeout,
            session_id=session_id
        )
        return stream.start()

    def _should_fall_back(self, descriptor: AdapterDescriptor, error: OrchestrationError) -> bool:
        if isinstance(error, InferenceTimeout):
            return descriptor.tier == PrivacyTier.LOCAL or self.fallback_on_remote_timeout
        return isinstance(error, InferenceFailed)

    async def run_routed(
        self,
        request: RouteRequest,
        timeout: Optional[float] = None,
        on_chunk: Optional[ChunkCallback] = None,
        policy: Optional[RouterPolicy] = None
    ) -> InferenceResult:
        """
        Select, run and fall back.

        A local timeout or a transient backend failure re-invokes the router
        with every backend tried so far excluded, at most
        ``max_fallback_attempts`` times; then the last error surfaces.

        Args:
            request: Route request; ``attempted`` is updated in place
            timeout: Per-attempt timeout in seconds
            on_chunk: Called with (attempt number, chunk) for every chunk delivered
            policy: Session routing policy

        Returns:
            InferenceResult whose ``attempts`` lists the backends tried, in order

        Raises:
            NoCapableAdapter, InferenceTimeout, InferenceFailed, InferenceCancelled
        """
        attempts: List[str] = []
        fallbacks = 0
        last_error: Optional[OrchestrationError] = None

        while True:
            try:
                descriptor = self.router.select(request, exclude=request.attempted, policy=policy)
            except NoCapableAdapter:
                if last_error is not None:
                    raise last_error
                raise

            request.mark_attempted(descriptor.backend_id)
            attempts.append(descriptor.backend_id)
            attempt = len(attempts)

            stream = self.run(
                descriptor,
                request.payload,
                timeout=timeout,
                request_id=f"{request.request_id}:{attempt}",
                session_id=request.session_id
            )
            try:
                async for chunk in stream:
                    if on_chunk:
                        on_chunk(attempt, chunk)
                result = await stream.result()
            except (InferenceTimeout, InferenceFailed) as e:
                self.router.record_outcome(descriptor.backend_id, success=False)
                last_error = e
                if fallbacks >= self.max_fallback_attempts or not self._should_fall_back(descriptor, e):
                    raise
                fallbacks += 1
                self.metrics.record_fallback(descriptor.backend_id, e.code)
                logger.warning(
                    f"Falling back from {descriptor.backend_id} after {e.code} "
                    f"(fallback {fallbacks}/{self.max_fallback_attempts})"
                )
                continue
            finally:
                if not stream.done:
                    await stream.cancel()

            self.router.record_outcome(descriptor.backend_id, success=True)
            return result.model_copy(update={"attempts": attempts})

    async def embed(
        self,
        text: str,
        requirements: Optional[RouteRequirements] = None,
        policy: Optional[RouterPolicy] = None,
        timeout: Optional[float] = None
    ) -> List[float]:
        """Embedding for ``text``, served from the cache when present."""
        base = requirements or RouteRequirements()
        needs = base.model_copy(update={"embeddings_required": True})
        limit = timeout or self.default_timeout

        async def compute() -> List[float]:
            request = RouteRequest(requirements=needs)
            descriptor = self.router.select(request, policy=policy)
            adapter = self.get_adapter(descriptor.backend_id)
            try:
                vector = await asyncio.wait_for(adapter.embed(text), timeout=limit)
            except asyncio.TimeoutError:
                self.router.record_outcome(descriptor.backend_id, success=False)
                raise InferenceTimeout(
                    f"Embedding on {descriptor.backend_id} did not finish within {limit}s",
                    backend_id=descriptor.backend_id
                )
            self.router.record_outcome(descriptor.backend_id, success=True)
            return vector

        if self.cache is None:
            return await compute()
        content_hash = EmbeddingCache.content_hash(text, self.embedding_model_id)
        return await self.cache.get_or_compute(content_hash, compute)
