"""Backend adapter for runtimes and provider clients that speak stream-json over a subprocess."""

import asyncio
import json
import os
import shutil
import time
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

from ..lib.config import BackendConfig
from ..lib.errors import InferenceFailed
from ..models.inference import InferenceChunk, InferencePayload, InferenceResult
from ..models.routing import AdapterDescriptor, HealthState
from .backend_adapter import BackendAdapter, InferenceEvent


class CommandBackendAdapter(BackendAdapter):
    """
    Runs a backend command per request.

    The request is written to the process's stdin as one JSON document. The
    process answers on stdout with one JSON object per line:

    - ``{"type": "chunk", "text": ...}`` for partial output
    - ``{"type": "result", "content": ..., "intent": {...}, "tokens_used": ..., "cost_usd": ...}``
    - ``{"type": "embedding", "vector": [...]}`` for embed requests
    - ``{"type": "error", "message": ...}``

    Lines that are not JSON are treated as chunk text.
    """

    def __init__(
        self,
        descriptor: AdapterDescriptor,
        command: List[str],
        working_directory: Optional[str] = None,
        environment_variables: Optional[Dict[str, str]] = None
    ):
        super().__init__(descriptor)
        if not command:
            raise ValueError("command cannot be empty")
        self.command = list(command)
        self.working_directory = working_directory
        self.environment_variables = environment_variables or {}
        self._processes: Dict[str, asyncio.subprocess.Process] = {}

    @classmethod
    def from_config(cls, config: BackendConfig) -> "CommandBackendAdapter":
        descriptor = AdapterDescriptor(
            backend_id=config.backend_id,
            capability=config.capability,
            health=config.initial_health,
        )
        return cls(
            descriptor,
            command=config.command,
            working_directory=config.working_directory,
            environment_variables=config.environment_variables,
        )

    async def _spawn(self, request: Dict[str, Any], request_id: str) -> asyncio.subprocess.Process:
        env = os.environ.copy()
        env.update(self.environment_variables)

        self.logger.debug(f"Spawning {self.command[0]} for request {request_id}")
        process = await asyncio.create_subprocess_exec(
            *self.command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
            cwd=self.working_directory
        )
        self._processes[request_id] = process

        process.stdin.write(json.dumps(request).encode("utf-8") + b"\n")
        await process.stdin.drain()
        process.stdin.close()
        return process

    @staticmethod
    def _parse_line(line: str) -> Dict[str, Any]:
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            return {"type": "chunk", "text": line}
        if not isinstance(data, dict):
            return {"type": "chunk", "text": line}
        if data.get("type") == "content":
            return {"type": "chunk", "text": data.get("text", data.get("content", ""))}
        return data

    async def _finish(self, process: asyncio.subprocess.Process, request_id: str) -> None:
        returncode = await process.wait()
        if returncode != 0:
            stderr = (await process.stderr.read()).decode("utf-8", errors="ignore").strip()
            raise InferenceFailed(
                f"Backend {self.backend_id} exited with {returncode}: {stderr}",
                backend_id=self.backend_id,
                request_id=request_id
            )

    async def _reap(self, process: asyncio.subprocess.Process, request_id: str) -> None:
        self._processes.pop(request_id, None)
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()

    async def infer(self, request_id: str, payload: InferencePayload) -> AsyncIterator[InferenceEvent]:
        start = time.perf_counter()
        process = await self._spawn(
            {"operation": "infer", "request_id": request_id, "payload": payload.model_dump(mode="json")},
            request_id
        )

        texts: List[str] = []
        result_data: Dict[str, Any] = {}
        try:
            async for raw in process.stdout:
                line = raw.decode("utf-8", errors="ignore").rstrip("\n")
                if not line.strip():
                    continue
                event = self._parse_line(line)
                event_type = event.get("type")

                if event_type == "chunk":
                    text = str(event.get("text", ""))
                    yield InferenceChunk(request_id=request_id, index=len(texts), text=text)
                    texts.append(text)
                elif event_type == "result":
                    result_data = event
                elif event_type == "error":
                    raise InferenceFailed(
                        f"Backend {self.backend_id} reported: {event.get('message', 'unknown error')}",
                        backend_id=self.backend_id,
                        request_id=request_id
                    )

            await self._finish(process, request_id)
        finally:
            await self._reap(process, request_id)

        yield InferenceResult(
            request_id=request_id,
            backend_id=self.backend_id,
            content=result_data.get("content") or "".join(texts),
            intent=result_data.get("intent"),
            tokens_used=int(result_data.get("tokens_used", 0)),
            cost_usd=float(result_data.get("cost_usd", 0.0)),
            duration_ms=(time.perf_counter() - start) * 1000,
        )

    async def cancel(self, request_id: str) -> bool:
        process = self._processes.get(request_id)
        if process is None or process.returncode is not None:
            return False
        self.logger.info(f"Terminating backend process for request {request_id}")
        try:
            process.terminate()
        except ProcessLookupError:
            return False
        return True

    async def embed(self, text: str) -> List[float]:
        if not self.capability.embeddings:
            return await super().embed(text)

        request_id = f"embed-{time.monotonic_ns()}"
        process = await self._spawn({"operation": "embed", "text": text}, request_id)
        vector: Optional[List[float]] = None
        try:
            async for raw in process.stdout:
                event = self._parse_line(raw.decode("utf-8", errors="ignore").strip())
                if event.get("type") == "embedding":
                    vector = [float(v) for v in event.get("vector", [])]
                elif event.get("type") == "error":
                    raise InferenceFailed(f"Embedding failed: {event.get('message')}", backend_id=self.backend_id)
            await self._finish(process, request_id)
        finally:
            await self._reap(process, request_id)

        if vector is None:
            raise InferenceFailed(f"Backend {self.backend_id} returned no embedding", backend_id=self.backend_id)
        return vector

    async def health_check(self) -> HealthState:
        executable = self.command[0]
        if shutil.which(executable) or Path(executable).expanduser().exists():
            return HealthState.HEALTHY
        self.logger.warning(f"Backend executable not found: {executable}")
        return HealthState.UNAVAILABLE
