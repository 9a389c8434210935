"""Unit tests for the subprocess backend adapter."""

import sys

import pytest

from tandem.lib.errors import InferenceFailed
from tandem.models.inference import InferenceChunk, InferencePayload, InferenceResult, PromptMessage
from tandem.models.routing import AdapterDescriptor, CapabilityProfile, HealthState
from tandem.services.command_adapter import CommandBackendAdapter


STREAMING_BACKEND = r"""
import json, sys
request = json.loads(sys.stdin.readline())
text = request["payload"]["messages"][-1]["content"]
print(json.dumps({"type": "chunk", "text": "echo: "}), flush=True)
print("plain text line", flush=True)
print(json.dumps({"type": "result", "content": "echo: " + text, "intent": {"task": {"op": "propose", "title": text}},
                  "tokens_used": 12, "cost_usd": 0.001}), flush=True)
"""

ERROR_BACKEND = r"""
import json, sys
sys.stdin.readline()
print(json.dumps({"type": "error", "message": "model not loaded"}), flush=True)
"""

CRASHING_BACKEND = r"""
import sys
sys.stdin.readline()
sys.stderr.write("segfault in runtime")
sys.exit(3)
"""

EMBEDDING_BACKEND = r"""
import json, sys
request = json.loads(sys.stdin.readline())
print(json.dumps({"type": "embedding", "vector": [len(request["text"]), 0.5]}), flush=True)
"""


def make_adapter(script: str, embeddings: bool = False) -> CommandBackendAdapter:
    descriptor = AdapterDescriptor(
        backend_id="cmd-local",
        capability=CapabilityProfile(max_context_tokens=4096, privacy_tier="local", embeddings=embeddings),
    )
    return CommandBackendAdapter(descriptor, command=[sys.executable, "-c", script])


def payload(text: str) -> InferencePayload:
    return InferencePayload(messages=[PromptMessage(role="user", author="user", content=text)])


async def collect(adapter, request_id, body):
    return [event async for event in adapter.infer(request_id, body)]


class TestCommandBackendAdapter:
    """Tests for CommandBackendAdapter."""

    def test_empty_command_rejected(self):
        descriptor = AdapterDescriptor(
            backend_id="x", capability=CapabilityProfile(max_context_tokens=1, privacy_tier="local")
        )
        with pytest.raises(ValueError):
            CommandBackendAdapter(descriptor, command=[])

    @pytest.mark.asyncio
    async def test_streams_chunks_then_result(self):
        adapter = make_adapter(STREAMING_BACKEND)
        events = await collect(adapter, "req-1", payload("login form"))

        chunks = [e for e in events if isinstance(e, InferenceChunk)]
        assert [c.text for c in chunks] == ["echo: ", "plain text line"]
        assert [c.index for c in chunks] == [0, 1]

        result = events[-1]
        assert isinstance(result, InferenceResult)
        assert result.content == "echo: login form"
        assert result.intent == {"task": {"op": "propose", "title": "login form"}}
        assert result.tokens_used == 12
        assert result.backend_id == "cmd-local"

    @pytest.mark.asyncio
    async def test_error_line_raises(self):
        adapter = make_adapter(ERROR_BACKEND)
        with pytest.raises(InferenceFailed) as exc_info:
            await collect(adapter, "req-2", payload("hi"))
        assert "model not loaded" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_nonzero_exit_raises_with_stderr(self):
        adapter = make_adapter(CRASHING_BACKEND)
        with pytest.raises(InferenceFailed) as exc_info:
            await collect(adapter, "req-3", payload("hi"))
        assert "segfault in runtime" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_embed(self):
        adapter = make_adapter(EMBEDDING_BACKEND, embeddings=True)
        assert await adapter.embed("abcd") == [4.0, 0.5]

    @pytest.mark.asyncio
    async def test_embed_unsupported(self):
        adapter = make_adapter(EMBEDDING_BACKEND, embeddings=False)
        with pytest.raises(NotImplementedError):
            await adapter.embed("abcd")

    @pytest.mark.asyncio
    async def test_cancel_unknown_request(self):
        adapter = make_adapter(STREAMING_BACKEND)
        assert await adapter.cancel("nothing-running") is False

    @pytest.mark.asyncio
    async def test_health_check(self):
        assert await make_adapter(STREAMING_BACKEND).health_check() == HealthState.HEALTHY

        descriptor = AdapterDescriptor(
            backend_id="missing", capability=CapabilityProfile(max_context_tokens=1, privacy_tier="local")
        )
        missing = CommandBackendAdapter(descriptor, command=["/nonexistent/runtime-binary"])
        assert await missing.health_check() == HealthState.UNAVAILABLE

    @pytest.mark.asyncio
    async def test_refresh_health_pushes_to_listeners(self):
        adapter = make_adapter(STREAMING_BACKEND)
        reports = []
        adapter.on_health_change(lambda backend_id, state, detail: reports.append((backend_id, state)))
        await adapter.refresh_health()
        assert reports == [("cmd-local", HealthState.HEALTHY)]
