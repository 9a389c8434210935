"""Shared fixtures: scripted backends, action gate and a fully wired orchestrator."""

import pytest

from tandem.models.proposed_action import ActionKind
from tandem.services.action_gate import ActionGate
from tandem.services.embedding_cache import EmbeddingCache
from tandem.services.inference_executor import InferenceExecutor
from tandem.services.model_router import ModelRouter
from tandem.services.orchestrator import Orchestrator
from tandem.services.session_registry import SessionClaims

from fakes import RecordingActionExecutor, ScriptedBackend


@pytest.fixture
def local_backend():
    return ScriptedBackend("local-small", privacy_tier="local", max_context_tokens=8192)


@pytest.fixture
def remote_backend():
    return ScriptedBackend("remote-large", privacy_tier="remote", max_context_tokens=32768, cost_per_1k_tokens=0.01)


@pytest.fixture
def executor(local_backend, remote_backend):
    executor = InferenceExecutor(ModelRouter(), cache=EmbeddingCache(max_entries=16), default_timeout=2.0)
    executor.register_adapter(local_backend)
    executor.register_adapter(remote_backend)
    return executor


@pytest.fixture
def sandbox(tmp_path):
    path = tmp_path / "sandbox"
    path.mkdir()
    return path


@pytest.fixture
def repo_dir(tmp_path):
    path = tmp_path / "repo"
    path.mkdir()
    (path / "app.py").write_text("print('hello')\n")
    return path


@pytest.fixture
def gate(sandbox, repo_dir):
    return ActionGate(approval_window_seconds=900, sandbox_root=str(sandbox), tracked_paths=[str(repo_dir)])


@pytest.fixture
def action_executor(gate):
    recorder = RecordingActionExecutor()
    for kind in (ActionKind.FILE_WRITE, ActionKind.APPLY_DIFF, ActionKind.REPO_PUSH,
                 ActionKind.REPO_MERGE, ActionKind.SECRET_ACCESS):
        gate.register_executor(kind, recorder)
    return recorder


@pytest.fixture
def orchestrator(executor, gate, action_executor):
    return Orchestrator(executor, gate, claims=SessionClaims())
