"""Unit tests for configuration loading."""

import pytest
import yaml

from tandem.lib.config import ConfigurationError, ConfigurationManager
from tandem.models.proposed_action import ActionKind, ApprovalState
from tandem.services.orchestrator import Orchestrator


def write_config(path, data):
    path.write_text(yaml.dump(data))
    return str(path)


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("TANDEM_LOG_LEVEL", "TANDEM_HOST", "TANDEM_PORT", "TANDEM_DEBUG",
                 "TANDEM_MAX_FALLBACK_ATTEMPTS", "TANDEM_STORAGE_DIR", "OTEL_EXPORTER_OTLP_ENDPOINT"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestConfigurationManager:
    """Tests for ConfigurationManager."""

    def test_missing_file_creates_default(self, tmp_path, clean_env):
        path = tmp_path / "config" / "config.yaml"
        manager = ConfigurationManager(str(path))
        config = manager.load_config()

        assert path.exists()
        assert config.action_gate.approval_window_seconds == 900
        assert set(config.backends) == {"local-small", "remote-large"}
        assert config.backends["remote-large"].capability.privacy_tier == "remote"
        assert config.config_file_path == str(path)

    def test_backend_id_defaults_to_key(self, tmp_path, clean_env):
        path = write_config(tmp_path / "c.yaml", {
            "backends": {
                "gpu-box": {
                    "command": ["runtime"],
                    "capability": {"max_context_tokens": 8192, "privacy_tier": "local"},
                }
            }
        })
        config = ConfigurationManager(path).load_config()
        assert config.backends["gpu-box"].backend_id == "gpu-box"

    def test_environment_overrides(self, tmp_path, clean_env):
        path = write_config(tmp_path / "c.yaml", {"server": {"port": 8000}})
        clean_env.setenv("TANDEM_PORT", "9100")
        clean_env.setenv("TANDEM_DEBUG", "yes")
        clean_env.setenv("TANDEM_STORAGE_DIR", str(tmp_path / "state"))

        config = ConfigurationManager(path).load_config()
        assert config.server.port == 9100
        assert config.debug is True
        assert config.storage.directory == str(tmp_path / "state")

    def test_invalid_values_raise_configuration_error(self, tmp_path, clean_env):
        path = write_config(tmp_path / "c.yaml", {"executor": {"max_fallback_attempts": 99}})
        with pytest.raises(ConfigurationError):
            ConfigurationManager(path).load_config()

    def test_invalid_yaml(self, tmp_path, clean_env):
        path = tmp_path / "c.yaml"
        path.write_text("server: [unclosed")
        with pytest.raises(ConfigurationError):
            ConfigurationManager(str(path)).load_config()

    def test_non_numeric_port_env(self, tmp_path, clean_env):
        path = write_config(tmp_path / "c.yaml", {})
        clean_env.setenv("TANDEM_PORT", "not-a-port")
        with pytest.raises(ConfigurationError):
            ConfigurationManager(path).load_config()

    def test_get_config_before_load(self, tmp_path):
        with pytest.raises(ConfigurationError):
            ConfigurationManager(str(tmp_path / "c.yaml")).get_config()

    def test_unknown_backend_lookup(self, tmp_path, clean_env):
        manager = ConfigurationManager(write_config(tmp_path / "c.yaml", {}))
        manager.load_config()
        with pytest.raises(ConfigurationError):
            manager.get_backend_config("missing")

    def test_validate_warnings(self, tmp_path, clean_env):
        path = write_config(tmp_path / "c.yaml", {
            "router": {"local_only": True},
            "executor": {"max_fallback_attempts": 0},
            "backends": {
                "remote": {
                    "command": ["/nonexistent/client"],
                    "capability": {"max_context_tokens": 32768, "privacy_tier": "remote"},
                }
            }
        })
        manager = ConfigurationManager(path)
        manager.load_config()
        warnings = manager.validate_config()

        assert any("No local backend" in w for w in warnings)
        assert any("local-only" in w for w in warnings)
        assert any("/nonexistent/client" in w for w in warnings)
        assert any("Fallback disabled" in w for w in warnings)

    def test_no_backends_warning(self, tmp_path, clean_env):
        manager = ConfigurationManager(write_config(tmp_path / "c.yaml", {}))
        manager.load_config()
        assert "No inference backends are enabled" in manager.validate_config()


class TestEngineWiring:
    """Tests for building the engine from configuration."""

    def test_default_gate_requires_approval_for_project_diffs(self, tmp_path, clean_env):
        sandbox = tmp_path / "sandbox"
        path = write_config(tmp_path / "c.yaml", {
            "storage": {"enabled": False},
            "action_gate": {"sandbox_root": str(sandbox)},
        })
        config = ConfigurationManager(path).load_config()
        assert config.action_gate.tracked_paths == []
        assert config.action_gate.untracked_paths == []

        gate = Orchestrator.from_config(config).gate

        project_diff = gate.propose(
            "s1", ActionKind.APPLY_DIFF, {"path": str(tmp_path / "project" / "app.py"), "diff": "+x"},
            proposed_by="tanganaka_san"
        )
        scratch_diff = gate.propose(
            "s1", ActionKind.APPLY_DIFF, {"path": str(sandbox / "scratch.py"), "diff": "+x"},
            proposed_by="tanganaka_san"
        )
        assert project_diff.approval_state == ApprovalState.PENDING
        assert scratch_diff.approval_state == ApprovalState.APPROVED
        assert gate.retention_seconds == config.action_gate.retention_seconds
