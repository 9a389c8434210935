"""
Configuration management and validation for Tandem.

Loads the YAML configuration file, overlays environment variables and
validates the result into typed sections for every engine component.
"""

import os
import yaml
from pathlib import Path
from typing import Dict, Any, Optional, List

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..models.routing import CapabilityProfile, HealthState


class ObservabilityConfig(BaseModel):
    """Configuration for observability settings."""
    enabled: bool = False
    service_name: str = "tandem-orchestrator"
    service_version: str = "0.1.0"
    environment: str = "development"
    otlp_endpoint: str = "http://localhost:4317"
    trace_sampling_ratio: float = Field(default=1.0, ge=0.0, le=1.0)
    export_timeout: int = Field(default=30, gt=0)
    resource_attributes: Dict[str, str] = Field(default_factory=dict)


class LoggingConfig(BaseModel):
    """Configuration for logging settings."""
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    format: str = Field(default="structured", pattern="^(structured|simple)$")
    directory: str = "~/.tandem/logs"
    max_file_size: int = Field(default=10 * 1024 * 1024, gt=0)  # 10MB
    backup_count: int = Field(default=5, ge=1)
    include_trace: bool = True
    environment: str = "development"


class ServerConfig(BaseModel):
    """Configuration for the HTTP server."""
    host: str = "localhost"
    port: int = Field(default=8000, ge=1, le=65535)
    request_timeout: int = Field(default=300, gt=0)
    enable_cors: bool = False
    cors_origins: List[str] = Field(default_factory=list)


class RouterConfig(BaseModel):
    """Configuration for the model router."""
    prefer_tier: str = Field(default="local", pattern="^(local|remote)$")
    local_only: bool = False
    degraded_retry_window_seconds: float = Field(default=30.0, ge=0.0)


class ExecutorConfig(BaseModel):
    """Configuration for the inference executor."""
    default_timeout_seconds: float = Field(default=60.0, gt=0)
    max_fallback_attempts: int = Field(default=1, ge=0, le=5)
    fallback_on_remote_timeout: bool = False


class EmbeddingCacheConfig(BaseModel):
    """Configuration for the embedding cache."""
    max_entries: int = Field(default=4096, ge=1)
    max_bytes: Optional[int] = Field(default=64 * 1024 * 1024, gt=0)
    model_id: str = "default"


class ActionGateConfig(BaseModel):
    """Configuration for the action gate."""
    approval_window_seconds: float = Field(default=900.0, gt=0)
    sweep_interval_seconds: float = Field(default=30.0, gt=0)
    sandbox_root: str = "~/.tandem/sandbox"
    tracked_paths: List[str] = Field(default_factory=list)
    # Diffs count as untracked only inside the sandbox or under these roots
    untracked_paths: List[str] = Field(default_factory=list)
    # Settled actions are forgotten this long after their decision; None keeps them
    retention_seconds: Optional[float] = Field(default=3600.0, gt=0)
    max_audit_records: int = Field(default=10000, ge=1)


class StorageConfig(BaseModel):
    """Configuration for persisted session state."""
    enabled: bool = True
    directory: str = "~/.tandem/sessions"


class BackendConfig(BaseModel):
    """Configuration for a command-driven inference backend."""
    backend_id: str
    command: List[str] = Field(..., min_length=1)
    enabled: bool = True
    capability: CapabilityProfile
    working_directory: Optional[str] = None
    environment_variables: Dict[str, str] = Field(default_factory=dict)
    initial_health: HealthState = HealthState.HEALTHY

    @field_validator("backend_id")
    @classmethod
    def validate_backend_id(cls, v):
        """Backend id must be non-empty."""
        if not v.strip():
            raise ValueError("backend_id cannot be empty")
        return v.strip()


class TandemConfig(BaseModel):
    """Main Tandem configuration."""
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    router: RouterConfig = Field(default_factory=RouterConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    embedding_cache: EmbeddingCacheConfig = Field(default_factory=EmbeddingCacheConfig)
    action_gate: ActionGateConfig = Field(default_factory=ActionGateConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    backends: Dict[str, BackendConfig] = Field(default_factory=dict)
    identities: Dict[str, Dict[str, Any]] = Field(default_factory=dict)

    # Global settings
    debug: bool = False
    config_file_path: Optional[str] = None


class ConfigurationManager:
    """Manages Tandem configuration loading and validation."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or self._get_default_config_path()
        self.config: Optional[TandemConfig] = None

    def _get_default_config_path(self) -> str:
        """Get the default configuration file path."""
        if "TANDEM_CONFIG_PATH" in os.environ:
            return os.environ["TANDEM_CONFIG_PATH"]

        candidates = [
            "~/.tandem/config/config.yaml",
            "./config/config.yaml",
            "./tandem.yaml"
        ]

        for candidate in candidates:
            path = Path(candidate).expanduser()
            if path.exists():
                return str(path)

        return "~/.tandem/config/config.yaml"

    def load_config(self, config_path: Optional[str] = None) -> TandemConfig:
        """Load and validate configuration from file."""
        if config_path:
            self.config_path = config_path

        config_file = Path(self.config_path).expanduser()

        if not config_file.exists():
            self._create_default_config(config_file)

        try:
            with open(config_file, 'r') as f:
                config_data = yaml.safe_load(f) or {}

            config_data = self._merge_environment_config(config_data)

            # Backend ids default to their mapping key
            for backend_id, backend in (config_data.get("backends") or {}).items():
                if isinstance(backend, dict):
                    backend.setdefault("backend_id", backend_id)

            self.config = TandemConfig(**config_data)
            self.config.config_file_path = str(config_file)

            return self.config

        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file {config_file}: {e}")
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed: {e}")
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Error loading configuration: {e}")

    def _create_default_config(self, config_file: Path) -> None:
        """Create a default configuration file."""
        config_file.parent.mkdir(parents=True, exist_ok=True)

        default_config = {
            "observability": {
                "service_name": "tandem-orchestrator",
                "environment": "development",
                "otlp_endpoint": os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317")
            },
            "logging": {
                "level": os.getenv("TANDEM_LOG_LEVEL", "INFO"),
                "directory": "~/.tandem/logs"
            },
            "server": {
                "host": os.getenv("TANDEM_HOST", "localhost"),
                "port": int(os.getenv("TANDEM_PORT", "8000"))
            },
            "executor": {
                "default_timeout_seconds": 60,
                "max_fallback_attempts": 1
            },
            "action_gate": {
                "approval_window_seconds": 900,
                "sandbox_root": "~/.tandem/sandbox"
            },
            "storage": {
                "directory": "~/.tandem/sessions"
            },
            "backends": {
                "local-small": {
                    "command": ["tandem-local-runtime", "--model", "small", "--stream-json"],
                    "capability": {
                        "max_context_tokens": 4096,
                        "tokens_per_second": 25.0,
                        "cost_per_1k_tokens": 0.0,
                        "privacy_tier": "local"
                    }
                },
                "remote-large": {
                    "command": ["tandem-remote-client", "--stream-json"],
                    "capability": {
                        "max_context_tokens": 32768,
                        "tokens_per_second": 80.0,
                        "availability": 0.99,
                        "cost_per_1k_tokens": 0.01,
                        "privacy_tier": "remote"
                    }
                }
            }
        }

        with open(config_file, 'w') as f:
            yaml.dump(default_config, f, default_flow_style=False, indent=2)

    def _merge_environment_config(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Merge configuration with environment variables."""
        env_mappings = {
            "TANDEM_LOG_LEVEL": ["logging", "level"],
            "TANDEM_HOST": ["server", "host"],
            "TANDEM_PORT": ["server", "port"],
            "TANDEM_DEBUG": ["debug"],
            "TANDEM_MAX_FALLBACK_ATTEMPTS": ["executor", "max_fallback_attempts"],
            "TANDEM_STORAGE_DIR": ["storage", "directory"],
            "OTEL_EXPORTER_OTLP_ENDPOINT": ["observability", "otlp_endpoint"]
        }

        for env_var, config_path in env_mappings.items():
            if env_var in os.environ:
                value = os.environ[env_var]

                if env_var in ("TANDEM_PORT", "TANDEM_MAX_FALLBACK_ATTEMPTS"):
                    value = int(value)
                elif env_var == "TANDEM_DEBUG":
                    value = value.lower() in ("true", "1", "yes")

                current = config_data
                for key in config_path[:-1]:
                    current = current.setdefault(key, {})
                current[config_path[-1]] = value

        return config_data

    def get_config(self) -> TandemConfig:
        """Get the loaded configuration."""
        if self.config is None:
            raise ConfigurationError("Configuration not loaded. Call load_config() first.")
        return self.config

    def get_backend_config(self, backend_id: str) -> BackendConfig:
        """Get configuration for a specific backend."""
        config = self.get_config()
        if backend_id not in config.backends:
            raise ConfigurationError(f"Backend configuration not found: {backend_id}")
        return config.backends[backend_id]

    def validate_config(self) -> List[str]:
        """Validate the current configuration and return any warnings."""
        warnings = []
        config = self.get_config()

        if config.debug and config.observability.environment == "production":
            warnings.append("Debug mode enabled in production environment")

        enabled = [b for b in config.backends.values() if b.enabled]
        if not enabled:
            warnings.append("No inference backends are enabled")
        elif not any(b.capability.privacy_tier == "local" for b in enabled):
            warnings.append("No local backend configured; local-only sessions cannot be served")

        if config.router.local_only and not any(b.capability.privacy_tier == "local" for b in enabled):
            warnings.append("Router is local-only but no local backend is enabled")

        for backend in enabled:
            executable = backend.command[0]
            if os.sep in executable and not Path(executable).expanduser().exists():
                warnings.append(f"Backend command does not exist: {executable}")

        if config.executor.max_fallback_attempts == 0:
            warnings.append("Fallback disabled; a single backend timeout fails the request")

        return warnings

    def reload_config(self) -> TandemConfig:
        """Reload configuration from file."""
        return self.load_config()


class ConfigurationError(Exception):
    """Exception raised for configuration-related errors."""
    pass


# Global configuration manager instance
_config_manager: Optional[ConfigurationManager] = None


def initialize_config(config_path: Optional[str] = None) -> ConfigurationManager:
    """Initialize global configuration manager."""
    global _config_manager
    _config_manager = ConfigurationManager(config_path)
    _config_manager.load_config()
    return _config_manager


def get_config_manager() -> ConfigurationManager:
    """Get the global configuration manager instance."""
    if _config_manager is None:
        raise ConfigurationError("Configuration not initialized. Call initialize_config() first.")
    return _config_manager


def get_config() -> TandemConfig:
    """Get the global configuration."""
    return get_config_manager().get_config()
