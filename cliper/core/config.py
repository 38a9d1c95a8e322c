"""
Cliper Configuration
--------------------
Centralized configuration management for all Cliper components.
Loads from environment variables and YAML config files.

Static configuration lives here; user-editable runtime settings
(active cluster, PII filter, log TTL, ...) are persisted in the record
store as ``RuntimeSettings`` and seeded from these defaults.
"""

import os
import logging
from pathlib import Path
from typing import Optional
import yaml
from pydantic import BaseModel, Field

from cliper.platform import get_data_dir

logger = logging.getLogger("Cliper.Config")

DEFAULT_DATA_DIR = str(get_data_dir())
SUPPORTED_BACKENDS = ("sqlite", "memory")


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float, *, min_value: float = 0.0) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r (expected float)", name, raw)
        return default
    if value < min_value:
        logger.warning(
            "Ignoring %s=%r because it is below minimum %.3f",
            name,
            raw,
            min_value,
        )
        return default
    return value


def _env_int(name: str, default: int, *, min_value: int = 0) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r (expected integer)", name, raw)
        return default
    if value < min_value:
        logger.warning("Ignoring %s=%r because it is below minimum %d", name, raw, min_value)
        return default
    return value


def _normalize_backend(raw: Optional[str]) -> str:
    candidate = (raw or "").strip().lower()
    if candidate in SUPPORTED_BACKENDS:
        return candidate
    if candidate:
        logger.warning(
            "Unsupported storage backend '%s'; expected one of %s. Falling back to 'sqlite'.",
            candidate,
            SUPPORTED_BACKENDS,
        )
    return "sqlite"


class StorageConfig(BaseModel):
    """Record store configuration."""
    backend: str = "sqlite"  # sqlite | memory
    path: str = os.path.join(DEFAULT_DATA_DIR, "cliper.db")
    quota_kb: float = 5000.0
    pressure_warning_percent: float = 90.0


class QueueConfig(BaseModel):
    """Ingestion worker configuration."""
    tick_seconds: float = 3.0
    max_retries: int = 3


class MaintenanceConfig(BaseModel):
    """Maintenance scheduler and tiering configuration."""
    tick_seconds: float = 10.0
    max_interval_hours: float = 24.0
    idle_interval_hours: float = 6.0
    idle_threshold_seconds: float = 60.0
    cold_storage_after_days: float = 30.0
    decision_log_ttl_days: float = 1.0
    decision_log_cap: int = 50
    event_log_cap: int = 200
    insight_sample_size: int = 20
    max_insights_per_run: int = 3


class RetrievalConfig(BaseModel):
    """Retrieval budget configuration."""
    nominal_budget: int = 8
    degraded_budget: int = 3
    max_query_terms: int = 3
    active_cluster: str = "main"


class DecisionConfig(BaseModel):
    """Decision controller thresholds and bias drift configuration."""
    base_threshold: float = 0.7
    threshold_floor: float = 0.5
    threshold_ceiling: float = 0.9
    bias_limit: float = 0.15
    similar_bonus: float = 0.1
    feedback_window: int = 10
    similar_lookback: int = 5
    history_cap: int = 50
    decay_per_minute: float = 0.002
    max_decay_per_tick: float = 0.05


class ReasoningConfig(BaseModel):
    """Reasoning provider selection."""
    provider: str = "local"


class PrivacyConfig(BaseModel):
    """PII screening and at-rest protection toggles."""
    pii_filter_enabled: bool = True
    encryption_at_rest: bool = False


class ServerConfig(BaseModel):
    """FastAPI server configuration."""
    host: str = "127.0.0.1"
    port: int = 42110
    log_level: str = "info"
    auth_token: Optional[str] = None


class CliperConfig(BaseModel):
    """Root configuration for the entire Cliper engine."""
    storage: StorageConfig = Field(default_factory=StorageConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    maintenance: MaintenanceConfig = Field(default_factory=MaintenanceConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    decision: DecisionConfig = Field(default_factory=DecisionConfig)
    reasoning: ReasoningConfig = Field(default_factory=ReasoningConfig)
    privacy: PrivacyConfig = Field(default_factory=PrivacyConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    data_dir: str = DEFAULT_DATA_DIR

    @classmethod
    def from_env(cls) -> "CliperConfig":
        """
        Load configuration from environment variables.

        Environment variables override defaults:
        - CLIPER_DATA_DIR: Base data directory
        - CLIPER_STORAGE_BACKEND: sqlite | memory
        - CLIPER_STORAGE_QUOTA_KB: Storage quota used for pressure reporting
        - CLIPER_QUEUE_TICK_SECONDS / CLIPER_QUEUE_MAX_RETRIES
        - CLIPER_MAINTENANCE_TICK_SECONDS
        - CLIPER_COLD_STORAGE_AFTER_DAYS / CLIPER_DECISION_LOG_TTL_DAYS
        - CLIPER_REASONING_PROVIDER
        - CLIPER_PII_FILTER_ENABLED / CLIPER_ENCRYPTION_AT_REST
        - CLIPER_HOST / CLIPER_PORT / CLIPER_LOG_LEVEL / CLIPER_AUTH_TOKEN
        """
        data_dir = os.environ.get("CLIPER_DATA_DIR", DEFAULT_DATA_DIR)

        return cls(
            data_dir=data_dir,
            storage=StorageConfig(
                backend=_normalize_backend(os.environ.get("CLIPER_STORAGE_BACKEND")),
                path=os.path.join(data_dir, "cliper.db"),
                quota_kb=_env_float("CLIPER_STORAGE_QUOTA_KB", 5000.0, min_value=1.0),
            ),
            queue=QueueConfig(
                tick_seconds=_env_float("CLIPER_QUEUE_TICK_SECONDS", 3.0, min_value=0.1),
                max_retries=_env_int("CLIPER_QUEUE_MAX_RETRIES", 3, min_value=1),
            ),
            maintenance=MaintenanceConfig(
                tick_seconds=_env_float("CLIPER_MAINTENANCE_TICK_SECONDS", 10.0, min_value=0.1),
                cold_storage_after_days=_env_float(
                    "CLIPER_COLD_STORAGE_AFTER_DAYS", 30.0, min_value=0.0
                ),
                decision_log_ttl_days=_env_float(
                    "CLIPER_DECISION_LOG_TTL_DAYS", 1.0, min_value=0.0
                ),
            ),
            retrieval=RetrievalConfig(
                active_cluster=os.environ.get("CLIPER_ACTIVE_CLUSTER", "main"),
            ),
            reasoning=ReasoningConfig(
                provider=os.environ.get("CLIPER_REASONING_PROVIDER", "local"),
            ),
            privacy=PrivacyConfig(
                pii_filter_enabled=_env_flag("CLIPER_PII_FILTER_ENABLED", True),
                encryption_at_rest=_env_flag("CLIPER_ENCRYPTION_AT_REST", False),
            ),
            server=ServerConfig(
                host=os.environ.get("CLIPER_HOST", "127.0.0.1"),
                port=_env_int("CLIPER_PORT", 42110, min_value=1),
                log_level=os.environ.get("CLIPER_LOG_LEVEL", "info"),
                auth_token=os.environ.get("CLIPER_AUTH_TOKEN") or None,
            ),
        )

    @classmethod
    def from_yaml(cls, path: str) -> "CliperConfig":
        """Load configuration from a YAML file."""
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
            return cls(**data)
        except FileNotFoundError:
            logger.warning("Config file not found: %s, using defaults", path)
            return cls.from_env()

    def ensure_directories(self) -> None:
        """Create data directories if they don't exist."""
        Path(self.data_dir).mkdir(parents=True, exist_ok=True)
        if self.storage.backend == "sqlite":
            Path(self.storage.path).parent.mkdir(parents=True, exist_ok=True)
        logger.info("Data directory: %s", self.data_dir)
