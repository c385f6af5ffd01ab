# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Visual Flow Configuration - Single source of truth.
YAML is king. Env vars ONLY for secrets and the config path.

- ALL configuration in plain text (YAML)
- NO hidden state - everything inspectable via `cat`, `grep`
"""

import os
import yaml
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, List, Dict, Any

from visualflow.core.errors import ConfigurationError


DEFAULT_CONFIG_PATH = str(Path(__file__).parent.parent.parent / "configs" / "visualflow.yaml")


# =============================================================================
# CONFIGURATION DATACLASS
# =============================================================================

@dataclass(frozen=True)
class Config:
    """
    Immutable application configuration.
    All values from YAML. No hidden state.
    """

    # -- Service --
    service_host: str = "0.0.0.0"
    service_port: int = 3000
    backend_url: str = "http://localhost:3000"
    device_id: str = "device-local"

    # -- Paths --
    storage_path: str = "./data"

    # -- HTTP --
    http_timeout_health: float = 2.0
    http_timeout_sync: float = 5.0
    http_timeout_long: float = 600.0
    webhook_timeout_ms: int = 30000

    # -- Execution --
    polling_interval: float = 2.0
    polling_max_polls: int = 300
    default_rate_limit_wait: float = 60.0
    max_concurrent_runs: int = 4
    code_sandbox: str = "none"
    code_timeout: float = 30.0

    # -- Persistence & sync --
    autosave_delay: float = 2.0
    sync_retry_delays: List[float] = field(default_factory=lambda: [1.0, 2.0, 5.0])
    health_cache_ttl: float = 30.0
    sync_interval: float = 300.0
    history_limit: int = 100
    recent_flows_limit: int = 10
    retention_max_per_flow: int = 100
    retention_success_days: int = 30
    retention_failure_days: int = 90

    # -- Models (context windows for pre-flight checks) --
    model_catalog: Dict[str, Dict[str, int]] = field(default_factory=dict)

    # -- Logging --
    log_level: str = "INFO"
    log_format: str = "json"


# =============================================================================
# SECRETS - The ONLY thing from environment variables
# =============================================================================

def get_backend_api_key() -> Optional[str]:
    """API keys cannot be in version control."""
    return os.getenv("VISUALFLOW_API_KEY")


# =============================================================================
# LOADER
# =============================================================================

def load_config(path: str = DEFAULT_CONFIG_PATH) -> Config:
    """
    Load configuration from YAML.
    Returns defaults if file doesn't exist.
    """
    if not Path(path).exists():
        return Config()

    with open(path) as f:
        try:
            y = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML: {e}", config_file=path)

    if not isinstance(y, dict):
        raise ConfigurationError("Top-level YAML must be a mapping", config_file=path)

    # Helper to safely navigate nested dicts
    def get(d: dict, *keys, default=None):
        for k in keys:
            if not isinstance(d, dict):
                return default
            d = d.get(k, {})
        return d if d != {} else default

    defaults = Config()

    return Config(
        # Service
        service_host=get(y, "service", "host") or defaults.service_host,
        service_port=get(y, "service", "port") or defaults.service_port,
        backend_url=os.getenv("VISUALFLOW_BACKEND_URL") or get(y, "service", "backend_url") or defaults.backend_url,
        device_id=get(y, "service", "device_id") or defaults.device_id,

        # Paths
        storage_path=get(y, "paths", "storage") or defaults.storage_path,

        # HTTP
        http_timeout_health=get(y, "http", "timeouts", "health_check") or defaults.http_timeout_health,
        http_timeout_sync=get(y, "http", "timeouts", "sync") or defaults.http_timeout_sync,
        http_timeout_long=get(y, "http", "timeouts", "long_running") or defaults.http_timeout_long,
        webhook_timeout_ms=get(y, "http", "webhook_timeout_ms") or defaults.webhook_timeout_ms,

        # Execution
        polling_interval=get(y, "polling", "interval") or defaults.polling_interval,
        polling_max_polls=get(y, "polling", "max_polls") or defaults.polling_max_polls,
        default_rate_limit_wait=get(y, "polling", "default_rate_limit_wait") or defaults.default_rate_limit_wait,
        max_concurrent_runs=get(y, "execution", "max_concurrent_runs") or defaults.max_concurrent_runs,
        code_sandbox=get(y, "execution", "code_sandbox") or defaults.code_sandbox,
        code_timeout=get(y, "execution", "code_timeout") or defaults.code_timeout,

        # Persistence & sync
        autosave_delay=get(y, "autosave", "delay") or defaults.autosave_delay,
        sync_retry_delays=get(y, "sync", "retry_delays") or list(defaults.sync_retry_delays),
        health_cache_ttl=get(y, "sync", "health_cache_ttl") or defaults.health_cache_ttl,
        sync_interval=get(y, "sync", "interval") or defaults.sync_interval,
        history_limit=get(y, "history", "limit") or defaults.history_limit,
        recent_flows_limit=get(y, "history", "recent_flows") or defaults.recent_flows_limit,
        retention_max_per_flow=get(y, "retention", "max_per_flow") or defaults.retention_max_per_flow,
        retention_success_days=get(y, "retention", "success_days") or defaults.retention_success_days,
        retention_failure_days=get(y, "retention", "failure_days") or defaults.retention_failure_days,

        # Models
        model_catalog=_parse_model_catalog(get(y, "models") or {}),

        # Logging
        log_level=os.getenv("LOG_LEVEL") or get(y, "logging", "level") or defaults.log_level,
        log_format=get(y, "logging", "format") or defaults.log_format,
    )


def _parse_model_catalog(raw: Dict[str, Any]) -> Dict[str, Dict[str, int]]:
    """provider -> {model_id: context_window}"""
    catalog: Dict[str, Dict[str, int]] = {}
    for provider, models in raw.items():
        if not isinstance(models, dict):
            raise ConfigurationError(f"models.{provider} must be a mapping of model -> context window")
        catalog[provider] = {str(model): int(window) for model, window in models.items()}
    return catalog


# =============================================================================
# GLOBAL INSTANCE
# =============================================================================

_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create global config instance."""
    global _config
    if _config is None:
        config_path = os.getenv("VISUALFLOW_CONFIG_PATH", DEFAULT_CONFIG_PATH)
        _config = load_config(config_path)
    return _config


def reload_config() -> Config:
    """Force reload configuration."""
    global _config
    _config = None
    return get_config()
