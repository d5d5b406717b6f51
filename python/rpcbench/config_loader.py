"""
Configuration Loader

Loads client, stream-call and bench settings from YAML so defaults are not
hardcoded at call sites. A missing file falls back to built-in defaults.
"""

import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

IO_DRIVERS = ("readiness", "completion")


class Config:
    """Runtime configuration loaded from YAML"""

    def __init__(self, config_dict: Dict[str, Any]):
        # Client sockets
        client = config_dict.get("client", {})
        self.connect_timeout_ms = client.get("connect_timeout_ms", 5000)
        self.tcp_nodelay = client.get("tcp_nodelay", True)
        self.read_chunk_size = client.get("read_chunk_size", 4096)

        # Worker-per-channel model (stream-call / call)
        stream_call = config_dict.get("stream_call", {})
        self.pipelining = stream_call.get("pipelining", 1)
        self.queue_slack = stream_call.get("queue_slack", 10)
        self.queue_put_backoff_ms = stream_call.get("queue_put_backoff_ms", 10)

        # Event-loop model (bench)
        bench = config_dict.get("bench", {})
        self.concurrency = bench.get("concurrency", 1)
        self.io_driver = bench.get("io_driver", "readiness")
        self.stall_warning_ms = bench.get("stall_warning_ms", 5000)
        self.min_ring_entries = bench.get("min_ring_entries", 8)

        # Logging
        logging_cfg = config_dict.get("logging", {})
        self.log_level = str(logging_cfg.get("level", "WARNING")).upper()

        # Development
        dev = config_dict.get("development", {})
        self.verbose = dev.get("verbose", False)
        self.debug = dev.get("debug", False)

    def validate(self) -> None:
        """
        Validate configuration values

        Raises:
            ValueError: If any configuration value is invalid
        """
        if self.connect_timeout_ms <= 0:
            raise ValueError(f"connect_timeout_ms must be > 0, got {self.connect_timeout_ms}")

        if self.read_chunk_size < 1:
            raise ValueError(f"read_chunk_size must be >= 1, got {self.read_chunk_size}")

        if self.pipelining < 1:
            raise ValueError(f"pipelining must be >= 1, got {self.pipelining}")

        if self.queue_slack < 0:
            raise ValueError(f"queue_slack must be >= 0, got {self.queue_slack}")

        if self.queue_put_backoff_ms <= 0:
            raise ValueError(f"queue_put_backoff_ms must be > 0, got {self.queue_put_backoff_ms}")

        if self.concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {self.concurrency}")

        if self.io_driver not in IO_DRIVERS:
            raise ValueError(f"io_driver must be one of {IO_DRIVERS}, got {self.io_driver}")

        if self.stall_warning_ms <= 0:
            raise ValueError(f"stall_warning_ms must be > 0, got {self.stall_warning_ms}")

        if self.min_ring_entries < 2:
            raise ValueError(f"min_ring_entries must be >= 2, got {self.min_ring_entries}")

        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"logging level is not recognized, got {self.log_level}")

    def get_queue_put_backoff_seconds(self) -> float:
        """Convert backoff MS to seconds for time.sleep()"""
        return self.queue_put_backoff_ms / 1000

    def get_connect_timeout_seconds(self) -> float:
        return self.connect_timeout_ms / 1000

    def get_stall_warning_seconds(self) -> float:
        return self.stall_warning_ms / 1000

    def effective_log_level(self) -> str:
        if self.debug:
            return "DEBUG"
        if self.verbose:
            return "INFO"
        return self.log_level


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries"""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def _find_config_path() -> Optional[str]:
    env_path = os.getenv("RPCBENCH_CONFIG")
    if env_path:
        return env_path

    current = Path(__file__).parent
    for _ in range(5):  # Search up to 5 levels
        candidate = current / "config" / "runtime.yaml"
        if candidate.exists():
            return str(candidate)
        parent = current.parent
        if parent == current:
            break
        current = parent
    return None


def load_config(
    config_path: Optional[str] = None, environment: Optional[str] = None
) -> Config:
    """
    Load configuration from YAML file

    Args:
        config_path: Path to config file (defaults to RPCBENCH_CONFIG, then
            the nearest config/runtime.yaml above the package)
        environment: Environment name (production/development/test)

    Returns:
        Config instance

    Raises:
        FileNotFoundError: If an explicit config file is not found
        ValueError: If the config file is invalid
    """
    explicit = config_path is not None
    if config_path is None:
        config_path = _find_config_path()

    base_config: Dict[str, Any] = {}
    if config_path is None:
        logger.debug("No config/runtime.yaml found, using built-in defaults")
    else:
        try:
            with open(config_path, "r") as f:
                base_config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            if explicit or os.getenv("RPCBENCH_CONFIG"):
                raise FileNotFoundError(f"Configuration file not found: {config_path}")
            logger.debug(f"Config file vanished, using built-in defaults: {config_path}")
        except yaml.YAMLError as exc:
            raise ValueError(f"Failed to parse YAML config file '{config_path}': {exc}") from exc

    if not isinstance(base_config, dict):
        raise ValueError(f"Config file '{config_path}' must contain a mapping")

    # Determine environment
    env = environment or os.getenv("RPCBENCH_ENV") or "development"

    # Apply environment-specific overrides
    final_config = base_config
    if "environments" in base_config and env in (base_config["environments"] or {}):
        env_overrides = base_config["environments"][env]
        final_config = deep_merge(base_config, env_overrides)

    # Remove environments section
    if "environments" in final_config:
        final_config = dict(final_config)
        del final_config["environments"]

    config = Config(final_config)
    config.validate()
    return config


# Global config instance
_global_config: Optional[Config] = None
_config_lock = threading.Lock()


def initialize_config(
    config_path: Optional[str] = None, environment: Optional[str] = None
) -> Config:
    """Initialize global configuration (thread-safe)"""
    global _global_config
    with _config_lock:
        _global_config = load_config(config_path, environment)
        return _global_config


def get_config() -> Config:
    """
    Get global configuration (lazy initialization)

    Uses double-checked locking so worker threads that call get_config()
    during start-up never load the file twice.
    """
    global _global_config

    if _global_config is not None:
        return _global_config

    with _config_lock:
        if _global_config is None:
            _global_config = load_config()
        return _global_config
