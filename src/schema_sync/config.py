"""Configuration module for registry and migration settings.

Settings are read from environment variables (a local .env file is loaded
first). Values are kept as read; ``validate_config`` checks them and the
``*_from_env`` helpers build typed objects from them.
"""

import os
from typing import Optional

from dotenv import load_dotenv

from schema_sync.exceptions import ConfigurationError
from schema_sync.executor import ExecutorOptions
from schema_sync.logging_config import create_logger
from schema_sync.registry_client import RestRegistryClient
from schema_sync.run_history import MigrationRunTracker

load_dotenv()

logger = create_logger(__name__)

# Registry connection
REGISTRY_URL = os.getenv("REGISTRY_URL", "http://localhost:8081")
REGISTRY_USERNAME = os.getenv("REGISTRY_USERNAME")
REGISTRY_PASSWORD = os.getenv("REGISTRY_PASSWORD")
REGISTRY_API_KEY = os.getenv("REGISTRY_API_KEY")
REGISTRY_TIMEOUT = os.getenv("REGISTRY_TIMEOUT", "30")

# Execution
SYNC_MAX_WORKERS = os.getenv("SYNC_MAX_WORKERS", "4")
SYNC_MAX_ATTEMPTS = os.getenv("SYNC_MAX_ATTEMPTS", "3")
SYNC_INITIAL_DELAY = os.getenv("SYNC_INITIAL_DELAY", "1.0")
SYNC_MAX_DELAY = os.getenv("SYNC_MAX_DELAY", "30.0")
SYNC_MANAGE_IMPORT_MODE = os.getenv("SYNC_MANAGE_IMPORT_MODE", "false").lower()

# Logging and history
SYNC_LOG_LEVEL = os.getenv("SYNC_LOG_LEVEL", "INFO").upper()
SYNC_LOG_DIR = os.getenv("SYNC_LOG_DIR")
SYNC_HISTORY_DB = os.getenv("SYNC_HISTORY_DB")

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
TRUE_VALUES = ("1", "true", "yes")
BOOLEAN_VALUES = TRUE_VALUES + ("0", "false", "no")


def _positive_int(name: str, value: str) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")
    if parsed < 1:
        raise ConfigurationError(f"{name} must be at least 1, got {parsed}")
    return parsed


def _positive_float(name: str, value: str) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be a number, got {value!r}")
    if parsed <= 0:
        raise ConfigurationError(f"{name} must be positive, got {parsed}")
    return parsed


def validate_config():
    """
    Validate configuration parameters.

    :raises ConfigurationError: If configuration is invalid
    """
    if not REGISTRY_URL:
        raise ConfigurationError("Registry URL (REGISTRY_URL) is not configured")

    if not REGISTRY_URL.startswith(("http://", "https://")):
        raise ConfigurationError(
            f"REGISTRY_URL must start with http:// or https://, got {REGISTRY_URL!r}"
        )

    if bool(REGISTRY_USERNAME) != bool(REGISTRY_PASSWORD):
        raise ConfigurationError(
            "REGISTRY_USERNAME and REGISTRY_PASSWORD must be set together"
        )

    _positive_float("REGISTRY_TIMEOUT", REGISTRY_TIMEOUT)
    _positive_int("SYNC_MAX_WORKERS", SYNC_MAX_WORKERS)
    _positive_int("SYNC_MAX_ATTEMPTS", SYNC_MAX_ATTEMPTS)
    initial = _positive_float("SYNC_INITIAL_DELAY", SYNC_INITIAL_DELAY)
    maximum = _positive_float("SYNC_MAX_DELAY", SYNC_MAX_DELAY)
    if initial > maximum:
        raise ConfigurationError(
            f"SYNC_INITIAL_DELAY ({initial}) exceeds SYNC_MAX_DELAY ({maximum})"
        )

    if SYNC_MANAGE_IMPORT_MODE not in BOOLEAN_VALUES:
        raise ConfigurationError(
            f"SYNC_MANAGE_IMPORT_MODE must be true or false, got {SYNC_MANAGE_IMPORT_MODE!r}"
        )

    if SYNC_LOG_LEVEL not in LOG_LEVELS:
        raise ConfigurationError(
            f"SYNC_LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, got {SYNC_LOG_LEVEL!r}"
        )

    if SYNC_LOG_DIR:
        try:
            os.makedirs(SYNC_LOG_DIR, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(f"Unable to create log directory {SYNC_LOG_DIR}: {e}")

    logger.debug("Configuration validation successful")


def client_from_env(url: Optional[str] = None) -> RestRegistryClient:
    """Build a REST client from the environment.

    Args:
        url: Registry URL overriding REGISTRY_URL

    Returns:
        Configured RestRegistryClient
    """
    validate_config()
    return RestRegistryClient(
        url or REGISTRY_URL,
        username=REGISTRY_USERNAME or None,
        password=REGISTRY_PASSWORD or None,
        api_key=REGISTRY_API_KEY or None,
        timeout=float(REGISTRY_TIMEOUT),
    )


def executor_options_from_env(preserve_ids: bool = False) -> ExecutorOptions:
    """Executor options from SYNC_* settings."""
    validate_config()
    return ExecutorOptions(
        max_workers=int(SYNC_MAX_WORKERS),
        max_attempts=int(SYNC_MAX_ATTEMPTS),
        initial_delay=float(SYNC_INITIAL_DELAY),
        max_delay=float(SYNC_MAX_DELAY),
        preserve_ids=preserve_ids,
        manage_import_mode=SYNC_MANAGE_IMPORT_MODE in TRUE_VALUES,
    )


def tracker_from_env() -> Optional[MigrationRunTracker]:
    """Run history tracker for SYNC_HISTORY_DB, or None when unset."""
    if not SYNC_HISTORY_DB:
        return None
    directory = os.path.dirname(SYNC_HISTORY_DB)
    if directory:
        os.makedirs(directory, exist_ok=True)
    return MigrationRunTracker(SYNC_HISTORY_DB)
