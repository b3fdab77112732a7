"""Schema sync package for schema registry migration.

This package captures schema registries into snapshots, archives them,
compiles migration plans against a destination registry and executes
those plans with retries, per-subject ordering and dry-run support.
"""

import os

from schema_sync.logging_config import create_logger

__version__ = "0.1.0"

logger = create_logger(__name__)


def init_schema_sync_package() -> None:
    """Log package details for debugging."""
    logger.debug(f"schema_sync {__version__}")
    logger.debug("   Modules: snapshot, archive, plan, executor, migration")
    logger.debug(f"   Package Path: {os.path.dirname(os.path.abspath(__file__))}")


init_schema_sync_package()
