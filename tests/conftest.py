"""Pytest configuration and shared fixtures for schema sync tests.

This module provides fixtures for:
- An in-memory schema registry implementing RegistryClient
- Sample Avro schemas for the user-value subject
- Snapshots and retry settings that never sleep
- Temporary file management
"""

import json
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Generator, List, Optional, Sequence, Tuple, Union

import pytest

from schema_sync.compatibility import canonicalize
from schema_sync.error_handler import RetryPolicy
from schema_sync.exceptions import CompatibilityRejectedError, RegistryRequestError
from schema_sync.executor import ExecutorOptions
from schema_sync.models import (
    DEFAULT_CONTEXT,
    CompatibilityMode,
    Context,
    MigrationSnapshot,
    RegistryMode,
    SchemaReference,
    SchemaType,
    SchemaVersion,
    Subject,
)
from schema_sync.registry_client import RegistryClient

MUTATING_METHODS = {"register_schema", "set_compatibility", "set_default_compatibility", "set_mode"}


def avro_record(name: str, fields: List[Dict]) -> str:
    """Build Avro record schema text."""
    return json.dumps({"type": "record", "name": name, "fields": fields})


USER_V1 = avro_record("User", [{"name": "id", "type": "int"}])
USER_V2 = avro_record("User", [
    {"name": "id", "type": "int"},
    {"name": "name", "type": "string", "default": ""},
])
USER_V3 = avro_record("User", [
    {"name": "id", "type": "int"},
    {"name": "name", "type": "string", "default": ""},
    {"name": "email", "type": ["null", "string"], "default": None},
])


# ============================================================================
# In-memory Registry
# ============================================================================

class FakeRegistry(RegistryClient):
    """In-memory registry with failure injection and a call log.

    Failures are injected per method with optional argument matching and
    are consumed in order, so a test can make exactly one call fail.
    """

    def __init__(self, name: str = "fake://registry", supports_contexts: bool = True):
        self._name = name
        self.supports_contexts = supports_contexts
        self.subjects: Dict[Tuple[str, str], List[SchemaVersion]] = {}
        self.compatibility: Dict[Tuple[str, str], CompatibilityMode] = {}
        self.defaults: Dict[str, CompatibilityMode] = {}
        self.modes: Dict[str, RegistryMode] = {}
        self.extra_contexts = set()
        self.ids: Dict[Tuple[str, str], int] = {}
        self.next_id = 1
        self.compatible = True
        self.enforce_compatibility = False
        self.calls: List[Tuple[str, Dict]] = []
        self.failures: List[Tuple[str, Dict, Exception]] = []
        self.lock = threading.RLock()

    @property
    def name(self) -> str:
        return self._name

    # -- test helpers ---------------------------------------------------------

    def seed(
        self,
        subject: str,
        schemas: Sequence[str],
        context: str = DEFAULT_CONTEXT,
        compatibility: Optional[CompatibilityMode] = None,
    ) -> List[SchemaVersion]:
        """Register schemas directly, bypassing failure injection."""
        for schema in schemas:
            self._store(subject, schema, SchemaType.AVRO, (), context, None)
        if compatibility is not None:
            self.compatibility[(context, subject)] = compatibility
        return list(self.subjects[(context, subject)])

    def fail(self, method: str, error: Exception, times: int = 1, **match) -> None:
        """Make the next ``times`` matching calls of ``method`` raise ``error``."""
        for _ in range(times):
            self.failures.append((method, match, error))

    def calls_to(self, method: str) -> List[Dict]:
        return [args for name, args in self.calls if name == method]

    @property
    def mutations(self) -> List[Tuple[str, Dict]]:
        return [(name, args) for name, args in self.calls if name in MUTATING_METHODS]

    def versions_of(self, subject: str, context: str = DEFAULT_CONTEXT) -> List[SchemaVersion]:
        return list(self.subjects.get((context, subject), []))

    def _record(self, method: str, **args) -> None:
        with self.lock:
            self.calls.append((method, args))
            for i, (name, match, error) in enumerate(self.failures):
                if name == method and all(args.get(k) == v for k, v in match.items()):
                    del self.failures[i]
                    raise error

    def _store(self, subject, schema, schema_type, references, context, schema_id) -> int:
        versions = self.subjects.setdefault((context, subject), [])
        key = (schema_type.value, canonicalize(schema, schema_type))
        for existing in versions:
            if (existing.schema_type.value, canonicalize(existing.schema, existing.schema_type)) == key:
                return existing.schema_id

        if schema_id is not None:
            assigned = schema_id
        elif key in self.ids:
            assigned = self.ids[key]
        else:
            assigned = self.next_id
        self.ids.setdefault(key, assigned)
        self.next_id = max(self.next_id, assigned + 1)

        versions.append(SchemaVersion(
            subject=subject,
            context=context,
            version=versions[-1].version + 1 if versions else 1,
            schema_id=assigned,
            schema=schema,
            schema_type=schema_type,
            references=tuple(references),
        ))
        return assigned

    # -- RegistryClient -------------------------------------------------------

    def list_contexts(self) -> List[str]:
        self._record("list_contexts")
        if not self.supports_contexts:
            return [DEFAULT_CONTEXT]
        with self.lock:
            names = {context for context, _ in self.subjects} | self.extra_contexts
        return [DEFAULT_CONTEXT] + sorted(names - {DEFAULT_CONTEXT})

    def list_subjects(self, context: str = DEFAULT_CONTEXT) -> List[str]:
        self._record("list_subjects", context=context)
        with self.lock:
            return sorted(name for ctx, name in self.subjects if ctx == context)

    def list_versions(self, subject: str, context: str = DEFAULT_CONTEXT) -> List[int]:
        self._record("list_versions", subject=subject, context=context)
        with self.lock:
            return [v.version for v in self.subjects.get((context, subject), [])]

    def get_schema(
        self,
        subject: str,
        version: Union[int, str],
        context: str = DEFAULT_CONTEXT
    ) -> SchemaVersion:
        self._record("get_schema", subject=subject, version=version, context=context)
        with self.lock:
            versions = self.subjects.get((context, subject), [])
            if version == "latest" and versions:
                return versions[-1]
            for candidate in versions:
                if candidate.version == version:
                    return candidate
        raise RegistryRequestError(
            f"Subject {subject} version {version} not found", status_code=404, error_code=40402
        )

    def register_schema(
        self,
        subject: str,
        schema: str,
        schema_type: SchemaType = SchemaType.AVRO,
        references: Sequence[SchemaReference] = (),
        context: str = DEFAULT_CONTEXT,
        schema_id: Optional[int] = None,
    ) -> int:
        self._record(
            "register_schema", subject=subject, schema=schema, context=context, schema_id=schema_id
        )
        if self.enforce_compatibility and not self.compatible:
            raise CompatibilityRejectedError(
                f"Schema being registered is incompatible with {subject}",
                status_code=409,
                error_code=409,
            )
        if schema_id is not None and self.modes.get(context) != RegistryMode.IMPORT:
            raise RegistryRequestError(
                "Overwrite new schema with id is not permitted outside IMPORT mode",
                status_code=422,
                error_code=42205,
            )
        with self.lock:
            return self._store(subject, schema, schema_type, references, context, schema_id)

    def get_compatibility(
        self, subject: str, context: str = DEFAULT_CONTEXT
    ) -> Optional[CompatibilityMode]:
        self._record("get_compatibility", subject=subject, context=context)
        return self.compatibility.get((context, subject))

    def get_default_compatibility(self, context: str = DEFAULT_CONTEXT) -> CompatibilityMode:
        self._record("get_default_compatibility", context=context)
        return self.defaults.get(context, CompatibilityMode.BACKWARD)

    def set_compatibility(
        self, subject: str, mode: CompatibilityMode, context: str = DEFAULT_CONTEXT
    ) -> None:
        self._record("set_compatibility", subject=subject, mode=mode, context=context)
        with self.lock:
            self.compatibility[(context, subject)] = mode

    def set_default_compatibility(
        self, mode: CompatibilityMode, context: str = DEFAULT_CONTEXT
    ) -> None:
        self._record("set_default_compatibility", mode=mode, context=context)
        with self.lock:
            self.defaults[context] = mode

    def get_mode(self, context: str = DEFAULT_CONTEXT) -> RegistryMode:
        self._record("get_mode", context=context)
        return self.modes.get(context, RegistryMode.READWRITE)

    def set_mode(self, mode: RegistryMode, context: str = DEFAULT_CONTEXT) -> None:
        self._record("set_mode", mode=mode, context=context)
        with self.lock:
            self.modes[context] = mode

    def check_compatibility(
        self,
        subject: str,
        schema: str,
        context: str = DEFAULT_CONTEXT,
        schema_type: SchemaType = SchemaType.AVRO,
        references: Sequence[SchemaReference] = (),
    ) -> bool:
        self._record("check_compatibility", subject=subject, context=context)
        return self.compatible


# ============================================================================
# Registry Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def source_registry() -> FakeRegistry:
    """Provide an empty source registry."""
    return FakeRegistry(name="fake://source")


@pytest.fixture(scope="function")
def destination_registry() -> FakeRegistry:
    """Provide an empty destination registry."""
    return FakeRegistry(name="fake://destination")


@pytest.fixture(scope="function")
def user_source(source_registry: FakeRegistry) -> FakeRegistry:
    """Source holding user-value v1 and v2 in the default context."""
    source_registry.seed("user-value", [USER_V1, USER_V2])
    return source_registry


# ============================================================================
# Retry and Execution Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def sleeps() -> List[float]:
    """Collect backoff delays instead of sleeping."""
    return []


@pytest.fixture(scope="function")
def fast_retry(sleeps: List[float]) -> RetryPolicy:
    """Retry policy that records delays and never waits."""
    return RetryPolicy(max_attempts=3, initial_delay=0.5, max_delay=4.0, sleep=sleeps.append)


@pytest.fixture(scope="function")
def fast_executor_options(sleeps: List[float]) -> ExecutorOptions:
    """Executor options that record delays and never wait."""
    return ExecutorOptions(max_workers=4, max_attempts=3, initial_delay=0.5, sleep=sleeps.append)


# ============================================================================
# Snapshot Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def captured_at() -> datetime:
    """Fixed capture timestamp."""
    return datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_version(
    subject: str,
    version: int,
    schema: str,
    schema_id: Optional[int] = None,
    context: str = DEFAULT_CONTEXT,
    **kwargs,
) -> SchemaVersion:
    return SchemaVersion(
        subject=subject,
        context=context,
        version=version,
        schema_id=schema_id if schema_id is not None else 100 + version,
        schema=schema,
        **kwargs,
    )


@pytest.fixture(scope="function")
def user_snapshot(captured_at: datetime) -> MigrationSnapshot:
    """Snapshot of user-value v1 and v2 with BACKWARD compatibility."""
    subject = Subject(
        name="user-value",
        context=DEFAULT_CONTEXT,
        versions=(
            make_version("user-value", 1, USER_V1),
            make_version("user-value", 2, USER_V2),
        ),
        compatibility=CompatibilityMode.BACKWARD,
    )
    return MigrationSnapshot(
        source="fake://source",
        captured_at=captured_at,
        contexts=(Context(name=DEFAULT_CONTEXT, subjects=(subject,), is_default=True),),
    )


@pytest.fixture(scope="function")
def rich_snapshot(captured_at: datetime) -> MigrationSnapshot:
    """Snapshot spanning two contexts, references and non-Avro types."""
    orders = Subject(
        name="orders-value",
        context=".staging",
        versions=(
            make_version(
                "orders-value", 1, '{"type": "object"}', 7, ".staging",
                schema_type=SchemaType.JSON,
            ),
            make_version(
                "orders-value", 2, 'syntax = "proto3"; message Order { int32 id = 1; }', 8,
                ".staging",
                schema_type=SchemaType.PROTOBUF,
                references=(SchemaReference("common.proto", "common-value", 3),),
            ),
        ),
        compatibility=None,
    )
    user = Subject(
        name="user-value",
        context=DEFAULT_CONTEXT,
        versions=(make_version("user-value", 1, USER_V1),),
        compatibility=CompatibilityMode.FULL_TRANSITIVE,
    )
    return MigrationSnapshot(
        source="fake://source",
        captured_at=captured_at,
        contexts=(
            Context(name=DEFAULT_CONTEXT, subjects=(user,), is_default=True),
            Context(name=".staging", subjects=(orders,), is_default=False),
        ),
    )


# ============================================================================
# Temporary File Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory for testing.

    Yields:
        Path to temporary directory
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)
