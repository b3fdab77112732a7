"""Data model for registry snapshots and migration plans.

Everything here is immutable: frozen dataclasses holding tuples. A
snapshot is a point-in-time read of a registry, and a plan is derived data
computed from a snapshot and a destination state; neither is ever mutated
after construction.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterator, List, Optional, Tuple

DEFAULT_CONTEXT = "."


class SchemaType(str, Enum):
    """Schema formats understood by the registry."""

    AVRO = "AVRO"
    JSON = "JSON"
    PROTOBUF = "PROTOBUF"

    @classmethod
    def parse(cls, value: Optional[str]) -> "SchemaType":
        """Registry responses omit the type for Avro schemas."""
        if not value:
            return cls.AVRO
        return cls(value.upper())


class CompatibilityMode(str, Enum):
    """Compatibility levels enforced by the registry."""

    NONE = "NONE"
    BACKWARD = "BACKWARD"
    BACKWARD_TRANSITIVE = "BACKWARD_TRANSITIVE"
    FORWARD = "FORWARD"
    FORWARD_TRANSITIVE = "FORWARD_TRANSITIVE"
    FULL = "FULL"
    FULL_TRANSITIVE = "FULL_TRANSITIVE"

    @property
    def is_transitive(self) -> bool:
        return self.value.endswith("_TRANSITIVE")

    @property
    def checks_backward(self) -> bool:
        return self.value.startswith(("BACKWARD", "FULL"))

    @property
    def checks_forward(self) -> bool:
        return self.value.startswith(("FORWARD", "FULL"))


class RegistryMode(str, Enum):
    """Registry write modes; IMPORT accepts caller-chosen schema IDs."""

    READWRITE = "READWRITE"
    READONLY = "READONLY"
    IMPORT = "IMPORT"


@dataclass(frozen=True)
class SchemaReference:
    """Pointer from one schema to another registered schema."""

    name: str
    subject: str
    version: int

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "subject": self.subject, "version": self.version}


@dataclass(frozen=True)
class SchemaVersion:
    """One registered version of a subject."""

    subject: str
    context: str
    version: int
    schema_id: int
    schema: str
    schema_type: SchemaType = SchemaType.AVRO
    references: Tuple[SchemaReference, ...] = ()


@dataclass(frozen=True)
class Subject:
    """A subject with its recorded versions in registry order."""

    name: str
    context: str
    versions: Tuple[SchemaVersion, ...] = ()
    compatibility: Optional[CompatibilityMode] = None

    @property
    def latest(self) -> Optional[SchemaVersion]:
        return self.versions[-1] if self.versions else None

    @property
    def latest_version(self) -> int:
        return self.versions[-1].version if self.versions else 0

    def get_version(self, version: int) -> Optional[SchemaVersion]:
        for schema_version in self.versions:
            if schema_version.version == version:
                return schema_version
        return None


@dataclass(frozen=True)
class Context:
    """An isolated namespace of subjects.

    ``compatibility`` is the context's registry-level default, when captured.
    """

    name: str
    subjects: Tuple[Subject, ...] = ()
    is_default: bool = False
    compatibility: Optional[CompatibilityMode] = None

    def get_subject(self, name: str) -> Optional[Subject]:
        for subject in self.subjects:
            if subject.name == name:
                return subject
        return None


@dataclass(frozen=True)
class MigrationSnapshot:
    """Immutable point-in-time capture of a registry."""

    source: str
    captured_at: datetime
    contexts: Tuple[Context, ...] = ()

    def iter_subjects(self) -> Iterator[Subject]:
        for context in self.contexts:
            yield from context.subjects

    def get_context(self, name: str) -> Optional[Context]:
        for context in self.contexts:
            if context.name == name:
                return context
        return None

    @property
    def subject_count(self) -> int:
        return sum(len(context.subjects) for context in self.contexts)

    @property
    def version_count(self) -> int:
        return sum(len(subject.versions) for subject in self.iter_subjects())


@dataclass(frozen=True)
class CaptureGap:
    """A version (or a whole version listing) that could not be captured.

    ``version`` is None when the subject's version list itself failed.
    """

    subject: str
    context: str
    version: Optional[int]
    cause: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject": self.subject,
            "context": self.context,
            "version": self.version,
            "cause": self.cause,
        }


@dataclass(frozen=True)
class CaptureResult:
    """Snapshot plus the gaps recorded while building it."""

    snapshot: MigrationSnapshot
    gaps: Tuple[CaptureGap, ...] = ()

    @property
    def complete(self) -> bool:
        return not self.gaps


@dataclass(frozen=True)
class DestinationState:
    """Current state of the destination, read fresh for one compile.

    Attributes:
        contexts: Context names that exist at the destination
        subjects: (context, subject) -> Subject with full history
        default_compatibility: context -> registry-level compatibility
    """

    contexts: FrozenSet[str] = frozenset({DEFAULT_CONTEXT})
    subjects: Dict[Tuple[str, str], Subject] = field(default_factory=dict)
    default_compatibility: Dict[str, CompatibilityMode] = field(default_factory=dict)

    def has_context(self, context: str) -> bool:
        return context == DEFAULT_CONTEXT or context in self.contexts

    def subject(self, context: str, name: str) -> Subject:
        """Return the destination subject, empty when it does not exist."""
        return self.subjects.get((context, name)) or Subject(name=name, context=context)

    def default_mode(self, context: str) -> Optional[CompatibilityMode]:
        return self.default_compatibility.get(context)


class OperationKind(str, Enum):
    """Tags of the MigrationOperation variant."""

    REGISTER_SCHEMA = "register_schema"
    SET_COMPATIBILITY = "set_compatibility"
    CREATE_CONTEXT = "create_context"
    NOOP = "noop"


class RiskClass(str, Enum):
    """Risk classification attached to each planned operation."""

    SAFE = "safe"
    COMPATIBILITY_RISK = "compatibility_risk"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class MigrationOperation:
    """Tagged variant over the operations a plan can contain.

    Which fields are meaningful depends on ``kind``:
    REGISTER_SCHEMA uses subject/context/schema/schema_type/references/
    expected_version/source_version/source_schema_id; SET_COMPATIBILITY uses
    subject/context/mode, with no subject for a context default;
    CREATE_CONTEXT uses context; NOOP uses
    subject/context/source_version/reason.
    """

    kind: OperationKind
    context: str
    subject: Optional[str] = None
    schema: Optional[str] = None
    schema_type: SchemaType = SchemaType.AVRO
    references: Tuple[SchemaReference, ...] = ()
    expected_version: Optional[int] = None
    source_version: Optional[int] = None
    source_schema_id: Optional[int] = None
    mode: Optional[CompatibilityMode] = None
    reason: Optional[str] = None

    @classmethod
    def register_schema(
        cls,
        source: SchemaVersion,
        context: str,
        expected_version: int,
    ) -> "MigrationOperation":
        return cls(
            kind=OperationKind.REGISTER_SCHEMA,
            context=context,
            subject=source.subject,
            schema=source.schema,
            schema_type=source.schema_type,
            references=source.references,
            expected_version=expected_version,
            source_version=source.version,
            source_schema_id=source.schema_id,
        )

    @classmethod
    def set_compatibility(
        cls, subject: str, context: str, mode: CompatibilityMode
    ) -> "MigrationOperation":
        return cls(
            kind=OperationKind.SET_COMPATIBILITY,
            context=context,
            subject=subject,
            mode=mode,
        )

    @classmethod
    def set_default_compatibility(
        cls, context: str, mode: CompatibilityMode
    ) -> "MigrationOperation":
        return cls(kind=OperationKind.SET_COMPATIBILITY, context=context, mode=mode)

    @property
    def is_context_level(self) -> bool:
        return self.kind == OperationKind.CREATE_CONTEXT or (
            self.kind == OperationKind.SET_COMPATIBILITY and self.subject is None
        )

    @classmethod
    def create_context(cls, context: str) -> "MigrationOperation":
        return cls(kind=OperationKind.CREATE_CONTEXT, context=context)

    @classmethod
    def noop(
        cls,
        reason: str,
        context: str,
        subject: Optional[str] = None,
        source_version: Optional[int] = None,
    ) -> "MigrationOperation":
        return cls(
            kind=OperationKind.NOOP,
            context=context,
            subject=subject,
            source_version=source_version,
            reason=reason,
        )

    def describe(self) -> str:
        """Human-readable description of the operation."""
        if self.kind == OperationKind.REGISTER_SCHEMA:
            return (
                f"Register {self.context}:{self.subject} v{self.source_version} "
                f"as v{self.expected_version}"
            )
        if self.kind == OperationKind.SET_COMPATIBILITY:
            if self.subject is None:
                return f"Set context '{self.context}' default compatibility to {self.mode.value}"
            return f"Set {self.context}:{self.subject} compatibility to {self.mode.value}"
        if self.kind == OperationKind.CREATE_CONTEXT:
            return f"Create context '{self.context}'"
        if self.kind == OperationKind.NOOP:
            target = f"{self.context}:{self.subject}" if self.subject else self.context
            version = f" v{self.source_version}" if self.source_version is not None else ""
            return f"No-op {target}{version} ({self.reason})"
        raise ValueError(f"Unknown operation kind: {self.kind}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "context": self.context,
            "subject": self.subject,
            "schema": self.schema,
            "schema_type": self.schema_type.value,
            "references": [ref.to_dict() for ref in self.references],
            "expected_version": self.expected_version,
            "source_version": self.source_version,
            "source_schema_id": self.source_schema_id,
            "mode": self.mode.value if self.mode else None,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class PlannedOperation:
    """An operation with its risk class and justification."""

    operation: MigrationOperation
    risk: RiskClass = RiskClass.SAFE
    justification: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = self.operation.to_dict()
        data["risk"] = self.risk.value
        data["justification"] = self.justification
        return data


@dataclass(frozen=True)
class MigrationPlan:
    """Ordered, idempotent operations reconciling a destination."""

    operations: Tuple[PlannedOperation, ...] = ()

    def __len__(self) -> int:
        return len(self.operations)

    def __iter__(self) -> Iterator[PlannedOperation]:
        return iter(self.operations)

    def by_risk(self, risk: RiskClass) -> List[PlannedOperation]:
        return [planned for planned in self.operations if planned.risk == risk]

    def risk_counts(self) -> Dict[str, int]:
        counts = {risk.value: 0 for risk in RiskClass}
        for planned in self.operations:
            counts[planned.risk.value] += 1
        return counts

    @property
    def has_conflicts(self) -> bool:
        return any(planned.risk == RiskClass.CONFLICT for planned in self.operations)

    def describe(self) -> str:
        """Generate human-readable description of the plan."""
        lines = [f"Migration Plan ({len(self.operations)} operations):"]
        for i, planned in enumerate(self.operations, 1):
            lines.append(
                f"  {i}. [{planned.risk.value}] {planned.operation.describe()}"
                + (f" - {planned.justification}" if planned.justification else "")
            )
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operations": [planned.to_dict() for planned in self.operations],
            "risk_counts": self.risk_counts(),
        }
