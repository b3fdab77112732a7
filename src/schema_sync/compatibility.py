"""
Schema identity and local compatibility prediction.

Two concerns live here:

- Equivalence: versions are matched by canonicalized schema text plus
  schema type and references. Registry-assigned IDs are never compared.
- Prediction: a candidate Avro record schema is diffed field by field
  against prior versions and the changes are judged under a compatibility
  mode. The result only classifies plan risk; the destination registry
  remains the authority at execution time.

Example usage:
    violations = check_compatibility(new_schema, [v1_schema], CompatibilityMode.BACKWARD)
    for violation in violations:
        print(violation.message)
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from schema_sync.logging_config import create_logger
from schema_sync.models import CompatibilityMode, SchemaType

logger = create_logger(__name__)

# Writer type -> reader types that can decode it (Avro type promotion)
PROMOTIONS = {
    "int": {"long", "float", "double"},
    "long": {"float", "double"},
    "float": {"double"},
    "string": {"bytes"},
    "bytes": {"string"},
}


def canonicalize(schema: str, schema_type: SchemaType = SchemaType.AVRO) -> str:
    """Return a canonical form of schema text for equality checks.

    AVRO and JSON schemas are parsed and re-serialized with sorted keys and
    compact separators. PROTOBUF (or unparseable) text has whitespace runs
    collapsed.
    """
    if schema_type in (SchemaType.AVRO, SchemaType.JSON):
        try:
            return json.dumps(json.loads(schema), sort_keys=True, separators=(",", ":"))
        except ValueError:
            logger.debug("Schema text is not valid JSON; comparing normalized text")
    return " ".join(schema.split())


def schemas_equivalent(left, right) -> bool:
    """Compare two schema-bearing objects by content.

    Both arguments need ``schema``, ``schema_type`` and ``references``
    attributes (SchemaVersion and MigrationOperation both qualify).
    """
    if left.schema_type != right.schema_type:
        return False
    if tuple(left.references) != tuple(right.references):
        return False
    return canonicalize(left.schema, left.schema_type) == canonicalize(
        right.schema, right.schema_type
    )


class FieldChangeType(Enum):
    """Kinds of field-level change between two record schemas."""

    ADD_FIELD = "add_field"
    REMOVE_FIELD = "remove_field"
    CHANGE_TYPE = "change_type"


@dataclass
class FieldChange:
    """A single field change between two versions."""

    change_type: FieldChangeType
    field_name: str
    old_type: Any = None
    new_type: Any = None
    has_default: bool = False


@dataclass(frozen=True)
class CompatibilityViolation:
    """A predicted violation of a compatibility rule."""

    rule: str
    field_name: str
    message: str

    def __str__(self) -> str:
        return self.message


def _parse_record(schema: str) -> Optional[Dict[str, Dict[str, Any]]]:
    """Map field name -> field definition, or None if not an Avro record."""
    try:
        parsed = json.loads(schema)
    except ValueError:
        return None
    if not isinstance(parsed, dict) or parsed.get("type") != "record":
        return None
    fields = parsed.get("fields")
    if not isinstance(fields, list):
        return None
    return {
        field["name"]: field
        for field in fields
        if isinstance(field, dict) and "name" in field
    }


def _type_key(field_type: Any) -> str:
    return json.dumps(field_type, sort_keys=True, separators=(",", ":"))


def _promotable(writer: Any, reader: Any) -> bool:
    if isinstance(writer, str) and isinstance(reader, str):
        return reader in PROMOTIONS.get(writer, set())
    # Widening a union to include the writer's type is readable
    if isinstance(reader, list):
        return any(_type_key(writer) == _type_key(branch) for branch in reader)
    return False


def calculate_changes(old_schema: str, new_schema: str) -> Optional[List[FieldChange]]:
    """Calculate field changes between two record schemas.

    Args:
        old_schema: Earlier schema text
        new_schema: Candidate schema text

    Returns:
        List of FieldChange, or None when either side is not an Avro record
    """
    old_fields = _parse_record(old_schema)
    new_fields = _parse_record(new_schema)
    if old_fields is None or new_fields is None:
        return None

    changes = []

    for name, old_def in old_fields.items():
        if name not in new_fields:
            changes.append(FieldChange(
                change_type=FieldChangeType.REMOVE_FIELD,
                field_name=name,
                old_type=old_def.get("type"),
                has_default="default" in old_def,
            ))

    for name, new_def in new_fields.items():
        if name not in old_fields:
            changes.append(FieldChange(
                change_type=FieldChangeType.ADD_FIELD,
                field_name=name,
                new_type=new_def.get("type"),
                has_default="default" in new_def,
            ))
            continue

        old_type = old_fields[name].get("type")
        new_type = new_def.get("type")
        if _type_key(old_type) != _type_key(new_type):
            changes.append(FieldChange(
                change_type=FieldChangeType.CHANGE_TYPE,
                field_name=name,
                old_type=old_type,
                new_type=new_type,
                has_default="default" in new_def,
            ))

    return changes


def _backward_violations(changes: List[FieldChange], rule: str) -> List[CompatibilityViolation]:
    """New schema reading data written with the old one."""
    violations = []
    for change in changes:
        if change.change_type == FieldChangeType.ADD_FIELD and not change.has_default:
            violations.append(CompatibilityViolation(
                rule, change.field_name,
                f"{rule}: added field '{change.field_name}' without a default",
            ))
        elif change.change_type == FieldChangeType.REMOVE_FIELD and not change.has_default:
            violations.append(CompatibilityViolation(
                rule, change.field_name,
                f"{rule}: removed required field '{change.field_name}'",
            ))
        elif change.change_type == FieldChangeType.CHANGE_TYPE and not _promotable(
            change.old_type, change.new_type
        ):
            violations.append(CompatibilityViolation(
                rule, change.field_name,
                f"{rule}: field '{change.field_name}' changed type from "
                f"{_type_key(change.old_type)} to {_type_key(change.new_type)}",
            ))
    return violations


def _forward_violations(changes: List[FieldChange], rule: str) -> List[CompatibilityViolation]:
    """Old schema reading data written with the new one."""
    violations = []
    for change in changes:
        if change.change_type == FieldChangeType.REMOVE_FIELD and not change.has_default:
            violations.append(CompatibilityViolation(
                rule, change.field_name,
                f"{rule}: removed field '{change.field_name}' has no default for old readers",
            ))
        elif change.change_type == FieldChangeType.CHANGE_TYPE and not _promotable(
            change.new_type, change.old_type
        ):
            violations.append(CompatibilityViolation(
                rule, change.field_name,
                f"{rule}: field '{change.field_name}' changed type from "
                f"{_type_key(change.old_type)} to {_type_key(change.new_type)}",
            ))
    return violations


def check_compatibility(
    candidate: str,
    history: Sequence[str],
    mode: CompatibilityMode,
    schema_type: SchemaType = SchemaType.AVRO,
) -> List[CompatibilityViolation]:
    """Predict whether ``candidate`` violates ``mode`` against ``history``.

    Non-transitive modes compare against the latest prior version only;
    transitive modes compare against every prior version. Schemas that are
    not Avro records cannot be predicted locally and yield no violations.

    Args:
        candidate: Schema text about to be registered
        history: Prior schema texts in ascending version order
        mode: Effective compatibility mode of the subject
        schema_type: Type of the candidate schema

    Returns:
        List of violations, deduplicated, in discovery order
    """
    if mode == CompatibilityMode.NONE or not history or schema_type != SchemaType.AVRO:
        return []

    against = list(history) if mode.is_transitive else [history[-1]]
    violations: List[CompatibilityViolation] = []

    for previous in against:
        changes = calculate_changes(previous, candidate)
        if changes is None:
            continue
        found = []
        if mode.checks_backward:
            found.extend(_backward_violations(changes, mode.value))
        if mode.checks_forward:
            found.extend(_forward_violations(changes, mode.value))
        for violation in found:
            if violation not in violations:
                violations.append(violation)

    return violations
