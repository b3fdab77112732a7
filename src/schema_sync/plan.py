"""Plan compiler.

Turns a MigrationSnapshot and a DestinationState into an ordered
MigrationPlan:
- CreateContext for every destination context that is missing
- SetCompatibility per context default and per subject when syncing modes
- One operation per source version, in ascending version order

Compilation is a pure function of its inputs: no registry calls, no clock
reads, no randomness. The same inputs always yield the same plan.

Example usage:
    plan = compile_plan(snapshot, destination, PlanOptions(
        conflict_policy=ConflictPolicy.SKIP_EXISTING,
    ))
    print(plan.describe())
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Set

from schema_sync.compatibility import check_compatibility, schemas_equivalent
from schema_sync.logging_config import create_logger
from schema_sync.models import (
    CompatibilityMode,
    DestinationState,
    MigrationOperation,
    MigrationPlan,
    MigrationSnapshot,
    PlannedOperation,
    RiskClass,
    Subject,
)

logger = create_logger(__name__)


class ConflictPolicy(str, Enum):
    """What to do when a destination version slot holds a different schema."""

    SKIP_EXISTING = "skip_existing"
    OVERWRITE = "overwrite"
    FAIL_ON_CONFLICT = "fail_on_conflict"


@dataclass
class PlanOptions:
    """Options controlling plan compilation.

    Attributes:
        conflict_policy: Handling of occupied version slots
        check_compatibility: Predict compatibility violations per register
        sync_compatibility: Replicate subject and context default compatibility
        preserve_ids: Register with source schema IDs (destination in IMPORT mode)
        target_context: Remap every source context to this destination context
    """

    conflict_policy: ConflictPolicy = ConflictPolicy.FAIL_ON_CONFLICT
    check_compatibility: bool = True
    sync_compatibility: bool = False
    preserve_ids: bool = False
    target_context: Optional[str] = None


def _effective_mode(
    planned_mode: Optional[CompatibilityMode],
    destination_subject: Subject,
    destination: DestinationState,
    context: str,
    planned_default: Optional[CompatibilityMode] = None,
) -> CompatibilityMode:
    return (
        planned_mode
        or destination_subject.compatibility
        or planned_default
        or destination.default_mode(context)
        or CompatibilityMode.BACKWARD
    )


def _plan_subject(
    subject: Subject,
    context: str,
    destination: DestinationState,
    options: PlanOptions,
    planned_default: Optional[CompatibilityMode] = None,
) -> List[PlannedOperation]:
    """Plan every operation for one subject, in execution order."""
    planned: List[PlannedOperation] = []
    existing = destination.subject(context, subject.name)

    planned_mode = None
    if (
        options.sync_compatibility
        and subject.compatibility is not None
        and subject.compatibility != existing.compatibility
    ):
        planned_mode = subject.compatibility
        planned.append(PlannedOperation(
            MigrationOperation.set_compatibility(subject.name, context, planned_mode),
            RiskClass.SAFE,
            f"source mode {planned_mode.value} differs from destination "
            f"{existing.compatibility.value if existing.compatibility else 'unset'}",
        ))

    mode = _effective_mode(planned_mode, existing, destination, context, planned_default)
    history = [version.schema for version in existing.versions]
    registered: List[MigrationOperation] = []

    for version in subject.versions:
        match = next(
            (dest for dest in existing.versions if schemas_equivalent(version, dest)),
            None,
        )
        if match is not None:
            planned.append(PlannedOperation(
                MigrationOperation.noop(
                    "already present", context, subject.name, version.version
                ),
                RiskClass.SAFE,
                f"equivalent to destination v{match.version}",
            ))
            continue

        if any(schemas_equivalent(version, op) for op in registered):
            planned.append(PlannedOperation(
                MigrationOperation.noop(
                    "duplicate of an earlier source version", context, subject.name,
                    version.version,
                ),
                RiskClass.SAFE,
                "the registry returns the existing version for identical schemas",
            ))
            continue

        operation = MigrationOperation.register_schema(
            version, context, existing.latest_version + len(registered) + 1
        )
        occupied = existing.get_version(version.version)

        if occupied is not None:
            reason = (
                f"destination v{occupied.version} holds a different schema "
                f"(ID {occupied.schema_id})"
            )
            if options.conflict_policy == ConflictPolicy.FAIL_ON_CONFLICT:
                planned.append(PlannedOperation(operation, RiskClass.CONFLICT, reason))
                continue
            if options.conflict_policy == ConflictPolicy.SKIP_EXISTING:
                planned.append(PlannedOperation(
                    MigrationOperation.noop(
                        f"conflict skipped: {reason}", context, subject.name, version.version
                    ),
                    RiskClass.SAFE,
                    reason,
                ))
                continue
            risk = RiskClass.COMPATIBILITY_RISK
            justification = f"overwrite: {reason}"
        else:
            risk = RiskClass.SAFE
            justification = "not present at destination"

        if options.check_compatibility:
            violations = check_compatibility(version.schema, history, mode, version.schema_type)
            if violations:
                risk = RiskClass.COMPATIBILITY_RISK
                justification = "; ".join(
                    ([justification] if occupied is not None else [])
                    + [violation.message for violation in violations]
                )

        planned.append(PlannedOperation(operation, risk, justification))
        registered.append(operation)
        history.append(version.schema)

    return planned


def compile_plan(
    snapshot: MigrationSnapshot,
    destination: DestinationState,
    options: Optional[PlanOptions] = None,
) -> MigrationPlan:
    """Compile the operations that reconcile ``destination`` with ``snapshot``.

    Args:
        snapshot: Source capture
        destination: Destination state read for the snapshot's subjects
        options: Compilation options

    Returns:
        MigrationPlan in execution order
    """
    options = options or PlanOptions()
    operations: List[PlannedOperation] = []
    created: Set[str] = set()
    planned_defaults: Dict[str, CompatibilityMode] = {}

    for context in snapshot.contexts:
        target = options.target_context or context.name

        if not destination.has_context(target) and target not in created:
            operations.append(PlannedOperation(
                MigrationOperation.create_context(target),
                RiskClass.SAFE,
                "context missing at destination",
            ))
            created.add(target)

        # With a target context the first source context's default wins
        if (
            options.sync_compatibility
            and context.compatibility is not None
            and target not in planned_defaults
            and context.compatibility != destination.default_mode(target)
        ):
            planned_defaults[target] = context.compatibility
            current = destination.default_mode(target)
            operations.append(PlannedOperation(
                MigrationOperation.set_default_compatibility(target, context.compatibility),
                RiskClass.SAFE,
                f"source default {context.compatibility.value} differs from destination "
                f"{current.value if current else 'unset'}",
            ))

        for subject in context.subjects:
            operations.extend(_plan_subject(
                subject, target, destination, options, planned_defaults.get(target)
            ))

    plan = MigrationPlan(operations=tuple(operations))
    counts = plan.risk_counts()
    logger.info(
        f"Compiled plan with {len(plan)} operations "
        f"(safe={counts['safe']}, compatibility_risk={counts['compatibility_risk']}, "
        f"conflict={counts['conflict']})"
    )
    return plan
