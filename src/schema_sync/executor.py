"""Plan executor.

Applies (LIVE) or rehearses (DRY_RUN) a MigrationPlan against a
destination registry:
- Context operations first, sequentially, in plan order
- Then one chain per subject, chains running on a bounded thread pool
- A live CreateContext is settled after the chains, from the destination's
  context list, since contexts appear with their first registration
- Preserving schema IDs requires IMPORT mode; the executor can switch a
  context into it for the run and restore it afterwards
- Each chain re-reads its subject before the first operation
- A failed operation blocks the remainder of its chain only
- Transient failures are retried with bounded exponential backoff
- A run-scoped cancellation event stops queued and retrying work

DRY_RUN never calls a mutating adapter method.

Example usage:
    report = execute_plan(plan, client, ExecutionMode.LIVE, ExecutorOptions(max_workers=4))
    print(report.counts)
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from schema_sync.compatibility import schemas_equivalent
from schema_sync.error_handler import AttemptResult, RetryPolicy
from schema_sync.exceptions import (
    CompatibilityRejectedError,
    ConflictError,
    ImportModeRequiredError,
    MigrationCancelledError,
)
from schema_sync.logging_config import create_logger
from schema_sync.models import (
    CompatibilityMode,
    MigrationOperation,
    MigrationPlan,
    OperationKind,
    PlannedOperation,
    RegistryMode,
    RiskClass,
    SchemaVersion,
)
from schema_sync.registry_client import RegistryClient

logger = create_logger(__name__)


class ExecutionMode(str, Enum):
    """How a plan is executed."""

    DRY_RUN = "dry_run"
    LIVE = "live"


class OutcomeStatus(str, Enum):
    """Result of one planned operation."""

    APPLIED = "applied"
    WOULD_APPLY = "would_apply"  # dry run only
    SKIPPED = "skipped"
    FAILED = "failed"
    BLOCKED = "blocked"  # an operation it depends on failed
    CANCELLED = "cancelled"


@dataclass
class ExecutorOptions:
    """Execution settings.

    Attributes:
        max_workers: Subjects processed concurrently
        max_attempts: Attempts per registry call (transient failures only)
        initial_delay: First backoff delay in seconds
        max_delay: Upper bound for a single backoff delay
        backoff_factor: Delay multiplier per attempt
        jitter: Randomize backoff delays
        preserve_ids: Send source schema IDs when registering
        manage_import_mode: Switch contexts into IMPORT mode for the run when
            preserving IDs, restoring their previous mode afterwards
        sleep: Backoff sleep override (tests)
    """

    max_workers: int = 4
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_factor: float = 2.0
    jitter: bool = False
    preserve_ids: bool = False
    manage_import_mode: bool = False
    sleep: Optional[Callable[[float], None]] = None

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            initial_delay=self.initial_delay,
            max_delay=self.max_delay,
            backoff_factor=self.backoff_factor,
            jitter=self.jitter,
            sleep=self.sleep,
        )


@dataclass
class OperationOutcome:
    """What happened to one planned operation."""

    index: int
    operation: MigrationOperation
    status: OutcomeStatus
    detail: str = ""
    error_type: Optional[str] = None
    error: Optional[str] = None
    schema_id: Optional[int] = None
    attempts: int = 0
    drift: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "operation": self.operation.describe(),
            "kind": self.operation.kind.value,
            "context": self.operation.context,
            "subject": self.operation.subject,
            "status": self.status.value,
            "detail": self.detail,
            "error_type": self.error_type,
            "error": self.error,
            "schema_id": self.schema_id,
            "attempts": self.attempts,
            "drift": self.drift,
        }


@dataclass
class MigrationReport:
    """Result of executing a plan."""

    mode: ExecutionMode
    outcomes: List[OperationOutcome] = field(default_factory=list)
    cancelled: bool = False
    cut_point: Optional[int] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in OutcomeStatus}
        for outcome in self.outcomes:
            counts[outcome.status.value] += 1
        return counts

    @property
    def applied(self) -> int:
        return self.counts[OutcomeStatus.APPLIED.value]

    @property
    def skipped(self) -> int:
        return self.counts[OutcomeStatus.SKIPPED.value]

    @property
    def failed(self) -> int:
        return self.counts[OutcomeStatus.FAILED.value]

    @property
    def failures(self) -> List[OperationOutcome]:
        return [o for o in self.outcomes if o.status == OutcomeStatus.FAILED]

    @property
    def succeeded(self) -> bool:
        return not self.failures and not self.cancelled

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "counts": self.counts,
            "cancelled": self.cancelled,
            "cut_point": self.cut_point,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
            "failures": [outcome.to_dict() for outcome in self.failures],
        }


@dataclass
class _SubjectState:
    """Destination view of one subject, refreshed at chain start."""

    versions: List[SchemaVersion]
    compatibility: Optional[CompatibilityMode]

    @property
    def latest_version(self) -> int:
        return self.versions[-1].version if self.versions else 0


class PlanExecutor:
    """Executes a plan against one destination registry."""

    def __init__(
        self,
        client: RegistryClient,
        mode: ExecutionMode = ExecutionMode.DRY_RUN,
        options: Optional[ExecutorOptions] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.client = client
        self.mode = mode
        self.options = options or ExecutorOptions()
        self.cancel_event = cancel_event or threading.Event()
        self.retry = self.options.retry_policy()
        self.mode_errors: Dict[str, str] = {}

    @property
    def dry_run(self) -> bool:
        return self.mode == ExecutionMode.DRY_RUN

    def _call(self, operation: Callable[[], Any], name: str) -> AttemptResult:
        return self.retry.run(operation, name, self.cancel_event)

    @staticmethod
    def _failure(
        index: int,
        operation: MigrationOperation,
        result: AttemptResult,
        detail: str,
    ) -> OperationOutcome:
        if isinstance(result.error, MigrationCancelledError):
            return OperationOutcome(
                index, operation, OutcomeStatus.CANCELLED, "cancelled", attempts=result.attempts
            )
        return OperationOutcome(
            index,
            operation,
            OutcomeStatus.FAILED,
            detail,
            error_type=type(result.error).__name__,
            error=str(result.error),
            attempts=result.attempts,
        )

    def execute(self, plan: MigrationPlan) -> MigrationReport:
        """Execute every operation of ``plan`` and collect outcomes."""
        started_at = datetime.now(timezone.utc)
        logger.info(f"Executing plan with {len(plan)} operations ({self.mode.value})")

        outcomes: List[OperationOutcome] = []
        unsettled: List[Tuple[int, MigrationOperation]] = []
        chains: Dict[Tuple[str, str], List[Tuple[int, PlannedOperation]]] = {}

        for index, planned in enumerate(plan.operations):
            operation = planned.operation
            if operation.kind == OperationKind.CREATE_CONTEXT:
                outcome = self._create_context(index, operation)
                if outcome is None:
                    unsettled.append((index, operation))
                else:
                    outcomes.append(outcome)
            elif operation.is_context_level:
                outcomes.append(self._set_default_compatibility(index, operation))
            else:
                key = (operation.context, operation.subject)
                chains.setdefault(key, []).append((index, planned))

        if chains:
            previous_modes = self._prepare_import_mode(chains.values())
            try:
                workers = max(1, min(self.options.max_workers, len(chains)))
                with ThreadPoolExecutor(max_workers=workers) as pool:
                    for chain_outcomes in pool.map(self._run_chain, chains.values()):
                        outcomes.extend(chain_outcomes)
            finally:
                self._restore_modes(previous_modes)

        for index, operation in unsettled:
            outcomes.append(self._settle_context(index, operation, outcomes))

        outcomes.sort(key=lambda outcome: outcome.index)
        cancelled = [o.index for o in outcomes if o.status == OutcomeStatus.CANCELLED]

        report = MigrationReport(
            mode=self.mode,
            outcomes=outcomes,
            cancelled=bool(cancelled),
            cut_point=min(cancelled) if cancelled else None,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
        )
        self._log_summary(report)
        return report

    def _log_summary(self, report: MigrationReport) -> None:
        counts = report.counts
        logger.info(
            "Execution finished: "
            + ", ".join(f"{status}={count}" for status, count in counts.items() if count)
        )
        for failure in report.failures:
            logger.error(f"  #{failure.index} {failure.operation.describe()}: {failure.error}")
        if report.cancelled:
            logger.warning(f"Run cancelled; first operation not run is #{report.cut_point}")

    def _create_context(
        self, index: int, operation: MigrationOperation
    ) -> Optional[OperationOutcome]:
        """Outcome of a CreateContext, or None when it is settled after the chains.

        Contexts materialize with their first registered subject, so a live
        run can only tell whether the context exists once its subjects ran.
        """
        if self.cancel_event.is_set():
            return OperationOutcome(index, operation, OutcomeStatus.CANCELLED, "cancelled")

        result = self._call(self.client.list_contexts, "list destination contexts")
        if not result.ok:
            return self._failure(index, operation, result, "could not list contexts")
        if operation.context in result.value:
            return OperationOutcome(
                index, operation, OutcomeStatus.SKIPPED, "context exists",
                attempts=result.attempts,
            )
        if self.dry_run:
            return OperationOutcome(
                index, operation, OutcomeStatus.WOULD_APPLY, "would create context",
                attempts=result.attempts,
            )
        logger.info(f"Context '{operation.context}' will be created by its first registration")
        return None

    def _settle_context(
        self,
        index: int,
        operation: MigrationOperation,
        outcomes: List[OperationOutcome],
    ) -> OperationOutcome:
        """Report a deferred CreateContext from the destination's context list."""
        result = self.retry.run(self.client.list_contexts, "list destination contexts")
        if not result.ok:
            return self._failure(index, operation, result, "could not confirm context creation")
        if operation.context in result.value:
            return OperationOutcome(
                index, operation, OutcomeStatus.APPLIED, "created with first registration",
                attempts=result.attempts,
            )

        related = [
            o for o in outcomes
            if o.operation.context == operation.context
            and o.operation.kind != OperationKind.CREATE_CONTEXT
        ]
        failed = next((o for o in related if o.status == OutcomeStatus.FAILED), None)
        if failed is not None:
            return OperationOutcome(
                index, operation, OutcomeStatus.BLOCKED,
                f"context not created: blocked by failed operation #{failed.index}",
                error_type=failed.error_type, error=failed.error,
            )
        if any(o.status == OutcomeStatus.CANCELLED for o in related):
            return OperationOutcome(
                index, operation, OutcomeStatus.CANCELLED,
                "cancelled before the context was created",
            )
        return OperationOutcome(
            index, operation, OutcomeStatus.FAILED, "context not created",
            error=f"context '{operation.context}' is missing after execution",
        )

    def _set_default_compatibility(
        self, index: int, operation: MigrationOperation
    ) -> OperationOutcome:
        if self.cancel_event.is_set():
            return OperationOutcome(index, operation, OutcomeStatus.CANCELLED, "cancelled")

        current = self._call(
            lambda: self.client.get_default_compatibility(operation.context),
            f"read default compatibility of '{operation.context}'",
        )
        if not current.ok:
            return self._failure(index, operation, current, "could not read default compatibility")
        if current.value == operation.mode:
            return OperationOutcome(
                index, operation, OutcomeStatus.SKIPPED, f"already {operation.mode.value}",
                attempts=current.attempts,
            )
        if self.dry_run:
            return OperationOutcome(
                index, operation, OutcomeStatus.WOULD_APPLY,
                f"would set default compatibility to {operation.mode.value}",
                attempts=current.attempts,
            )

        result = self._call(
            lambda: self.client.set_default_compatibility(operation.mode, operation.context),
            operation.describe(),
        )
        if not result.ok:
            return self._failure(index, operation, result, "set default compatibility failed")
        return OperationOutcome(
            index, operation, OutcomeStatus.APPLIED,
            f"default compatibility set to {operation.mode.value}", attempts=result.attempts,
        )

    def _prepare_import_mode(
        self, chains: Iterable[List[Tuple[int, PlannedOperation]]]
    ) -> Dict[str, RegistryMode]:
        """Make sure contexts receiving preserved IDs are in IMPORT mode.

        Returns the modes to restore once the chains finish. Contexts that
        cannot be used are recorded in ``self.mode_errors``.
        """
        self.mode_errors = {}
        if not self.options.preserve_ids:
            return {}

        contexts = sorted({
            planned.operation.context
            for chain in chains
            for _, planned in chain
            if planned.operation.kind == OperationKind.REGISTER_SCHEMA
        })
        previous_modes: Dict[str, RegistryMode] = {}

        for context in contexts:
            read = self._call(lambda: self.client.get_mode(context), f"read mode of '{context}'")
            if not read.ok:
                self.mode_errors[context] = f"could not read mode of '{context}': {read.error}"
                continue
            if read.value == RegistryMode.IMPORT:
                continue
            if not self.options.manage_import_mode:
                self.mode_errors[context] = (
                    f"context '{context}' is in {read.value.value} mode; "
                    f"preserving schema IDs requires IMPORT mode"
                )
                continue
            if self.dry_run:
                logger.info(f"Would switch '{context}' from {read.value.value} to IMPORT mode")
                continue

            switched = self._call(
                lambda: self.client.set_mode(RegistryMode.IMPORT, context),
                f"switch '{context}' to IMPORT mode",
            )
            if not switched.ok:
                self.mode_errors[context] = (
                    f"could not switch '{context}' to IMPORT mode: {switched.error}"
                )
                continue
            previous_modes[context] = read.value
            logger.info(f"Switched '{context}' from {read.value.value} to IMPORT mode")

        return previous_modes

    def _restore_modes(self, previous_modes: Dict[str, RegistryMode]) -> None:
        # Not cancellable: a switched context must always be put back
        for context, mode in previous_modes.items():
            result = self.retry.run(
                lambda: self.client.set_mode(mode, context),
                f"restore '{context}' to {mode.value} mode",
            )
            if result.ok:
                logger.info(f"Restored '{context}' to {mode.value} mode")
            else:
                logger.error(
                    f"Could not restore '{context}' to {mode.value} mode: {result.error}"
                )

    def _read_subject(self, context: str, subject: str) -> Tuple[Optional[_SubjectState], AttemptResult]:
        """Fresh read of one destination subject."""
        def read():
            numbers = sorted(self.client.list_versions(subject, context))
            versions = [self.client.get_schema(subject, number, context) for number in numbers]
            compatibility = self.client.get_compatibility(subject, context) if numbers else None
            return _SubjectState(versions=versions, compatibility=compatibility)

        result = self._call(read, f"read destination {context}:{subject}")
        return (result.value if result.ok else None), result

    def _run_chain(self, chain: List[Tuple[int, PlannedOperation]]) -> List[OperationOutcome]:
        """Run one subject's operations strictly in order."""
        outcomes: List[OperationOutcome] = []
        state: Optional[_SubjectState] = None
        blocked_by: Optional[int] = None
        pending: List[MigrationOperation] = []

        for index, planned in chain:
            operation = planned.operation

            if blocked_by is not None:
                outcomes.append(OperationOutcome(
                    index, operation, OutcomeStatus.BLOCKED,
                    f"blocked by failed operation #{blocked_by}",
                ))
                continue

            if self.cancel_event.is_set():
                outcomes.append(OperationOutcome(index, operation, OutcomeStatus.CANCELLED, "cancelled"))
                continue

            if state is None:
                state, read = self._read_subject(operation.context, operation.subject)
                if state is None:
                    outcome = self._failure(index, operation, read, "could not read destination subject")
                    outcomes.append(outcome)
                    if outcome.status == OutcomeStatus.FAILED:
                        blocked_by = index
                    continue

            outcome = self._dispatch(index, planned, state, pending)
            outcomes.append(outcome)
            if outcome.status == OutcomeStatus.FAILED:
                blocked_by = index

        return outcomes

    def _dispatch(
        self,
        index: int,
        planned: PlannedOperation,
        state: _SubjectState,
        pending: List[MigrationOperation],
    ) -> OperationOutcome:
        operation = planned.operation
        if operation.kind == OperationKind.NOOP:
            return OperationOutcome(index, operation, OutcomeStatus.SKIPPED, operation.reason or "")
        if operation.kind == OperationKind.SET_COMPATIBILITY:
            return self._set_compatibility(index, operation, state)
        if operation.kind == OperationKind.REGISTER_SCHEMA:
            return self._register(index, planned, state, pending)
        raise ValueError(f"Unknown operation kind: {operation.kind}")

    def _set_compatibility(
        self, index: int, operation: MigrationOperation, state: _SubjectState
    ) -> OperationOutcome:
        if state.compatibility == operation.mode:
            return OperationOutcome(
                index, operation, OutcomeStatus.SKIPPED, f"already {operation.mode.value}"
            )
        if self.dry_run:
            return OperationOutcome(
                index, operation, OutcomeStatus.WOULD_APPLY,
                f"would set compatibility to {operation.mode.value}",
            )

        result = self._call(
            lambda: self.client.set_compatibility(operation.subject, operation.mode, operation.context),
            operation.describe(),
        )
        if not result.ok:
            return self._failure(index, operation, result, "set compatibility failed")

        state.compatibility = operation.mode
        return OperationOutcome(
            index, operation, OutcomeStatus.APPLIED,
            f"compatibility set to {operation.mode.value}", attempts=result.attempts,
        )

    def _register(
        self,
        index: int,
        planned: PlannedOperation,
        state: _SubjectState,
        pending: List[MigrationOperation],
    ) -> OperationOutcome:
        operation = planned.operation

        present = next((v for v in state.versions if schemas_equivalent(operation, v)), None)
        if present is not None:
            return OperationOutcome(
                index, operation, OutcomeStatus.SKIPPED,
                f"already present as v{present.version}", schema_id=present.schema_id,
            )
        if any(schemas_equivalent(operation, other) for other in pending):
            return OperationOutcome(
                index, operation, OutcomeStatus.SKIPPED, "already registered earlier in this run"
            )

        if planned.risk == RiskClass.CONFLICT:
            error = ConflictError(planned.justification or "version slot conflict")
            return OperationOutcome(
                index, operation, OutcomeStatus.FAILED, "conflict not auto-resolved",
                error_type=type(error).__name__, error=str(error),
            )

        if self.options.preserve_ids and operation.context in self.mode_errors:
            error = ImportModeRequiredError(self.mode_errors[operation.context])
            return OperationOutcome(
                index, operation, OutcomeStatus.FAILED, "schema ID cannot be preserved",
                error_type=type(error).__name__, error=str(error),
            )

        next_version = state.latest_version + len(pending) + 1
        drift = operation.expected_version is not None and next_version != operation.expected_version

        if self.dry_run:
            return self._rehearse_register(index, operation, state, pending, next_version, drift)

        schema_id = operation.source_schema_id if self.options.preserve_ids else None
        result = self._call(
            lambda: self.client.register_schema(
                operation.subject,
                operation.schema,
                operation.schema_type,
                operation.references,
                operation.context,
                schema_id=schema_id,
            ),
            operation.describe(),
        )
        if not result.ok:
            return self._failure(index, operation, result, "registration failed")

        state.versions.append(SchemaVersion(
            subject=operation.subject,
            context=operation.context,
            version=next_version,
            schema_id=result.value,
            schema=operation.schema,
            schema_type=operation.schema_type,
            references=operation.references,
        ))
        return OperationOutcome(
            index, operation, OutcomeStatus.APPLIED,
            f"registered with ID {result.value}",
            schema_id=result.value, attempts=result.attempts, drift=drift,
        )

    def _rehearse_register(
        self,
        index: int,
        operation: MigrationOperation,
        state: _SubjectState,
        pending: List[MigrationOperation],
        next_version: int,
        drift: bool,
    ) -> OperationOutcome:
        attempts = 0
        if state.versions and not pending:
            result = self._call(
                lambda: self.client.check_compatibility(
                    operation.subject,
                    operation.schema,
                    operation.context,
                    operation.schema_type,
                    operation.references,
                ),
                f"check compatibility of {operation.context}:{operation.subject}",
            )
            if not result.ok:
                return self._failure(index, operation, result, "compatibility check failed")
            attempts = result.attempts
            if not result.value:
                error = CompatibilityRejectedError(
                    f"destination would reject {operation.context}:{operation.subject} "
                    f"v{operation.source_version} as incompatible"
                )
                return OperationOutcome(
                    index, operation, OutcomeStatus.FAILED, "predicted rejection",
                    error_type=type(error).__name__, error=str(error), attempts=attempts,
                )

        pending.append(operation)
        detail = f"would register as v{next_version}"
        if drift:
            detail += f" (planned as v{operation.expected_version}; destination changed since planning)"
        return OperationOutcome(
            index, operation, OutcomeStatus.WOULD_APPLY, detail, attempts=attempts, drift=drift
        )


def execute_plan(
    plan: MigrationPlan,
    client: RegistryClient,
    mode: ExecutionMode = ExecutionMode.DRY_RUN,
    options: Optional[ExecutorOptions] = None,
    cancel_event: Optional[threading.Event] = None,
) -> MigrationReport:
    """Execute a plan against a destination registry.

    Args:
        plan: Plan to execute
        client: Destination registry
        mode: DRY_RUN (no mutations) or LIVE
        options: Worker, retry and ID preservation settings
        cancel_event: Run-scoped cancellation signal

    Returns:
        MigrationReport with one outcome per planned operation
    """
    return PlanExecutor(client, mode, options, cancel_event).execute(plan)
