"""Migration runner.

Wires capture, archive, planning and execution together for the three
workflows a CLI exposes:
- export: capture a source registry into an archive file or directory
- import: replay an archive into a destination registry
- migrate: synchronize one registry into another directly

Example usage:
    source = RestRegistryClient("http://source:8081")
    destination = RestRegistryClient("http://destination:8081")

    # Always preview first
    capture, plan, report = migrate(source, destination, mode=ExecutionMode.DRY_RUN)
    print(plan.describe())

    # Then apply
    capture, plan, report = migrate(source, destination, mode=ExecutionMode.LIVE)
"""

import dataclasses
import threading
from typing import Optional, Tuple

from schema_sync.archive import (
    read_archive,
    read_archive_directory,
    write_archive,
    write_archive_directory,
)
from schema_sync.config import executor_options_from_env
from schema_sync.error_handler import RetryPolicy
from schema_sync.executor import (
    ExecutionMode,
    ExecutorOptions,
    MigrationReport,
    execute_plan,
)
from schema_sync.logging_config import create_logger, log_exception
from schema_sync.models import CaptureResult, MigrationPlan, MigrationSnapshot
from schema_sync.plan import PlanOptions, compile_plan
from schema_sync.registry_client import RegistryClient
from schema_sync.run_history import MigrationRunTracker
from schema_sync.snapshot import (
    SnapshotScope,
    build_snapshot,
    capture_destination_state,
    target_subjects,
)

logger = create_logger(__name__)


def _single_target(path: Optional[str], directory: Optional[str]) -> None:
    if bool(path) == bool(directory):
        raise ValueError("Exactly one of path or directory must be given")


def export_snapshot(
    client: RegistryClient,
    scope: Optional[SnapshotScope] = None,
    path: Optional[str] = None,
    directory: Optional[str] = None,
    retry: Optional[RetryPolicy] = None,
    cancel_event: Optional[threading.Event] = None,
    strict: bool = False,
) -> CaptureResult:
    """Capture ``client`` and write the snapshot as an archive.

    Args:
        client: Source registry
        scope: What to capture
        path: Archive file to write
        directory: Directory for one archive per subject
        retry: Retry policy for reads
        cancel_event: Run-scoped cancellation signal
        strict: Fail instead of exporting a snapshot with gaps

    Returns:
        CaptureResult (gaps are reported, not written)
    """
    _single_target(path, directory)

    try:
        capture = build_snapshot(client, scope, retry, cancel_event, strict=strict)
        if path:
            write_archive(capture.snapshot, path)
        else:
            write_archive_directory(capture.snapshot, directory)
    except Exception as e:
        log_exception(logger, e, context=f"export from {client.name}")
        raise

    if not capture.complete:
        logger.warning(f"Export is incomplete: {len(capture.gaps)} capture gaps")
    return capture


def _synchronize(
    snapshot: MigrationSnapshot,
    destination: RegistryClient,
    plan_options: Optional[PlanOptions],
    mode: ExecutionMode,
    executor_options: Optional[ExecutorOptions],
    cancel_event: Optional[threading.Event],
    tracker: Optional[MigrationRunTracker],
    run_kind: str,
) -> Tuple[MigrationPlan, MigrationReport]:
    """Read destination state fresh, compile, execute and record."""
    plan_options = plan_options or PlanOptions()
    executor_options = executor_options or executor_options_from_env()
    if plan_options.preserve_ids and not executor_options.preserve_ids:
        executor_options = dataclasses.replace(executor_options, preserve_ids=True)

    destination_state = capture_destination_state(
        destination,
        target_subjects(snapshot, plan_options.target_context),
        retry=executor_options.retry_policy(),
        cancel_event=cancel_event,
    )
    plan = compile_plan(snapshot, destination_state, plan_options)
    report = execute_plan(plan, destination, mode, executor_options, cancel_event)

    if tracker is not None:
        tracker.record_run(
            plan,
            report,
            run_kind=run_kind,
            source=snapshot.source,
            destination=destination.name,
        )

    counts = report.counts
    logger.info(
        f"{run_kind.capitalize()} {mode.value} finished: "
        f"{counts['applied']} applied, {counts['would_apply']} would apply, "
        f"{counts['skipped']} skipped, {counts['failed']} failed, "
        f"{counts['blocked']} blocked, {counts['cancelled']} cancelled"
    )
    return plan, report


def import_archive(
    client: RegistryClient,
    path: Optional[str] = None,
    directory: Optional[str] = None,
    plan_options: Optional[PlanOptions] = None,
    mode: ExecutionMode = ExecutionMode.DRY_RUN,
    executor_options: Optional[ExecutorOptions] = None,
    cancel_event: Optional[threading.Event] = None,
    tracker: Optional[MigrationRunTracker] = None,
) -> Tuple[MigrationPlan, MigrationReport]:
    """Replay an archive into a destination registry.

    Args:
        client: Destination registry
        path: Archive file
        directory: Directory of per-subject archives
        plan_options: Conflict policy, compatibility and context options
        mode: DRY_RUN or LIVE
        executor_options: Worker and retry settings
        cancel_event: Run-scoped cancellation signal
        tracker: Optional run history

    Returns:
        Tuple of (plan, report)
    """
    _single_target(path, directory)

    try:
        snapshot = read_archive(path) if path else read_archive_directory(directory)
        return _synchronize(
            snapshot, client, plan_options, mode, executor_options,
            cancel_event, tracker, "import",
        )
    except Exception as e:
        log_exception(logger, e, context=f"import {path or directory} into {client.name}")
        raise


def migrate(
    source: RegistryClient,
    destination: RegistryClient,
    scope: Optional[SnapshotScope] = None,
    plan_options: Optional[PlanOptions] = None,
    mode: ExecutionMode = ExecutionMode.DRY_RUN,
    executor_options: Optional[ExecutorOptions] = None,
    cancel_event: Optional[threading.Event] = None,
    tracker: Optional[MigrationRunTracker] = None,
    strict: bool = False,
) -> Tuple[CaptureResult, MigrationPlan, MigrationReport]:
    """Synchronize ``source`` into ``destination``.

    Versions that could not be captured are left out of the plan and
    reported as gaps on the returned CaptureResult.

    Returns:
        Tuple of (capture, plan, report)
    """
    executor_options = executor_options or executor_options_from_env()

    try:
        capture = build_snapshot(
            source, scope, executor_options.retry_policy(), cancel_event, strict=strict
        )
        plan, report = _synchronize(
            capture.snapshot, destination, plan_options, mode, executor_options,
            cancel_event, tracker, "migrate",
        )
    except Exception as e:
        log_exception(logger, e, context=f"migrate {source.name} -> {destination.name}")
        raise

    if not capture.complete:
        logger.warning(
            f"{len(capture.gaps)} source versions could not be captured and were not migrated"
        )
    return capture, plan, report
