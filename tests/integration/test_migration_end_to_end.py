"""End-to-end integration tests for registry migration.

Tests the full workflows against in-memory registries:
1. Direct migration from a source registry to a destination
2. Export to an archive file or directory
3. Import of an archive into a destination
4. Partial capture, context remapping and run history
5. Schema ID preservation, context defaults and settings from the environment
"""

import dataclasses
import threading

import pytest

import schema_sync.config as config_module
from schema_sync.exceptions import (
    MalformedArchiveError,
    MigrationCancelledError,
    TransientNetworkError,
)
from schema_sync.executor import ExecutionMode, ExecutorOptions, OutcomeStatus
from schema_sync.migration import export_snapshot, import_archive, migrate
from schema_sync.models import CompatibilityMode, OperationKind, RegistryMode
from schema_sync.plan import ConflictPolicy, PlanOptions
from schema_sync.run_history import MigrationRunTracker
from schema_sync.snapshot import SnapshotScope
from tests.conftest import USER_V1, USER_V2, USER_V3, avro_record


def kinds(plan):
    return [planned.operation.kind for planned in plan]


# ============================================================================
# Direct Migration Tests
# ============================================================================

@pytest.mark.integration
class TestMigrateE2E:
    """End-to-end tests for registry to registry migration."""

    def test_migrate_into_empty_destination(self, user_source, destination_registry, fast_executor_options):
        """Test two versions are planned and applied into an empty registry."""
        capture, plan, report = migrate(
            user_source, destination_registry,
            mode=ExecutionMode.LIVE, executor_options=fast_executor_options,
        )

        assert capture.complete
        assert kinds(plan) == [OperationKind.REGISTER_SCHEMA, OperationKind.REGISTER_SCHEMA]
        assert (report.applied, report.skipped, report.failed) == (2, 0, 0)
        assert [v.schema for v in destination_registry.versions_of("user-value")] == [USER_V1, USER_V2]

    def test_migrate_with_existing_version(self, user_source, destination_registry, fast_executor_options):
        """Test an identical destination v1 is planned as a no-op."""
        destination_registry.seed("user-value", [USER_V1])

        _, plan, report = migrate(
            user_source, destination_registry,
            mode=ExecutionMode.LIVE, executor_options=fast_executor_options,
        )

        assert kinds(plan) == [OperationKind.NOOP, OperationKind.REGISTER_SCHEMA]
        assert plan.operations[0].operation.reason == "already present"
        assert report.applied == 1

    def test_second_migration_changes_nothing(self, user_source, destination_registry, fast_executor_options):
        """Test re-running a migration is a no-op."""
        migrate(user_source, destination_registry, mode=ExecutionMode.LIVE,
                executor_options=fast_executor_options)
        mutations = len(destination_registry.mutations)

        _, plan, report = migrate(
            user_source, destination_registry,
            mode=ExecutionMode.LIVE, executor_options=fast_executor_options,
        )

        assert kinds(plan) == [OperationKind.NOOP, OperationKind.NOOP]
        assert report.applied == 0
        assert len(destination_registry.mutations) == mutations

    def test_dry_run_then_live(self, user_source, destination_registry, fast_executor_options):
        """Test previewing changes nothing and the live run matches the preview."""
        _, dry_plan, dry_report = migrate(
            user_source, destination_registry, executor_options=fast_executor_options
        )
        assert destination_registry.mutations == []
        assert dry_report.counts["would_apply"] == 2

        _, live_plan, live_report = migrate(
            user_source, destination_registry,
            mode=ExecutionMode.LIVE, executor_options=fast_executor_options,
        )

        assert live_plan == dry_plan
        assert live_report.applied == 2

    def test_risky_history_reported(self, source_registry, destination_registry, fast_executor_options):
        """Test a BACKWARD-breaking source history is classified as risky."""
        with_name = avro_record("User", [
            {"name": "id", "type": "int"},
            {"name": "name", "type": "string"},
        ])
        source_registry.seed("user-value", [with_name, USER_V1])

        _, plan, _ = migrate(source_registry, destination_registry,
                             executor_options=fast_executor_options)

        assert plan.risk_counts()["compatibility_risk"] == 1
        assert "'name'" in plan.operations[1].justification

    def test_sync_compatibility_and_contexts(self, source_registry, destination_registry, fast_executor_options):
        """Test modes and non-default contexts are replicated."""
        source_registry.seed("user-value", [USER_V1], compatibility=CompatibilityMode.FULL)
        source_registry.seed("orders-value", [USER_V1, USER_V2], context=".staging")

        _, plan, report = migrate(
            source_registry, destination_registry,
            plan_options=PlanOptions(sync_compatibility=True),
            mode=ExecutionMode.LIVE, executor_options=fast_executor_options,
        )

        assert report.succeeded
        assert OperationKind.CREATE_CONTEXT in kinds(plan)
        assert destination_registry.compatibility[(".", "user-value")] == CompatibilityMode.FULL
        assert len(destination_registry.versions_of("orders-value", ".staging")) == 2

    def test_target_context(self, user_source, destination_registry, fast_executor_options):
        """Test every subject can be landed in one destination context."""
        migrate(
            user_source, destination_registry,
            plan_options=PlanOptions(target_context=".restored"),
            mode=ExecutionMode.LIVE, executor_options=fast_executor_options,
        )

        assert destination_registry.versions_of("user-value") == []
        assert len(destination_registry.versions_of("user-value", ".restored")) == 2

    def test_preserve_ids(self, user_source, destination_registry, fast_executor_options):
        """Test source IDs are kept when requested through plan options."""
        source_ids = [v.schema_id for v in user_source.versions_of("user-value")]
        destination_registry.seed("other-value", [USER_V3])
        options = dataclasses.replace(fast_executor_options, manage_import_mode=True)

        _, _, report = migrate(
            user_source, destination_registry,
            plan_options=PlanOptions(preserve_ids=True),
            mode=ExecutionMode.LIVE, executor_options=options,
        )

        assert report.succeeded
        assert [v.schema_id for v in destination_registry.versions_of("user-value")] == source_ids
        assert destination_registry.modes["."] == RegistryMode.READWRITE

    def test_preserve_ids_without_import_mode(self, user_source, destination_registry,
                                              fast_executor_options):
        """Test preserving IDs fails cleanly when the destination is not in IMPORT mode."""
        _, _, report = migrate(
            user_source, destination_registry,
            plan_options=PlanOptions(preserve_ids=True),
            mode=ExecutionMode.LIVE, executor_options=fast_executor_options,
        )

        assert report.failures[0].error_type == "ImportModeRequiredError"
        assert destination_registry.versions_of("user-value") == []

    def test_options_default_from_environment(self, user_source, destination_registry, monkeypatch):
        """Test runs without explicit options use the SYNC_* settings."""
        monkeypatch.setattr(config_module, "REGISTRY_URL", "http://localhost:8081")
        monkeypatch.setattr(config_module, "REGISTRY_USERNAME", None)
        monkeypatch.setattr(config_module, "REGISTRY_PASSWORD", None)
        monkeypatch.setattr(config_module, "SYNC_MAX_ATTEMPTS", "1")
        monkeypatch.setattr(config_module, "SYNC_MANAGE_IMPORT_MODE", "false")
        monkeypatch.setattr(config_module, "SYNC_LOG_LEVEL", "INFO")
        monkeypatch.setattr(config_module, "SYNC_LOG_DIR", None)
        destination_registry.fail("register_schema", TransientNetworkError("503", status_code=503))

        _, _, report = migrate(user_source, destination_registry, mode=ExecutionMode.LIVE)

        assert [o.status for o in report.outcomes] == [OutcomeStatus.FAILED, OutcomeStatus.BLOCKED]
        assert report.outcomes[0].attempts == 1

    def test_conflict_policies(self, user_source, destination_registry, fast_executor_options):
        """Test conflicts fail by default and can be skipped."""
        legacy = avro_record("User", [
            {"name": "id", "type": "int"},
            {"name": "legacy", "type": "string", "default": "x"},
        ])
        destination_registry.seed("user-value", [legacy])

        _, _, failing = migrate(
            user_source, destination_registry,
            mode=ExecutionMode.LIVE, executor_options=fast_executor_options,
        )
        assert [o.status for o in failing.outcomes] == [OutcomeStatus.FAILED, OutcomeStatus.BLOCKED]

        _, _, skipping = migrate(
            user_source, destination_registry,
            plan_options=PlanOptions(conflict_policy=ConflictPolicy.SKIP_EXISTING),
            mode=ExecutionMode.LIVE, executor_options=fast_executor_options,
        )
        assert [o.status for o in skipping.outcomes] == [OutcomeStatus.SKIPPED, OutcomeStatus.APPLIED]
        assert [v.schema for v in destination_registry.versions_of("user-value")] == [legacy, USER_V2]

    def test_partial_capture(self, source_registry, destination_registry, fast_executor_options):
        """Test an unreadable version is reported and the rest migrate."""
        source_registry.seed("user-value", [USER_V1, USER_V2, USER_V3])
        source_registry.fail(
            "get_schema", TransientNetworkError("reset"), times=3, subject="user-value", version=2
        )

        capture, plan, report = migrate(
            source_registry, destination_registry,
            mode=ExecutionMode.LIVE, executor_options=fast_executor_options,
        )

        assert not capture.complete
        assert [(g.subject, g.version) for g in capture.gaps] == [("user-value", 2)]
        assert [p.operation.source_version for p in plan] == [1, 3]
        assert report.applied == 2
        assert [v.schema for v in destination_registry.versions_of("user-value")] == [USER_V1, USER_V3]

    def test_cancelled_before_start(self, user_source, destination_registry, fast_executor_options):
        """Test a pre-set cancellation event stops the run during capture."""
        event = threading.Event()
        event.set()

        with pytest.raises(MigrationCancelledError):
            migrate(
                user_source, destination_registry,
                mode=ExecutionMode.LIVE, executor_options=fast_executor_options,
                cancel_event=event,
            )

        assert destination_registry.calls == []


# ============================================================================
# Export and Import Tests
# ============================================================================

@pytest.mark.integration
class TestArchiveWorkflowsE2E:
    """End-to-end tests for export followed by import."""

    def test_export_import_file(self, user_source, destination_registry, fast_retry,
                                fast_executor_options, temp_dir):
        """Test a file archive restores the source subjects."""
        path = str(temp_dir / "backup.json")

        capture = export_snapshot(user_source, path=path, retry=fast_retry)
        plan, report = import_archive(
            destination_registry, path=path,
            mode=ExecutionMode.LIVE, executor_options=fast_executor_options,
        )

        assert capture.snapshot.version_count == 2
        assert len(plan) == 2
        assert report.applied == 2
        assert [v.schema for v in destination_registry.versions_of("user-value")] == [USER_V1, USER_V2]

    def test_export_import_directory(self, source_registry, destination_registry, fast_retry,
                                     fast_executor_options, temp_dir):
        """Test a directory archive restores subjects across contexts."""
        source_registry.seed("user-value", [USER_V1, USER_V2])
        source_registry.seed("orders-value", [USER_V3], context=".staging")
        directory = str(temp_dir / "backup")

        export_snapshot(source_registry, directory=directory, retry=fast_retry)
        _, report = import_archive(
            destination_registry, directory=directory,
            mode=ExecutionMode.LIVE, executor_options=fast_executor_options,
        )

        assert report.succeeded
        assert len(destination_registry.versions_of("user-value")) == 2
        assert len(destination_registry.versions_of("orders-value", ".staging")) == 1

    def test_context_defaults_through_directory(self, source_registry, destination_registry,
                                                fast_retry, fast_executor_options, temp_dir):
        """Test a context default survives export and import."""
        source_registry.seed("orders-value", [USER_V3], context=".staging")
        source_registry.defaults[".staging"] = CompatibilityMode.FULL
        directory = str(temp_dir / "backup")

        capture = export_snapshot(source_registry, directory=directory, retry=fast_retry)
        plan, report = import_archive(
            destination_registry, directory=directory,
            plan_options=PlanOptions(sync_compatibility=True),
            mode=ExecutionMode.LIVE, executor_options=fast_executor_options,
        )

        assert capture.snapshot.get_context(".staging").compatibility == CompatibilityMode.FULL
        assert plan.operations[1].operation.describe() == (
            "Set context '.staging' default compatibility to FULL"
        )
        assert report.succeeded
        assert destination_registry.defaults[".staging"] == CompatibilityMode.FULL
        assert ".staging" in destination_registry.list_contexts()

    def test_export_scope(self, source_registry, fast_retry, temp_dir):
        """Test exports honor subject patterns."""
        source_registry.seed("user-value", [USER_V1])
        source_registry.seed("orders-value", [USER_V1])

        capture = export_snapshot(
            source_registry, SnapshotScope(subjects=["user-*"]),
            path=str(temp_dir / "users.json"), retry=fast_retry,
        )

        assert [s.name for s in capture.snapshot.iter_subjects()] == ["user-value"]

    def test_import_dry_run(self, user_source, destination_registry, fast_retry,
                            fast_executor_options, temp_dir):
        """Test importing in dry-run mode registers nothing."""
        path = str(temp_dir / "backup.json")
        export_snapshot(user_source, path=path, retry=fast_retry)

        _, report = import_archive(destination_registry, path=path,
                                   executor_options=fast_executor_options)

        assert report.counts["would_apply"] == 2
        assert destination_registry.mutations == []

    def test_import_malformed_archive(self, destination_registry, temp_dir):
        """Test malformed archives are rejected before planning."""
        path = temp_dir / "broken.json"
        path.write_text("{not json")

        with pytest.raises(MalformedArchiveError):
            import_archive(destination_registry, path=str(path))

        assert destination_registry.calls == []

    def test_exactly_one_target(self, user_source, temp_dir):
        """Test path and directory are mutually exclusive."""
        with pytest.raises(ValueError):
            export_snapshot(user_source)
        with pytest.raises(ValueError):
            export_snapshot(user_source, path=str(temp_dir / "a.json"), directory=str(temp_dir))


# ============================================================================
# Run History Tests
# ============================================================================

@pytest.mark.integration
class TestRunHistoryE2E:
    """End-to-end tests for recording runs."""

    def test_runs_recorded(self, user_source, destination_registry, fast_retry, temp_dir):
        """Test migrate and import runs land in history."""
        path = str(temp_dir / "backup.json")
        options = ExecutorOptions(sleep=lambda _: None)

        with MigrationRunTracker(str(temp_dir / "history.duckdb")) as tracker:
            migrate(user_source, destination_registry, mode=ExecutionMode.LIVE,
                    executor_options=options, tracker=tracker)
            export_snapshot(user_source, path=path, retry=fast_retry)
            import_archive(destination_registry, path=path, mode=ExecutionMode.LIVE,
                           executor_options=options, tracker=tracker)

            rows = tracker.con.execute(
                "SELECT run_kind, applied, skipped FROM _schema_sync.migration_runs "
                "ORDER BY start_time"
            ).fetchall()

        assert sorted(rows) == [("import", 0, 2), ("migrate", 2, 0)]
