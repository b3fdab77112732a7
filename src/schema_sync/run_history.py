"""Run history for migrations.

Each executed plan is stored in DuckDB for audit:
- One row per run with mode, plan size, outcome counts and cut point
- One row per failed operation with its cause

History is write-only from the engine's point of view: planning and
execution never read it back.
"""

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

import duckdb

from schema_sync.executor import MigrationReport
from schema_sync.logging_config import create_logger
from schema_sync.models import MigrationPlan

logger = create_logger(__name__)


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.replace(tzinfo=None) - value.utcoffset()


class MigrationRunTracker:
    """Store migration runs and their failures in DuckDB.

    Attributes:
        db_path: Path to DuckDB database (":memory:" allowed)
        con: DuckDB connection
    """

    def __init__(self, db_path: str = ":memory:"):
        """Initialize MigrationRunTracker.

        Args:
            db_path: Path to DuckDB database
        """
        self.db_path = db_path
        self.con = None
        self._init_tracking_tables()

    def connect(self):
        """Establish database connection."""
        if not self.con:
            self.con = duckdb.connect(self.db_path)
            logger.debug(f"Connected to database: {self.db_path}")

    def disconnect(self):
        """Close database connection."""
        if self.con:
            self.con.close()
            self.con = None

    def _init_tracking_tables(self):
        """Create history tables if they don't exist."""
        self.connect()

        try:
            self.con.execute("CREATE SCHEMA IF NOT EXISTS _schema_sync")

            self.con.execute("""
                CREATE TABLE IF NOT EXISTS _schema_sync.migration_runs (
                    run_id VARCHAR PRIMARY KEY,
                    run_kind VARCHAR,
                    mode VARCHAR,
                    source VARCHAR,
                    destination VARCHAR,
                    start_time TIMESTAMP,
                    end_time TIMESTAMP,
                    duration_seconds DOUBLE,
                    planned_operations INTEGER,
                    applied INTEGER,
                    would_apply INTEGER,
                    skipped INTEGER,
                    failed INTEGER,
                    blocked INTEGER,
                    cancelled BOOLEAN,
                    cut_point INTEGER,
                    risk_counts JSON
                )
            """)

            self.con.execute("""
                CREATE TABLE IF NOT EXISTS _schema_sync.operation_failures (
                    failure_id VARCHAR PRIMARY KEY,
                    run_id VARCHAR,
                    operation_index INTEGER,
                    operation VARCHAR,
                    context VARCHAR,
                    subject VARCHAR,
                    error_type VARCHAR,
                    error_message TEXT,
                    attempts INTEGER,
                    FOREIGN KEY (run_id) REFERENCES _schema_sync.migration_runs(run_id)
                )
            """)

            logger.debug("Initialized migration history tables")

        except Exception as e:
            logger.error(f"Failed to initialize history tables: {e}")
            raise

    def record_run(
        self,
        plan: MigrationPlan,
        report: MigrationReport,
        run_kind: str = "migrate",
        source: Optional[str] = None,
        destination: Optional[str] = None,
    ) -> str:
        """Store one executed plan and its failures.

        Args:
            plan: The executed plan
            report: Report returned by the executor
            run_kind: migrate or import
            source: Source registry or archive path
            destination: Destination registry

        Returns:
            Run ID
        """
        self.connect()

        run_id = str(uuid.uuid4())
        counts = report.counts
        start_time = _naive_utc(report.started_at)
        end_time = _naive_utc(report.finished_at)
        duration = (
            (end_time - start_time).total_seconds() if start_time and end_time else None
        )

        self.con.execute("""
            INSERT INTO _schema_sync.migration_runs (
                run_id, run_kind, mode, source, destination,
                start_time, end_time, duration_seconds, planned_operations,
                applied, would_apply, skipped, failed, blocked,
                cancelled, cut_point, risk_counts
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [
            run_id,
            run_kind,
            report.mode.value,
            source,
            destination,
            start_time,
            end_time,
            duration,
            len(plan),
            counts["applied"],
            counts["would_apply"],
            counts["skipped"],
            counts["failed"],
            counts["blocked"],
            report.cancelled,
            report.cut_point,
            json.dumps(plan.risk_counts()),
        ])

        for failure in report.failures:
            self.con.execute("""
                INSERT INTO _schema_sync.operation_failures (
                    failure_id, run_id, operation_index, operation, context,
                    subject, error_type, error_message, attempts
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, [
                str(uuid.uuid4()),
                run_id,
                failure.index,
                failure.operation.describe(),
                failure.operation.context,
                failure.operation.subject,
                failure.error_type,
                failure.error,
                failure.attempts,
            ])

        logger.info(
            f"Recorded {run_kind} run {run_id}: {counts['applied']} applied, "
            f"{counts['failed']} failed"
        )
        return run_id

    def get_run_summary(self, run_id: str) -> Optional[Dict[str, Any]]:
        """Get summary for a recorded run.

        Args:
            run_id: Run ID

        Returns:
            Dictionary with run summary, or None if unknown
        """
        self.connect()

        result = self.con.execute("""
            SELECT
                run_id,
                run_kind,
                mode,
                source,
                destination,
                planned_operations,
                applied,
                skipped,
                failed,
                cancelled,
                cut_point
            FROM _schema_sync.migration_runs
            WHERE run_id = ?
        """, [run_id]).fetchone()

        if not result:
            return None

        return {
            "run_id": result[0],
            "run_kind": result[1],
            "mode": result[2],
            "source": result[3],
            "destination": result[4],
            "planned_operations": result[5],
            "applied": result[6],
            "skipped": result[7],
            "failed": result[8],
            "cancelled": result[9],
            "cut_point": result[10],
        }

    def get_failures(self, run_id: str) -> List[Dict[str, Any]]:
        """Failed operations of a run, in plan order."""
        self.connect()

        results = self.con.execute("""
            SELECT operation_index, operation, subject, error_type, error_message
            FROM _schema_sync.operation_failures
            WHERE run_id = ?
            ORDER BY operation_index
        """, [run_id]).fetchall()

        return [
            {
                "index": row[0],
                "operation": row[1],
                "subject": row[2],
                "error_type": row[3],
                "error": row[4],
            }
            for row in results
        ]

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()
        return False
