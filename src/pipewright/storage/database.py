"""Database operations for pipewright.

This module provides SQLite-based persistence for runs and their node
records. Uses WAL mode for concurrency and JSON serialization for complex
fields (trigger, plan, variables).
"""

import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from pipewright.core.constants import NodeKind, NodeStatus, RunOutcome
from pipewright.core.exceptions import StorageError
from pipewright.core.models import Approval, NodeRecord, RunMetadata, Trigger


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_run(row: sqlite3.Row) -> RunMetadata:
    return RunMetadata(
        id=row["id"],
        pipeline=row["pipeline"],
        trigger=Trigger.from_dict(json.loads(row["trigger"])),
        outcome=RunOutcome(row["outcome"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        definition_path=Path(row["definition_path"]) if row["definition_path"] else None,
        started_at=_from_iso(row["started_at"]),
        completed_at=_from_iso(row["completed_at"]),
        canceled=bool(row["canceled"]),
        retry_of=row["retry_of"],
        plan=json.loads(row["plan"]),
        variables=json.loads(row["variables"]),
        run_dir=Path(row["run_dir"]),
        logs_dir=Path(row["logs_dir"]),
        audit_dir=Path(row["audit_dir"]),
    )


def _row_to_approval(row: sqlite3.Row) -> Approval:
    return Approval(
        run_id=row["run_id"],
        node_id=row["node_id"],
        approved=bool(row["approved"]),
        approver=row["approver"],
        comment=row["comment"],
        decided_at=datetime.fromisoformat(row["decided_at"]),
    )


def _row_to_node(row: sqlite3.Row) -> NodeRecord:
    return NodeRecord(
        node_id=row["node_id"],
        run_id=row["run_id"],
        kind=NodeKind(row["kind"]),
        name=row["name"],
        status=NodeStatus(row["status"]),
        parent_id=row["parent_id"],
        started_at=_from_iso(row["started_at"]),
        completed_at=_from_iso(row["completed_at"]),
        exit_code=row["exit_code"],
        error_code=row["error_code"],
        error_message=row["error_message"],
        log_path=Path(row["log_path"]) if row["log_path"] else None,
        attempts=row["attempts"],
        issues=row["issues"],
        reused=bool(row["reused"]),
        required=bool(row["required"]),
    )


class Database:
    """SQLite database manager for pipewright.

    Manages runs and per-run node records. Uses WAL (Write-Ahead Logging)
    mode so `runs status` can read while a run is writing.
    """

    def __init__(self, db_path: Path):
        """Initialize database connection.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create database connection.

        Returns:
            SQLite connection with row factory
        """
        if self._conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
        return self._conn

    def init_db(self) -> None:
        """Initialize database schema using migrations.

        Raises:
            StorageError: If migration fails
        """
        from pipewright.storage.migrations.runner import default_runner

        try:
            default_runner().migrate(self._get_connection())
        except Exception as e:
            raise StorageError(f"Failed to initialize database: {e}") from e

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def save_run(self, run: RunMetadata) -> None:
        """Save or update run metadata.

        Args:
            run: RunMetadata object to persist

        Raises:
            StorageError: If save operation fails
        """
        try:
            conn = self._get_connection()
            conn.execute("""
                INSERT INTO runs (
                    id, pipeline, definition_path, trigger, outcome, canceled,
                    retry_of, plan, variables, created_at, started_at,
                    completed_at, run_dir, logs_dir, audit_dir
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    outcome = excluded.outcome,
                    canceled = excluded.canceled,
                    plan = excluded.plan,
                    variables = excluded.variables,
                    started_at = excluded.started_at,
                    completed_at = excluded.completed_at
            """, (
                run.id,
                run.pipeline,
                str(run.definition_path) if run.definition_path else None,
                json.dumps(run.trigger.to_dict()),
                run.outcome.value,
                int(run.canceled),
                run.retry_of,
                json.dumps(run.plan),
                json.dumps(run.variables),
                run.created_at.isoformat(),
                _iso(run.started_at),
                _iso(run.completed_at),
                str(run.run_dir),
                str(run.logs_dir),
                str(run.audit_dir),
            ))
            conn.commit()

        except (sqlite3.Error, TypeError) as e:
            raise StorageError(f"Failed to save run {run.id}: {e}") from e

    def get_run(self, run_id: str) -> Optional[RunMetadata]:
        """Retrieve run metadata by ID.

        Args:
            run_id: Run identifier

        Returns:
            RunMetadata object if found, None otherwise

        Raises:
            StorageError: If retrieval fails
        """
        try:
            row = self._get_connection().execute(
                "SELECT * FROM runs WHERE id = ?", (run_id,)
            ).fetchone()
            return _row_to_run(row) if row is not None else None

        except (sqlite3.Error, ValueError, KeyError) as e:
            raise StorageError(f"Failed to retrieve run {run_id}: {e}") from e

    def resolve_run_id(self, prefix: str) -> str:
        """Expand a unique run ID prefix to the full ID.

        Raises:
            StorageError: If no run or more than one run matches
        """
        try:
            rows = self._get_connection().execute(
                "SELECT id FROM runs WHERE id LIKE ? ESCAPE '\\' LIMIT 2",
                (prefix.replace("%", "\\%").replace("_", "\\_") + "%",),
            ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to look up run {prefix}: {e}") from e

        if not rows:
            raise StorageError(f"No run matches '{prefix}'")
        if len(rows) > 1:
            raise StorageError(f"Run ID prefix '{prefix}' is ambiguous")
        return rows[0]["id"]

    def list_runs(
        self,
        limit: int = 100,
        offset: int = 0,
        outcome_filter: Optional[RunOutcome] = None,
        pipeline: Optional[str] = None,
    ) -> list[RunMetadata]:
        """List runs with optional filtering.

        Args:
            limit: Maximum number of runs to return
            offset: Number of runs to skip
            outcome_filter: Filter by run outcome
            pipeline: Filter by pipeline name

        Returns:
            List of RunMetadata objects ordered by created_at DESC

        Raises:
            StorageError: If query fails
        """
        query = "SELECT * FROM runs"
        clauses: list[str] = []
        params: list = []

        if outcome_filter is not None:
            clauses.append("outcome = ?")
            params.append(outcome_filter.value)
        if pipeline is not None:
            clauses.append("pipeline = ?")
            params.append(pipeline)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)

        query += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        try:
            rows = self._get_connection().execute(query, params).fetchall()
            return [_row_to_run(row) for row in rows]

        except (sqlite3.Error, ValueError) as e:
            raise StorageError(f"Failed to list runs: {e}") from e

    def runs_older_than(self, cutoff: datetime) -> list[RunMetadata]:
        """Finished runs created before `cutoff`, oldest first."""
        try:
            rows = self._get_connection().execute(
                "SELECT * FROM runs WHERE created_at < ? AND outcome NOT IN (?, ?) "
                "ORDER BY created_at",
                (cutoff.isoformat(), RunOutcome.PENDING.value, RunOutcome.RUNNING.value),
            ).fetchall()
            return [_row_to_run(row) for row in rows]

        except (sqlite3.Error, ValueError) as e:
            raise StorageError(f"Failed to query runs older than {cutoff}: {e}") from e

    def delete_run(self, run_id: str) -> bool:
        """Delete run and all associated node records.

        Args:
            run_id: Run identifier

        Returns:
            True if run was deleted, False if not found

        Raises:
            StorageError: If delete operation fails
        """
        try:
            conn = self._get_connection()
            cursor = conn.execute("DELETE FROM runs WHERE id = ?", (run_id,))
            conn.commit()
            return cursor.rowcount > 0

        except sqlite3.Error as e:
            raise StorageError(f"Failed to delete run {run_id}: {e}") from e

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def save_nodes(self, records: Iterable[NodeRecord]) -> None:
        """Save or update node records in one transaction.

        Raises:
            StorageError: If save operation fails
        """
        rows = [
            (
                record.run_id,
                record.node_id,
                record.kind.value,
                record.name,
                record.parent_id,
                record.status.value,
                _iso(record.started_at),
                _iso(record.completed_at),
                record.exit_code,
                record.error_code,
                record.error_message,
                str(record.log_path) if record.log_path else None,
                record.attempts,
                record.issues,
                int(record.reused),
                int(record.required),
            )
            for record in records
        ]
        conn = self._get_connection()
        try:
            conn.executemany("""
                INSERT INTO run_nodes (
                    run_id, node_id, kind, name, parent_id, status,
                    started_at, completed_at, exit_code, error_code,
                    error_message, log_path, attempts, issues, reused, required
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(run_id, node_id) DO UPDATE SET
                    status = excluded.status,
                    started_at = excluded.started_at,
                    completed_at = excluded.completed_at,
                    exit_code = excluded.exit_code,
                    error_code = excluded.error_code,
                    error_message = excluded.error_message,
                    log_path = excluded.log_path,
                    attempts = excluded.attempts,
                    issues = excluded.issues,
                    reused = excluded.reused
            """, rows)
            conn.commit()

        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(f"Failed to save node records: {e}") from e

    def save_node(self, record: NodeRecord) -> None:
        """Save or update one node record."""
        self.save_nodes([record])

    def get_nodes(self, run_id: str) -> list[NodeRecord]:
        """Get every node record of a run in plan order.

        Raises:
            StorageError: If query fails
        """
        try:
            rows = self._get_connection().execute(
                "SELECT * FROM run_nodes WHERE run_id = ? ORDER BY rowid", (run_id,)
            ).fetchall()
            return [_row_to_node(row) for row in rows]

        except (sqlite3.Error, ValueError) as e:
            raise StorageError(f"Failed to get nodes for run {run_id}: {e}") from e

    def get_node(self, run_id: str, node_id: str) -> Optional[NodeRecord]:
        """Get one node record, or None if the run has no such node."""
        try:
            row = self._get_connection().execute(
                "SELECT * FROM run_nodes WHERE run_id = ? AND node_id = ?",
                (run_id, node_id),
            ).fetchone()
            return _row_to_node(row) if row is not None else None

        except (sqlite3.Error, ValueError) as e:
            raise StorageError(f"Failed to get node {node_id} of run {run_id}: {e}") from e

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------

    def save_approval(self, approval: Approval) -> None:
        """Record the decision on an approval job.

        Raises:
            StorageError: If the job was already decided or the insert fails
        """
        conn = self._get_connection()
        try:
            conn.execute("""
                INSERT INTO approvals (
                    run_id, node_id, approved, approver, comment, decided_at
                ) VALUES (?, ?, ?, ?, ?, ?)
            """, (
                approval.run_id,
                approval.node_id,
                int(approval.approved),
                approval.approver,
                approval.comment,
                approval.decided_at.isoformat(),
            ))
            conn.commit()

        except sqlite3.IntegrityError as e:
            conn.rollback()
            raise StorageError(
                f"Approval {approval.node_id} of run {approval.run_id} "
                f"is already decided or the run does not exist"
            ) from e
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(f"Failed to save approval {approval.node_id}: {e}") from e

    def get_approval(self, run_id: str, node_id: str) -> Optional[Approval]:
        """Get the decision on an approval job, or None while it is undecided."""
        try:
            row = self._get_connection().execute(
                "SELECT * FROM approvals WHERE run_id = ? AND node_id = ?",
                (run_id, node_id),
            ).fetchone()
            return _row_to_approval(row) if row is not None else None

        except (sqlite3.Error, ValueError) as e:
            raise StorageError(f"Failed to get approval {node_id} of run {run_id}: {e}") from e

    def close(self) -> None:
        """Close database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
