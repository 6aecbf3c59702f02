"""Run directory and step log storage for pipewright.

This module manages the file system layout of a run: step logs, the
audit log and per-job workspaces, plus retention pruning of finished
runs.
"""

import logging
import shutil
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from pipewright.core.exceptions import LogNotFoundError, StorageError
from pipewright.storage.database import Database


logger = logging.getLogger(__name__)


class LogStorage:
    """Manages run directories.

    Layout::

        base_dir/
          {run_id}/
            logs/       one file per step
            audit/      JSONL audit log
            work/
              {stage}/{job}/   job workspace
    """

    def __init__(self, base_dir: Path):
        """Initialize log storage.

        Args:
            base_dir: Base directory for all runs (typically {data_dir}/runs/)
        """
        self.base_dir = base_dir

    def run_dir(self, run_id: str) -> Path:
        return self.base_dir / run_id

    def init_run_directories(self, run_id: str) -> tuple[Path, Path, Path]:
        """Create the directory structure for a run.

        Returns:
            Tuple of (run_dir, logs_dir, audit_dir)

        Raises:
            StorageError: If directory creation fails
        """
        run_dir = self.run_dir(run_id)
        logs_dir = run_dir / "logs"
        audit_dir = run_dir / "audit"
        try:
            run_dir.mkdir(parents=True, exist_ok=True)
            logs_dir.mkdir(exist_ok=True)
            audit_dir.mkdir(exist_ok=True)
            (run_dir / "work").mkdir(exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create directories for run {run_id}: {e}") from e
        return run_dir, logs_dir, audit_dir

    def workspace_dir(self, run_id: str, job_node_id: str) -> Path:
        """Workspace directory of a job (`Stage/Job` node ID)."""
        return self.run_dir(run_id) / "work" / job_node_id

    def step_log_path(self, run_id: str, step_node_id: str) -> Path:
        """Log file of a step (`Stage/Job/NN` node ID)."""
        filename = step_node_id.replace("/", "__") + ".log"
        return self.run_dir(run_id) / "logs" / filename

    def read_log(self, path: Optional[Path]) -> str:
        """Read a step log.

        Raises:
            LogNotFoundError: If the step never produced a log
        """
        if path is None or not path.exists():
            raise LogNotFoundError(f"Log not found: {path}")
        try:
            return path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            raise StorageError(f"Failed to read log {path}: {e}") from e

    def delete_run(self, run_id: str) -> bool:
        """Delete the run directory.

        Returns:
            True if the directory was deleted, False if it didn't exist

        Raises:
            StorageError: If deletion fails
        """
        run_dir = self.run_dir(run_id)
        if not run_dir.exists():
            return False
        try:
            shutil.rmtree(run_dir)
            return True
        except OSError as e:
            raise StorageError(f"Failed to delete files of run {run_id}: {e}") from e

    def get_run_size(self, run_id: str) -> int:
        """Total size of the run directory in bytes (0 if missing)."""
        run_dir = self.run_dir(run_id)
        if not run_dir.exists():
            return 0
        return sum(p.stat().st_size for p in run_dir.rglob("*") if p.is_file())


def prune_runs(
    db: Database,
    storage: LogStorage,
    retention_days: int,
    *,
    now: Optional[datetime] = None,
    dry_run: bool = False,
) -> list[str]:
    """Delete finished runs older than the retention period.

    Args:
        db: Run database
        storage: Run directory storage
        retention_days: Keep runs created within this many days
        now: Reference time (default: current time)
        dry_run: Only report what would be deleted

    Returns:
        IDs of pruned runs, oldest first
    """
    cutoff = (now or datetime.now()) - timedelta(days=retention_days)
    expired = db.runs_older_than(cutoff)

    pruned = []
    for run in expired:
        if not dry_run:
            storage.delete_run(run.id)
            db.delete_run(run.id)
        pruned.append(run.id)

    if pruned:
        logger.info(f"Pruned {len(pruned)} run(s) older than {retention_days} day(s)")
    return pruned
