"""Audit trail for pipeline runs.

This module provides the AuditLogger class which records every run-level
event (start, finish, node transitions, dispatch decisions, environment
acquisition attempts, cancel requests) as JSON Lines so a run can be
reconstructed after the fact.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from pipewright.core.constants import AuditEventType, NodeStatus
from pipewright.core.exceptions import AuditLogError


class AuditLogger:
    """Append-only JSON Lines audit log for one run.

    Example:
        >>> audit = AuditLogger(run_id="run-123", audit_dir=Path("./runs/run-123/audit"))
        >>> audit.log_event(AuditEventType.RUN_START, {"pipeline": "product-build"})
        >>> audit.close()
    """

    def __init__(self, run_id: str, audit_dir: Path) -> None:
        """Initialize audit logger.

        Args:
            run_id: Unique identifier for the run.
            audit_dir: Directory where audit.log will be stored.

        Raises:
            AuditLogError: If the directory or file cannot be created.
        """
        self.run_id = run_id
        self.audit_dir = audit_dir
        self.log_path = audit_dir / "audit.log"

        try:
            self.audit_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise AuditLogError(
                f"Failed to create audit directory {audit_dir}: {e}"
            ) from e

        self._logger = logging.getLogger(f"pipewright.audit.{run_id}")
        self._logger.setLevel(logging.INFO)
        self._logger.propagate = False
        self._logger.handlers.clear()

        try:
            handler = logging.FileHandler(str(self.log_path), mode="a", encoding="utf-8")
            handler.setLevel(logging.INFO)
            handler.setFormatter(logging.Formatter("%(message)s"))
            self._logger.addHandler(handler)
        except OSError as e:
            raise AuditLogError(
                f"Failed to create audit log file {self.log_path}: {e}"
            ) from e

    def log_event(
        self,
        event_type: AuditEventType,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        """Append one event.

        Args:
            event_type: Type of event being logged.
            details: Optional event details; must be JSON serializable.

        Raises:
            AuditLogError: If the event cannot be serialized or written.
        """
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "run_id": self.run_id,
            "event_type": event_type.value,
            "details": details or {},
        }

        try:
            self._logger.info(json.dumps(event, ensure_ascii=False, default=str))
        except (TypeError, ValueError, OSError) as e:
            raise AuditLogError(
                f"Failed to write audit event {event_type.value}: {e}"
            ) from e

    def log_transition(
        self,
        node_id: str,
        old: NodeStatus,
        new: NodeStatus,
        **details: Any,
    ) -> None:
        """Record a node status change."""
        self.log_event(
            AuditEventType.NODE_TRANSITION,
            {"node": node_id, "from": old.value, "to": new.value, **details},
        )

    def read_events(self) -> list[dict[str, Any]]:
        """Read back all events written so far."""
        for handler in self._logger.handlers:
            handler.flush()
        if not self.log_path.exists():
            return []
        with self.log_path.open("r", encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]

    def close(self) -> None:
        """Flush and close the log file."""
        for handler in self._logger.handlers:
            handler.flush()
            handler.close()
        self._logger.handlers.clear()
