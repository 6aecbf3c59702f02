"""JSON report exporter for pipewright.

This module provides JSON export of run reports, with custom encoding for
datetime, enum and path types.
"""

import json
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from pipewright import __version__
from pipewright.core.exceptions import StorageError

if TYPE_CHECKING:
    from pipewright.reporting.generator import Report


class ReportJSONEncoder(json.JSONEncoder):
    """Custom JSON encoder for report objects.

    Handles serialization of datetime, Enum, and Path objects.
    """

    def default(self, o):
        if isinstance(o, datetime):
            return o.isoformat()

        if isinstance(o, Enum):
            return o.value

        if isinstance(o, Path):
            return str(o)

        return super().default(o)


class JSONExporter:
    """Export reports to JSON format.

    Provides structured JSON output suitable for programmatic consumption
    and gating other systems on a run's result.
    """

    def build(self, report: "Report") -> dict:
        """Build the JSON document for a report."""
        run = report.run_metadata
        return {
            "report_metadata": {
                "generated_at": report.generated_at,
                "generator": "pipewright",
                "version": __version__,
            },
            "run": {
                "id": run.id,
                "pipeline": run.pipeline,
                "outcome": run.outcome,
                "exit_code": run.outcome.exit_code,
                "canceled": run.canceled,
                "retry_of": run.retry_of,
                "trigger": run.trigger.to_dict(),
                "variables": run.variables,
                "created_at": run.created_at,
                "started_at": run.started_at,
                "completed_at": run.completed_at,
                "duration_seconds": run.duration,
                "definition_path": run.definition_path,
                "excluded": run.plan.get("excluded", []),
            },
            "statistics": {
                "stages": report.statistics.stages,
                "jobs": report.statistics.jobs,
                "steps": report.statistics.steps,
                "issues": report.statistics.issues,
                "reused": report.statistics.reused,
            },
            "nodes": [
                {
                    "node_id": node.node_id,
                    "kind": node.kind,
                    "name": node.name,
                    "parent_id": node.parent_id,
                    "status": node.status,
                    "started_at": node.started_at,
                    "completed_at": node.completed_at,
                    "duration_seconds": node.duration,
                    "exit_code": node.exit_code,
                    "error_code": node.error_code,
                    "error_message": node.error_message,
                    "log_path": node.log_path,
                    "attempts": node.attempts,
                    "issues": node.issues,
                    "reused": node.reused,
                    "required": node.required,
                }
                for node in report.nodes
            ],
        }

    def export(self, report: "Report", output_path: Path) -> None:
        """Export report to JSON file.

        Args:
            report: Report object to export
            output_path: Path where JSON file will be written

        Raises:
            StorageError: If export fails
        """
        try:
            data = self.build(report)
            output_path.parent.mkdir(parents=True, exist_ok=True)
            with output_path.open("w", encoding="utf-8") as f:
                json.dump(
                    data,
                    f,
                    cls=ReportJSONEncoder,
                    indent=2,
                    ensure_ascii=False,
                )

        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"Failed to export JSON report: {e}") from e
