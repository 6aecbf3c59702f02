"""Report generation for pipewright.

This module builds a run report (run metadata, the node tree, counts by
status, a plain-text summary) and exports it to HTML or JSON.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from pipewright.core.constants import NodeKind, NodeStatus
from pipewright.core.exceptions import StorageError
from pipewright.core.models import NodeRecord, RunMetadata
from pipewright.storage.database import Database


EXPORT_FILENAMES = {
    "html": "report.html",
    "json": "report.json",
}


def format_duration(seconds: Optional[float]) -> str:
    """Format a duration in seconds as `1h 2m 3s`."""
    if seconds is None:
        return "N/A"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    if hours > 0:
        return f"{hours}h {minutes}m {secs}s"
    elif minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


# ============================================================================
# Report Model
# ============================================================================

@dataclass
class ReportStatistics:
    """Node counts for report generation."""
    stages: dict[str, int] = field(default_factory=dict)
    jobs: dict[str, int] = field(default_factory=dict)
    steps: dict[str, int] = field(default_factory=dict)
    issues: int = 0
    reused: int = 0

    @property
    def total_jobs(self) -> int:
        return sum(self.jobs.values())

    @property
    def failed_jobs(self) -> int:
        return self.jobs.get(NodeStatus.FAILED.value, 0) + self.jobs.get(NodeStatus.TIMED_OUT.value, 0)


@dataclass
class NodeView:
    """A node record with its children, for tree rendering."""
    record: NodeRecord
    children: list["NodeView"] = field(default_factory=list)


@dataclass
class Report:
    """Complete report data structure."""
    run_metadata: RunMetadata
    nodes: list[NodeRecord]
    statistics: ReportStatistics
    summary: str
    generated_at: datetime = field(default_factory=datetime.now)

    @property
    def duration_formatted(self) -> str:
        return format_duration(self.run_metadata.duration)

    @property
    def tree(self) -> list[NodeView]:
        """Stage views with nested job and step views, in plan order."""
        views = {record.node_id: NodeView(record) for record in self.nodes}
        roots = []
        for record in self.nodes:
            view = views[record.node_id]
            parent = views.get(record.parent_id) if record.parent_id else None
            if parent is None:
                roots.append(view)
            else:
                parent.children.append(view)
        return roots


# ============================================================================
# Report Generator
# ============================================================================

class ReportGenerator:
    """Generate run reports from the run database."""

    def __init__(self, db: Database):
        """Initialize report generator.

        Args:
            db: Database instance for retrieving run data
        """
        self.db = db

    def generate_report(self, run_id: str) -> Report:
        """Generate complete report for a run.

        Args:
            run_id: Run identifier

        Returns:
            Report object with metadata, nodes and statistics

        Raises:
            StorageError: If run not found or data retrieval fails
        """
        run_metadata = self.db.get_run(run_id)
        if run_metadata is None:
            raise StorageError(f"Run not found: {run_id}")

        nodes = self.db.get_nodes(run_id)
        statistics = calculate_statistics(nodes)

        return Report(
            run_metadata=run_metadata,
            nodes=nodes,
            statistics=statistics,
            summary=generate_summary(run_metadata, statistics, nodes),
        )

    def export_html(self, report: Report, output_path: Path) -> None:
        """Export report to HTML format.

        Raises:
            StorageError: If export fails
        """
        from pipewright.reporting.exporters.html import HTMLExporter

        HTMLExporter().export(report, output_path)

    def export_json(self, report: Report, output_path: Path) -> None:
        """Export report to JSON format.

        Raises:
            StorageError: If export fails
        """
        from pipewright.reporting.exporters.json import JSONExporter

        JSONExporter().export(report, output_path)

    def generate_and_export(
        self,
        run_id: str,
        output_dir: Path,
        formats: Optional[list[str]] = None
    ) -> dict[str, Path]:
        """Generate report and export to multiple formats.

        Args:
            run_id: Run identifier
            output_dir: Directory for output files
            formats: List of formats to export (default: ["html", "json"])

        Returns:
            Dictionary mapping format names to output file paths

        Raises:
            StorageError: If generation or export fails
            ValueError: On an unsupported format
        """
        if formats is None:
            formats = ["html", "json"]

        unsupported = [fmt for fmt in formats if fmt not in EXPORT_FILENAMES]
        if unsupported:
            raise ValueError(f"Unsupported export format: {', '.join(unsupported)}")

        report = self.generate_report(run_id)

        output_paths = {}
        for fmt in formats:
            output_path = output_dir / EXPORT_FILENAMES[fmt]
            if fmt == "html":
                self.export_html(report, output_path)
            else:
                self.export_json(report, output_path)
            output_paths[fmt] = output_path

        return output_paths


def calculate_statistics(nodes: list[NodeRecord]) -> ReportStatistics:
    """Count nodes by kind and status."""
    stats = ReportStatistics()
    buckets = {
        NodeKind.STAGE: stats.stages,
        NodeKind.JOB: stats.jobs,
        NodeKind.STEP: stats.steps,
    }
    for node in nodes:
        bucket = buckets[node.kind]
        bucket[node.status.value] = bucket.get(node.status.value, 0) + 1
        if node.kind == NodeKind.JOB:
            stats.issues += node.issues
        if node.reused:
            stats.reused += 1
    return stats


def generate_summary(
    run: RunMetadata,
    statistics: ReportStatistics,
    nodes: list[NodeRecord],
) -> str:
    """Plain-text run summary."""
    lines = []

    lines.append(f"Run Report: {run.pipeline}")
    lines.append("=" * 70)
    lines.append("")

    lines.append("RUN INFORMATION")
    lines.append("-" * 70)
    lines.append(f"Run ID:           {run.id}")
    lines.append(f"Outcome:          {run.outcome.value}")
    lines.append(f"Reason:           {run.trigger.reason.value}")
    lines.append(f"Branch:           {run.trigger.source_branch}")
    lines.append(f"Requested for:    {run.trigger.requested_for}")
    lines.append(f"Created:          {run.created_at.strftime('%Y-%m-%d %H:%M:%S')}")
    lines.append(f"Duration:         {format_duration(run.duration)}")
    if run.retry_of:
        lines.append(f"Retry of:         {run.retry_of}")
    lines.append("")

    lines.append("JOBS")
    lines.append("-" * 70)
    lines.append(f"Total:            {statistics.total_jobs}")
    for status, count in sorted(statistics.jobs.items()):
        lines.append(f"  {status:16}{count}")
    if statistics.issues:
        lines.append(f"Issues:           {statistics.issues}")
    if statistics.reused:
        lines.append(f"Reused nodes:     {statistics.reused}")
    lines.append("")

    failures = [n for n in nodes if n.kind != NodeKind.STAGE and n.status.is_failure]
    if failures:
        lines.append("FAILURES")
        lines.append("-" * 70)
        for node in failures:
            lines.append(f"{node.node_id}: {node.error_message or node.status.value}")
        lines.append("")

    return "\n".join(lines)
