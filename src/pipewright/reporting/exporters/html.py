"""HTML report exporter for pipewright.

This module provides HTML export of run reports using Jinja2 templates.
The generated page is self-contained (inline CSS, no scripts).
"""

from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

from pipewright.core.exceptions import StorageError
from pipewright.reporting.generator import Report, format_duration


class HTMLExporter:
    """Export reports to HTML format."""

    def __init__(self):
        """Initialize HTML exporter with Jinja2 environment."""
        templates_dir = Path(__file__).parent.parent / "templates"

        self.env = Environment(
            loader=FileSystemLoader(str(templates_dir)),
            autoescape=select_autoescape(['html', 'xml', 'j2']),
            trim_blocks=True,
            lstrip_blocks=True,
        )

        self.env.filters['status_badge_class'] = self._status_badge_class
        self.env.filters['format_datetime'] = self._format_datetime
        self.env.filters['format_duration'] = format_duration

    def render(self, report: Report) -> str:
        template = self.env.get_template('report.html.j2')
        return template.render(
            report=report,
            run=report.run_metadata,
            tree=report.tree,
            stats=report.statistics,
            summary=report.summary,
        )

    def export(self, report: Report, output_path: Path) -> None:
        """Export report to HTML file.

        Args:
            report: Report object to export
            output_path: Path where HTML file will be written

        Raises:
            StorageError: If export fails
        """
        try:
            html_content = self.render(report)
            output_path.parent.mkdir(parents=True, exist_ok=True)
            output_path.write_text(html_content, encoding='utf-8')

        except Exception as e:
            raise StorageError(f"Failed to export HTML report: {e}") from e

    @staticmethod
    def _status_badge_class(status: str) -> str:
        """Get CSS class for a node or run status badge."""
        classes = {
            'succeeded': 'badge-succeeded',
            'failed': 'badge-failed',
            'timed_out': 'badge-failed',
            'canceled': 'badge-canceled',
            'skipped': 'badge-skipped',
            'running': 'badge-running',
        }
        return classes.get(status.lower(), 'badge-default')

    @staticmethod
    def _format_datetime(dt) -> str:
        if dt is None:
            return 'N/A'

        return dt.strftime('%Y-%m-%d %H:%M:%S')
