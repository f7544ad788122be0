"""
Generate human-readable lifecycle reports in Markdown format.

This module provides StatusReporter, which turns LifecycleMetrics and
quality check results into a Markdown report.

Report sections:
- Header with start time and duration
- Summary table with core counters
- Status distribution across protocols
- Status transitions made
- Decisions recorded per collection
- Errors by reason code
- Data quality check results

Design decisions:
- Markdown output for readability and version control friendliness
- Uses tabulate library for table formatting (GitHub-flavored)
- Reports saved with timestamp for historical tracking
"""
from datetime import datetime, timezone
from pathlib import Path
from typing import List

from tabulate import tabulate

from .metrics import LifecycleMetrics
from .quality_checks import QualityCheckResult


class StatusReporter:
    """Generates Markdown reports from lifecycle metrics."""

    def generate_report(
        self,
        metrics: LifecycleMetrics,
        quality_results: List[QualityCheckResult]
    ) -> str:
        """
        Generate the report.

        Args:
            metrics: Metrics of the service instance being reported on
            quality_results: List of quality check results

        Returns:
            Markdown-formatted report as string
        """
        lines = []

        lines.append("# Protocol Review Report")
        lines.append(f"**Started:** {metrics.started_at.isoformat()}")
        if metrics.completed_at:
            duration = (metrics.completed_at - metrics.started_at).total_seconds()
            lines.append(f"**Duration:** {duration:.1f} seconds")
        lines.append("")

        lines.append("## Summary")
        summary_data = [
            ["Protocols Created", metrics.protocols_created],
            ["Status Changes", metrics.status_changes],
            ["Decisions Superseded", metrics.decisions_superseded],
            ["Expired", metrics.expired],
            ["Archived", metrics.archived],
            ["Errors", metrics.errors],
        ]
        lines.append(tabulate(summary_data, headers=["Metric", "Value"], tablefmt="github"))
        lines.append("")

        if metrics.status_counts:
            lines.append("## Status Distribution")
            status_data = [[k, v] for k, v in sorted(metrics.status_counts.items())]
            lines.append(tabulate(status_data, headers=["Status", "Count"], tablefmt="github"))
            lines.append("")

        if metrics.transitions:
            lines.append("## Status Transitions")
            trans_data = [[f"{k[0]} → {k[1]}", v] for k, v in metrics.transitions.items()]
            lines.append(tabulate(trans_data, headers=["Transition", "Count"], tablefmt="github"))
            lines.append("")

        if metrics.decisions_recorded:
            lines.append("## Decisions Recorded")
            decision_data = [[k, v] for k, v in sorted(metrics.decisions_recorded.items())]
            lines.append(tabulate(decision_data, headers=["Collection", "Count"], tablefmt="github"))
            lines.append("")

        if metrics.errors_by_code:
            lines.append("## Errors")
            error_data = [[k, v] for k, v in sorted(metrics.errors_by_code.items())]
            lines.append(tabulate(error_data, headers=["Code", "Count"], tablefmt="github"))
            lines.append("")

        lines.append("## Data Quality Checks")
        quality_data = []
        for qr in quality_results:
            status = "✓" if qr.passed else "✗"
            quality_data.append([status, qr.check_name, qr.message])
        lines.append(tabulate(quality_data, headers=["Status", "Check", "Details"], tablefmt="github"))
        lines.append("")

        return "\n".join(lines)

    def save_report(self, report: str, output_dir: Path) -> Path:
        """
        Save report to file with timestamp.

        Returns:
            Path to saved report file
        """
        output_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        filepath = output_dir / f"review-report-{timestamp}.md"
        filepath.write_text(report)
        return filepath
