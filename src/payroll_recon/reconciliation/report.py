"""Report generation for reconciliation runs."""

import json
import csv
import io
from datetime import datetime

from ..database.models import CheckStatus
from .models import RunReport


class ReportGenerator:
    """Generator for run reports in various formats."""

    def __init__(self, report: RunReport):
        """Initialize the report generator.

        Args:
            report: The run report to generate output from.
        """
        self.report = report

    def to_json(self, include_details: bool = True, indent: int = 2) -> str:
        """Generate JSON representation of the report.

        Args:
            include_details: If True, include check results and exceptions.
            indent: JSON indentation level.

        Returns:
            JSON string representation of the report.
        """
        if include_details:
            data = self.report.to_full_dict()
        else:
            data = self.report.to_summary_dict()

        def json_serializer(obj):
            if isinstance(obj, datetime):
                return obj.isoformat()
            if isinstance(obj, CheckStatus):
                return obj.value
            raise TypeError(f"Object of type {type(obj)} is not JSON serializable")

        return json.dumps(data, indent=indent, default=json_serializer)

    def to_csv(self) -> str:
        """Generate CSV with one line per check result.

        Returns:
            CSV string with a header row.
        """
        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerow([
            "run_number", "check_type", "status", "severity",
            "left_value", "right_value", "delta_value", "delta_percent", "summary",
        ])
        for result in self.report.check_results:
            details = result.details
            writer.writerow([
                self.report.run_number,
                result.check_type,
                result.status.value,
                result.severity.value,
                details.get("left_value", ""),
                details.get("right_value", ""),
                details.get("delta_value", ""),
                details.get("delta_percent", ""),
                result.summary,
            ])
        return output.getvalue()

    def to_text(self) -> str:
        """Generate a human-readable text report.

        Returns:
            Formatted text with summary, check results and open exceptions.
        """
        summary = self.report.to_summary_dict()
        stats = summary["statistics"]

        lines = [
            "=" * 60,
            "PAYROLL RECONCILIATION REPORT",
            "=" * 60,
            f"Run ID: {summary['run_id']}",
            f"Pay Run ID: {summary['pay_run_id']}",
            f"Run Number: {summary['run_number']}",
            f"Status: {summary['status']}",
            f"Bundle: {summary['bundle_id']} {summary['bundle_version']}",
            "",
            "Statistics:",
            f"  Checks: {stats['total_checks']}",
            f"  Passed: {stats['passed']}",
            f"  Warnings: {stats['warnings']}",
            f"  Failed: {stats['failed']}",
            f"  Exceptions: {stats['exceptions']} ({stats['open_exceptions']} open)",
            "",
            f"Created At: {summary['created_at']}",
            f"Completed At: {summary['completed_at'] or 'N/A'}",
        ]

        if summary.get("superseded_by_run_id"):
            lines.append(f"Superseded By: {summary['superseded_by_run_id']}")

        lines.extend(["", "CHECK RESULTS", "-" * 40])
        for result in self.report.check_results:
            lines.append(f"[{result.status.value:<4}] {result.check_type}")
            lines.append(f"  {result.summary}")

        if self.report.exceptions:
            lines.extend(["", "EXCEPTIONS", "-" * 40])
            for exception in self.report.exceptions:
                lines.extend([
                    f"\n{exception.title} ({exception.status})",
                    f"  Category: {exception.category}",
                    f"  Severity: {exception.severity}",
                ])
                if exception.description:
                    lines.append(f"  {exception.description}")

        lines.append("=" * 60)
        return "\n".join(lines)
