"""Report rendering for reconciliation and diagnostics results."""

import csv
import io
import json
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from .models import DiagnosticsReport, ReconciliationReport


def _json_default(obj):
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    raise TypeError(f"Object of type {type(obj)} is not JSON serializable")


class ReportGenerator:
    """Generator for reconciliation reports in various formats."""

    CSV_HEADER = [
        "bucket", "uid", "order_id", "payment_id", "field",
        "statement_value", "ledger_value", "amount", "currency", "status",
    ]

    def __init__(self, report: ReconciliationReport):
        """Initialize the report generator.

        Args:
            report: The reconciliation report to generate output from.
        """
        self.report = report

    def to_json(self, include_details: bool = True, indent: int = 2) -> str:
        """Generate JSON representation of the report.

        Args:
            include_details: If True, include sample records. If False, only the summary.
            indent: JSON indentation level.

        Returns:
            JSON string representation of the report.
        """
        data = self.report.to_full_dict() if include_details else self.report.to_summary_dict()
        return json.dumps(data, indent=indent, default=_json_default, ensure_ascii=False)

    def to_csv(self, record_type: str = "all") -> str:
        """Generate CSV rows for the sampled records.

        Args:
            record_type: 'missing', 'extra', 'mismatches', 'matched' or 'all'.

        Returns:
            CSV string with a header row and one row per sampled record.
        """
        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerow(self.CSV_HEADER)
        r = self.report

        if record_type in ("missing", "all"):
            for rec in r.missing_in_ledger:
                writer.writerow([
                    "missing_in_ledger", rec.uid, "", "", "", "", "",
                    rec.amount, rec.currency, rec.status.value if rec.status else "",
                ])

        if record_type in ("extra", "all"):
            for rec in r.extra_in_ledger:
                writer.writerow([
                    "extra_in_ledger", rec.uid, rec.order_id or "", rec.payment_id or "", "", "", "",
                    rec.amount, rec.currency, rec.status.value if rec.status else "",
                ])

        if record_type in ("mismatches", "all"):
            for rec in r.status_mismatches + r.amount_mismatches + r.type_mismatches:
                writer.writerow([
                    rec.discrepancy_type.value, rec.uid, rec.order_id, rec.payment_id or "",
                    rec.field_name, rec.statement_value, rec.ledger_value, "", "", "",
                ])

        if record_type == "matched":
            for rec in r.matched:
                writer.writerow([
                    "matched", rec.uid, rec.order_id, rec.payment_id or "", "", "", "",
                    rec.amount, rec.currency, rec.status.value,
                ])

        return output.getvalue()

    def to_summary_text(self) -> str:
        """Generate a human-readable text summary of the report.

        Returns:
            Formatted text summary of the reconciliation report.
        """
        summary = self.report.to_summary_dict()
        stats = summary["statistics"]

        lines = [
            "=" * 60,
            "RECONCILIATION REPORT SUMMARY",
            "=" * 60,
            f"Report ID: {summary['id']}",
            f"Status: {summary['status']}",
            "",
            "Window:",
            f"  Start: {summary['start_time'] or 'N/A'}",
            f"  End: {summary['end_time'] or 'N/A'}",
            "",
            "Statistics:",
            f"  Statement UIDs: {stats['statement_count']}",
            f"  Ledger UIDs: {stats['ledger_count']}",
            f"  Matched: {stats['matched']}",
            f"  Missing in Ledger: {stats['missing_in_ledger']}",
            f"  Extra in Ledger: {stats['extra_in_ledger']}",
            f"  Status Mismatches: {stats['status_mismatch']}",
            f"  Amount Mismatches: {stats['amount_mismatch']}",
            f"  Type Mismatches: {stats['type_mismatch']}",
            f"  Skipped Statement Rows: {stats['statement_invalid_rows']}",
            f"  Duplicate Statement UIDs: {stats['statement_duplicates']}",
            f"  Match Rate: {stats['match_rate']}",
            "",
            "Net Revenue:",
            f"  Statement: {summary['statement_summary']['net_revenue']}",
            f"  Ledger: {summary['ledger_summary']['net_revenue']}",
        ]

        if summary.get("error_message"):
            lines.extend([
                "",
                "Error:",
                f"  {summary['error_message']}",
            ])

        lines.append("=" * 60)
        return "\n".join(lines)

    def to_detailed_text(self) -> str:
        """Generate a detailed human-readable text report.

        Returns:
            Formatted text with the summary and every sampled record.
        """
        r = self.report
        lines = [self.to_summary_text(), ""]

        if r.missing_in_ledger:
            lines.extend([
                f"MISSING IN LEDGER ({r.missing_in_ledger_count}, showing {len(r.missing_in_ledger)})",
                "-" * 40,
            ])
            for rec in r.missing_in_ledger:
                lines.append(
                    f"  UID: {rec.uid}, Amount: {rec.amount} {rec.currency or ''}, "
                    f"Status: {rec.status.value if rec.status else 'unknown'}"
                )
            lines.append("")

        if r.extra_in_ledger:
            lines.extend([
                f"EXTRA IN LEDGER ({r.extra_in_ledger_count}, showing {len(r.extra_in_ledger)})",
                "-" * 40,
            ])
            for rec in r.extra_in_ledger:
                lines.append(
                    f"  UID: {rec.uid}, Order: {rec.order_id}, "
                    f"Amount: {rec.amount} {rec.currency or ''}"
                )
            lines.append("")

        mismatches = r.status_mismatches + r.amount_mismatches + r.type_mismatches
        if mismatches:
            lines.extend(["FIELD MISMATCHES", "-" * 40])
            for rec in mismatches:
                lines.extend([
                    f"\nUID: {rec.uid} | Order: {rec.order_id}",
                    f"  Type: {rec.discrepancy_type.value}",
                    f"  Statement: {rec.statement_value}",
                    f"  Ledger: {rec.ledger_value}",
                ])
            lines.append("")

        return "\n".join(lines)


def diagnostics_to_text(report: DiagnosticsReport, limit: Optional[int] = None) -> str:
    """Render a diagnostics scan as plain text."""
    lines: List[str] = [
        "=" * 60,
        "LEDGER DIAGNOSTICS",
        "=" * 60,
        f"Paid orders scanned: {report.scanned_orders}",
    ]
    for diagnosis, count in report.counts().items():
        lines.append(f"  {diagnosis}: {count}")
    records = report.records if limit is None else report.records[:limit]
    if records:
        lines.append("")
    for rec in records:
        lines.append(f"[{rec.diagnosis.value}] order {rec.order_id}: {rec.detail}")
    lines.append("=" * 60)
    return "\n".join(lines)
