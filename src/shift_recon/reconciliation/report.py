"""Report generation for reconciliation results."""

import json
import csv
import io
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from .models import ReconciliationReport, TransactionRecord

CENT = Decimal("0.01")


def format_amount(value: Optional[Decimal]) -> str:
    """Round a Decimal to two places for display; None renders as N/A."""
    if value is None:
        return "N/A"
    return str(value.quantize(CENT, rounding=ROUND_HALF_UP))


class ReportGenerator:
    """Generator for reconciliation reports in various formats."""

    def __init__(self, report: ReconciliationReport):
        """Initialize the report generator.

        Args:
            report: The reconciliation report to generate output from.
        """
        self.report = report

    def to_json(self, include_details: bool = True, indent: int = 2) -> str:
        """Generate JSON representation of the report.

        Args:
            include_details: If True, include all records. If False, only summary.
            indent: JSON indentation level.

        Returns:
            JSON string representation of the report.
        """
        if include_details:
            data = self.report.to_full_dict()
        else:
            data = self.report.to_summary_dict()

        # Decimals keep their exact string form
        def json_serializer(obj):
            if isinstance(obj, datetime):
                return obj.isoformat()
            if isinstance(obj, Decimal):
                return str(obj)
            raise TypeError(f"Object of type {type(obj)} is not JSON serializable")

        return json.dumps(data, indent=indent, default=json_serializer)

    @staticmethod
    def _record_row(kind: str, record: TransactionRecord) -> list:
        return [
            kind,
            record.platform.value,
            record.id,
            record.cabinet_id,
            record.timestamp.isoformat(),
            record.order_ref or "",
            record.amount,
            record.asset,
            record.quote_amount if record.quote_amount is not None else "",
            record.quote_currency or "",
            record.direction.value,
        ]

    def to_csv(self, record_type: str = "all") -> str:
        """Generate CSV representation of specific record types.

        Args:
            record_type: Type of records to include ('matched', 'unmatched',
                        'cabinets', or 'all').

        Returns:
            CSV string with the requested records, one header per section.
        """
        if record_type not in ("matched", "unmatched", "cabinets", "all"):
            raise ValueError(f"Unsupported record type: {record_type}")

        output = io.StringIO()
        writer = csv.writer(output)

        def section_break():
            if output.tell() > 0:
                output.write("\n")

        if record_type in ("matched", "all") and self.report.matched_pairs:
            writer.writerow([
                "type", "record_a_id", "record_b_id", "match_key",
                "cabinet_a", "cabinet_b", "timestamp_a", "timestamp_b",
                "time_difference_seconds", "income", "expense", "profit",
            ])
            for pair, metrics in zip(self.report.matched_pairs, self.report.pair_metrics):
                writer.writerow([
                    "matched",
                    pair.record_a.id,
                    pair.record_b.id,
                    pair.match_key.value,
                    pair.record_a.cabinet_id,
                    pair.record_b.cabinet_id,
                    pair.record_a.timestamp.isoformat(),
                    pair.record_b.timestamp.isoformat(),
                    pair.time_difference_seconds,
                    metrics.gross_income,
                    metrics.gross_expense,
                    metrics.gross_profit,
                ])

        leftovers = list(self.report.unmatched_a) + list(self.report.unmatched_b)
        if record_type in ("unmatched", "all") and leftovers:
            section_break()
            writer.writerow([
                "type", "platform", "record_id", "cabinet_id", "timestamp",
                "order_ref", "amount", "asset", "quote_amount", "quote_currency",
                "direction",
            ])
            for record in leftovers:
                writer.writerow(self._record_row("unmatched", record))

        if record_type in ("cabinets", "all") and self.report.cabinets:
            section_break()
            writer.writerow([
                "type", "cabinet_id", "cabinet_type", "status", "record_count",
                "matched_count", "gross_profit", "error_message",
            ])
            for cabinet in self.report.cabinets:
                stats = cabinet.statistics
                writer.writerow([
                    "cabinet",
                    cabinet.cabinet_id,
                    cabinet.cabinet_type.value,
                    cabinet.status.value,
                    cabinet.record_count,
                    stats.matched_count if stats else "",
                    stats.gross_profit if stats else "",
                    cabinet.error_message or "",
                ])

        return output.getvalue()

    def to_summary_text(self) -> str:
        """Generate a human-readable text summary of the report.

        Returns:
            Formatted text summary of the reconciliation report.
        """
        summary = self.report.to_summary_dict()
        stats = self.report.statistics

        lines = [
            "=" * 60,
            "SHIFT RECONCILIATION REPORT SUMMARY",
            "=" * 60,
            f"Report ID: {summary['id']}",
            f"Status: {summary['status']}",
            f"Operator: {summary['operator_id'] if summary['operator_id'] is not None else 'N/A'}",
            "",
            "Period:",
            f"  Start: {summary['period_start'] or 'N/A'}",
            f"  End: {summary['period_end'] or 'N/A'}",
            "",
            "Windows:",
            f"  idex: {summary['windows']['idex']}",
            f"  bybit: {summary['windows']['bybit']}",
            f"  Rejected Entries: {summary['windows']['rejected_entries']}",
            "",
            "Statistics:",
            f"  Matched Pairs: {stats.matched_count}",
            f"  Unmatched idex: {stats.unmatched_a_count}",
            f"  Unmatched bybit: {stats.unmatched_b_count}",
            f"  Total Transactions: {stats.total_transactions}",
            f"  Match Rate: {summary['match_rate']}",
            f"  Gross Income: {format_amount(stats.gross_income)}",
            f"  Gross Expense: {format_amount(stats.gross_expense)}",
            f"  Gross Profit: {format_amount(stats.gross_profit)}",
            f"  Profit Percentage: {format_amount(stats.profit_percentage)}%",
            f"  Profit per Order: {format_amount(stats.profit_per_order)}",
            f"  Expense per Order: {format_amount(stats.expense_per_order)}",
            f"  Success Rate: {format_amount(stats.success_rate)}",
            f"  Ambiguous Resolutions: {summary['ambiguous_resolutions']}",
            "",
            f"Created At: {summary['created_at']}",
            f"Completed At: {summary['completed_at'] or 'N/A'}",
        ]

        if self.report.partial_failure:
            lines.extend(["", "Failed Cabinets:"])
            for cabinet in self.report.failed_cabinets:
                lines.append(
                    f"  {cabinet.cabinet_type.value} #{cabinet.cabinet_id}: "
                    f"{cabinet.status.value} ({cabinet.error_message or 'no details'})"
                )

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
            Formatted text with summary, per-cabinet figures and all records.
        """
        lines = [self.to_summary_text(), ""]

        if self.report.cabinets:
            lines.extend([
                "CABINETS",
                "-" * 40,
            ])
            for cabinet in self.report.cabinets:
                stats = cabinet.statistics
                figures = (
                    f"matched {stats.matched_count}, profit {format_amount(stats.gross_profit)}"
                    if stats else "no statistics"
                )
                lines.append(
                    f"  {cabinet.cabinet_type.value} #{cabinet.cabinet_id} "
                    f"[{cabinet.status.value}]: {cabinet.record_count} records, {figures}"
                )
            lines.append("")

        if self.report.matched_pairs:
            lines.extend([
                "MATCHED PAIRS",
                "-" * 40,
            ])
            for pair, metrics in zip(self.report.matched_pairs, self.report.pair_metrics):
                lines.append(
                    f"  idex #{pair.record_a.id} <-> bybit #{pair.record_b.id} "
                    f"({pair.match_key.value}, {pair.time_difference_seconds}s): "
                    f"profit {format_amount(metrics.gross_profit)}"
                )
            lines.append("")

        if self.report.unmatched_a or self.report.unmatched_b:
            lines.extend([
                "UNMATCHED RECORDS",
                "-" * 40,
            ])
            for title, records in (
                ("idex", self.report.unmatched_a),
                ("bybit", self.report.unmatched_b),
            ):
                if not records:
                    continue
                lines.append(f"\nUnmatched {title} ({len(records)}):")
                for r in records:
                    lines.append(
                        f"  ID: {r.id}, Cabinet: {r.cabinet_id}, "
                        f"Time: {r.timestamp.isoformat()}, "
                        f"Amount: {format_amount(r.amount)} {r.asset}"
                    )
            lines.append("")

        return "\n".join(lines)
