import csv
import re
from dataclasses import dataclass, field
from datetime import date
from io import StringIO
from typing import Optional, Sequence, Union

from aggregation import Totals, totals
from errors import message
from models import TransactionKind
from periods import ReportPeriod
from schemas import Amount, Transaction


@dataclass(frozen=True)
class ReportRow:
    date: str
    name: str
    category: str
    kind: str
    amount: Amount
    note: str


@dataclass(frozen=True)
class Report:
    rows: list[ReportRow]
    summary: Totals
    period: Optional[ReportPeriod] = None
    locale: Optional[str] = field(default=None, compare=False)


def kind_label(kind: TransactionKind, locale: Optional[str] = None) -> str:
    return message(f"kind.{kind.value}", locale)


def build_report(
    filtered: Sequence[Transaction],
    period: Optional[Union[ReportPeriod, str]] = None,
    *,
    locale: Optional[str] = None,
) -> Report:
    rows = [
        ReportRow(
            date=txn.date.isoformat(),
            name=txn.name,
            category=txn.category,
            kind=kind_label(txn.kind, locale),
            amount=txn.amount,
            note=txn.note,
        )
        for txn in filtered
    ]
    return Report(
        rows=rows,
        summary=totals(filtered),
        period=ReportPeriod(period) if period else None,
        locale=locale,
    )


# Cell text a spreadsheet would evaluate as a formula, or hand to a shell or
# browser, when the export is opened.
_UNSAFE_CELL = re.compile(
    r"^(?:[=+\-@]|(?:cmd|powershell|bash|sh)\b|\.|https?://)", re.IGNORECASE
)


def sanitize_csv_value(value: Optional[str]) -> str:
    """Trim ``value`` and neutralise it for spreadsheet import.

    Unsafe cells keep their text but get a leading tab, which spreadsheet
    applications treat as a literal prefix instead of the start of a formula.
    """
    text = (value or "").strip()
    if _UNSAFE_CELL.match(text):
        return "\t" + text
    return text


def export_csv(report: Report, locale: Optional[str] = None) -> str:
    locale = locale or report.locale
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(
        [
            message("report.date", locale),
            message("report.name", locale),
            message("report.category", locale),
            message("report.kind", locale),
            message("report.amount", locale),
            message("report.note", locale),
        ]
    )
    for row in report.rows:
        writer.writerow(
            [
                row.date,
                sanitize_csv_value(row.name),
                sanitize_csv_value(row.category),
                row.kind,
                row.amount,
                sanitize_csv_value(row.note),
            ]
        )

    summary = report.summary
    writer.writerow([])
    writer.writerow(["", message("report.summary", locale), "", "", "", ""])
    for key, amount in (
        ("report.total-income", summary.income),
        ("report.total-expense", summary.expense),
        ("report.balance", summary.balance),
    ):
        writer.writerow(["", message(key, locale), "", "", amount, ""])
    return output.getvalue()


def report_filename(period: Union[ReportPeriod, str], on_date: date) -> str:
    return f"finance_report_{ReportPeriod(period).value}_{on_date.isoformat()}.csv"
