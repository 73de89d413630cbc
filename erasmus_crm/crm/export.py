from __future__ import annotations

import base64
import csv
import io
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from openpyxl import Workbook
from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.utils import get_column_letter

from erasmus_crm.crm.models import utcnow


CSV_MIME_TYPE = "text/csv"
XLSX_MIME_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@dataclass(frozen=True)
class ExportColumn:
    key: str
    header: str
    formatter: Callable[[Any], Any] | None = None


def iso_date(value: Any) -> str:
    if not value:
        return ""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)[:10]


def _cell(row: Any, column: ExportColumn) -> Any:
    if isinstance(row, Mapping):
        value = row.get(column.key)
    else:
        value = getattr(row, column.key, None)
    if column.formatter is not None:
        value = column.formatter(value)
    return value


def generate_csv(rows: Iterable[Any], columns: Sequence[ExportColumn]) -> str:
    """Every cell is quoted; lines are joined by ``\\n`` with no trailing newline."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow([column.header for column in columns])
    for row in rows:
        writer.writerow(["" if value is None else value for value in (_cell(row, column) for column in columns)])
    return buffer.getvalue()[:-1]


def _sheet_value(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, str):
        return ILLEGAL_CHARACTERS_RE.sub("", value)
    return value


def generate_excel(rows: Iterable[Any], columns: Sequence[ExportColumn], sheet_name: str = "Data") -> bytes:
    """Cells hold literal values: control characters XML cannot carry are dropped and
    text starting with ``=`` stays text rather than becoming a formula.
    """
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = sheet_name
    sheet.append([column.header for column in columns])
    for row in rows:
        sheet.append([_sheet_value(_cell(row, column)) for column in columns])
        for cell in sheet[sheet.max_row]:
            if cell.data_type == "f":
                cell.data_type = "s"
    for index, column in enumerate(columns, start=1):
        sheet.column_dimensions[get_column_letter(index)].width = max(len(column.header), 15)

    out = io.BytesIO()
    workbook.save(out)
    return out.getvalue()


def build_export(
    export_format: str,
    rows: Iterable[Any],
    columns: Sequence[ExportColumn],
    *,
    basename: str,
    sheet_name: str,
    today: date | None = None,
) -> dict[str, Any]:
    stamp = (today or utcnow().date()).isoformat()
    if export_format == "csv":
        return {
            "data": generate_csv(rows, columns),
            "filename": f"{basename}_{stamp}.csv",
            "mime_type": CSV_MIME_TYPE,
            "is_base64": False,
        }
    payload = generate_excel(rows, columns, sheet_name)
    return {
        "data": base64.b64encode(payload).decode("ascii"),
        "filename": f"{basename}_{stamp}.xlsx",
        "mime_type": XLSX_MIME_TYPE,
        "is_base64": True,
    }


CONTACT_COLUMNS = [
    ExportColumn("id", "ID"),
    ExportColumn("first_name", "First Name"),
    ExportColumn("last_name", "Last Name"),
    ExportColumn("email", "Email"),
    ExportColumn("phone", "Phone"),
    ExportColumn("mobile", "Mobile"),
    ExportColumn("job_title", "Job Title"),
    ExportColumn("department", "Department"),
    ExportColumn("address", "Address"),
    ExportColumn("city", "City"),
    ExportColumn("country", "Country"),
    ExportColumn("status", "Status"),
    ExportColumn("source", "Source"),
    ExportColumn("linked_in", "LinkedIn"),
    ExportColumn("twitter", "Twitter"),
    ExportColumn("notes", "Notes"),
    ExportColumn("created_at", "Created At", iso_date),
]

DEAL_COLUMNS = [
    ExportColumn("id", "ID"),
    ExportColumn("title", "Title"),
    ExportColumn("value", "Value"),
    ExportColumn("currency", "Currency"),
    ExportColumn("stage", "Stage"),
    ExportColumn("probability", "Probability (%)"),
    ExportColumn("expected_close_date", "Expected Close Date", iso_date),
    ExportColumn("description", "Description"),
    ExportColumn("lost_reason", "Lost Reason"),
    ExportColumn("created_at", "Created At", iso_date),
]

COMPANY_COLUMNS = [
    ExportColumn("id", "ID"),
    ExportColumn("name", "Company Name"),
    ExportColumn("industry", "Industry"),
    ExportColumn("website", "Website"),
    ExportColumn("phone", "Phone"),
    ExportColumn("email", "Email"),
    ExportColumn("address", "Address"),
    ExportColumn("city", "City"),
    ExportColumn("country", "Country"),
    ExportColumn("employee_count", "Employee Count"),
    ExportColumn("annual_revenue", "Annual Revenue"),
    ExportColumn("description", "Description"),
    ExportColumn("created_at", "Created At", iso_date),
]

ACTIVITY_COLUMNS = [
    ExportColumn("id", "ID"),
    ExportColumn("type", "Type"),
    ExportColumn("subject", "Subject"),
    ExportColumn("description", "Description"),
    ExportColumn("status", "Status"),
    ExportColumn("due_date", "Due Date", iso_date),
    ExportColumn("completed_at", "Completed At", iso_date),
    ExportColumn("created_at", "Created At", iso_date),
]

DASHBOARD_REPORT_COLUMNS = [
    ExportColumn("metric", "Metric"),
    ExportColumn("value", "Value"),
    ExportColumn("description", "Description"),
]


def dashboard_report_rows(stats: Mapping[str, Any], money: Callable[[Any], str]) -> list[dict[str, Any]]:
    return [
        {"metric": "Total Contacts", "value": stats["total_contacts"], "description": "Active contacts in CRM"},
        {"metric": "Total Companies", "value": stats["total_companies"], "description": "Organizations tracked"},
        {"metric": "Total Deals", "value": stats["total_deals"], "description": "Opportunities in pipeline"},
        {"metric": "Open Activities", "value": stats["open_activities"], "description": "Tasks pending completion"},
        {
            "metric": "Pipeline Value",
            "value": money(stats["pipeline_value"] or "0"),
            "description": "Total value of active opportunities",
        },
        {
            "metric": "Won Deals Value",
            "value": money(stats["won_deals_value"] or "0"),
            "description": "Total revenue from closed deals",
        },
    ]
