from __future__ import annotations

import base64
import io
from collections.abc import Generator
from datetime import date, datetime, timezone

import pytest
from fastapi.testclient import TestClient
from openpyxl import load_workbook
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from erasmus_crm.core.auth import issue_token
from erasmus_crm.core.database import Base, get_db
from erasmus_crm.crm.export import (
    CONTACT_COLUMNS,
    XLSX_MIME_TYPE,
    ExportColumn,
    build_export,
    generate_csv,
    generate_excel,
    iso_date,
)
from erasmus_crm.crm.models import Activity, Company, Contact, User
from erasmus_crm.main import app


COLUMNS = [ExportColumn("id", "ID"), ExportColumn("name", "Name"), ExportColumn("created_at", "Created At", iso_date)]


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def users(db_session: Session) -> dict[str, int]:
    owner = User(open_id="exp-owner", name="Owner", email="owner@example.com")
    other = User(open_id="exp-other", name="Other", email="other@example.com")
    db_session.add_all([owner, other])
    db_session.commit()
    return {"owner": owner.id, "other": other.id}


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _export(client: TestClient, name: str, export_format: str, user_id: int) -> dict:
    response = client.post(
        f"/api/rpc/export.{name}",
        json={"format": export_format},
        headers={"Authorization": f"Bearer {issue_token(user_id)}"},
    )
    assert response.status_code == 200, response.text
    return response.json()["result"]["data"]


def test_csv_with_no_rows_is_just_the_quoted_header() -> None:
    assert generate_csv([], COLUMNS) == '"ID","Name","Created At"'


def test_csv_quotes_every_cell_and_doubles_embedded_quotes() -> None:
    rows = [
        {"id": 1, "name": 'Acme "Global", Ltd', "created_at": datetime(2026, 3, 4, 15, 30, tzinfo=timezone.utc)},
        {"id": 2, "name": None, "created_at": None},
    ]

    lines = generate_csv(rows, COLUMNS).split("\n")

    assert lines == [
        '"ID","Name","Created At"',
        '"1","Acme ""Global"", Ltd","2026-03-04"',
        '"2","",""',
    ]


def test_xlsx_export_names_sheet_and_sizes_columns() -> None:
    rows = [{"id": 7, "name": "Widget", "created_at": datetime(2026, 1, 2, tzinfo=timezone.utc)}]

    payload = build_export("xlsx", rows, COLUMNS, basename="widgets_export", sheet_name="Widgets", today=date(2026, 10, 17))

    assert payload["filename"] == "widgets_export_2026-10-17.xlsx"
    assert payload["mime_type"] == XLSX_MIME_TYPE
    assert payload["is_base64"] is True
    workbook = load_workbook(io.BytesIO(base64.b64decode(payload["data"])))
    sheet = workbook["Widgets"]
    assert [cell.value for cell in sheet[1]] == ["ID", "Name", "Created At"]
    assert [cell.value for cell in sheet[2]] == [7, "Widget", "2026-01-02"]
    assert sheet.column_dimensions["A"].width == 15


def test_xlsx_with_no_rows_is_one_named_sheet_with_the_header() -> None:
    workbook = load_workbook(io.BytesIO(generate_excel([], COLUMNS, "Empty")))

    assert workbook.sheetnames == ["Empty"]
    sheet = workbook["Empty"]
    assert sheet.max_row == 1
    assert [cell.value for cell in sheet[1]] == ["ID", "Name", "Created At"]


def test_xlsx_drops_control_characters_from_text() -> None:
    columns = [ExportColumn("notes", "Notes")]

    payload = generate_excel([{"notes": "pasted\x0btext\x00"}], columns, "Contacts")

    sheet = load_workbook(io.BytesIO(payload))["Contacts"]
    assert sheet["A2"].value == "pastedtext"


def test_xlsx_keeps_leading_equals_as_text() -> None:
    columns = [ExportColumn("notes", "Notes")]
    note = '=HYPERLINK("http://evil.example","x")'

    payload = generate_excel([{"notes": note}], columns, "Contacts")

    cell = load_workbook(io.BytesIO(payload))["Contacts"]["A2"]
    assert cell.data_type == "s"
    assert cell.value == note


def test_csv_payload_metadata() -> None:
    payload = build_export("csv", [], CONTACT_COLUMNS, basename="contacts_export", sheet_name="Contacts", today=date(2026, 10, 17))

    assert payload["filename"] == "contacts_export_2026-10-17.csv"
    assert payload["mime_type"] == "text/csv"
    assert payload["is_base64"] is False
    assert payload["data"].startswith('"ID","First Name","Last Name","Email"')


def test_contact_export_is_scoped_to_caller(client: TestClient, db_session: Session, users: dict[str, int]) -> None:
    db_session.add_all(
        [
            Contact(first_name="Own", last_name="Row", owner_id=users["owner"], email="own@example.com"),
            Contact(first_name="Foreign", last_name="Row", owner_id=users["other"]),
        ]
    )
    db_session.commit()

    result = _export(client, "contacts", "csv", users["owner"])

    lines = result["data"].split("\n")
    assert len(lines) == 2
    assert lines[1].startswith('"1","Own","Row","own@example.com"')
    assert result["filename"].startswith("contacts_export_")


def test_company_export_includes_every_company(client: TestClient, db_session: Session, users: dict[str, int]) -> None:
    db_session.add_all([Company(name="Mine", owner_id=users["owner"]), Company(name="Theirs", owner_id=users["other"])])
    db_session.commit()

    result = _export(client, "companies", "xlsx", users["owner"])

    workbook = load_workbook(io.BytesIO(base64.b64decode(result["data"])))
    sheet = workbook["Companies"]
    assert sorted(row[1] for row in sheet.iter_rows(min_row=2, values_only=True)) == ["Mine", "Theirs"]


def test_activity_export_renders_status(client: TestClient, db_session: Session, users: dict[str, int]) -> None:
    db_session.add(Activity(type="task", subject="Done task", is_completed=True, owner_id=users["owner"]))
    db_session.commit()

    result = _export(client, "activities", "csv", users["owner"])

    assert '"task","Done task","","completed"' in result["data"]


def test_dashboard_report_with_empty_store(client: TestClient, users: dict[str, int]) -> None:
    result = _export(client, "dashboardReport", "csv", users["owner"])

    lines = result["data"].split("\n")
    assert lines[0] == '"Metric","Value","Description"'
    assert lines[1] == '"Total Contacts","0","Active contacts in CRM"'
    assert lines[5] == '"Pipeline Value","€0","Total value of active opportunities"'
    assert result["filename"].startswith("crm_report_")


def test_unknown_export_format_is_bad_request(client: TestClient, users: dict[str, int]) -> None:
    response = client.post(
        "/api/rpc/export.deals",
        json={"format": "pdf"},
        headers={"Authorization": f"Bearer {issue_token(users['owner'])}"},
    )

    assert response.status_code == 400
