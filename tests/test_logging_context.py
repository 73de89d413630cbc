from __future__ import annotations

import json
import logging
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from erasmus_crm.core.config import get_settings
from erasmus_crm.core.database import Base, get_db
from erasmus_crm.crm.api import get_current_user as crm_get_current_user
from erasmus_crm.crm.models import User
from erasmus_crm.crm.service import ActorUser
from erasmus_crm.logging import JsonLogFormatter
from erasmus_crm.main import app


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


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def users(db_session: Session) -> dict[str, int]:
    author = User(open_id="log-author", name="Author", email="author@example.com")
    reader = User(open_id="log-reader", name="Reader", email="reader@example.com")
    db_session.add_all([author, reader])
    db_session.commit()
    return {"author": author.id, "reader": reader.id}


@pytest.fixture()
def client(db_session: Session, users: dict[str, int]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> ActorUser:
        return ActorUser(
            id=users["author"],
            name="Author",
            email="author@example.com",
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get("/api/crm/contacts/123456", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [
        record
        for record in caplog.records
        if record.name == "erasmus_crm.request" and record.getMessage() == "http.request"
    ]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/crm/contacts/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_fanout_logs_carry_recipient_count_and_correlation_id(
    client: TestClient, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.INFO)

    response = client.post("/api/crm/deals", json={"title": "Logged deal"}, headers={"X-Correlation-Id": "log-deal-1"})
    assert response.status_code == 201

    fanout = [record for record in caplog.records if record.getMessage() == "notification.fanout"]
    assert fanout
    assert getattr(fanout[-1], "notification_type", None) == "new_deal"
    assert getattr(fanout[-1], "recipient_count", None) == 1
    assert getattr(fanout[-1], "correlation_id", None) == "log-deal-1"


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.makeLogRecord(
        {
            "name": "erasmus_crm.crm",
            "levelname": "INFO",
            "msg": "export.generated",
            "correlation_id": "fmt-1",
            "export_entity": "deals",
            "row_count": 3,
            "password": "hunter2",
        }
    )

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "export.generated"
    assert payload["correlation_id"] == "fmt-1"
    assert payload["fields"] == {"export_entity": "deals", "row_count": 3}
