from __future__ import annotations

import os
from collections.abc import Generator

import httpx
import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from erasmus_crm.context import correlation_scope
from erasmus_crm.core.auth import issue_token
from erasmus_crm.core.config import Settings, get_settings
from erasmus_crm.core.database import Base, get_db
from erasmus_crm.crm.models import User
from erasmus_crm.crm.outbound import OwnerNotificationClient
from erasmus_crm.main import app
from erasmus_crm.otel import setup_inmemory_otel


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
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_request_span_contains_correlation_id(
    client: TestClient, db_session: Session, span_exporter: InMemorySpanExporter
) -> None:
    user = User(open_id="otel-user", name="Tracer", email="tracer@example.com")
    db_session.add(user)
    db_session.commit()

    response = client.post(
        "/api/rpc/companies.create",
        json={"name": "Traced Co"},
        headers={"X-Correlation-Id": "otel-corr-1", "Authorization": f"Bearer {issue_token(user.id)}"},
    )
    assert response.status_code == 200

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_owner_notification_span_records_status(span_exporter: InMemorySpanExporter) -> None:
    settings = Settings(notify_owner_url="https://notify.example.test/owner")
    client = OwnerNotificationClient(settings, transport=httpx.MockTransport(lambda request: httpx.Response(503)))

    with correlation_scope("otel-notify-1"):
        assert client.notify("Deal Won", "digest") is False

    spans = [span for span in span_exporter.get_finished_spans() if span.name == "notification.owner.send"]
    assert spans
    assert spans[-1].attributes.get("correlation_id") == "otel-notify-1"
    assert spans[-1].attributes.get("http.status_code") == 503
