from __future__ import annotations

import uuid
from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from usage_billing import events
from usage_billing.business.clients.models import BillingClient
from usage_billing.business.usage.models import UsageImportJob
from usage_billing.core.config import get_settings
from usage_billing.core.database import Base, get_db, get_session_factory
from usage_billing.main import app


USAGE_CSV = (
    b"LinkedAccountId,ProductCode,UsageType,UsageQuantity,Rate,Cost,CurrencyCode\n"
    b"111,AmazonEC2,BoxUsage,1,0.5,0.5,USD\n"
)


@pytest.fixture()
def session_factory() -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    finally:
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    session = session_factory()
    session.add(BillingClient(client_id=7, client_name="Seven", default_currency="USD", tax_registered=True, account_ids=[]))
    session.commit()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def clear_stubs(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("FILE_STORE_DIR", str(tmp_path / "files"))
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session, session_factory: sessionmaker[Session]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _sync_import(client: TestClient, correlation_id: str) -> dict:
    response = client.post(
        "/usage/imports?sync=true",
        data={
            "client_id": "7",
            "source_kind": "file",
            "billing_period_start": "2024-12-01",
            "billing_period_end": "2024-12-31",
        },
        files={"file": ("usage.csv", USAGE_CSV, "text/csv")},
        headers={"X-Correlation-Id": correlation_id},
    )
    assert response.status_code == 201
    return response.json()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/usage/imports/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/billing/invoices/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_request_id_header_is_accepted_as_fallback(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Request-Id": "req-42"})
    assert response.headers.get("x-correlation-id") == "req-42"


def test_event_envelope_includes_correlation_id(client: TestClient) -> None:
    response = client.post(
        "/billing/invoices",
        json={"client_id": 7, "lines": [{"quantity": "1", "rate": "10"}]},
        headers={"X-Correlation-Id": "corr-event-1"},
    )
    assert response.status_code == 201

    created_events = [item for item in events.published_events if item.get("event_type") == "invoice.created"]
    assert created_events
    assert created_events[-1].get("correlation_id") == "corr-event-1"


def test_import_job_keeps_request_correlation_id(client: TestClient, db_session: Session) -> None:
    body = _sync_import(client, "corr-job-1")

    job = db_session.get(UsageImportJob, uuid.UUID(body["id"]))
    assert job is not None
    assert job.correlation_id == "corr-job-1"

    completed = [item for item in events.published_events if item.get("event_type") == "usage_import.completed"]
    assert completed
    assert completed[-1].get("correlation_id") == "corr-job-1"
    assert completed[-1].get("job_id") == body["id"]
