from __future__ import annotations

import csv
import io
import uuid
from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select, update
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from usage_billing.business.clients.models import BillingClient
from usage_billing.business.usage.api import get_dispatcher
from usage_billing.business.usage.models import UsageImportJob, UsageRecord
from usage_billing.core.auth import AuthUser, get_current_user
from usage_billing.core.config import get_settings
from usage_billing.core.database import Base, get_db, get_session_factory
from usage_billing.main import app


def _csv_bytes(rows: list[list[str]]) -> bytes:
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(["LinkedAccountId", "ProductCode", "UsageType", "UsageQuantity", "Rate", "Cost", "CurrencyCode"])
    writer.writerows(rows)
    return output.getvalue().encode("utf-8")


USAGE_CSV = _csv_bytes(
    [
        ["111", "AmazonEC2", "BoxUsage:t3.micro", "24", "0.0104", "0.2496", "USD"],
        ["111", "AmazonS3", "TimedStorage-ByteHrs", "100", "0.023", "2.30", "USD"],
        ["222", "AmazonRDS", "InstanceUsage", "1", "0.5", "", "USD"],
    ]
)


class RecordingDispatcher:
    def __init__(self) -> None:
        self.dispatched: list[uuid.UUID] = []

    def dispatch(self, job_id: uuid.UUID) -> None:
        self.dispatched.append(job_id)


@pytest.fixture(autouse=True)
def configure_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("FILE_STORE_DIR", str(tmp_path / "files"))
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


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


@pytest.fixture()
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture()
def client(
    db_session: Session,
    session_factory: sessionmaker[Session],
    dispatcher: RecordingDispatcher,
) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_current_user] = lambda: AuthUser(sub="user-1", roles=["admin"])
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _form(**overrides: str) -> dict[str, str]:
    data = {
        "client_id": "7",
        "source_kind": "file",
        "billing_period_start": "2024-12-01",
        "billing_period_end": "2024-12-31",
    }
    data.update(overrides)
    return data


def _upload(client: TestClient, *, sync: bool = False, **form: str):  # type: ignore[no-untyped-def]
    return client.post(
        f"/usage/imports{'?sync=true' if sync else ''}",
        data=_form(**form),
        files={"file": ("usage.csv", USAGE_CSV, "text/csv")},
        headers={"X-Correlation-Id": "corr-usage-api"},
    )


def test_create_import_returns_pending_job_and_dispatches(
    client: TestClient,
    db_session: Session,
    dispatcher: RecordingDispatcher,
) -> None:
    response = _upload(client)

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "pending"
    job_id = uuid.UUID(body["job_id"])
    assert dispatcher.dispatched == [job_id]

    job = db_session.get(UsageImportJob, job_id)
    assert job is not None
    assert job.requested_by == "user-1"
    assert job.correlation_id == "corr-usage-api"
    assert job.file_name == "usage.csv"
    assert job.source_file_id is not None


def test_sync_import_runs_inline(client: TestClient, dispatcher: RecordingDispatcher) -> None:
    response = _upload(client, sync=True)

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "completed"
    assert body["total_records"] == 3
    assert body["processed_records"] == 2
    assert body["failed_records"] == 1
    assert body["error_sample"][0]["row_number"] == 3
    assert dispatcher.dispatched == []

    status_response = client.get(f"/usage/imports/{body['id']}")
    assert status_response.status_code == 200
    assert status_response.json()["processed_records"] == 2

    records = client.get(f"/usage/imports/{body['id']}/records")
    assert records.status_code == 200
    assert [item["row_number"] for item in records.json()] == [1, 2]
    assert records.json()[1]["service_code"] == "AmazonS3"


def test_unknown_client_returns_error_envelope(client: TestClient) -> None:
    response = _upload(client, client_id="404")

    assert response.status_code == 404
    body = response.json()
    assert body["code"] == "CLIENT_NOT_FOUND"
    assert body["correlation_id"] == "corr-usage-api"
    assert "message" in body and "details" in body


def test_inverted_period_is_rejected(client: TestClient) -> None:
    response = _upload(client, billing_period_start="2025-01-01", billing_period_end="2024-12-01")

    assert response.status_code == 422
    assert response.json()["code"] == "INVALID_PERIOD"


def test_file_import_without_upload_is_rejected(client: TestClient) -> None:
    response = client.post("/usage/imports", data=_form())

    assert response.status_code == 422
    assert response.json()["code"] == "MISSING_SOURCE"


def test_unknown_source_kind_is_rejected(client: TestClient) -> None:
    response = client.post("/usage/imports", data=_form(source_kind="ftp"))

    assert response.status_code == 422
    assert response.json()["code"] == "VALIDATION_ERROR"


def test_manual_import_without_source_stays_pending(client: TestClient, dispatcher: RecordingDispatcher) -> None:
    response = client.post("/usage/imports", data=_form(source_kind="manual", account_ids="111, 222"))

    assert response.status_code == 201
    assert response.json()["status"] == "pending"
    assert dispatcher.dispatched == []

    job = client.get(f"/usage/imports/{response.json()['job_id']}").json()
    assert job["account_scope"] == ["111", "222"]


def test_scenario_d_delete_rules(client: TestClient, db_session: Session) -> None:
    processing_id = _upload(client).json()["job_id"]
    db_session.execute(
        update(UsageImportJob).where(UsageImportJob.id == uuid.UUID(processing_id)).values(status="processing")
    )
    db_session.commit()

    rejected = client.delete(f"/usage/imports/{processing_id}")
    assert rejected.status_code == 409
    assert rejected.json()["code"] == "IMPORT_IN_PROGRESS"

    failed_id = _upload(client, sync=True).json()["id"]
    db_session.execute(update(UsageImportJob).where(UsageImportJob.id == uuid.UUID(failed_id)).values(status="failed"))
    db_session.commit()

    deleted = client.delete(f"/usage/imports/{failed_id}")
    assert deleted.status_code == 204
    remaining = db_session.scalar(
        select(func.count()).select_from(UsageRecord).where(UsageRecord.job_id == uuid.UUID(failed_id))
    )
    assert remaining == 0
    assert client.get(f"/usage/imports/{failed_id}").json()["code"] == "IMPORT_NOT_FOUND"


def test_completed_import_needs_explicit_purge(client: TestClient) -> None:
    job_id = _upload(client, sync=True).json()["id"]

    assert client.delete(f"/usage/imports/{job_id}").status_code == 409
    assert client.delete(f"/usage/imports/{job_id}?purge=true").status_code == 204
    assert client.get(f"/usage/imports/{job_id}").status_code == 404


def test_cancel_rules(client: TestClient) -> None:
    pending_id = _upload(client).json()["job_id"]
    cancelled = client.post(f"/usage/imports/{pending_id}/cancel")
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "failed"
    assert cancelled.json()["error_summary"] == "cancelled"

    completed_id = _upload(client, sync=True).json()["id"]
    rejected = client.post(f"/usage/imports/{completed_id}/cancel")
    assert rejected.status_code == 409
    assert rejected.json()["code"] == "IMPORT_NOT_CANCELLABLE"


def test_list_imports_filters_by_status(client: TestClient) -> None:
    _upload(client)
    completed_id = _upload(client, sync=True).json()["id"]

    everything = client.get("/usage/imports", params={"client_id": 7})
    completed = client.get("/usage/imports", params={"status": "completed"})

    assert everything.status_code == 200
    assert len(everything.json()) == 2
    assert [item["id"] for item in completed.json()] == [completed_id]


def test_sweep_endpoint_reports_nothing_when_healthy(client: TestClient) -> None:
    _upload(client, sync=True)

    response = client.post("/usage/imports/sweep-stalled")

    assert response.status_code == 200
    assert response.json() == {"failed_job_ids": []}


def _stored_files(tmp_path: Path) -> list[Path]:
    store = tmp_path / "files"
    return list(store.iterdir()) if store.exists() else []


def _job_count(db_session: Session) -> int:
    return int(db_session.scalar(select(func.count()).select_from(UsageImportJob)) or 0)


def test_non_csv_upload_is_rejected(client: TestClient, db_session: Session, tmp_path: Path) -> None:
    response = client.post(
        "/usage/imports",
        data=_form(),
        files={"file": ("usage.xlsx", b"PK\x03\x04", "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet")},
    )

    assert response.status_code == 415
    assert response.json()["code"] == "UNSUPPORTED_SOURCE_TYPE"
    assert _job_count(db_session) == 0
    assert _stored_files(tmp_path) == []


def test_csv_content_type_is_enough_without_extension(client: TestClient, dispatcher: RecordingDispatcher) -> None:
    response = client.post(
        "/usage/imports",
        data=_form(),
        files={"file": ("december-export", USAGE_CSV, "text/csv")},
    )

    assert response.status_code == 201
    assert len(dispatcher.dispatched) == 1


def test_oversized_upload_is_rejected_and_discarded(
    client: TestClient,
    db_session: Session,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("USAGE_IMPORT_MAX_FILE_BYTES", "64")
    get_settings.cache_clear()

    response = _upload(client)

    assert response.status_code == 413
    assert response.json()["code"] == "SOURCE_TOO_LARGE"
    assert response.json()["details"] == {"max_bytes": 64}
    assert _job_count(db_session) == 0
    assert _stored_files(tmp_path) == []


def test_list_imports_searches_file_and_client_names(client: TestClient, db_session: Session) -> None:
    db_session.add(BillingClient(client_id=8, client_name="Northwind", default_currency="USD", tax_registered=False, account_ids=[]))
    db_session.commit()
    seven_id = client.post(
        "/usage/imports",
        data=_form(),
        files={"file": ("december-usage.csv", USAGE_CSV, "text/csv")},
    ).json()["job_id"]
    northwind_id = client.post(
        "/usage/imports",
        data=_form(client_id="8"),
        files={"file": ("usage.csv", USAGE_CSV, "text/csv")},
    ).json()["job_id"]

    by_file = client.get("/usage/imports", params={"search": "DECEMBER"})
    by_client = client.get("/usage/imports", params={"search": "north"})
    nothing = client.get("/usage/imports", params={"search": "zzz"})

    assert [item["id"] for item in by_file.json()] == [seven_id]
    assert [item["id"] for item in by_client.json()] == [northwind_id]
    assert nothing.json() == []
