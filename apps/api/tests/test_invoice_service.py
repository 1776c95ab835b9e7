from __future__ import annotations

import threading
from collections.abc import Generator
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine, event, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import NullPool

from usage_billing import events
from usage_billing.business.billing.models import BillingInvoice, BillingInvoiceLine, BillingInvoiceSequence
from usage_billing.business.billing.schemas import InvoiceCreate, InvoiceLineCreate, InvoiceStatusChange, InvoiceUpdate
from usage_billing.business.billing.sequence import SequenceAllocator
from usage_billing.business.billing.service import InvoiceService, is_invoice_number_violation
from usage_billing.business.clients.models import BillingClient
from usage_billing.core.config import get_settings
from usage_billing.core.database import Base
from usage_billing.core.errors import (
    ClientNotFound,
    DuplicateInvoiceNumber,
    InvalidStatusTransition,
    InvoiceNotEditable,
    InvoiceNotFound,
)


def _file_engine(path: Path) -> Engine:
    engine = create_engine(
        f"sqlite+pysqlite:///{path}",
        connect_args={"check_same_thread": False, "timeout": 60},
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):  # type: ignore[no-untyped-def]
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


class StuckAllocator(SequenceAllocator):
    """Always hands out the same number."""

    def allocate(self, session: Session, client_id: int, year_month: str) -> int:
        return 1


@pytest.fixture(autouse=True)
def reset_settings() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def session_factory(tmp_path: Path) -> Generator[sessionmaker[Session], None, None]:
    engine = _file_engine(tmp_path / "invoices.db")
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    with factory() as session:
        session.add_all(
            [
                BillingClient(client_id=7, client_name="Seven", default_currency="USD", tax_registered=True, account_ids=[]),
                BillingClient(client_id=12, client_name="Twelve", default_currency="inr", tax_registered=False, account_ids=[]),
            ]
        )
        session.commit()
    try:
        yield factory
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


def _payload(client_id: int = 7, **overrides: object) -> InvoiceCreate:
    data: dict[str, object] = {
        "client_id": client_id,
        "issue_date": date(2024, 12, 10),
        "lines": [
            InvoiceLineCreate(quantity=Decimal("10"), rate=Decimal("5.00")),
            InvoiceLineCreate(quantity=Decimal("2"), rate=Decimal("100.00"), discount_percent=Decimal("10")),
        ],
    }
    data.update(overrides)
    return InvoiceCreate(**data)  # type: ignore[arg-type]


def test_scenario_b_concurrent_invoices_get_distinct_numbers(session_factory: sessionmaker[Session]) -> None:
    service = InvoiceService()
    barrier = threading.Barrier(2)
    numbers: list[str] = []
    errors: list[BaseException] = []

    def create() -> None:
        try:
            barrier.wait()
            with session_factory() as session:
                numbers.append(service.create_invoice(session, "user-1", _payload()).invoice_number)
        except BaseException as exc:  # noqa: BLE001
            errors.append(exc)

    threads = [threading.Thread(target=create) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert sorted(numbers) == ["TejIT-007-202412-001", "TejIT-007-202412-002"]


def test_create_invoice_applies_client_defaults_and_totals(session_factory: sessionmaker[Session]) -> None:
    service = InvoiceService()

    with session_factory() as session:
        invoice = service.create_invoice(session, "user-1", _payload())

    assert invoice.invoice_number == "TejIT-007-202412-001"
    assert invoice.status == "draft"
    assert invoice.tax_applicable is True
    assert invoice.currency == "USD"
    assert invoice.due_date == date(2025, 1, 9)
    assert invoice.subtotal == Decimal("230.00")
    assert invoice.tax == Decimal("41.40")
    assert invoice.total == Decimal("271.40")
    assert [line.position for line in invoice.lines] == [1, 2]
    assert invoice.created_by == "user-1"
    assert any(
        envelope.get("event_type") == "invoice.created" and envelope.get("invoice_number") == invoice.invoice_number
        for envelope in events.published_events
    )


def test_unregistered_client_defaults_to_no_tax(session_factory: sessionmaker[Session]) -> None:
    with session_factory() as session:
        invoice = InvoiceService().create_invoice(session, None, _payload(client_id=12))

    assert invoice.invoice_number == "TejIT-012-202412-001"
    assert invoice.tax_applicable is False
    assert invoice.tax == Decimal("0.00")
    assert invoice.currency == "INR"
    assert {line.currency for line in invoice.lines} == {"INR"}


def test_numbering_restarts_each_month(session_factory: sessionmaker[Session]) -> None:
    service = InvoiceService()

    with session_factory() as session:
        december = service.create_invoice(session, None, _payload(issue_date=date(2024, 12, 31)))
        january = service.create_invoice(session, None, _payload(issue_date=date(2025, 1, 1)))
        january_again = service.create_invoice(session, None, _payload(issue_date=date(2025, 1, 15)))

    assert december.invoice_number == "TejIT-007-202412-001"
    assert january.invoice_number == "TejIT-007-202501-001"
    assert january_again.invoice_number == "TejIT-007-202501-002"


def test_prefix_comes_from_configuration(session_factory: sessionmaker[Session], monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("INVOICE_NUMBER_PREFIX", "ACME")
    get_settings.cache_clear()

    with session_factory() as session:
        invoice = InvoiceService().create_invoice(session, None, _payload())

    assert invoice.invoice_number == "ACME-007-202412-001"


def test_duplicate_number_is_rejected_and_rolled_back(session_factory: sessionmaker[Session]) -> None:
    service = InvoiceService(allocator=StuckAllocator())

    with session_factory() as session:
        service.create_invoice(session, None, _payload())
    with session_factory() as session:
        with pytest.raises(DuplicateInvoiceNumber) as exc_info:
            service.create_invoice(session, None, _payload())
        line_count = session.scalar(select(func.count()).select_from(BillingInvoiceLine))

    assert exc_info.value.code == "DUPLICATE_INVOICE_NUMBER"
    assert exc_info.value.status_code == 409
    assert line_count == 2


def test_unknown_client_is_rejected(session_factory: sessionmaker[Session]) -> None:
    with session_factory() as session:
        with pytest.raises(ClientNotFound):
            InvoiceService().create_invoice(session, None, _payload(client_id=999))


def test_status_transitions(session_factory: sessionmaker[Session]) -> None:
    service = InvoiceService()
    with session_factory() as session:
        invoice = service.create_invoice(session, None, _payload())

        sent = service.change_status(session, invoice.id, InvoiceStatusChange(status="sent"))
        assert sent.status == "sent"

        with pytest.raises(InvalidStatusTransition):
            service.change_status(session, invoice.id, InvoiceStatusChange(status="draft"))

        paid = service.change_status(session, invoice.id, InvoiceStatusChange(status="paid"))
        assert paid.status == "paid"

        with pytest.raises(InvalidStatusTransition):
            service.change_status(session, invoice.id, InvoiceStatusChange(status="cancelled"))


def test_only_drafts_are_editable_or_deletable(session_factory: sessionmaker[Session]) -> None:
    service = InvoiceService()
    with session_factory() as session:
        invoice = service.create_invoice(session, None, _payload())

        updated = service.update_invoice(session, invoice.id, InvoiceUpdate(notes="net 30", tax_applicable=False))
        assert updated.notes == "net 30"
        assert updated.tax == Decimal("0.00")
        assert updated.total == Decimal("230.00")

        service.change_status(session, invoice.id, InvoiceStatusChange(status="sent"))
        with pytest.raises(InvoiceNotEditable):
            service.update_invoice(session, invoice.id, InvoiceUpdate(notes="late edit"))
        with pytest.raises(InvoiceNotEditable):
            service.delete_invoice(session, invoice.id)


def test_delete_draft_removes_lines(session_factory: sessionmaker[Session]) -> None:
    service = InvoiceService()
    with session_factory() as session:
        invoice = service.create_invoice(session, None, _payload())
        service.delete_invoice(session, invoice.id)

        with pytest.raises(InvoiceNotFound):
            service.get_invoice(session, invoice.id)
        assert session.scalar(select(func.count()).select_from(BillingInvoiceLine)) == 0


def test_list_invoices_filters(session_factory: sessionmaker[Session]) -> None:
    service = InvoiceService()
    with session_factory() as session:
        first = service.create_invoice(session, None, _payload())
        service.create_invoice(session, None, _payload(client_id=12))
        service.change_status(session, first.id, InvoiceStatusChange(status="sent"))

        by_client = service.list_invoices(session, client_id=7)
        sent = service.list_invoices(session, status="sent")

    assert [item.invoice_number for item in by_client] == ["TejIT-007-202412-001"]
    assert [item.id for item in sent] == [first.id]


class ConflictingSequenceAllocator(SequenceAllocator):
    """Allocates normally, then stages a second counter row for the same key."""

    def allocate(self, session: Session, client_id: int, year_month: str) -> int:
        value = super().allocate(session, client_id, year_month)
        session.add(BillingInvoiceSequence(client_id=client_id, year_month=year_month, last_value=value))
        return value


def test_zero_quantity_line_is_rejected() -> None:
    with pytest.raises(ValidationError):
        InvoiceLineCreate(quantity=Decimal("0"), rate=Decimal("5"))


def test_other_integrity_errors_are_not_reported_as_duplicate_numbers(
    session_factory: sessionmaker[Session],
    caplog: pytest.LogCaptureFixture,
) -> None:
    service = InvoiceService(allocator=ConflictingSequenceAllocator())

    with session_factory() as session:
        with pytest.raises(IntegrityError) as exc_info:
            service.create_invoice(session, None, _payload())
        invoice_count = session.scalar(select(func.count()).select_from(BillingInvoice))

    assert not is_invoice_number_violation(exc_info.value)
    assert invoice_count == 0
    assert not any(record.getMessage() == "invoice.duplicate_number" for record in caplog.records)
    assert any(record.getMessage() == "invoice.insert_rejected" for record in caplog.records)


def test_invoice_number_violation_is_recognised_by_constraint_name() -> None:
    class Diag:
        constraint_name = "uq_billing_invoice_number"

    class PgError(Exception):
        diag = Diag()

    class OtherDiag:
        constraint_name = "billing_invoice_line_invoice_id_fkey"

    class PgFkError(Exception):
        diag = OtherDiag()

    assert is_invoice_number_violation(IntegrityError("INSERT", {}, PgError("duplicate key")))
    assert not is_invoice_number_violation(IntegrityError("INSERT", {}, PgFkError("fk violation")))
    assert is_invoice_number_violation(
        IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed: billing_invoice.invoice_number"))
    )
