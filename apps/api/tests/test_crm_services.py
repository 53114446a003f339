from __future__ import annotations

import logging
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, delete
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.cache import InMemoryCache
from app.core.database import Base
from app.crm.consistency import CustomerRules, OfferRules
from app.crm.errors import (
    DuplicateKeyError,
    InvalidArgumentError,
    NotFoundError,
    OwnershipMismatchError,
    ReferenceNotFoundError,
)
from app.crm.models import Customer, Offer, Task
from app.crm.schemas import (
    CustomerCreate,
    CustomerStatus,
    CustomerUpdate,
    OfferCreate,
    OfferStatus,
    OfferUpdate,
    TaskCreate,
    TaskPriority,
    TaskStatus,
    TaskUpdate,
)
from app.crm.service import CRMServices, build_crm_services


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


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
def clock() -> Clock:
    return Clock(datetime(2026, 6, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture()
def crm(clock: Clock) -> CRMServices:
    return build_crm_services(InMemoryCache(), clock=clock)


def _customer(crm: CRMServices, session: Session, email: str = "jan@example.com"):
    return crm.customers.create(
        session,
        CustomerCreate(first_name="Jan", last_name="Kowalski", email=email, phone="+48 123 456 789"),
    )


def _offer(crm: CRMServices, session: Session, customer_id: int, title: str = "Website"):
    return crm.offers.create(session, OfferCreate(title=title, price=Decimal("1500.00"), customer_id=customer_id))


def _task(crm: CRMServices, session: Session, clock: Clock, customer_id: int, offer_id: int | None = None, days: int = 3):
    return crm.tasks.create(
        session,
        TaskCreate(
            title="Prepare proposal",
            due_date=clock.now + timedelta(days=days),
            customer_id=customer_id,
            offer_id=offer_id,
            priority=TaskPriority.HIGH,
        ),
    )


def test_create_customer_defaults_to_lead(crm: CRMServices, db_session: Session) -> None:
    created = _customer(crm, db_session)

    assert created.id > 0
    assert created.status is CustomerStatus.LEAD
    assert crm.customers.get_by_id(db_session, created.id) == created


def test_duplicate_email_rejected_and_store_unchanged(crm: CRMServices, db_session: Session) -> None:
    _customer(crm, db_session, "dup@example.com")

    with pytest.raises(DuplicateKeyError):
        _customer(crm, db_session, "dup@example.com")

    assert [customer.email for customer in crm.customers.get_all(db_session)] == ["dup@example.com"]


def test_emails_differing_only_in_case_are_distinct_customers(crm: CRMServices, db_session: Session) -> None:
    first = _customer(crm, db_session, "Ada@Example.COM")
    second = _customer(crm, db_session, "Ada@example.com")

    assert first.id != second.id
    assert first.email == "Ada@Example.COM"
    assert [customer.email for customer in crm.customers.get_all(db_session)] == ["Ada@Example.COM", "Ada@example.com"]


def test_unique_email_constraint_rejects_duplicate_that_skips_precheck(
    crm: CRMServices, db_session: Session, monkeypatch: pytest.MonkeyPatch
) -> None:
    _customer(crm, db_session, "race@example.com")
    monkeypatch.setattr(CustomerRules, "_ensure_email_free", lambda self, session, email, *, owner_id: None)

    with pytest.raises(DuplicateKeyError) as excinfo:
        _customer(crm, db_session, "race@example.com")

    assert excinfo.value.field == "email"
    assert not db_session.new
    assert [customer.email for customer in crm.customers.get_all(db_session)] == ["race@example.com"]


def test_offer_rejected_when_customer_vanishes_before_commit(
    crm: CRMServices, db_session: Session, monkeypatch: pytest.MonkeyPatch
) -> None:
    customer = _customer(crm, db_session)
    ensure_customer = OfferRules._ensure_customer

    def check_then_drop_customer(self: OfferRules, session: Session, customer_id: int) -> None:
        ensure_customer(self, session, customer_id)
        session.execute(delete(Customer).where(Customer.id == customer_id))

    monkeypatch.setattr(OfferRules, "_ensure_customer", check_then_drop_customer)

    with pytest.raises(ReferenceNotFoundError):
        _offer(crm, db_session, customer.id)

    assert crm.offers.get_all(db_session) == []
    assert crm.customers.get_by_id(db_session, customer.id).id == customer.id


def test_update_customer_is_visible_on_next_read(crm: CRMServices, db_session: Session) -> None:
    created = _customer(crm, db_session)
    crm.customers.get_by_id(db_session, created.id)

    updated = crm.customers.update(
        db_session,
        created.id,
        CustomerUpdate(first_name="Janina", last_name="Kowalska", email=created.email, status=CustomerStatus.ACTIVE),
    )

    assert updated.first_name == "Janina"
    assert crm.customers.get_by_id(db_session, created.id).status is CustomerStatus.ACTIVE


def test_get_unknown_customer_raises_not_found(crm: CRMServices, db_session: Session) -> None:
    with pytest.raises(NotFoundError) as exc_info:
        crm.customers.get_by_id(db_session, 41)

    assert exc_info.value.message == "customer not found with id: 41"


def test_offer_for_missing_customer_rejected(crm: CRMServices, db_session: Session) -> None:
    with pytest.raises(ReferenceNotFoundError):
        _offer(crm, db_session, customer_id=999)

    assert crm.offers.get_all(db_session) == []


def test_offer_defaults_and_by_customer_listing(crm: CRMServices, db_session: Session) -> None:
    first = _customer(crm, db_session, "a@example.com")
    second = _customer(crm, db_session, "b@example.com")
    offer = _offer(crm, db_session, first.id)
    _offer(crm, db_session, second.id, title="Other")

    assert offer.status is OfferStatus.DRAFT
    assert [item.id for item in crm.offers.get_by_parent(db_session, first.id)] == [offer.id]


def test_offers_by_missing_customer_raise_reference_error(crm: CRMServices, db_session: Session) -> None:
    with pytest.raises(ReferenceNotFoundError):
        crm.offers.get_by_parent(db_session, 5)


def test_offer_status_change_and_invalid_status(crm: CRMServices, db_session: Session) -> None:
    offer = _offer(crm, db_session, _customer(crm, db_session).id)
    crm.offers.get_by_id(db_session, offer.id)

    changed = crm.offers.change_status(db_session, offer.id, "ACCEPTED")
    assert changed.status is OfferStatus.ACCEPTED
    assert crm.offers.get_by_id(db_session, offer.id).status is OfferStatus.ACCEPTED

    with pytest.raises(InvalidArgumentError):
        crm.offers.change_status(db_session, offer.id, "WON")
    assert crm.offers.get_by_id(db_session, offer.id).status is OfferStatus.ACCEPTED


def test_task_with_offer_of_another_customer_rejected(crm: CRMServices, db_session: Session, clock: Clock) -> None:
    first = _customer(crm, db_session, "a@example.com")
    second = _customer(crm, db_session, "b@example.com")
    foreign_offer = _offer(crm, db_session, second.id)

    with pytest.raises(OwnershipMismatchError):
        _task(crm, db_session, clock, first.id, offer_id=foreign_offer.id)

    assert crm.tasks.get_all(db_session) == []


def test_task_due_date_in_past_rejected_on_create(crm: CRMServices, db_session: Session, clock: Clock) -> None:
    customer = _customer(crm, db_session)

    with pytest.raises(InvalidArgumentError):
        _task(crm, db_session, clock, customer.id, days=-1)


def test_task_update_keeps_past_due_date_allowed(crm: CRMServices, db_session: Session, clock: Clock) -> None:
    customer = _customer(crm, db_session)
    task = _task(crm, db_session, clock, customer.id)

    updated = crm.tasks.update(
        db_session,
        task.id,
        TaskUpdate(title="Follow up", due_date=clock.now - timedelta(days=1), customer_id=customer.id),
    )

    assert updated.title == "Follow up"


def test_task_status_round_trip_through_done(crm: CRMServices, db_session: Session, clock: Clock) -> None:
    task = _task(crm, db_session, clock, _customer(crm, db_session).id)

    assert crm.tasks.change_status(db_session, task.id, "DONE").status is TaskStatus.DONE
    assert crm.tasks.change_status(db_session, task.id, "TODO").status is TaskStatus.TODO


def test_customer_delete_cascades_and_clears_cached_views(
    crm: CRMServices, db_session: Session, clock: Clock
) -> None:
    customer = _customer(crm, db_session)
    offer = _offer(crm, db_session, customer.id)
    task = _task(crm, db_session, clock, customer.id, offer_id=offer.id)

    assert len(crm.offers.get_all(db_session)) == 1
    assert len(crm.tasks.get_by_parent(db_session, customer.id)) == 1
    assert crm.tasks.get_by_id(db_session, task.id).offer_id == offer.id

    crm.customers.delete(db_session, customer.id)

    with pytest.raises(NotFoundError):
        crm.customers.get_by_id(db_session, customer.id)
    with pytest.raises(NotFoundError):
        crm.offers.get_by_id(db_session, offer.id)
    with pytest.raises(NotFoundError):
        crm.tasks.get_by_id(db_session, task.id)
    assert crm.offers.get_all(db_session) == []
    assert crm.tasks.get_all(db_session) == []
    with pytest.raises(ReferenceNotFoundError):
        crm.tasks.get_by_parent(db_session, customer.id)


def test_customer_delete_logs_cascade_counts(
    crm: CRMServices, db_session: Session, clock: Clock, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.INFO, logger="app.crm.service")
    customer = _customer(crm, db_session)
    _offer(crm, db_session, customer.id)
    _task(crm, db_session, clock, customer.id)
    _task(crm, db_session, clock, customer.id)

    crm.customers.delete(db_session, customer.id)

    record = next(record for record in caplog.records if record.getMessage() == "customer.deleted")
    assert getattr(record, "cascaded_offers", None) == 1
    assert getattr(record, "cascaded_tasks", None) == 2


def test_delete_unknown_customer_raises_not_found(crm: CRMServices, db_session: Session) -> None:
    with pytest.raises(NotFoundError):
        crm.customers.delete(db_session, 1)


def test_offer_delete_unlinks_tasks(crm: CRMServices, db_session: Session, clock: Clock) -> None:
    customer = _customer(crm, db_session)
    offer = _offer(crm, db_session, customer.id)
    task = _task(crm, db_session, clock, customer.id, offer_id=offer.id)
    assert [item.id for item in crm.tasks.get_by_offer(db_session, offer.id)] == [task.id]

    crm.offers.delete(db_session, offer.id)

    assert db_session.get(Offer, offer.id) is None
    assert crm.tasks.get_by_id(db_session, task.id).offer_id is None
    assert db_session.get(Task, task.id) is not None


def test_task_status_and_overdue_reads(crm: CRMServices, db_session: Session, clock: Clock) -> None:
    customer = _customer(crm, db_session)
    soon = _task(crm, db_session, clock, customer.id, days=1)
    later = _task(crm, db_session, clock, customer.id, days=5)
    finished = _task(crm, db_session, clock, customer.id, days=1)
    crm.tasks.change_status(db_session, finished.id, "DONE")

    assert [item.id for item in crm.tasks.get_by_status(db_session, "TODO")] == [soon.id, later.id]
    assert [item.id for item in crm.tasks.get_by_customer_and_status(db_session, customer.id, "DONE")] == [finished.id]

    clock.now += timedelta(days=2)

    assert [item.id for item in crm.tasks.get_overdue(db_session)] == [soon.id]


def test_task_status_read_rejects_unknown_status(crm: CRMServices, db_session: Session) -> None:
    with pytest.raises(InvalidArgumentError):
        crm.tasks.get_by_status(db_session, "BLOCKED")


def test_task_update_reassigning_offer_is_validated(crm: CRMServices, db_session: Session, clock: Clock) -> None:
    first = _customer(crm, db_session, "a@example.com")
    second = _customer(crm, db_session, "b@example.com")
    task = _task(crm, db_session, clock, first.id)
    foreign_offer = _offer(crm, db_session, second.id)

    with pytest.raises(OwnershipMismatchError):
        crm.tasks.update(
            db_session,
            task.id,
            TaskUpdate(title="Prepare proposal", due_date=clock.now, customer_id=first.id, offer_id=foreign_offer.id),
        )
    assert crm.tasks.get_by_id(db_session, task.id).offer_id is None


def test_offer_update_moving_offer_with_foreign_tasks_rejected(
    crm: CRMServices, db_session: Session, clock: Clock
) -> None:
    first = _customer(crm, db_session, "a@example.com")
    second = _customer(crm, db_session, "b@example.com")
    offer = _offer(crm, db_session, first.id)
    _task(crm, db_session, clock, first.id, offer_id=offer.id)

    with pytest.raises(OwnershipMismatchError):
        crm.offers.update(
            db_session,
            offer.id,
            OfferUpdate(title="Website", price=Decimal("1500.00"), customer_id=second.id),
        )
    assert crm.offers.get_by_id(db_session, offer.id).customer_id == first.id
