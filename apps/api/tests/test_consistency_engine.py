from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.crm.consistency import ConsistencyEngine
from app.crm.errors import (
    DuplicateKeyError,
    InvalidArgumentError,
    NotFoundError,
    OwnershipMismatchError,
    ReferenceNotFoundError,
)
from app.crm.models import Customer, Offer, Task
from app.crm.schemas import CustomerCreate, OfferCreate, OfferStatus, TaskCreate, TaskStatus


NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


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
def engine() -> ConsistencyEngine:
    return ConsistencyEngine(clock=lambda: NOW)


def _customer(session: Session, email: str = "jan@example.com") -> Customer:
    customer = Customer(first_name="Jan", last_name="Kowalski", email=email, status="LEAD")
    session.add(customer)
    session.commit()
    return customer


def _offer(session: Session, customer: Customer) -> Offer:
    offer = Offer(title="Website", price=Decimal("1500.00"), status="DRAFT", customer_id=customer.id)
    session.add(offer)
    session.commit()
    return offer


def _task(session: Session, customer: Customer, offer: Offer | None = None) -> Task:
    task = Task(
        title="Call back",
        due_date=NOW + timedelta(days=1),
        status="TODO",
        priority="MEDIUM",
        customer_id=customer.id,
        offer_id=offer.id if offer else None,
    )
    session.add(task)
    session.commit()
    return task


def _customer_dto(email: str = "jan@example.com") -> CustomerCreate:
    return CustomerCreate(first_name="Jan", last_name="Kowalski", email=email)


def _task_dto(customer_id: int, offer_id: int | None = None, due: datetime | None = None) -> TaskCreate:
    return TaskCreate(
        title="Call back",
        due_date=due or NOW + timedelta(days=2),
        customer_id=customer_id,
        offer_id=offer_id,
    )


def test_customer_create_rejects_taken_email(db_session: Session, engine: ConsistencyEngine) -> None:
    _customer(db_session, "taken@example.com")

    with pytest.raises(DuplicateKeyError) as exc_info:
        engine.customer.validate_create(db_session, _customer_dto("taken@example.com"))

    assert exc_info.value.field == "email"
    assert exc_info.value.code == "duplicate_key"


def test_customer_update_may_keep_its_own_email(db_session: Session, engine: ConsistencyEngine) -> None:
    customer = _customer(db_session, "self@example.com")

    resolved = engine.customer.validate_update(db_session, customer.id, _customer_dto("self@example.com"))

    assert resolved.id == customer.id


def test_customer_update_rejects_email_of_another_customer(db_session: Session, engine: ConsistencyEngine) -> None:
    _customer(db_session, "first@example.com")
    second = _customer(db_session, "second@example.com")

    with pytest.raises(DuplicateKeyError):
        engine.customer.validate_update(db_session, second.id, _customer_dto("first@example.com"))


def test_customer_update_and_delete_require_existing_row(db_session: Session, engine: ConsistencyEngine) -> None:
    with pytest.raises(NotFoundError):
        engine.customer.validate_update(db_session, 404, _customer_dto())
    with pytest.raises(NotFoundError):
        engine.customer.validate_delete(db_session, 404)


def test_offer_create_requires_existing_customer(db_session: Session, engine: ConsistencyEngine) -> None:
    dto = OfferCreate(title="Website", price=Decimal("10.00"), customer_id=999)

    with pytest.raises(ReferenceNotFoundError) as exc_info:
        engine.offer.validate_create(db_session, dto)

    assert exc_info.value.message == "Referenced customer not found with id: 999"


def test_offer_reassignment_rejected_when_linked_tasks_belong_to_old_customer(
    db_session: Session, engine: ConsistencyEngine
) -> None:
    owner = _customer(db_session, "owner@example.com")
    other = _customer(db_session, "other@example.com")
    offer = _offer(db_session, owner)
    _task(db_session, owner, offer)

    dto = OfferCreate(title="Website", price=Decimal("1500.00"), customer_id=other.id)
    with pytest.raises(OwnershipMismatchError):
        engine.offer.validate_update(db_session, offer.id, dto)


def test_offer_reassignment_allowed_without_linked_tasks(db_session: Session, engine: ConsistencyEngine) -> None:
    owner = _customer(db_session, "owner@example.com")
    other = _customer(db_session, "other@example.com")
    offer = _offer(db_session, owner)

    dto = OfferCreate(title="Website", price=Decimal("1500.00"), customer_id=other.id)
    assert engine.offer.validate_update(db_session, offer.id, dto).id == offer.id


def test_offer_status_change_checks_existence_before_status(db_session: Session, engine: ConsistencyEngine) -> None:
    with pytest.raises(NotFoundError):
        engine.offer.validate_status_change(db_session, 12345, "NOT_A_STATUS")


def test_offer_status_change_rejects_unknown_status(db_session: Session, engine: ConsistencyEngine) -> None:
    offer = _offer(db_session, _customer(db_session))

    with pytest.raises(InvalidArgumentError) as exc_info:
        engine.offer.validate_status_change(db_session, offer.id, "SHIPPED")

    assert exc_info.value.message == "Invalid status: SHIPPED"


def test_offer_status_change_accepts_any_known_status(db_session: Session, engine: ConsistencyEngine) -> None:
    offer = _offer(db_session, _customer(db_session))

    for status in OfferStatus:
        _, parsed = engine.offer.validate_status_change(db_session, offer.id, status.value)
        assert parsed is status


def test_task_create_checks_customer_before_offer(db_session: Session, engine: ConsistencyEngine) -> None:
    with pytest.raises(ReferenceNotFoundError) as exc_info:
        engine.task.validate_create(db_session, _task_dto(customer_id=77, offer_id=88))

    assert exc_info.value.entity_type == "customer"


def test_task_create_rejects_missing_offer(db_session: Session, engine: ConsistencyEngine) -> None:
    customer = _customer(db_session)

    with pytest.raises(ReferenceNotFoundError) as exc_info:
        engine.task.validate_create(db_session, _task_dto(customer.id, offer_id=88))

    assert exc_info.value.entity_type == "offer"


def test_task_create_rejects_offer_of_another_customer(db_session: Session, engine: ConsistencyEngine) -> None:
    first = _customer(db_session, "a@example.com")
    second = _customer(db_session, "b@example.com")
    foreign_offer = _offer(db_session, second)

    with pytest.raises(OwnershipMismatchError) as exc_info:
        engine.task.validate_create(db_session, _task_dto(first.id, offer_id=foreign_offer.id))

    assert exc_info.value.code == "ownership_mismatch"
    assert exc_info.value.details["customer_id"] == first.id


def test_task_create_rejects_past_due_date(db_session: Session, engine: ConsistencyEngine) -> None:
    customer = _customer(db_session)

    with pytest.raises(InvalidArgumentError) as exc_info:
        engine.task.validate_create(db_session, _task_dto(customer.id, due=NOW - timedelta(minutes=1)))

    assert exc_info.value.details["field"] == "due_date"


def test_task_update_accepts_past_due_date(db_session: Session, engine: ConsistencyEngine) -> None:
    customer = _customer(db_session)
    task = _task(db_session, customer)

    resolved = engine.task.validate_update(db_session, task.id, _task_dto(customer.id, due=NOW - timedelta(days=3)))

    assert resolved.id == task.id


def test_task_status_change_allows_every_transition(db_session: Session, engine: ConsistencyEngine) -> None:
    task = _task(db_session, _customer(db_session))

    for status in (TaskStatus.DONE, TaskStatus.TODO, TaskStatus.IN_PROGRESS, TaskStatus.DONE):
        _, parsed = engine.task.validate_status_change(db_session, task.id, status.value)
        assert parsed is status


def test_rejections_do_not_write(db_session: Session, engine: ConsistencyEngine) -> None:
    customer = _customer(db_session)

    with pytest.raises(ReferenceNotFoundError):
        engine.task.validate_create(db_session, _task_dto(customer.id, offer_id=5))

    assert db_session.query(Task).count() == 0
