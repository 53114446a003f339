"""Invariant checks that gate every Customer/Offer/Task mutation.

Each rule set only reads through the repositories and either returns the rows
it resolved (so callers do not re-query them) or raises a ``DomainError``.
Nothing here writes to the store or touches the cache.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import TypeVar

from sqlalchemy.orm import Session

from app.crm.errors import (
    DomainError,
    DuplicateKeyError,
    InvalidArgumentError,
    NotFoundError,
    OwnershipMismatchError,
    ReferenceNotFoundError,
)
from app.crm.models import Customer, Offer, Task
from app.crm.repositories import CustomerRepository, OfferRepository, TaskRepository
from app.crm.schemas import CustomerCreate, OfferCreate, OfferStatus, TaskCreate, TaskStatus
from app.metrics import observe_consistency_rejection

StatusT = TypeVar("StatusT", bound=StrEnum)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _reject(entity_type: str, error: DomainError) -> DomainError:
    observe_consistency_rejection(entity_type, error.code)
    return error


def parse_status(entity_type: str, enum_cls: type[StatusT], value: str) -> StatusT:
    try:
        return enum_cls(value)
    except ValueError:
        raise _reject(entity_type, InvalidArgumentError(f"Invalid status: {value}", field="status", value=value)) from None


@dataclass(slots=True)
class CustomerRules:
    customers: CustomerRepository

    def validate_create(self, session: Session, candidate: CustomerCreate) -> None:
        self._ensure_email_free(session, candidate.email, owner_id=None)

    def validate_update(self, session: Session, customer_id: int, candidate: CustomerCreate) -> Customer:
        existing = self._require(session, customer_id)
        self._ensure_email_free(session, candidate.email, owner_id=customer_id)
        return existing

    def validate_delete(self, session: Session, customer_id: int) -> Customer:
        return self._require(session, customer_id)

    def _require(self, session: Session, customer_id: int) -> Customer:
        customer = self.customers.get(session, customer_id)
        if customer is None:
            raise _reject("customer", NotFoundError("customer", customer_id))
        return customer

    def _ensure_email_free(self, session: Session, email: str, *, owner_id: int | None) -> None:
        # Exact match on the stored value: "A@x.com" and "a@x.com" are different customers.
        holder = self.customers.get_by_email(session, email)
        if holder is not None and holder.id != owner_id:
            raise _reject("customer", DuplicateKeyError("customer", "email", email))


@dataclass(slots=True)
class OfferRules:
    customers: CustomerRepository
    offers: OfferRepository
    tasks: TaskRepository

    def validate_create(self, session: Session, candidate: OfferCreate) -> None:
        self._ensure_customer(session, candidate.customer_id)

    def validate_update(self, session: Session, offer_id: int, candidate: OfferCreate) -> Offer:
        existing = self._require(session, offer_id)
        self._ensure_customer(session, candidate.customer_id)
        if candidate.customer_id != existing.customer_id:
            self._ensure_no_foreign_tasks(session, existing, candidate.customer_id)
        return existing

    def validate_delete(self, session: Session, offer_id: int) -> Offer:
        return self._require(session, offer_id)

    def validate_status_change(self, session: Session, offer_id: int, new_status: str) -> tuple[Offer, OfferStatus]:
        existing = self._require(session, offer_id)
        return existing, parse_status("offer", OfferStatus, new_status)

    def _require(self, session: Session, offer_id: int) -> Offer:
        offer = self.offers.get(session, offer_id)
        if offer is None:
            raise _reject("offer", NotFoundError("offer", offer_id))
        return offer

    def _ensure_customer(self, session: Session, customer_id: int) -> None:
        if not self.customers.exists_by_id(session, customer_id):
            raise _reject("offer", ReferenceNotFoundError("customer", "customer_id", customer_id))

    def _ensure_no_foreign_tasks(self, session: Session, offer: Offer, new_customer_id: int) -> None:
        # Moving an offer must not leave tasks pointing at an offer owned by someone else.
        linked = self.tasks.get_by_field(session, "offer_id", offer.id)
        if any(task.customer_id != new_customer_id for task in linked):
            raise _reject("offer", OwnershipMismatchError("offer", "offer", offer.id, new_customer_id))


@dataclass(slots=True)
class TaskRules:
    customers: CustomerRepository
    offers: OfferRepository
    tasks: TaskRepository
    clock: Callable[[], datetime]

    def validate_create(self, session: Session, candidate: TaskCreate) -> None:
        self._ensure_references(session, candidate)
        if as_utc(candidate.due_date) < as_utc(self.clock()):
            raise _reject(
                "task",
                InvalidArgumentError("Due date must be in the future", field="due_date", value=candidate.due_date),
            )

    def validate_update(self, session: Session, task_id: int, candidate: TaskCreate) -> Task:
        existing = self._require(session, task_id)
        self._ensure_references(session, candidate)
        return existing

    def validate_delete(self, session: Session, task_id: int) -> Task:
        return self._require(session, task_id)

    def validate_status_change(self, session: Session, task_id: int, new_status: str) -> tuple[Task, TaskStatus]:
        existing = self._require(session, task_id)
        # Any status may follow any other.
        return existing, parse_status("task", TaskStatus, new_status)

    def _require(self, session: Session, task_id: int) -> Task:
        task = self.tasks.get(session, task_id)
        if task is None:
            raise _reject("task", NotFoundError("task", task_id))
        return task

    def _ensure_references(self, session: Session, candidate: TaskCreate) -> None:
        if not self.customers.exists_by_id(session, candidate.customer_id):
            raise _reject("task", ReferenceNotFoundError("customer", "customer_id", candidate.customer_id))
        if candidate.offer_id is None:
            return
        offer = self.offers.get(session, candidate.offer_id)
        if offer is None:
            raise _reject("task", ReferenceNotFoundError("offer", "offer_id", candidate.offer_id))
        if offer.customer_id != candidate.customer_id:
            raise _reject("task", OwnershipMismatchError("task", "offer", offer.id, candidate.customer_id))


@dataclass(slots=True)
class ConsistencyEngine:
    customers: CustomerRepository = field(default_factory=CustomerRepository)
    offers: OfferRepository = field(default_factory=OfferRepository)
    tasks: TaskRepository = field(default_factory=TaskRepository)
    clock: Callable[[], datetime] = utcnow
    customer: CustomerRules = field(init=False)
    offer: OfferRules = field(init=False)
    task: TaskRules = field(init=False)

    def __post_init__(self) -> None:
        self.customer = CustomerRules(self.customers)
        self.offer = OfferRules(self.customers, self.offers, self.tasks)
        self.task = TaskRules(self.customers, self.offers, self.tasks, self.clock)
