from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime

from opentelemetry import trace
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.cache import Cache
from app.crm.cache_coordinator import (
    CUSTOMER,
    OFFER,
    TASK,
    CacheCoordinator,
    all_of,
    by_id,
    by_offer,
    by_parent,
    by_status,
)
from app.crm.consistency import ConsistencyEngine, parse_status, utcnow
from app.crm.errors import DomainError, DuplicateKeyError, NotFoundError, ReferenceNotFoundError
from app.crm.models import Customer, Offer, Task
from app.crm.repositories import CustomerRepository, OfferRepository, TaskRepository
from app.crm.schemas import (
    CustomerCreate,
    CustomerRead,
    CustomerUpdate,
    OfferCreate,
    OfferRead,
    OfferUpdate,
    TaskCreate,
    TaskRead,
    TaskStatus,
    TaskUpdate,
)


logger = logging.getLogger("app.crm.service")
tracer = trace.get_tracer("app.crm.service")


@contextmanager
def write_transaction(session: Session, on_conflict: Callable[[], DomainError]) -> Iterator[None]:
    """Flush and commit the enclosed writes; store constraint violations become ``on_conflict()``."""
    try:
        yield
        session.commit()
    except IntegrityError:
        session.rollback()
        raise on_conflict() from None
    except Exception:
        session.rollback()
        raise


def _log_mutation(event: str, entity_type: str, entity_id: int) -> None:
    logger.info(event, extra={"entity_type": entity_type, "entity_id": entity_id})


@dataclass(slots=True)
class CustomerService:
    engine: ConsistencyEngine
    coordinator: CacheCoordinator

    @property
    def repository(self) -> CustomerRepository:
        return self.engine.customers

    def create(self, session: Session, dto: CustomerCreate) -> CustomerRead:
        with tracer.start_as_current_span("crm.customer.create"):
            self.engine.customer.validate_create(session, dto)

            customer = Customer(**dto.model_dump(mode="python"))
            with write_transaction(session, lambda: DuplicateKeyError(CUSTOMER, "email", dto.email)):
                self.repository.save(session, customer)
            session.refresh(customer)

            self.coordinator.invalidate_after(CUSTOMER, "create")
            _log_mutation("customer.created", CUSTOMER, customer.id)
            return CustomerRead.model_validate(customer)

    def get_by_id(self, session: Session, customer_id: int) -> CustomerRead:
        def load() -> CustomerRead:
            customer = self.repository.get(session, customer_id)
            if customer is None:
                raise NotFoundError(CUSTOMER, customer_id)
            return CustomerRead.model_validate(customer)

        return self.coordinator.read(by_id(CUSTOMER, customer_id), load)

    def get_all(self, session: Session) -> list[CustomerRead]:
        return self.coordinator.read_many(
            all_of(CUSTOMER),
            lambda: [CustomerRead.model_validate(row) for row in self.repository.get_all(session)],
        )

    def update(self, session: Session, customer_id: int, dto: CustomerUpdate) -> CustomerRead:
        with tracer.start_as_current_span("crm.customer.update"):
            customer = self.engine.customer.validate_update(session, customer_id, dto)

            with write_transaction(session, lambda: DuplicateKeyError(CUSTOMER, "email", dto.email)):
                for key, value in dto.model_dump(mode="python").items():
                    setattr(customer, key, value)
                self.repository.save(session, customer)
            session.refresh(customer)

            self.coordinator.invalidate_after(CUSTOMER, "update")
            _log_mutation("customer.updated", CUSTOMER, customer_id)
            return CustomerRead.model_validate(customer)

    def delete(self, session: Session, customer_id: int) -> None:
        with tracer.start_as_current_span("crm.customer.delete"):
            self.engine.customer.validate_delete(session, customer_id)

            with write_transaction(session, lambda: NotFoundError(CUSTOMER, customer_id)):
                removed_tasks = self.engine.tasks.delete_by_field(session, "customer_id", customer_id)
                removed_offers = self.engine.offers.delete_by_field(session, "customer_id", customer_id)
                self.repository.delete_by_id(session, customer_id)

            self.coordinator.invalidate_after(CUSTOMER, "delete")
            logger.info(
                "customer.deleted",
                extra={
                    "entity_type": CUSTOMER,
                    "entity_id": customer_id,
                    "cascaded_offers": removed_offers,
                    "cascaded_tasks": removed_tasks,
                },
            )


@dataclass(slots=True)
class OfferService:
    engine: ConsistencyEngine
    coordinator: CacheCoordinator

    @property
    def repository(self) -> OfferRepository:
        return self.engine.offers

    def create(self, session: Session, dto: OfferCreate) -> OfferRead:
        with tracer.start_as_current_span("crm.offer.create"):
            self.engine.offer.validate_create(session, dto)

            offer = Offer(**dto.model_dump(mode="python"))
            with write_transaction(session, lambda: ReferenceNotFoundError(CUSTOMER, "customer_id", dto.customer_id)):
                self.repository.save(session, offer)
            session.refresh(offer)

            self.coordinator.invalidate_after(OFFER, "create")
            _log_mutation("offer.created", OFFER, offer.id)
            return OfferRead.model_validate(offer)

    def get_by_id(self, session: Session, offer_id: int) -> OfferRead:
        def load() -> OfferRead:
            offer = self.repository.get(session, offer_id)
            if offer is None:
                raise NotFoundError(OFFER, offer_id)
            return OfferRead.model_validate(offer)

        return self.coordinator.read(by_id(OFFER, offer_id), load)

    def get_all(self, session: Session) -> list[OfferRead]:
        return self.coordinator.read_many(
            all_of(OFFER),
            lambda: [OfferRead.model_validate(row) for row in self.repository.get_all(session)],
        )

    def get_by_parent(self, session: Session, customer_id: int) -> list[OfferRead]:
        def load() -> list[OfferRead]:
            if not self.engine.customers.exists_by_id(session, customer_id):
                raise ReferenceNotFoundError(CUSTOMER, "customer_id", customer_id)
            rows = self.repository.get_by_field(session, "customer_id", customer_id)
            return [OfferRead.model_validate(row) for row in rows]

        return self.coordinator.read_many(by_parent(OFFER, customer_id), load)

    def update(self, session: Session, offer_id: int, dto: OfferUpdate) -> OfferRead:
        with tracer.start_as_current_span("crm.offer.update"):
            offer = self.engine.offer.validate_update(session, offer_id, dto)

            with write_transaction(session, lambda: ReferenceNotFoundError(CUSTOMER, "customer_id", dto.customer_id)):
                for key, value in dto.model_dump(mode="python").items():
                    setattr(offer, key, value)
                self.repository.save(session, offer)
            session.refresh(offer)

            self.coordinator.invalidate_after(OFFER, "update")
            _log_mutation("offer.updated", OFFER, offer_id)
            return OfferRead.model_validate(offer)

    def change_status(self, session: Session, offer_id: int, new_status: str) -> OfferRead:
        with tracer.start_as_current_span("crm.offer.change_status"):
            offer, status = self.engine.offer.validate_status_change(session, offer_id, new_status)

            with write_transaction(session, lambda: NotFoundError(OFFER, offer_id)):
                offer.status = status.value
                self.repository.save(session, offer)
            session.refresh(offer)

            self.coordinator.invalidate_after(OFFER, "change_status")
            _log_mutation("offer.status_changed", OFFER, offer_id)
            return OfferRead.model_validate(offer)

    def delete(self, session: Session, offer_id: int) -> None:
        with tracer.start_as_current_span("crm.offer.delete"):
            self.engine.offer.validate_delete(session, offer_id)

            with write_transaction(session, lambda: NotFoundError(OFFER, offer_id)):
                # Tasks survive their offer; they just lose the link.
                self.engine.tasks.clear_offer_reference(session, offer_id)
                self.repository.delete_by_id(session, offer_id)

            self.coordinator.invalidate_after(OFFER, "delete")
            _log_mutation("offer.deleted", OFFER, offer_id)


@dataclass(slots=True)
class TaskService:
    engine: ConsistencyEngine
    coordinator: CacheCoordinator

    @property
    def repository(self) -> TaskRepository:
        return self.engine.tasks

    def create(self, session: Session, dto: TaskCreate) -> TaskRead:
        with tracer.start_as_current_span("crm.task.create"):
            self.engine.task.validate_create(session, dto)

            task = Task(**dto.model_dump(mode="python"))
            with write_transaction(session, lambda: ReferenceNotFoundError(CUSTOMER, "customer_id", dto.customer_id)):
                self.repository.save(session, task)
            session.refresh(task)

            self.coordinator.invalidate_after(TASK, "create")
            _log_mutation("task.created", TASK, task.id)
            return TaskRead.model_validate(task)

    def get_by_id(self, session: Session, task_id: int) -> TaskRead:
        def load() -> TaskRead:
            task = self.repository.get(session, task_id)
            if task is None:
                raise NotFoundError(TASK, task_id)
            return TaskRead.model_validate(task)

        return self.coordinator.read(by_id(TASK, task_id), load)

    def get_all(self, session: Session) -> list[TaskRead]:
        return self.coordinator.read_many(
            all_of(TASK),
            lambda: [TaskRead.model_validate(row) for row in self.repository.get_all(session)],
        )

    def get_by_parent(self, session: Session, customer_id: int) -> list[TaskRead]:
        def load() -> list[TaskRead]:
            if not self.engine.customers.exists_by_id(session, customer_id):
                raise ReferenceNotFoundError(CUSTOMER, "customer_id", customer_id)
            rows = self.repository.get_by_field(session, "customer_id", customer_id)
            return [TaskRead.model_validate(row) for row in rows]

        return self.coordinator.read_many(by_parent(TASK, customer_id), load)

    def get_by_offer(self, session: Session, offer_id: int) -> list[TaskRead]:
        def load() -> list[TaskRead]:
            if not self.engine.offers.exists_by_id(session, offer_id):
                raise ReferenceNotFoundError(OFFER, "offer_id", offer_id)
            rows = self.repository.get_by_field(session, "offer_id", offer_id)
            return [TaskRead.model_validate(row) for row in rows]

        return self.coordinator.read_many(by_offer(offer_id), load)

    def get_by_status(self, session: Session, status: str) -> list[TaskRead]:
        parsed = parse_status(TASK, TaskStatus, status)
        return self.coordinator.read_many(
            by_status(TASK, parsed),
            lambda: [TaskRead.model_validate(row) for row in self.repository.get_by_field(session, "status", parsed.value)],
        )

    def get_by_customer_and_status(self, session: Session, customer_id: int, status: str) -> list[TaskRead]:
        parsed = parse_status(TASK, TaskStatus, status)
        if not self.engine.customers.exists_by_id(session, customer_id):
            raise ReferenceNotFoundError(CUSTOMER, "customer_id", customer_id)
        rows = self.repository.get_by_customer_and_status(session, customer_id, parsed.value)
        return [TaskRead.model_validate(row) for row in rows]

    def get_overdue(self, session: Session) -> list[TaskRead]:
        # Depends on the wall clock, so it never goes through the cache.
        rows = self.repository.get_overdue(session, self.engine.clock())
        return [TaskRead.model_validate(row) for row in rows]

    def update(self, session: Session, task_id: int, dto: TaskUpdate) -> TaskRead:
        with tracer.start_as_current_span("crm.task.update"):
            task = self.engine.task.validate_update(session, task_id, dto)

            with write_transaction(session, lambda: ReferenceNotFoundError(CUSTOMER, "customer_id", dto.customer_id)):
                for key, value in dto.model_dump(mode="python").items():
                    setattr(task, key, value)
                self.repository.save(session, task)
            session.refresh(task)

            self.coordinator.invalidate_after(TASK, "update")
            _log_mutation("task.updated", TASK, task_id)
            return TaskRead.model_validate(task)

    def change_status(self, session: Session, task_id: int, new_status: str) -> TaskRead:
        with tracer.start_as_current_span("crm.task.change_status"):
            task, status = self.engine.task.validate_status_change(session, task_id, new_status)

            with write_transaction(session, lambda: NotFoundError(TASK, task_id)):
                task.status = status.value
                self.repository.save(session, task)
            session.refresh(task)

            self.coordinator.invalidate_after(TASK, "change_status")
            _log_mutation("task.status_changed", TASK, task_id)
            return TaskRead.model_validate(task)

    def delete(self, session: Session, task_id: int) -> None:
        with tracer.start_as_current_span("crm.task.delete"):
            self.engine.task.validate_delete(session, task_id)

            with write_transaction(session, lambda: NotFoundError(TASK, task_id)):
                self.repository.delete_by_id(session, task_id)

            self.coordinator.invalidate_after(TASK, "delete")
            _log_mutation("task.deleted", TASK, task_id)


@dataclass(slots=True)
class CRMServices:
    coordinator: CacheCoordinator
    engine: ConsistencyEngine
    customers: CustomerService = field(init=False)
    offers: OfferService = field(init=False)
    tasks: TaskService = field(init=False)

    def __post_init__(self) -> None:
        self.customers = CustomerService(self.engine, self.coordinator)
        self.offers = OfferService(self.engine, self.coordinator)
        self.tasks = TaskService(self.engine, self.coordinator)


def build_crm_services(
    cache: Cache,
    *,
    cache_enabled: bool = True,
    clock: Callable[[], datetime] = utcnow,
    customer_repository: CustomerRepository | None = None,
    offer_repository: OfferRepository | None = None,
    task_repository: TaskRepository | None = None,
) -> CRMServices:
    engine = ConsistencyEngine(
        customers=customer_repository or CustomerRepository(),
        offers=offer_repository or OfferRepository(),
        tasks=task_repository or TaskRepository(),
        clock=clock,
    )
    return CRMServices(coordinator=CacheCoordinator(cache, enabled=cache_enabled), engine=engine)
