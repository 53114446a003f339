from __future__ import annotations

from datetime import datetime
from typing import Any, Generic, TypeVar

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from app.crm.models import Customer, Offer, Task

ModelT = TypeVar("ModelT", Customer, Offer, Task)


class SqlAlchemyRepository(Generic[ModelT]):
    """Persistence for one aggregate type. Writes are flushed, never committed; the caller owns the transaction."""

    model: type[ModelT]
    entity_type = ""

    def get(self, session: Session, entity_id: int) -> ModelT | None:
        return session.get(self.model, entity_id)

    def get_all(self, session: Session) -> list[ModelT]:
        return list(session.scalars(select(self.model).order_by(self.model.id.asc())).all())

    def get_by_field(self, session: Session, name: str, value: Any) -> list[ModelT]:
        column = getattr(self.model, name)
        stmt = select(self.model).where(column == value).order_by(self.model.id.asc())
        return list(session.scalars(stmt).all())

    def exists_by_id(self, session: Session, entity_id: int) -> bool:
        return session.scalar(select(self.model.id).where(self.model.id == entity_id)) is not None

    def save(self, session: Session, entity: ModelT) -> ModelT:
        session.add(entity)
        session.flush()
        return entity

    def delete_by_id(self, session: Session, entity_id: int) -> None:
        session.execute(delete(self.model).where(self.model.id == entity_id))

    def delete_by_field(self, session: Session, name: str, value: Any) -> int:
        column = getattr(self.model, name)
        result = session.execute(delete(self.model).where(column == value))
        return result.rowcount or 0


class CustomerRepository(SqlAlchemyRepository[Customer]):
    model = Customer
    entity_type = "customer"

    def get_by_email(self, session: Session, email: str) -> Customer | None:
        matches = self.get_by_field(session, "email", email)
        return matches[0] if matches else None


class OfferRepository(SqlAlchemyRepository[Offer]):
    model = Offer
    entity_type = "offer"


class TaskRepository(SqlAlchemyRepository[Task]):
    model = Task
    entity_type = "task"

    def get_overdue(self, session: Session, now: datetime) -> list[Task]:
        stmt = (
            select(Task)
            .where(Task.due_date < now, Task.status != "DONE")
            .order_by(Task.due_date.asc(), Task.id.asc())
        )
        return list(session.scalars(stmt).all())

    def get_by_customer_and_status(self, session: Session, customer_id: int, status: str) -> list[Task]:
        stmt = (
            select(Task)
            .where(Task.customer_id == customer_id, Task.status == status)
            .order_by(Task.id.asc())
        )
        return list(session.scalars(stmt).all())

    def clear_offer_reference(self, session: Session, offer_id: int) -> int:
        result = session.execute(update(Task).where(Task.offer_id == offer_id).values(offer_id=None))
        return result.rowcount or 0
