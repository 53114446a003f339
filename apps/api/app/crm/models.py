from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Customer(Base):
    __tablename__ = "crm_customer"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="LEAD", server_default="LEAD")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    offers: Mapped[list[Offer]] = relationship(
        "Offer",
        back_populates="customer",
        passive_deletes=True,
    )
    tasks: Mapped[list[Task]] = relationship(
        "Task",
        back_populates="customer",
        passive_deletes=True,
    )

    __table_args__ = (
        UniqueConstraint("email", name="uq_crm_customer_email"),
    )


class Offer(Base):
    __tablename__ = "crm_offer"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="DRAFT", server_default="DRAFT")
    customer_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("crm_customer.id", ondelete="CASCADE"),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    customer: Mapped[Customer] = relationship("Customer", back_populates="offers")
    tasks: Mapped[list[Task]] = relationship(
        "Task",
        back_populates="offer",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_crm_offer_customer_id", "customer_id"),
    )


class Task(Base):
    __tablename__ = "crm_task"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="TODO", server_default="TODO")
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="MEDIUM", server_default="MEDIUM")
    customer_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("crm_customer.id", ondelete="CASCADE"),
        nullable=False,
    )
    offer_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("crm_offer.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    customer: Mapped[Customer] = relationship("Customer", back_populates="tasks")
    offer: Mapped[Offer | None] = relationship("Offer", back_populates="tasks")

    __table_args__ = (
        Index("ix_crm_task_customer_id", "customer_id"),
        Index("ix_crm_task_offer_id", "offer_id"),
        Index("ix_crm_task_status", "status"),
    )
