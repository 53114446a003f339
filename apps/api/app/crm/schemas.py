from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import StrEnum

from email_validator import validate_email
from pydantic import BaseModel, ConfigDict, Field, field_validator


PHONE_PATTERN = r"^\+?[0-9\s]{10,20}$"


def check_email_address(value: str) -> str:
    """Reject malformed addresses but return the caller's spelling untouched; lookups match it exactly."""
    validate_email(value, check_deliverability=False)
    return value


class CustomerStatus(StrEnum):
    LEAD = "LEAD"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class OfferStatus(StrEnum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class TaskStatus(StrEnum):
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"


class TaskPriority(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class CustomerCreate(BaseModel):
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    email: str = Field(max_length=254)
    phone: str | None = Field(default=None, pattern=PHONE_PATTERN)
    status: CustomerStatus = CustomerStatus.LEAD

    @field_validator("email")
    @classmethod
    def validate_email_format(cls, value: str) -> str:
        return check_email_address(value)


class CustomerUpdate(CustomerCreate):
    pass


class CustomerRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: int
    first_name: str
    last_name: str
    email: str
    phone: str | None
    status: CustomerStatus
    created_at: datetime
    updated_at: datetime


class OfferCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=1000)
    price: Decimal = Field(gt=0, max_digits=18, decimal_places=2)
    status: OfferStatus = OfferStatus.DRAFT
    customer_id: int


class OfferUpdate(OfferCreate):
    pass


class OfferRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: int
    title: str
    description: str | None
    price: Decimal
    status: OfferStatus
    customer_id: int
    created_at: datetime
    updated_at: datetime


class TaskCreate(BaseModel):
    title: str = Field(min_length=3, max_length=200)
    description: str | None = Field(default=None, max_length=1000)
    due_date: datetime
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    customer_id: int
    offer_id: int | None = None

    @field_validator("due_date")
    @classmethod
    def normalize_due_date(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class TaskUpdate(TaskCreate):
    pass


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: int
    title: str
    description: str | None
    due_date: datetime
    status: TaskStatus
    priority: TaskPriority
    customer_id: int
    offer_id: int | None
    created_at: datetime
    updated_at: datetime


class StatusChangeRequest(BaseModel):
    status: str = Field(min_length=1)
