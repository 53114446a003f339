from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.core.rbac import Role
from app.crm.schemas import check_email_address


class UserCreate(BaseModel):
    username: str = Field(min_length=3, max_length=64)
    email: str = Field(max_length=254)
    role: Role = Role.USER

    @field_validator("email")
    @classmethod
    def validate_email_format(cls, value: str) -> str:
        return check_email_address(value)


class UserUpdate(BaseModel):
    username: str = Field(min_length=3, max_length=64)
    email: str = Field(max_length=254)

    @field_validator("email")
    @classmethod
    def validate_email_format(cls, value: str) -> str:
        return check_email_address(value)


class RoleChangeRequest(BaseModel):
    role: str = Field(min_length=1)


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    email: str
    role: Role
    enabled: bool
    account_non_locked: bool
    created_at: datetime
    updated_at: datetime
