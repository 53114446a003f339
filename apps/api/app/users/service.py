from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.rbac import Role, normalize_role
from app.crm.errors import DuplicateKeyError, InvalidArgumentError, NotFoundError
from app.users.models import User
from app.users.schemas import UserCreate, UserRead, UserUpdate


logger = logging.getLogger("app.users")

USER = "user"


@dataclass(slots=True)
class UserService:
    def create_user(self, session: Session, dto: UserCreate) -> UserRead:
        self._ensure_unique(session, username=dto.username, email=dto.email, owner_id=None)

        user = User(username=dto.username, email=dto.email, role=dto.role.value)
        session.add(user)
        self._commit(session, username=dto.username, email=dto.email, owner_id=None)
        session.refresh(user)

        logger.info("user.created", extra={"entity_type": USER, "entity_id": user.id})
        return UserRead.model_validate(user)

    def get_user(self, session: Session, user_id: int) -> UserRead:
        return UserRead.model_validate(self._require(session, user_id))

    def get_user_by_username(self, session: Session, username: str) -> UserRead:
        user = session.scalar(select(User).where(User.username == username))
        if user is None:
            raise NotFoundError(USER, username)
        return UserRead.model_validate(user)

    def list_users(self, session: Session) -> list[UserRead]:
        rows = session.scalars(select(User).order_by(User.id.asc())).all()
        return [UserRead.model_validate(row) for row in rows]

    def update_user(self, session: Session, user_id: int, dto: UserUpdate) -> UserRead:
        user = self._require(session, user_id)
        self._ensure_unique(session, username=dto.username, email=dto.email, owner_id=user_id)

        user.username = dto.username
        user.email = dto.email
        self._commit(session, username=dto.username, email=dto.email, owner_id=user_id)
        session.refresh(user)

        logger.info("user.updated", extra={"entity_type": USER, "entity_id": user_id})
        return UserRead.model_validate(user)

    def change_role(self, session: Session, user_id: int, role_name: str) -> UserRead:
        user = self._require(session, user_id)
        try:
            role = Role(normalize_role(role_name))
        except ValueError:
            raise InvalidArgumentError(f"Invalid role: {role_name}", field="role", value=role_name) from None

        if role is Role.ADMIN:
            logger.warning("user.role_change_blocked", extra={"entity_type": USER, "entity_id": user_id})
            raise InvalidArgumentError("Role cannot be changed to ROLE_ADMIN", field="role", value=role_name)

        user.role = role.value
        session.commit()
        session.refresh(user)

        logger.info("user.role_changed", extra={"entity_type": USER, "entity_id": user_id})
        return UserRead.model_validate(user)

    def enable_user(self, session: Session, user_id: int) -> UserRead:
        return self._set_flag(session, user_id, "enabled", True)

    def disable_user(self, session: Session, user_id: int) -> UserRead:
        return self._set_flag(session, user_id, "enabled", False)

    def lock_user(self, session: Session, user_id: int) -> UserRead:
        return self._set_flag(session, user_id, "account_non_locked", False)

    def unlock_user(self, session: Session, user_id: int) -> UserRead:
        return self._set_flag(session, user_id, "account_non_locked", True)

    def delete_user(self, session: Session, user_id: int) -> None:
        self._require(session, user_id)
        session.execute(delete(User).where(User.id == user_id))
        session.commit()
        logger.info("user.deleted", extra={"entity_type": USER, "entity_id": user_id})

    def _set_flag(self, session: Session, user_id: int, flag: str, value: bool) -> UserRead:
        user = self._require(session, user_id)
        setattr(user, flag, value)
        session.commit()
        session.refresh(user)
        return UserRead.model_validate(user)

    @staticmethod
    def _require(session: Session, user_id: int) -> User:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError(USER, user_id)
        return user

    @staticmethod
    def _ensure_unique(session: Session, *, username: str, email: str, owner_id: int | None) -> None:
        by_username = session.scalar(select(User).where(User.username == username))
        if by_username is not None and by_username.id != owner_id:
            raise DuplicateKeyError(USER, "username", username)
        by_email = session.scalar(select(User).where(User.email == email))
        if by_email is not None and by_email.id != owner_id:
            raise DuplicateKeyError(USER, "email", email)

    def _commit(self, session: Session, *, username: str, email: str, owner_id: int | None) -> None:
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            # Re-check so the error names the field that collided.
            self._ensure_unique(session, username=username, email=email, owner_id=owner_id)
            raise DuplicateKeyError(USER, "username or email", f"{username} / {email}") from None


user_service = UserService()
