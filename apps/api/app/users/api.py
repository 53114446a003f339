from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.core.auth import AuthUser
from app.core.database import get_db
from app.core.rbac import ADMIN_ROLES, READ_ROLES, require_roles
from app.users.schemas import RoleChangeRequest, UserCreate, UserRead, UserUpdate
from app.users.service import user_service


router = APIRouter(prefix="/api/users", tags=["users"])

require_admin = require_roles(*ADMIN_ROLES)


@router.post("", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_user(
    dto: UserCreate,
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_admin),
) -> UserRead:
    return user_service.create_user(db, dto)


@router.get("", response_model=list[UserRead])
def list_users(
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_admin),
) -> list[UserRead]:
    return user_service.list_users(db)


# Declared before /{user_id} so "me" is not parsed as an id.
@router.get("/me", response_model=UserRead)
def get_me(
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_roles(*READ_ROLES)),
) -> UserRead:
    return user_service.get_user_by_username(db, user.sub)


@router.get("/{user_id}", response_model=UserRead)
def get_user(
    user_id: int,
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_admin),
) -> UserRead:
    return user_service.get_user(db, user_id)


@router.put("/{user_id}", response_model=UserRead)
def update_user(
    user_id: int,
    dto: UserUpdate,
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_admin),
) -> UserRead:
    return user_service.update_user(db, user_id, dto)


@router.patch("/{user_id}/role", response_model=UserRead)
def change_role(
    user_id: int,
    payload: RoleChangeRequest,
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_admin),
) -> UserRead:
    return user_service.change_role(db, user_id, payload.role)


@router.patch("/{user_id}/enable", response_model=UserRead)
def enable_user(user_id: int, db: Session = Depends(get_db), _: AuthUser = Depends(require_admin)) -> UserRead:
    return user_service.enable_user(db, user_id)


@router.patch("/{user_id}/disable", response_model=UserRead)
def disable_user(user_id: int, db: Session = Depends(get_db), _: AuthUser = Depends(require_admin)) -> UserRead:
    return user_service.disable_user(db, user_id)


@router.patch("/{user_id}/lock", response_model=UserRead)
def lock_user(user_id: int, db: Session = Depends(get_db), _: AuthUser = Depends(require_admin)) -> UserRead:
    return user_service.lock_user(db, user_id)


@router.patch("/{user_id}/unlock", response_model=UserRead)
def unlock_user(user_id: int, db: Session = Depends(get_db), _: AuthUser = Depends(require_admin)) -> UserRead:
    return user_service.unlock_user(db, user_id)


@router.delete("/{user_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
def delete_user(
    user_id: int,
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_admin),
) -> None:
    user_service.delete_user(db, user_id)
