from app.users.api import router
from app.users.models import User
from app.users.schemas import RoleChangeRequest, UserCreate, UserRead, UserUpdate
from app.users.service import UserService, user_service

__all__ = [
    "router",
    "User",
    "UserCreate",
    "UserUpdate",
    "UserRead",
    "RoleChangeRequest",
    "UserService",
    "user_service",
]
