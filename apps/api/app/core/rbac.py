from collections.abc import Callable
from enum import StrEnum

from fastapi import Depends, HTTPException, status

from app.core.auth import ANONYMOUS, AuthUser, get_current_user


class Role(StrEnum):
    USER = "ROLE_USER"
    MANAGER = "ROLE_MANAGER"
    ADMIN = "ROLE_ADMIN"


READ_ROLES = (Role.USER, Role.MANAGER, Role.ADMIN)
WRITE_ROLES = (Role.MANAGER, Role.ADMIN)
ADMIN_ROLES = (Role.ADMIN,)


def normalize_role(value: str) -> str:
    upper = value.strip().upper()
    return upper if upper.startswith("ROLE_") else f"ROLE_{upper}"


def require_roles(*roles: Role) -> Callable[[AuthUser], AuthUser]:
    allowed = {str(role) for role in roles}

    async def checker(user: AuthUser = Depends(get_current_user)) -> AuthUser:
        if not user.roles and user.sub == ANONYMOUS:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
        granted = {normalize_role(role) for role in user.roles}
        if not granted & allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires one of roles: {', '.join(sorted(allowed))}",
            )
        return user

    return checker
