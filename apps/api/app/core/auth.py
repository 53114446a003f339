from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt
from starlette.requests import Request

from app.context import set_actor
from app.core.config import get_settings


ANONYMOUS = "anonymous"


@dataclass
class AuthUser:
    sub: str
    roles: list[str]


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    scheme, _, token = auth_header.partition(" ")
    return token.strip() if scheme.lower() == "bearer" else ""


def _roles_from_claims(payload: dict[str, Any]) -> list[str]:
    # Accept either a JSON list or a comma separated authorities string.
    roles = payload.get("roles", [])
    if isinstance(roles, str):
        roles = [part for part in roles.split(",") if part.strip()]
    if not isinstance(roles, list):
        return []
    return [str(role).strip() for role in roles]


def issue_token(subject: str, roles: list[str], expires_in: timedelta = timedelta(hours=1)) -> str:
    settings = get_settings()
    claims = {
        "sub": subject,
        "roles": roles,
        "exp": datetime.now(timezone.utc) + expires_in,
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


async def get_current_user(request: Request) -> AuthUser:
    token = _bearer_token(request)
    if not token:
        return AuthUser(sub=ANONYMOUS, roles=[])

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        # Expired or tampered tokens are treated the same as no token.
        return AuthUser(sub=ANONYMOUS, roles=[])

    subject = str(payload.get("sub", ANONYMOUS))
    request.state.user_id = subject
    set_actor(subject)
    return AuthUser(sub=subject, roles=_roles_from_claims(payload))
