from __future__ import annotations

from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
actor_var: ContextVar[str | None] = ContextVar("actor", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_actor(subject: str | None) -> Token[str | None]:
    """Record the authenticated subject for log lines emitted while serving the request."""
    return actor_var.set(subject)


def get_actor() -> str | None:
    return actor_var.get()
