from __future__ import annotations

from contextvars import ContextVar, Token

MAX_CORRELATION_ID_LENGTH = 128

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def clean_correlation_id(value: str | None) -> str | None:
    """Return a caller-supplied id if it is safe to echo in headers and logs."""
    value = (value or "").strip()
    if value and len(value) <= MAX_CORRELATION_ID_LENGTH and value.isprintable():
        return value
    return None


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()
