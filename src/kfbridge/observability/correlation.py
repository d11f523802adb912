"""Correlation IDs joining one callback's request and background drain.

The middleware binds an ID per request; the webhook copies it into the
CallbackJob and the worker rebinds it around the drain, so every log line
of one callback carries the same ``correlationId``.
"""

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")

CORRELATION_ID_HEADER = "X-Correlation-ID"

# Inbound header values longer than this are replaced
MAX_CORRELATION_ID_LEN = 128


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def resolve_correlation_id(header_value: str | None) -> str:
    """Use the caller's ID if it is printable and short, else generate one."""
    cid = (header_value or "").strip()
    if not cid or len(cid) > MAX_CORRELATION_ID_LEN or not cid.isprintable():
        return generate_correlation_id()
    return cid


def get_correlation_id() -> str:
    return correlation_id_var.get()


def set_correlation_id(cid: str) -> Token[str]:
    return correlation_id_var.set(cid)


def reset_correlation_id(token: Token[str]) -> None:
    correlation_id_var.reset(token)


@contextmanager
def correlation_scope(cid: str) -> Iterator[str]:
    """Bind cid for the duration of the block."""
    token = set_correlation_id(cid)
    try:
        yield cid
    finally:
        reset_correlation_id(token)
