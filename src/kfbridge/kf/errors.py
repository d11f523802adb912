"""Error taxonomy for the customer-service bridge.

HTTP mapping at the webhook boundary:
- ValidationError -> 400
- AuthError -> 401
- DecryptError -> 400 on GET verification, logged only on POST callbacks

UpstreamError aborts the current drain and PersistenceError is logged while
the in-memory state keeps serving. Neither reaches an HTTP caller.
"""

from __future__ import annotations


class KfBridgeError(Exception):
    """Base class for all bridge errors."""


class ValidationError(KfBridgeError):
    """Missing or malformed protocol fields."""


class AuthError(KfBridgeError):
    """No registered tenant verified the request signature."""


class DecryptError(KfBridgeError):
    """Envelope could not be decoded, decrypted, or attributed to the receiver."""


class UpstreamError(KfBridgeError):
    """Remote platform returned a non-zero result code or failed in transport."""

    def __init__(self, api: str, errcode: int, errmsg: str = "") -> None:
        self.api = api
        self.errcode = errcode
        self.errmsg = errmsg
        super().__init__(f"{api} failed: {errmsg or 'unknown error'} (errcode={errcode})")


class PersistenceError(KfBridgeError):
    """Cursor state could not be read from or written to durable storage."""
