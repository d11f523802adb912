"""Callback signature verification.

The remote server signs every callback with SHA-1 over the shared callback
token, the timestamp, the nonce and the encrypted payload, sorted
lexicographically and concatenated. Several tenants may share one webhook
path, so the caller tries each tenant's token until one verifies.
"""

from __future__ import annotations

import hashlib
import hmac
from typing import Any, Iterable


def compute_signature(token: str, timestamp: str, nonce: str, encrypt: str) -> str:
    """Compute the hex SHA-1 signature for a callback.

    Args:
        token: Tenant callback token.
        timestamp: Query timestamp.
        nonce: Query nonce.
        encrypt: Encrypted blob (echostr for GET, Encrypt field for POST).

    Returns:
        Lowercase hex digest.
    """
    parts = sorted([token, timestamp, nonce, encrypt])
    return hashlib.sha1("".join(parts).encode("utf-8")).hexdigest()


def verify_signature(
    *,
    token: str | None,
    timestamp: str,
    nonce: str,
    encrypt: str,
    signature: str,
) -> bool:
    """Check a claimed signature against the expected digest. Never raises."""
    if not token or not signature:
        return False
    try:
        expected = compute_signature(token, timestamp, nonce, encrypt)
        return hmac.compare_digest(expected, signature.strip().lower())
    except (TypeError, AttributeError, UnicodeEncodeError):
        # non-ASCII signatures are rejected by compare_digest
        return False


def match_targets(
    targets: Iterable[Any],
    *,
    timestamp: str,
    nonce: str,
    encrypt: str,
    signature: str,
) -> list[Any]:
    """Return the targets whose tenant token verifies the signature.

    Order follows registration order; the first match binds the request.
    """
    return [
        target
        for target in targets
        if verify_signature(
            token=target.account.token,
            timestamp=timestamp,
            nonce=nonce,
            encrypt=encrypt,
            signature=signature,
        )
    ]
