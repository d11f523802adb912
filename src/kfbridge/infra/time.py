"""Clock helpers, injectable into caches for deterministic tests."""

import time


def epoch_seconds() -> float:
    """Wall-clock seconds, used for credential expiry."""
    return time.time()


def monotonic_seconds() -> float:
    """Monotonic seconds, used for TTL windows that must not jump."""
    return time.monotonic()
