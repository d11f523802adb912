"""Direct-message admission policy per account."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    reason: str | None = None


def check_dm_policy(dm_policy: str, sender_id: str, allow_from: Iterable[str] = ()) -> PolicyDecision:
    """Decide whether a customer message may be dispatched.

    Policies:
    - open, pairing: always allowed
    - allowlist: allowed only if sender_id is in allow_from
    - disabled: never allowed
    Unknown policies are allowed.
    """
    match dm_policy:
        case "open" | "pairing":
            return PolicyDecision(allowed=True)
        case "allowlist":
            if sender_id in set(allow_from):
                return PolicyDecision(allowed=True)
            return PolicyDecision(allowed=False, reason="sender not in DM allowlist")
        case "disabled":
            return PolicyDecision(allowed=False, reason="DM disabled")
        case _:
            return PolicyDecision(allowed=True)
