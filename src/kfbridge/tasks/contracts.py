"""Background job contracts - payloads handed from the webhook to the worker.

Jobs carry only the still-encrypted envelope and routing keys, never
decrypted content or customer identities.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class CallbackJob:
    """A verified callback awaiting decrypt and drain.

    Attributes:
        path: Normalized webhook path the callback arrived on.
        account_id: Account whose signature verified the request.
        encrypt: Base64 envelope from the callback body.
        correlation_id: Request correlation ID, carried into the worker.
    """

    path: str = ""
    account_id: str = ""
    encrypt: str = ""
    correlation_id: str = ""

    @property
    def drain_key(self) -> str:
        """Jobs sharing this key never run concurrently; later ones coalesce."""
        return f"{self.path}|{self.account_id}"
