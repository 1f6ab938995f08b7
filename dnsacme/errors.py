"""
Exception hierarchy for the ACME DNS-01 client.

Everything raised on purpose by this package derives from AcmeClientError,
so callers can catch one type around a whole issuance run.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from dnsacme.models import Order


class AcmeClientError(Exception):
    """Base class for all client errors."""


class TransportError(AcmeClientError):
    """Raised on network failure or when the server answers with an unexpected status."""

    def __init__(self, status_code: int, body: dict, url: str = "") -> None:
        self.status_code = status_code
        self.body = body
        self.url = url
        self.problem_type = str(body.get("type", "unknown"))
        self.detail = body.get("detail", str(body))
        super().__init__(f"ACME {status_code}: {self.problem_type} - {self.detail}")

    @property
    def is_bad_nonce(self) -> bool:
        return self.problem_type.endswith(":badNonce")


class ProtocolError(AcmeClientError):
    """The server response is missing something the protocol requires."""


class SigningError(AcmeClientError):
    """The account key could not be loaded or could not sign."""


class CSRGenerationError(AcmeClientError):
    """The CSR could not be built or signed."""


class UnsupportedChallengeError(AcmeClientError):
    """None of the offered challenge types can be handled."""

    def __init__(self, identifier: str, offered_types: Iterable[str]) -> None:
        self.identifier = identifier
        self.offered_types = list(offered_types)
        offered = ", ".join(self.offered_types) or "none"
        super().__init__(f"No supported challenge for {identifier} (offered: {offered})")


class OrderError(AcmeClientError):
    """Base for errors that carry the last known order."""

    def __init__(self, message: str, order: Order | None = None) -> None:
        self.order = order
        super().__init__(message)


class OrderFailedError(OrderError):
    """The order became invalid or expired."""


class OrderTimeoutError(OrderError):
    """The order did not become ready within the poll budget."""

    def __init__(self, message: str, order: Order | None = None, attempts: int = 0) -> None:
        self.attempts = attempts
        super().__init__(message, order)


class OrderNotValidError(OrderError):
    """The order did not reach 'valid' after finalization."""


class DNSProviderError(AcmeClientError):
    """A DNS record could not be published."""


class AccountStorageError(AcmeClientError):
    """The account key could not be persisted."""
