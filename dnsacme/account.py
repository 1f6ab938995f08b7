"""
ACME account registration (RFC 8555 §7.3).

The client holds one account per instance. Key material lives with an
AccountInfoProvider; this module only tracks the server-assigned account URL.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional

from dnsacme.errors import ProtocolError
from dnsacme.session import AcmeSession

logger = logging.getLogger(__name__)


class AccountInfoProvider(ABC):
    """Supplies contact details and durable storage for the account key."""

    @abstractmethod
    def get_contact_emails(self) -> list[str]:
        """Return the account contact e-mail addresses."""

    @abstractmethod
    def get_private_key(self) -> Optional[str]:
        """Return the PEM account key, or None to create a new account."""

    @abstractmethod
    def save_private_key(self, private_key: str) -> None:
        """Persist *private_key* durably; raise if that is not possible."""


class AccountManager:
    def __init__(self, session: AcmeSession, account_info: AccountInfoProvider) -> None:
        self._session = session
        self._account_info = account_info
        self.tos_agreed = False
        self.account_url: str | None = None

    def agree_to_terms_of_service(self) -> None:
        """
        Record agreement to the CA's terms of service.

        Not enforced locally: registering without agreeing is sent as-is and
        left for the server to reject.
        """
        self.tos_agreed = True

    def ensure_registered(self) -> str:
        """POST /newAccount once; return the cached account URL afterwards."""
        if self.account_url is None:
            logger.info("Setting up account")
            self.account_url = self._register()
            logger.info("Account URL: %s", self.account_url)
        return self.account_url

    def _register(self) -> str:
        contact = [f"mailto:{email}" for email in self._account_info.get_contact_emails()]
        payload = {"termsOfServiceAgreed": self.tos_agreed, "contact": contact}
        directory = self._session.directory.ensure_loaded()
        # 201 = created, 200 = existing account for this key
        resp = self._session.post_jwk(directory.new_account, payload, (200, 201))
        location = resp.header("Location")
        if not location:
            raise ProtocolError("Account URL not found in response headers")
        return location.strip()
