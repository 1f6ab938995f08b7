"""
In-memory implementations of the client's collaborators, for tests and
dry runs.
"""
from __future__ import annotations

from collections import defaultdict
from typing import Iterable, Optional

from dnsacme.account import AccountInfoProvider
from dnsacme.dns_challenge import DnsProvider


class MemoryAccountInfoProvider(AccountInfoProvider):
    """Keeps the account key in memory; can be told to fail on save."""

    def __init__(
        self,
        contact_emails: Iterable[str] = ("admin@example.com",),
        private_key: Optional[str] = None,
        fail_on_save: bool = False,
    ) -> None:
        self.contact_emails = list(contact_emails)
        self.private_key = private_key
        self.fail_on_save = fail_on_save
        self.saved_keys: list[str] = []

    def get_contact_emails(self) -> list[str]:
        return list(self.contact_emails)

    def get_private_key(self) -> Optional[str]:
        return self.private_key

    def save_private_key(self, private_key: str) -> None:
        if self.fail_on_save:
            raise OSError("account key storage unavailable")
        self.saved_keys.append(private_key)
        self.private_key = private_key


class MemoryDnsProvider(DnsProvider):
    """Records every published value, keyed by (type, name)."""

    def __init__(self) -> None:
        super().__init__(max_attempts=1)
        self.records: defaultdict[tuple[str, str], list[str]] = defaultdict(list)
        self.calls: list[tuple[str, str, str, int]] = []

    def add_dns_value(self, record_type: str, name: str, value: str, ttl: int) -> None:
        self.calls.append((record_type, name, value, ttl))
        values = self.records[(record_type, name)]
        if value not in values:
            values.append(value)

    def _is_rate_limited(self, exc: Exception) -> bool:
        return False


class StaticTxtResolver:
    """Answers TXT lookups from a dict; names mapped to an exception raise it."""

    def __init__(self, answers: dict[str, list[str] | Exception] | None = None) -> None:
        self.answers = dict(answers or {})
        self.queries: list[str] = []

    def txt_records_for_name(self, name: str) -> list[str]:
        self.queries.append(name)
        answer = self.answers.get(name, [])
        if isinstance(answer, Exception):
            raise answer
        return list(answer)
