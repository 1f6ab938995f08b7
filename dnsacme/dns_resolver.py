"""
TXT lookups for self-validating DNS-01 challenges.

Queries go to public resolvers rather than the system stub resolver, so a
local cache or split-horizon setup does not hide a missing record.
"""
from __future__ import annotations

import logging
from typing import Sequence

import dns.exception
import dns.resolver

logger = logging.getLogger(__name__)

PUBLIC_RESOLVERS = ("8.8.8.8", "1.1.1.1")


class TxtResolver:
    """Resolve TXT records through a fixed set of nameservers."""

    def __init__(self, nameservers: Sequence[str] = PUBLIC_RESOLVERS, lifetime: float = 10.0) -> None:
        self._resolver = dns.resolver.Resolver(configure=False)
        self._resolver.nameservers = list(nameservers)
        self._resolver.lifetime = lifetime

    def txt_records_for_name(self, name: str) -> list[str]:
        """
        Return the TXT strings published at *name*.

        A name that does not exist or has no TXT data yields an empty list;
        any other resolver failure raises dns.exception.DNSException.
        """
        try:
            answer = self._resolver.resolve(name, "TXT")
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            return []
        return [
            b"".join(rdata.strings).decode("utf-8")
            for rdata in answer
        ]


DNSLookupError = dns.exception.DNSException
