"""
ACME directory discovery and nonce retrieval (RFC 8555 §7.1.1, §7.2).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional

from dnsacme.errors import ProtocolError
from dnsacme.transport import HttpTransport

logger = logging.getLogger(__name__)

LETSENCRYPT_PRODUCTION = "https://acme-v02.api.letsencrypt.org/directory"
LETSENCRYPT_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"

REQUIRED_ENDPOINTS = ("newNonce", "newAccount", "newOrder")


@dataclass(frozen=True)
class Directory:
    """Immutable snapshot of the server's directory document."""

    endpoints: Mapping[str, str]
    terms_of_service: Optional[str] = None
    meta: Mapping[str, object] = field(default_factory=dict)

    @classmethod
    def from_json(cls, body: object) -> "Directory":
        if not isinstance(body, dict):
            raise ProtocolError("Directory document is not a JSON object")
        missing = [name for name in REQUIRED_ENDPOINTS if not isinstance(body.get(name), str)]
        if missing:
            raise ProtocolError(f"Directory is missing required endpoints: {', '.join(missing)}")
        endpoints = {k: v for k, v in body.items() if isinstance(v, str)}
        meta = body.get("meta") or {}
        if not isinstance(meta, dict):
            meta = {}
        return cls(
            endpoints=MappingProxyType(endpoints),
            terms_of_service=meta.get("termsOfService"),
            meta=MappingProxyType(meta),
        )

    def __getitem__(self, name: str) -> str:
        return self.endpoints[name]

    @property
    def new_nonce(self) -> str:
        return self.endpoints["newNonce"]

    @property
    def new_account(self) -> str:
        return self.endpoints["newAccount"]

    @property
    def new_order(self) -> str:
        return self.endpoints["newOrder"]


class DirectoryClient:
    """Loads the directory once and hands out fresh nonces."""

    def __init__(self, transport: HttpTransport, directory_url: str = LETSENCRYPT_STAGING) -> None:
        self.directory_url = directory_url
        self._transport = transport
        self._directory: Directory | None = None

    @property
    def loaded(self) -> bool:
        return self._directory is not None

    def ensure_loaded(self) -> Directory:
        """GET /directory on first use; later calls return the cached snapshot."""
        if self._directory is None:
            logger.info("Fetching ACME directory %s", self.directory_url)
            resp = self._transport.request("GET", self.directory_url, (200,))
            self._directory = Directory.from_json(resp.json())
        return self._directory

    @property
    def terms_of_service_url(self) -> Optional[str]:
        return self.ensure_loaded().terms_of_service

    def get_nonce(self) -> str:
        """HEAD /newNonce to fetch a fresh anti-replay nonce."""
        directory = self.ensure_loaded()
        resp = self._transport.request("HEAD", directory.new_nonce, (200, 204))
        nonce = resp.header("Replay-Nonce")
        if not nonce:
            raise ProtocolError("Replay nonce not found in response")
        return nonce.strip()
