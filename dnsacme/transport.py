"""
HTTP transport for the ACME client.

Every call returns an explicit AcmeResponse (status, headers, body) instead
of stashing the "last response" on the client, so reading the Location or
Replay-Nonce header can never pick up another request's headers.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional

import requests
from requests.structures import CaseInsensitiveDict

from dnsacme.errors import ProtocolError, TransportError

logger = logging.getLogger(__name__)

JOSE_CONTENT_TYPE = "application/jose+json"
PEM_CHAIN_CONTENT_TYPE = "application/pem-certificate-chain"


@dataclass(frozen=True)
class AcmeResponse:
    """Status, headers and raw body of one HTTP exchange."""

    status_code: int
    headers: CaseInsensitiveDict
    content: bytes
    url: str = ""

    @property
    def text(self) -> str:
        return self.content.decode("utf-8")

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup."""
        return self.headers.get(name)

    def json(self) -> Any:
        try:
            return json.loads(self.content)
        except ValueError as exc:
            raise ProtocolError(f"Response from {self.url} is not JSON: {exc}") from exc


class HttpTransport:
    """Thin wrapper around a requests.Session with ACME defaults."""

    def __init__(
        self,
        timeout: int = 30,
        ca_bundle: str = "",
        insecure: bool = False,
        user_agent: str = "dnsacme/1.0",
    ) -> None:
        self.timeout = timeout
        self._session = requests.Session()
        self._session.headers.update({"User-Agent": user_agent})

        if insecure:
            import urllib3
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
            self._session.verify = False
        elif ca_bundle:
            self._session.verify = ca_bundle

    def request(
        self,
        method: str,
        url: str,
        allowed_statuses: Iterable[int] = (200,),
        body: dict | None = None,
        accept: str = "application/json",
    ) -> AcmeResponse:
        """
        Issue one HTTP request.

        *body*, when given, is sent as a JWS envelope with the
        application/jose+json content type.

        Raises TransportError on network failure or when the status code is
        not in *allowed_statuses*.
        """
        headers = {"Accept": accept}
        data = None
        if body is not None:
            headers["Content-Type"] = JOSE_CONTENT_TYPE
            data = json.dumps(body)

        try:
            resp = self._session.request(
                method, url, data=data, headers=headers, timeout=self.timeout
            )
        except requests.RequestException as exc:
            raise TransportError(0, {"type": "connection", "detail": str(exc)}, url) from exc

        allowed = tuple(allowed_statuses)
        if resp.status_code not in allowed:
            try:
                error_body = resp.json()
                if not isinstance(error_body, dict):
                    error_body = {"detail": str(error_body)}
            except ValueError:
                error_body = {"detail": resp.text}
            logger.error(
                "%s %s returned %d (expected %s): %s",
                method, url, resp.status_code, allowed, error_body,
            )
            raise TransportError(resp.status_code, error_body, url)

        return AcmeResponse(
            status_code=resp.status_code,
            headers=CaseInsensitiveDict(resp.headers),
            content=resp.content,
            url=url,
        )
