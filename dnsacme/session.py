"""
Signed request pipeline: fresh nonce -> JWS -> POST.

Every signed request fetches its own nonce immediately before signing.
On a ``badNonce`` rejection the request is re-signed with another fresh nonce,
up to ``NONCE_RETRIES`` attempts in total.
"""
from __future__ import annotations

import logging
from typing import Iterable

from dnsacme.directory import DirectoryClient
from dnsacme.errors import TransportError
from dnsacme.jws import Signer, encode_payload
from dnsacme.transport import AcmeResponse, HttpTransport

logger = logging.getLogger(__name__)

NONCE_RETRIES = 3


class AcmeSession:
    def __init__(self, transport: HttpTransport, directory: DirectoryClient, signer: Signer) -> None:
        self.transport = transport
        self.directory = directory
        self.signer = signer

    def post_jwk(
        self,
        url: str,
        payload: dict | None,
        allowed_statuses: Iterable[int] = (200,),
    ) -> AcmeResponse:
        """POST signed with the embedded JWK (account creation only)."""
        return self._post(url, payload, None, tuple(allowed_statuses), "application/json")

    def post_kid(
        self,
        url: str,
        payload: dict | None,
        account_url: str,
        allowed_statuses: Iterable[int] = (200,),
        accept: str = "application/json",
    ) -> AcmeResponse:
        """POST signed with the account URL as key id. payload=None is POST-as-GET."""
        return self._post(url, payload, account_url, tuple(allowed_statuses), accept)

    def _post(
        self,
        url: str,
        payload: dict | None,
        account_url: str | None,
        allowed: tuple[int, ...],
        accept: str,
    ) -> AcmeResponse:
        payload_bytes = encode_payload(payload)
        for attempt in range(1, NONCE_RETRIES + 1):
            nonce = self.directory.get_nonce()
            if account_url is None:
                body = self.signer.sign_with_jwk(url, nonce, payload_bytes)
            else:
                body = self.signer.sign_with_kid(url, nonce, payload_bytes, account_url)
            try:
                return self.transport.request("POST", url, allowed, body=body, accept=accept)
            except TransportError as exc:
                if exc.is_bad_nonce and attempt < NONCE_RETRIES:
                    logger.warning("Nonce rejected by %s (attempt %d); retrying", url, attempt)
                    continue
                raise
        # unreachable: the last attempt either returns or raises
        raise AssertionError("nonce retry loop exited without a result")
