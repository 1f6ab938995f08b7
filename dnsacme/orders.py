"""
Order lifecycle (RFC 8555 §7.4): the protocol state machine.

    pending --(authorizations satisfied)--> ready
    ready --(finalize)--> processing | valid
    processing --(issued)--> valid
    any --(failure)--> invalid          [terminal]
    expired (local clock vs. expires)   [terminal]

The server drives the transitions; this engine observes them by polling and
enforces that observed statuses never move backwards.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Iterable, Optional

from dnsacme import dns_challenge
from dnsacme.account import AccountManager
from dnsacme.codec import pem_to_b64url
from dnsacme.dns_challenge import DnsProvider
from dnsacme.dns_resolver import TxtResolver
from dnsacme.errors import (
    OrderFailedError,
    OrderNotValidError,
    OrderTimeoutError,
    ProtocolError,
)
from dnsacme.models import Authorization, Order, OrderStatus
from dnsacme.session import AcmeSession
from dnsacme.transport import PEM_CHAIN_CONTENT_TYPE

logger = logging.getLogger(__name__)

READY_POLL_ATTEMPTS = 30
READY_POLL_INTERVAL = 5.0
PROCESSING_POLL_ATTEMPTS = 5
PROCESSING_POLL_INTERVAL = 10.0


def wildcard_identifiers(domain: str, alt_domains: Iterable[str] = ()) -> list[str]:
    """[domain, *.domain, *alt_domains] without duplicates, order kept."""
    return list(dict.fromkeys([domain, f"*.{domain}", *alt_domains]))


class OrderEngine:
    def __init__(
        self,
        session: AcmeSession,
        account: AccountManager,
        dns_provider: Optional[DnsProvider] = None,
        resolver: Optional[TxtResolver] = None,
        ready_attempts: int = READY_POLL_ATTEMPTS,
        ready_interval: float = READY_POLL_INTERVAL,
        processing_attempts: int = PROCESSING_POLL_ATTEMPTS,
        processing_interval: float = PROCESSING_POLL_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._session = session
        self._account = account
        self.dns_provider = dns_provider
        self.resolver = resolver
        self.ready_attempts = ready_attempts
        self.ready_interval = ready_interval
        self.processing_attempts = processing_attempts
        self.processing_interval = processing_interval
        self._sleep = sleep

    # ── Helpers ───────────────────────────────────────────────────────────

    def _post(self, url: str, payload: dict | None, allowed=(200,), accept: str = "application/json"):
        account_url = self._account.ensure_registered()
        return self._session.post_kid(url, payload, account_url, allowed, accept)

    @property
    def _thumbprint(self) -> str:
        return self._session.signer.thumbprint()

    # ── Orders ────────────────────────────────────────────────────────────

    def start_order(self, domains: Iterable[str]) -> Order:
        """
        POST /newOrder for *domains*, then publish the DNS-01 record of every
        pending authorization right away.
        """
        domains = list(domains)
        directory = self._session.directory.ensure_loaded()
        logger.info("Requesting certificate for %s", ", ".join(domains))
        payload = {"identifiers": [{"type": "dns", "value": d} for d in domains]}
        resp = self._post(directory.new_order, payload, (201,))

        order_url = resp.header("Location")
        if not order_url:
            raise ProtocolError("Order URL not found in response headers")
        order = Order.from_json(resp.json(), url=order_url.strip())
        logger.info("Order %s created (%s)", order.url, order.status.value)

        for auth_url in order.authorizations:
            authorization = self.get_authorization(auth_url, order.url)
            dns_challenge.work_on_challenges(authorization, self._thumbprint, self.dns_provider)
        return order

    def start_wildcard_order(self, domain: str, alt_domains: Iterable[str] = ()) -> Order:
        """Order covering *domain* and *.domain (plus *alt_domains*)."""
        return self.start_order(wildcard_identifiers(domain, alt_domains))

    def get_order(self, order_url: str, previous: Order | None = None) -> Order:
        """
        POST-as-GET the order. When *previous* is given, a status that moves
        backwards raises ProtocolError.
        """
        resp = self._post(order_url, None)
        order = Order.from_json(resp.json(), url=order_url)
        if previous is not None and not previous.status.can_transition_to(order.status):
            raise ProtocolError(
                f"Order {order_url} moved backwards from {previous.status.value} to {order.status.value}"
            )
        return order

    def get_authorization(self, auth_url: str, order_url: str | None = None) -> Authorization:
        resp = self._post(auth_url, None)
        return Authorization.from_json(resp.json(), url=auth_url, order_url=order_url)

    def respond_to_challenge(self, challenge_url: str) -> dict:
        """POST {} to the challenge URL: "the record is in place, validate now"."""
        logger.info("Responding to challenge %s", challenge_url)
        return self._post(challenge_url, {}).json()

    def respond_to_order_challenges(self, order: Order) -> None:
        for auth_url in order.authorizations:
            authorization = self.get_authorization(auth_url, order.url)
            url = dns_challenge.work_on_challenges(
                authorization, self._thumbprint, self.dns_provider, dry_run=True
            )
            if url is not None:
                self.respond_to_challenge(url)

    def finalize_order(self, order: Order, csr_pem: str) -> Order:
        """POST the CSR (DER, base64url) to the order's finalize URL."""
        try:
            csr = pem_to_b64url(csr_pem)
        except ValueError as exc:
            raise ProtocolError(f"CSR is not valid PEM: {exc}") from exc
        resp = self._post(order.finalize_url, {"csr": csr})
        finalized = Order.from_json(resp.json(), url=order.url)
        if not order.status.can_transition_to(finalized.status):
            raise ProtocolError(
                f"Order {order.url} moved backwards from {order.status.value} to {finalized.status.value}"
            )
        return finalized

    def finalize_ssl_order(self, order: Order, csr_pem: str) -> Order:
        """
        Signal every pending challenge, wait for the order to become ready,
        finalize with *csr_pem* and wait out the processing state.

        Raises OrderFailedError (invalid / expired), OrderTimeoutError (never
        became ready) or OrderNotValidError (finalization did not end valid).
        """
        logger.info("Responding to challenges")
        self.respond_to_order_challenges(order)

        order = self._wait_until_ready(order)

        if not order.is_valid():
            logger.info("Finalizing order %s", order.url)
            order = self.finalize_order(order, csr_pem)

        attempts = 0
        while order.is_processing() and attempts < self.processing_attempts:
            attempts += 1
            logger.info("Order is processing; polling again in %ss (%d/%d)",
                        self.processing_interval, attempts, self.processing_attempts)
            self._sleep(self.processing_interval)
            order = self.get_order(order.url, previous=order)

        if not order.is_valid():
            raise OrderNotValidError(
                f'Order status of "{order.status.value}" is not valid.', order
            )
        return order

    def _wait_until_ready(self, order: Order) -> Order:
        for attempt in range(1, self.ready_attempts + 1):
            order = self.get_order(order.url, previous=order)
            if order.did_fail() or order.is_expired():
                raise OrderFailedError(
                    f'Order failed with status "{order.status.value}".', order
                )
            if order.status in (OrderStatus.READY, OrderStatus.VALID):
                return order
            logger.info("Order is %s; waiting for it to become ready (%d/%d)",
                        order.status.value, attempt, self.ready_attempts)
            if attempt < self.ready_attempts:
                self._sleep(self.ready_interval)

        raise OrderTimeoutError(
            f"Order did not become ready after {self.ready_attempts} polls",
            order,
            attempts=self.ready_attempts,
        )

    def get_order_certificate(self, order: Order) -> str:
        """POST-as-GET the certificate URL and return the PEM chain."""
        if not order.is_valid():
            raise OrderNotValidError(f'Order status of "{order.status.value}" is not valid.', order)
        if not order.certificate_url:
            raise OrderNotValidError("Certificate URL not set.", order)

        logger.info("Certificate URL: %s", order.certificate_url)
        resp = self._post(order.certificate_url, None, accept=PEM_CHAIN_CONTENT_TYPE)
        return resp.text

    def self_validate_order_challenges(self, order: Order) -> bool:
        """
        Check the published DNS-01 records before asking the CA to validate.

        Advisory only: a miss is logged and reported as False, never raised.
        """
        if self.resolver is None:
            self.resolver = TxtResolver()

        ok = True
        for auth_url in order.authorizations:
            authorization = self.get_authorization(auth_url, order.url)
            if not dns_challenge.check_challenges(authorization, self._thumbprint, self.resolver):
                ok = False
                logger.warning("Pre-check of challenges for %s failed. Order may fail.",
                               authorization.domain)
        return ok
