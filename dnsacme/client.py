"""
ACME v2 DNS-01 client facade.

AcmeDnsClient wires the transport, directory, signer, account and order
engine together. Everything is set up lazily: the directory on first use,
the account key and registration on the first authenticated call. Once the
server has confirmed the account, its URL stays cached for the lifetime of
the client even if a later order fails.

One client = one account = one nonce stream. Run independent clients for
concurrent issuance.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Iterable, Optional

from dnsacme.account import AccountInfoProvider, AccountManager
from dnsacme.crypto import PrivateKey, create_csr
from dnsacme.directory import LETSENCRYPT_PRODUCTION, LETSENCRYPT_STAGING, DirectoryClient
from dnsacme.dns_challenge import DnsProvider
from dnsacme.dns_resolver import TxtResolver
from dnsacme.errors import OrderFailedError, OrderTimeoutError
from dnsacme.jws import DEFAULT_ACCOUNT_KEY_SIZE, Signer
from dnsacme.models import Authorization, Order
from dnsacme.orders import (
    PROCESSING_POLL_ATTEMPTS,
    PROCESSING_POLL_INTERVAL,
    READY_POLL_ATTEMPTS,
    READY_POLL_INTERVAL,
    OrderEngine,
    wildcard_identifiers,
)
from dnsacme.session import AcmeSession
from dnsacme.transport import HttpTransport

logger = logging.getLogger(__name__)

PROPAGATION_WAIT_SECONDS = 65
CERTIFICATE_POLL_INTERVAL = 60
CERTIFICATE_POLL_ATTEMPTS = 10


class AcmeDnsClient:
    """
    Implements the RFC 8555 ACME protocol with DNS-01 validation.
    Defaults to Let's Encrypt; any ACME v2 directory URL works.
    """

    def __init__(
        self,
        account_info: AccountInfoProvider,
        use_production: bool = False,
        directory_url: str = "",
        dns_provider: Optional[DnsProvider] = None,
        resolver: Optional[TxtResolver] = None,
        transport: Optional[HttpTransport] = None,
        account_key_size: int = DEFAULT_ACCOUNT_KEY_SIZE,
        propagation_wait: float = PROPAGATION_WAIT_SECONDS,
        ready_attempts: int = READY_POLL_ATTEMPTS,
        ready_interval: float = READY_POLL_INTERVAL,
        processing_attempts: int = PROCESSING_POLL_ATTEMPTS,
        processing_interval: float = PROCESSING_POLL_INTERVAL,
        certificate_poll_interval: float = CERTIFICATE_POLL_INTERVAL,
        certificate_poll_attempts: int = CERTIFICATE_POLL_ATTEMPTS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not directory_url:
            directory_url = LETSENCRYPT_PRODUCTION if use_production else LETSENCRYPT_STAGING
        self.transport = transport or HttpTransport()
        self.directory = DirectoryClient(self.transport, directory_url)
        self.account_info = account_info
        self.account_key_size = account_key_size
        self.propagation_wait = propagation_wait
        self.certificate_poll_interval = certificate_poll_interval
        self.certificate_poll_attempts = certificate_poll_attempts
        self._sleep = sleep
        self._tos_agreed = False
        self._dns_provider = dns_provider
        self._resolver = resolver
        self._poll_settings = {
            "ready_attempts": ready_attempts,
            "ready_interval": ready_interval,
            "processing_attempts": processing_attempts,
            "processing_interval": processing_interval,
        }
        self._signer: Signer | None = None
        self._session: AcmeSession | None = None
        self._account: AccountManager | None = None
        self._orders: OrderEngine | None = None

    # ── Lazy setup ────────────────────────────────────────────────────────

    @property
    def signer(self) -> Signer:
        if self._signer is None:
            self._signer = Signer.from_account_info(self.account_info, self.account_key_size)
        return self._signer

    @property
    def session(self) -> AcmeSession:
        if self._session is None:
            self._session = AcmeSession(self.transport, self.directory, self.signer)
        return self._session

    @property
    def account(self) -> AccountManager:
        if self._account is None:
            self._account = AccountManager(self.session, self.account_info)
            if self._tos_agreed:
                self._account.agree_to_terms_of_service()
        return self._account

    @property
    def orders(self) -> OrderEngine:
        if self._orders is None:
            self._orders = OrderEngine(
                self.session,
                self.account,
                dns_provider=self._dns_provider,
                resolver=self._resolver,
                sleep=self._sleep,
                **self._poll_settings,
            )
        return self._orders

    def _ensure_ready(self) -> None:
        self.directory.ensure_loaded()
        self.account.ensure_registered()

    # ── Setup API ─────────────────────────────────────────────────────────

    def get_terms_of_service_url(self) -> Optional[str]:
        return self.directory.terms_of_service_url

    def agree_to_terms_of_service(self) -> None:
        self._tos_agreed = True
        if self._account is not None:
            self._account.agree_to_terms_of_service()

    def set_dns_provider(self, dns_provider: DnsProvider) -> None:
        self._dns_provider = dns_provider
        if self._orders is not None:
            self._orders.dns_provider = dns_provider

    @property
    def dns_provider(self) -> Optional[DnsProvider]:
        return self._dns_provider

    def load_account_info(self) -> str:
        """Register (or look up) the account; return its URL."""
        self.directory.ensure_loaded()
        return self.account.ensure_registered()

    # ── Protocol operations ───────────────────────────────────────────────

    def start_order(self, domains: Iterable[str]) -> Order:
        self._ensure_ready()
        return self.orders.start_order(domains)

    def start_wildcard_order(self, domain: str, alt_domains: Iterable[str] = ()) -> Order:
        self._ensure_ready()
        return self.orders.start_wildcard_order(domain, alt_domains)

    def get_order(self, order_url: str, previous: Order | None = None) -> Order:
        self._ensure_ready()
        return self.orders.get_order(order_url, previous)

    def get_authorization(self, auth_url: str) -> Authorization:
        self._ensure_ready()
        return self.orders.get_authorization(auth_url)

    def finalize_order(self, order: Order, csr_pem: str) -> Order:
        self._ensure_ready()
        return self.orders.finalize_order(order, csr_pem)

    def finalize_ssl_order(self, order: Order, csr_pem: str) -> Order:
        self._ensure_ready()
        return self.orders.finalize_ssl_order(order, csr_pem)

    def get_order_certificate(self, order: Order) -> str:
        self._ensure_ready()
        return self.orders.get_order_certificate(order)

    def self_validate_order_challenges(self, order: Order) -> bool:
        self._ensure_ready()
        return self.orders.self_validate_order_challenges(order)

    create_csr = staticmethod(create_csr)

    # ── Scripted issuance ─────────────────────────────────────────────────

    def issue_wildcard_certificate(
        self,
        private_key: PrivateKey | str,
        domain: str,
        country: Optional[str] = None,
        state: Optional[str] = None,
        locality: Optional[str] = None,
        organization: Optional[str] = None,
        organizational_unit: Optional[str] = None,
        alt_domains: Iterable[str] = (),
    ) -> str:
        """
        Issue a certificate for *domain* and *.domain end to end and return
        the PEM chain: order, wait for DNS propagation, self-check, finalize,
        wait for issuance, download.
        """
        alt_domains = list(alt_domains)
        order = self.start_wildcard_order(domain, alt_domains)

        if self.propagation_wait > 0:
            logger.info("Waiting %s seconds for challenge propagation", self.propagation_wait)
            self._sleep(self.propagation_wait)

        # Advisory: the CA is the final judge
        self.self_validate_order_challenges(order)

        csr = create_csr(
            private_key,
            wildcard_identifiers(domain, alt_domains),
            country=country,
            state=state,
            locality=locality,
            organization=organization,
            organizational_unit=organizational_unit,
        )
        order = self.finalize_ssl_order(order, csr)

        # finalize_ssl_order returns a valid order or raises; this loop only
        # runs when a subclass or replacement engine hands back an unfinished order
        attempts = 0
        while not order.is_valid():
            if attempts >= self.certificate_poll_attempts:
                raise OrderTimeoutError(
                    f"Certificate was not issued after {attempts} polls", order, attempts=attempts
                )
            attempts += 1
            logger.info("Waiting for order to be ready")
            self._sleep(self.certificate_poll_interval)
            order = self.get_order(order.url, previous=order)
            if order.did_fail() or order.is_expired():
                raise OrderFailedError(f'Order status of "{order.status.value}" is not valid.', order)

        return self.get_order_certificate(order)


def make_client(
    account_info: AccountInfoProvider | None = None,
    dns_provider: DnsProvider | None = None,
    directory_url: str | None = None,
) -> AcmeDnsClient:
    """
    Create an AcmeDnsClient from the current application settings.
    *directory_url* overrides ACME_DIRECTORY_URL for this client only.
    Late-imports config to avoid circular imports at module load time.
    """
    from config import settings  # noqa: PLC0415
    from dnsacme.dns_challenge import make_dns_provider
    from storage.filesystem import FileAccountInfoProvider

    if account_info is None:
        account_info = FileAccountInfoProvider(settings.ACCOUNT_KEY_PATH, settings.CONTACT_EMAILS)
    if dns_provider is None:
        dns_provider = make_dns_provider()

    return AcmeDnsClient(
        account_info=account_info,
        directory_url=directory_url or settings.ACME_DIRECTORY_URL,
        dns_provider=dns_provider,
        resolver=TxtResolver(settings.DNS_RESOLVERS),
        transport=HttpTransport(
            timeout=settings.HTTP_TIMEOUT,
            ca_bundle=settings.ACME_CA_BUNDLE,
            insecure=settings.ACME_INSECURE,
        ),
        account_key_size=settings.ACCOUNT_KEY_SIZE,
        propagation_wait=settings.DNS_PROPAGATION_WAIT_SECONDS,
        ready_attempts=settings.ORDER_READY_POLL_ATTEMPTS,
        ready_interval=settings.ORDER_READY_POLL_INTERVAL,
        processing_attempts=settings.ORDER_PROCESSING_POLL_ATTEMPTS,
        processing_interval=settings.ORDER_PROCESSING_POLL_INTERVAL,
        certificate_poll_interval=settings.CERTIFICATE_POLL_INTERVAL,
        certificate_poll_attempts=settings.CERTIFICATE_POLL_ATTEMPTS,
    )
