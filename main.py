"""
ACME DNS-01 client CLI entry point.

Usage:
  python main.py --tos                                   # Print the CA's terms-of-service URL
  python main.py --domain example.com --agree-tos        # Issue example.com + *.example.com
  python main.py --domain example.com --agree-tos --staging  # Same, against Let's Encrypt staging
  python main.py --domain example.com --alt-domains www.example.net --agree-tos
  python main.py --show-expiry certs/example.com/cert.pem
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

import structlog

# ── Logging setup ─────────────────────────────────────────────────────────────

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger(__name__)
slog = structlog.get_logger("dnsacme.cli")


# ── Commands ──────────────────────────────────────────────────────────────────


def show_terms_of_service(staging: bool = False) -> int:
    from dnsacme.client import make_client
    from dnsacme.directory import LETSENCRYPT_STAGING

    client = make_client(directory_url=LETSENCRYPT_STAGING if staging else None)
    print(client.get_terms_of_service_url() or "(the CA publishes no terms of service URL)")
    return 0


def issue(domain: str, alt_domains: list[str], agree_tos: bool, staging: bool = False) -> int:
    """
    Issue a wildcard certificate for *domain* and store it under CERT_STORE_PATH.
    *staging* forces the Let's Encrypt staging directory for this run.
    """
    from config import settings
    from dnsacme.client import make_client
    from dnsacme.crypto import generate_rsa_key, private_key_to_pem
    from dnsacme.directory import LETSENCRYPT_STAGING
    from storage.filesystem import write_cert_files

    if not settings.CONTACT_EMAILS:
        log.error("No contact e-mail configured. Set CONTACT_EMAILS in .env.")
        return 1

    directory_url = LETSENCRYPT_STAGING if staging else settings.ACME_DIRECTORY_URL
    client = make_client(directory_url=directory_url)
    if agree_tos:
        client.agree_to_terms_of_service()
    else:
        log.warning("Terms of service not agreed (%s); the CA will likely refuse the account.",
                    client.get_terms_of_service_url())

    domain_key = generate_rsa_key(settings.DOMAIN_KEY_SIZE)
    slog.info("issuing", domain=domain, alt_domains=alt_domains, directory=directory_url)

    fullchain = client.issue_wildcard_certificate(
        domain_key,
        domain,
        country=settings.CSR_COUNTRY,
        state=settings.CSR_STATE,
        locality=settings.CSR_LOCALITY,
        organization=settings.CSR_ORGANIZATION,
        organizational_unit=settings.CSR_ORGANIZATIONAL_UNIT,
        alt_domains=alt_domains,
    )
    metadata = write_cert_files(
        settings.CERT_STORE_PATH,
        domain,
        fullchain,
        private_key_to_pem(domain_key),
    )
    slog.info("issued", domain=domain, expires_at=metadata["expires_at"])
    return 0


def show_expiry(pem_path: str) -> int:
    from dnsacme.crypto import get_certificate_expiration

    expiry = get_certificate_expiration(Path(pem_path).read_text())
    if expiry is None:
        log.error("Could not parse certificate %s", pem_path)
        return 1
    print(expiry.isoformat())
    return 0


# ── CLI ───────────────────────────────────────────────────────────────────────


def main() -> None:
    from dnsacme.errors import AcmeClientError

    parser = argparse.ArgumentParser(
        description="ACME v2 client with DNS-01 validation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --tos
  python main.py --domain example.com --agree-tos
  python main.py --domain example.com --agree-tos --staging
  python main.py --domain example.com --alt-domains shop.example.org --agree-tos
  python main.py --show-expiry certs/example.com/cert.pem
        """,
    )
    parser.add_argument(
        "--tos",
        action="store_true",
        help="Print the terms-of-service URL of the configured CA and exit",
    )
    parser.add_argument(
        "--domain",
        metavar="DOMAIN",
        help="Issue a certificate for DOMAIN and *.DOMAIN",
    )
    parser.add_argument(
        "--alt-domains",
        nargs="+",
        default=[],
        metavar="DOMAIN",
        help="Extra SAN entries for the certificate",
    )
    parser.add_argument(
        "--agree-tos",
        action="store_true",
        help="Agree to the CA's terms of service when registering the account",
    )
    parser.add_argument(
        "--staging",
        action="store_true",
        help="Use the Let's Encrypt staging directory regardless of ACME_ENVIRONMENT",
    )
    parser.add_argument(
        "--show-expiry",
        metavar="PEM",
        help="Print the expiration time of a PEM certificate and exit",
    )

    args = parser.parse_args()

    if not args.tos and not args.domain and not args.show_expiry:
        parser.print_help()
        sys.exit(1)

    try:
        if args.show_expiry:
            sys.exit(show_expiry(args.show_expiry))
        elif args.tos:
            sys.exit(show_terms_of_service(args.staging))
        else:
            sys.exit(issue(args.domain, args.alt_domains, args.agree_tos, args.staging))
    except AcmeClientError as exc:
        log.error("%s: %s", type(exc).__name__, exc)
        sys.exit(1)
    except (ImportError, ValueError) as exc:
        # Missing DNS provider extra or unknown DNS_PROVIDER
        log.error("%s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
