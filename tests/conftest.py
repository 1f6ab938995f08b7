"""
Shared pytest fixtures and ACME server fakes.

HTTP is mocked with `responses`; the helpers below register the directory,
nonce and account endpoints of a fake CA at https://acme.test.  Polling
clients get a recording `sleep` so no test waits in real time.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import responses as resp_lib
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509.oid import NameOID

from dnsacme import jws as jwslib
from dnsacme.client import AcmeDnsClient
from dnsacme.testing import MemoryAccountInfoProvider, MemoryDnsProvider, StaticTxtResolver


DIRECTORY_URL = "https://acme.test/directory"

FAKE_DIRECTORY = {
    "newNonce": "https://acme.test/newNonce",
    "newAccount": "https://acme.test/newAccount",
    "newOrder": "https://acme.test/newOrder",
    "revokeCert": "https://acme.test/revokeCert",
    "keyChange": "https://acme.test/keyChange",
    "meta": {"termsOfService": "https://acme.test/tos.pdf"},
}

FAKE_NONCE = "testnonce12345"
ACCOUNT_URL = "https://acme.test/acct/42"
ORDER_URL = "https://acme.test/order/1"
FINALIZE_URL = "https://acme.test/finalize/1"
CERT_URL = "https://acme.test/cert/1"
FUTURE = "2099-01-01T00:00:00Z"


# ─── Response bodies ──────────────────────────────────────────────────────────

def order_body(status: str, domains=("example.com",), authz=("https://acme.test/authz/1",),
               expires: str = FUTURE, certificate: str | None = None) -> dict:
    body = {
        "status": status,
        "expires": expires,
        "identifiers": [{"type": "dns", "value": d} for d in domains],
        "authorizations": list(authz),
        "finalize": FINALIZE_URL,
    }
    if certificate:
        body["certificate"] = certificate
    return body


def authz_body(domain: str = "example.com", status: str = "pending", token: str = "tok-1",
               challenge_url: str = "https://acme.test/chall/1", types=("dns-01",),
               wildcard: bool = False) -> dict:
    return {
        "status": status,
        "expires": FUTURE,
        "identifier": {"type": "dns", "value": domain},
        "wildcard": wildcard,
        "challenges": [
            {"type": t, "url": f"{challenge_url}/{t}" if t != "dns-01" else challenge_url,
             "token": token, "status": "pending"}
            for t in types
        ],
    }


# ─── Endpoint registration ────────────────────────────────────────────────────

def add_directory_and_nonce() -> None:
    resp_lib.add(resp_lib.GET, DIRECTORY_URL, json=FAKE_DIRECTORY)
    resp_lib.add(resp_lib.HEAD, FAKE_DIRECTORY["newNonce"], headers={"Replay-Nonce": FAKE_NONCE})


def add_account(status: int = 201) -> None:
    resp_lib.add(
        resp_lib.POST,
        FAKE_DIRECTORY["newAccount"],
        json={"status": "valid"},
        headers={"Location": ACCOUNT_URL},
        status=status,
    )


def calls_to(url: str, method: str = "POST") -> int:
    return sum(1 for c in resp_lib.calls if c.request.url == url and c.request.method == method)


def make_cert(key, common_name: str, days: int = 90, sans=(), issuer_cn: str | None = None) -> str:
    """Self-signed PEM certificate standing in for a CA-issued one."""
    now = datetime.now(tz=timezone.utc)
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer_cn or common_name)])
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=1))
        .not_valid_after(now + timedelta(days=days))
    )
    if sans:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(s) for s in sans]), critical=False
        )
    return builder.sign(key, hashes.SHA256()).public_bytes(serialization.Encoding.PEM).decode()


# ─── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture(scope="session")
def account_key():
    # 2048 bits keeps the suite fast; production default is 4096
    return jwslib.generate_account_key(key_size=2048)


@pytest.fixture(scope="session")
def account_pem(account_key) -> str:
    return jwslib.account_key_to_pem(account_key)


@pytest.fixture()
def account_info(account_pem) -> MemoryAccountInfoProvider:
    return MemoryAccountInfoProvider(contact_emails=["ops@example.com"], private_key=account_pem)


@pytest.fixture()
def dns_provider() -> MemoryDnsProvider:
    return MemoryDnsProvider()


@pytest.fixture()
def resolver() -> StaticTxtResolver:
    return StaticTxtResolver()


@pytest.fixture()
def sleeps() -> list:
    return []


@pytest.fixture()
def client(account_info, dns_provider, resolver, sleeps) -> AcmeDnsClient:
    return AcmeDnsClient(
        account_info=account_info,
        directory_url=DIRECTORY_URL,
        dns_provider=dns_provider,
        resolver=resolver,
        account_key_size=2048,
        sleep=sleeps.append,
    )
