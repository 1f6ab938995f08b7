"""
Unit tests for the ACME protocol layer.

These tests use the `responses` library to mock HTTP calls; no CA access
required.  Run with:  pytest tests/test_unit_acme.py -v
"""
from __future__ import annotations

import json

import pytest
import requests
import responses as resp_lib
from cryptography import x509

from dnsacme.codec import b64url_decode
from dnsacme.crypto import generate_rsa_key
from dnsacme.dns_challenge import compute_key_authorization, dns01_record
from dnsacme.errors import (
    OrderFailedError,
    OrderNotValidError,
    OrderTimeoutError,
    ProtocolError,
    TransportError,
    UnsupportedChallengeError,
)
from dnsacme.jws import Signer
from dnsacme.models import Order, OrderStatus
from dnsacme.transport import HttpTransport, PEM_CHAIN_CONTENT_TYPE

from tests.conftest import (
    ACCOUNT_URL,
    CERT_URL,
    DIRECTORY_URL,
    FAKE_DIRECTORY,
    FAKE_NONCE,
    FINALIZE_URL,
    ORDER_URL,
    add_account,
    add_directory_and_nonce,
    authz_body,
    calls_to,
    make_cert,
    order_body,
)

BAD_NONCE = {"type": "urn:ietf:params:acme:error:badNonce", "detail": "JWS has an invalid anti-replay nonce"}


def jws_parts(call) -> tuple[dict, bytes]:
    """Decode (protected header, payload) from a recorded JWS POST."""
    body = json.loads(call.request.body)
    return json.loads(b64url_decode(body["protected"])), b64url_decode(body["payload"])


def posts_to(url: str) -> list:
    return [c for c in resp_lib.calls if c.request.url == url and c.request.method == "POST"]


# ─── Directory & nonce ────────────────────────────────────────────────────────

@resp_lib.activate
def test_terms_of_service_url(client):
    add_directory_and_nonce()
    assert client.get_terms_of_service_url() == "https://acme.test/tos.pdf"


@resp_lib.activate
def test_directory_fetched_once(client):
    add_directory_and_nonce()
    client.get_terms_of_service_url()
    client.get_terms_of_service_url()
    assert calls_to(DIRECTORY_URL, "GET") == 1


@resp_lib.activate
def test_directory_missing_endpoint_raises(client):
    incomplete = {k: v for k, v in FAKE_DIRECTORY.items() if k != "newOrder"}
    resp_lib.add(resp_lib.GET, DIRECTORY_URL, json=incomplete)
    with pytest.raises(ProtocolError, match="newOrder"):
        client.get_terms_of_service_url()


@resp_lib.activate
def test_directory_without_terms_of_service(client):
    resp_lib.add(resp_lib.GET, DIRECTORY_URL, json={k: v for k, v in FAKE_DIRECTORY.items() if k != "meta"})
    assert client.get_terms_of_service_url() is None


@resp_lib.activate
def test_nonce_header_is_case_insensitive(client):
    resp_lib.add(resp_lib.GET, DIRECTORY_URL, json=FAKE_DIRECTORY)
    resp_lib.add(resp_lib.HEAD, FAKE_DIRECTORY["newNonce"], headers={"replay-nonce": FAKE_NONCE})
    assert client.directory.get_nonce() == FAKE_NONCE


@resp_lib.activate
def test_missing_nonce_raises(client):
    resp_lib.add(resp_lib.GET, DIRECTORY_URL, json=FAKE_DIRECTORY)
    resp_lib.add(resp_lib.HEAD, FAKE_DIRECTORY["newNonce"], status=200)
    with pytest.raises(ProtocolError, match="nonce"):
        client.directory.get_nonce()


# ─── Transport ────────────────────────────────────────────────────────────────

@resp_lib.activate
def test_connection_error_becomes_transport_error():
    resp_lib.add(resp_lib.GET, DIRECTORY_URL, body=requests.ConnectionError("refused"))
    with pytest.raises(TransportError) as exc_info:
        HttpTransport().request("GET", DIRECTORY_URL)
    assert exc_info.value.status_code == 0


@resp_lib.activate
def test_unexpected_status_carries_problem_document():
    resp_lib.add(
        resp_lib.GET, DIRECTORY_URL, status=403,
        json={"type": "urn:ietf:params:acme:error:unauthorized", "detail": "nope"},
    )
    with pytest.raises(TransportError) as exc_info:
        HttpTransport().request("GET", DIRECTORY_URL)
    assert exc_info.value.status_code == 403
    assert exc_info.value.problem_type == "urn:ietf:params:acme:error:unauthorized"
    assert exc_info.value.detail == "nope"
    assert not exc_info.value.is_bad_nonce


def test_non_string_problem_type_is_not_bad_nonce():
    error = TransportError(400, {"type": 42, "detail": "odd server"})
    assert error.problem_type == "42"
    assert not error.is_bad_nonce


@resp_lib.activate
def test_non_json_body_raises_protocol_error():
    resp_lib.add(resp_lib.GET, DIRECTORY_URL, body="<html>")
    resp = HttpTransport().request("GET", DIRECTORY_URL)
    with pytest.raises(ProtocolError):
        resp.json()


# ─── Account ──────────────────────────────────────────────────────────────────

@resp_lib.activate
def test_account_registration(client):
    add_directory_and_nonce()
    add_account(201)
    client.agree_to_terms_of_service()

    assert client.load_account_info() == ACCOUNT_URL

    (call,) = posts_to(FAKE_DIRECTORY["newAccount"])
    protected, payload = jws_parts(call)
    assert "jwk" in protected and "kid" not in protected
    assert protected["nonce"] == FAKE_NONCE
    assert protected["url"] == FAKE_DIRECTORY["newAccount"]
    assert json.loads(payload) == {"termsOfServiceAgreed": True, "contact": ["mailto:ops@example.com"]}
    assert call.request.headers["Content-Type"] == "application/jose+json"


@resp_lib.activate
def test_existing_account_200_accepted(client):
    add_directory_and_nonce()
    add_account(200)
    assert client.load_account_info() == ACCOUNT_URL


@resp_lib.activate
def test_terms_not_agreed_is_sent_as_false(client):
    add_directory_and_nonce()
    add_account(201)
    client.load_account_info()
    _, payload = jws_parts(posts_to(FAKE_DIRECTORY["newAccount"])[0])
    assert json.loads(payload)["termsOfServiceAgreed"] is False


@resp_lib.activate
def test_account_registered_once(client):
    add_directory_and_nonce()
    add_account(201)
    client.load_account_info()
    client.load_account_info()
    assert calls_to(FAKE_DIRECTORY["newAccount"]) == 1


@resp_lib.activate
def test_account_missing_location_raises(client):
    add_directory_and_nonce()
    resp_lib.add(resp_lib.POST, FAKE_DIRECTORY["newAccount"], json={"status": "valid"}, status=201)
    with pytest.raises(ProtocolError, match="Account URL"):
        client.load_account_info()


@resp_lib.activate
def test_account_rejected_by_server(client):
    add_directory_and_nonce()
    resp_lib.add(
        resp_lib.POST, FAKE_DIRECTORY["newAccount"], status=403,
        json={"type": "urn:ietf:params:acme:error:userActionRequired", "detail": "agree to the ToS"},
    )
    with pytest.raises(TransportError, match="userActionRequired"):
        client.load_account_info()


# ─── badNonce retry ───────────────────────────────────────────────────────────

@resp_lib.activate
def test_bad_nonce_is_retried_with_fresh_nonce(client):
    add_directory_and_nonce()
    resp_lib.add(resp_lib.POST, FAKE_DIRECTORY["newAccount"], status=400, json=BAD_NONCE)
    add_account(201)

    assert client.load_account_info() == ACCOUNT_URL
    assert calls_to(FAKE_DIRECTORY["newAccount"]) == 2
    assert calls_to(FAKE_DIRECTORY["newNonce"], "HEAD") == 2


@resp_lib.activate
def test_bad_nonce_gives_up_after_three_attempts(client):
    add_directory_and_nonce()
    resp_lib.add(resp_lib.POST, FAKE_DIRECTORY["newAccount"], status=400, json=BAD_NONCE)

    with pytest.raises(TransportError) as exc_info:
        client.load_account_info()
    assert exc_info.value.is_bad_nonce
    assert calls_to(FAKE_DIRECTORY["newAccount"]) == 3


@resp_lib.activate
def test_other_errors_are_not_retried(client):
    add_directory_and_nonce()
    resp_lib.add(
        resp_lib.POST, FAKE_DIRECTORY["newAccount"], status=400,
        json={"type": "urn:ietf:params:acme:error:malformed", "detail": "bad"},
    )
    with pytest.raises(TransportError):
        client.load_account_info()
    assert calls_to(FAKE_DIRECTORY["newAccount"]) == 1


# ─── Orders ───────────────────────────────────────────────────────────────────

def add_new_order(body: dict | None = None, location: str | None = ORDER_URL) -> None:
    headers = {"Location": location} if location else {}
    resp_lib.add(resp_lib.POST, FAKE_DIRECTORY["newOrder"], json=body or order_body("pending"),
                 status=201, headers=headers)


@resp_lib.activate
def test_start_order_publishes_dns_record(client, dns_provider):
    add_directory_and_nonce()
    add_account()
    add_new_order()
    resp_lib.add(resp_lib.POST, "https://acme.test/authz/1", json=authz_body())

    order = client.start_order(["example.com"])

    assert order.url == ORDER_URL
    assert order.status is OrderStatus.PENDING
    assert order.finalize_url == FINALIZE_URL
    protected, payload = jws_parts(posts_to(FAKE_DIRECTORY["newOrder"])[0])
    assert protected["kid"] == ACCOUNT_URL
    assert json.loads(payload) == {"identifiers": [{"type": "dns", "value": "example.com"}]}

    # authorization fetched with POST-as-GET
    _, authz_payload = jws_parts(posts_to("https://acme.test/authz/1")[0])
    assert authz_payload == b""

    (record_type, name, value, ttl), = dns_provider.calls
    assert (record_type, name, ttl) == ("TXT", "_acme-challenge.example.com", 60)
    assert value.startswith('"') and value.endswith('"')


@resp_lib.activate
def test_start_wildcard_order_accumulates_values(client, dns_provider):
    add_directory_and_nonce()
    add_account()
    add_new_order(order_body(
        "pending",
        domains=("example.com", "*.example.com"),
        authz=("https://acme.test/authz/1", "https://acme.test/authz/2"),
    ))
    resp_lib.add(resp_lib.POST, "https://acme.test/authz/1", json=authz_body(token="tok-1"))
    resp_lib.add(resp_lib.POST, "https://acme.test/authz/2",
                 json=authz_body(token="tok-2", challenge_url="https://acme.test/chall/2", wildcard=True))

    order = client.start_wildcard_order("example.com")

    assert order.domains == ["example.com", "*.example.com"]
    _, payload = jws_parts(posts_to(FAKE_DIRECTORY["newOrder"])[0])
    assert [i["value"] for i in json.loads(payload)["identifiers"]] == ["example.com", "*.example.com"]
    assert len(dns_provider.records[("TXT", "_acme-challenge.example.com")]) == 2


@resp_lib.activate
def test_start_order_skips_valid_authorizations(client, dns_provider):
    add_directory_and_nonce()
    add_account()
    add_new_order()
    resp_lib.add(resp_lib.POST, "https://acme.test/authz/1", json=authz_body(status="valid"))

    client.start_order(["example.com"])

    assert dns_provider.calls == []


@resp_lib.activate
def test_start_order_without_location_raises(client):
    add_directory_and_nonce()
    add_account()
    add_new_order(location=None)
    with pytest.raises(ProtocolError, match="Order URL"):
        client.start_order(["example.com"])


@resp_lib.activate
def test_start_order_unsupported_challenge(client):
    add_directory_and_nonce()
    add_account()
    add_new_order()
    resp_lib.add(resp_lib.POST, "https://acme.test/authz/1", json=authz_body(types=("http-01", "tls-alpn-01")))

    with pytest.raises(UnsupportedChallengeError) as exc_info:
        client.start_order(["example.com"])
    assert exc_info.value.offered_types == ["http-01", "tls-alpn-01"]


@resp_lib.activate
def test_malformed_order_raises_protocol_error(client):
    add_directory_and_nonce()
    add_account()
    add_new_order({"status": "pending"})
    with pytest.raises(ProtocolError):
        client.start_order(["example.com"])


@resp_lib.activate
def test_finalize_sends_der_csr(client):
    from dnsacme.crypto import create_csr

    add_directory_and_nonce()
    add_account()
    resp_lib.add(resp_lib.POST, FINALIZE_URL, json=order_body("processing"))
    order = Order.from_json(order_body("ready"), url=ORDER_URL)
    csr_pem = create_csr(generate_rsa_key(2048), ["example.com", "*.example.com"])

    finalized = client.finalize_order(order, csr_pem)

    assert finalized.status is OrderStatus.PROCESSING
    _, payload = jws_parts(posts_to(FINALIZE_URL)[0])
    der = b64url_decode(json.loads(payload)["csr"])
    csr = x509.load_der_x509_csr(der)
    san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    assert san.get_values_for_type(x509.DNSName) == ["example.com", "*.example.com"]


# ─── Certificate download ─────────────────────────────────────────────────────

@resp_lib.activate
def test_get_order_certificate(client):
    add_directory_and_nonce()
    add_account()
    chain = make_cert(generate_rsa_key(2048), "example.com")
    resp_lib.add(resp_lib.POST, CERT_URL, body=chain, content_type=PEM_CHAIN_CONTENT_TYPE)
    order = Order.from_json(order_body("valid", certificate=CERT_URL), url=ORDER_URL)

    assert client.get_order_certificate(order) == chain
    (call,) = posts_to(CERT_URL)
    assert call.request.headers["Accept"] == PEM_CHAIN_CONTENT_TYPE


@resp_lib.activate
def test_get_order_certificate_requires_valid_order(client):
    add_directory_and_nonce()
    add_account()
    order = Order.from_json(order_body("processing"), url=ORDER_URL)
    with pytest.raises(OrderNotValidError):
        client.get_order_certificate(order)
    assert calls_to(CERT_URL) == 0


@resp_lib.activate
def test_get_order_certificate_requires_certificate_url(client):
    add_directory_and_nonce()
    add_account()
    order = Order.from_json(order_body("valid"), url=ORDER_URL)
    with pytest.raises(OrderNotValidError, match="Certificate URL"):
        client.get_order_certificate(order)


# ─── Scripted issuance ────────────────────────────────────────────────────────

def add_issuance_flow(chain: str) -> None:
    add_directory_and_nonce()
    add_account()
    add_new_order(order_body(
        "pending",
        domains=("example.com", "*.example.com"),
        authz=("https://acme.test/authz/1", "https://acme.test/authz/2"),
    ))
    resp_lib.add(resp_lib.POST, "https://acme.test/authz/1", json=authz_body(token="tok-1"))
    resp_lib.add(resp_lib.POST, "https://acme.test/authz/2",
                 json=authz_body(token="tok-2", challenge_url="https://acme.test/chall/2", wildcard=True))
    resp_lib.add(resp_lib.POST, "https://acme.test/chall/1", json={"status": "processing"})
    resp_lib.add(resp_lib.POST, "https://acme.test/chall/2", json={"status": "processing"})
    resp_lib.add(resp_lib.POST, CERT_URL, body=chain, content_type=PEM_CHAIN_CONTENT_TYPE)


@resp_lib.activate
def test_issue_wildcard_certificate_end_to_end(client, dns_provider, sleeps):
    chain = make_cert(generate_rsa_key(2048), "example.com", sans=["example.com", "*.example.com"])
    add_issuance_flow(chain)
    resp_lib.add(resp_lib.POST, ORDER_URL, json=order_body("ready", domains=("example.com", "*.example.com")))
    resp_lib.add(resp_lib.POST, FINALIZE_URL, json=order_body("valid", certificate=CERT_URL))

    result = client.issue_wildcard_certificate(generate_rsa_key(2048), "example.com")

    assert result == chain
    assert sleeps == [65]
    assert len(dns_provider.records[("TXT", "_acme-challenge.example.com")]) == 2
    for chall in ("https://acme.test/chall/1", "https://acme.test/chall/2"):
        (call,) = posts_to(chall)
        assert jws_parts(call)[1] == b"{}"


@resp_lib.activate
def test_issue_polls_for_certificate_every_minute(client, sleeps, monkeypatch):
    chain = make_cert(generate_rsa_key(2048), "example.com")
    add_issuance_flow(chain)
    resp_lib.add(resp_lib.POST, ORDER_URL, json=order_body("processing"))
    resp_lib.add(resp_lib.POST, ORDER_URL, json=order_body("valid", certificate=CERT_URL))
    processing = Order.from_json(order_body("processing"), url=ORDER_URL)
    monkeypatch.setattr(client.orders, "finalize_ssl_order", lambda order, csr: processing)

    assert client.issue_wildcard_certificate(generate_rsa_key(2048), "example.com") == chain
    assert sleeps == [65, 60, 60]


@resp_lib.activate
def test_issue_certificate_poll_is_bounded(client, sleeps, monkeypatch):
    add_issuance_flow("")
    resp_lib.add(resp_lib.POST, ORDER_URL, json=order_body("processing"))
    processing = Order.from_json(order_body("processing"), url=ORDER_URL)
    monkeypatch.setattr(client.orders, "finalize_ssl_order", lambda order, csr: processing)

    with pytest.raises(OrderTimeoutError) as exc_info:
        client.issue_wildcard_certificate(generate_rsa_key(2048), "example.com")
    assert exc_info.value.attempts == 10
    assert sleeps == [65] + [60] * 10


@resp_lib.activate
def test_issue_certificate_poll_stops_on_invalid(client, monkeypatch):
    add_issuance_flow("")
    resp_lib.add(resp_lib.POST, ORDER_URL, json=order_body("invalid"))
    processing = Order.from_json(order_body("processing"), url=ORDER_URL)
    monkeypatch.setattr(client.orders, "finalize_ssl_order", lambda order, csr: processing)

    with pytest.raises(OrderFailedError):
        client.issue_wildcard_certificate(generate_rsa_key(2048), "example.com")


# ─── DNS self-validation ──────────────────────────────────────────────────────

def expected_txt(account_info, token: str) -> tuple[str, str]:
    thumbprint = Signer.from_account_info(account_info).thumbprint()
    record = dns01_record("example.com", compute_key_authorization(token, thumbprint))
    return record.name, record.value


def add_two_authorizations() -> Order:
    add_directory_and_nonce()
    add_account()
    resp_lib.add(resp_lib.POST, "https://acme.test/authz/1", json=authz_body(token="tok-1"))
    resp_lib.add(resp_lib.POST, "https://acme.test/authz/2",
                 json=authz_body(token="tok-2", challenge_url="https://acme.test/chall/2", wildcard=True))
    return Order.from_json(
        order_body("pending", domains=("example.com", "*.example.com"),
                   authz=("https://acme.test/authz/1", "https://acme.test/authz/2")),
        url=ORDER_URL,
    )


@resp_lib.activate
def test_self_validation_miss_returns_false_and_warns(client, caplog):
    order = add_two_authorizations()

    with caplog.at_level("WARNING", logger="dnsacme"):
        assert client.self_validate_order_challenges(order) is False
    assert "Pre-check of challenges for example.com failed" in caplog.text


@resp_lib.activate
def test_self_validation_passes_when_every_record_resolves(client, account_info, resolver):
    order = add_two_authorizations()
    name, first = expected_txt(account_info, "tok-1")
    _, second = expected_txt(account_info, "tok-2")
    resolver.answers[name] = [first, second.strip('"')]

    assert client.self_validate_order_challenges(order) is True


@resp_lib.activate
def test_self_validation_fails_when_one_authorization_misses(client, account_info, resolver):
    order = add_two_authorizations()
    name, first = expected_txt(account_info, "tok-1")
    resolver.answers[name] = [first]

    assert client.self_validate_order_challenges(order) is False
