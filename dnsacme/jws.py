"""
Account key, JWK and JWS utilities for the ACME protocol (RFC 8555 + RFC 7515).

Uses *josepy* (the library powering Certbot) for the JWK representation and
*cryptography* for the RSA primitives.

Responsibilities (boundary with dnsacme/crypto.py):
  - Generate / load / serialize the **account** RSA key
  - Provision that key through an AccountInfoProvider, saving new keys first
  - Compute the JWK and its thumbprint (for DNS-01 key-authorizations)
  - Sign ACME POST bodies as JWS (with jwk or kid header)
"""
from __future__ import annotations

import hashlib
import json
import logging
from typing import TYPE_CHECKING, Any

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from josepy.jwk import JWKRSA

from dnsacme.codec import b64url, canonical_json
from dnsacme.errors import SigningError

if TYPE_CHECKING:
    from dnsacme.account import AccountInfoProvider

logger = logging.getLogger(__name__)

DEFAULT_ACCOUNT_KEY_SIZE = 4096


# ─── Account key I/O ──────────────────────────────────────────────────────────


def generate_account_key(key_size: int = DEFAULT_ACCOUNT_KEY_SIZE) -> JWKRSA:
    """Generate a new RSA account key wrapped in a josepy JWKRSA."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    return JWKRSA(key=private_key)


def account_key_to_pem(jwk: JWKRSA) -> str:
    """Serialize the account key as unencrypted PKCS8 PEM."""
    return jwk.key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def load_account_key_pem(pem: str | bytes) -> JWKRSA:
    """Load an RSA account key from PEM text; raises SigningError if unusable."""
    if isinstance(pem, str):
        pem = pem.encode("ascii")
    try:
        private_key = serialization.load_pem_private_key(pem, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise SigningError(f"Account key could not be loaded: {exc}") from exc
    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise SigningError("Account key must be an RSA key")
    return JWKRSA(key=private_key)


# ─── Signer ───────────────────────────────────────────────────────────────────


class Signer:
    """
    Holds the account keypair and produces JWS envelopes.

    The JWK and thumbprint are derived once and cached; the signer never
    touches the network.
    """

    def __init__(self, account_key: JWKRSA) -> None:
        self._key = account_key
        self._jwk: dict[str, str] | None = None
        self._thumbprint: str | None = None

    @classmethod
    def from_account_info(
        cls,
        provider: AccountInfoProvider,
        key_size: int = DEFAULT_ACCOUNT_KEY_SIZE,
    ) -> "Signer":
        """
        Load the persisted account key, or generate and persist a new one.

        A new key is saved before the signer is returned; if saving raises,
        the exception propagates and no signer exists for the unsaved key.
        """
        pem = provider.get_private_key()
        if pem:
            logger.info("Loaded existing account key")
            return cls(load_account_key_pem(pem))

        logger.info("No account key found; generating a %d-bit RSA key", key_size)
        key = generate_account_key(key_size)
        provider.save_private_key(account_key_to_pem(key))
        logger.info("Saved new account key")
        return cls(key)

    @property
    def account_key(self) -> JWKRSA:
        return self._key

    def jwk(self) -> dict[str, str]:
        """Public JWK {"e", "kty", "n"}, base64url encoded."""
        if self._jwk is None:
            # to_partial_json() adds "kty" alongside the n/e fields
            pub = self._key.public_key().to_partial_json()
            self._jwk = {"e": pub["e"], "kty": "RSA", "n": pub["n"]}
        return dict(self._jwk)

    def thumbprint(self) -> str:
        """base64url(SHA-256(canonical JWK)) per RFC 7638."""
        if self._thumbprint is None:
            digest = hashlib.sha256(canonical_json(self.jwk()).encode("utf-8")).digest()
            self._thumbprint = b64url(digest)
        return self._thumbprint

    def sign_with_jwk(self, url: str, nonce: str, payload: bytes) -> dict[str, str]:
        """JWS carrying the full public key; only used for newAccount."""
        header = {"alg": "RS256", "jwk": self.jwk(), "nonce": nonce, "url": url}
        return self._sign(header, payload)

    def sign_with_kid(self, url: str, nonce: str, payload: bytes, account_url: str) -> dict[str, str]:
        """JWS referencing the account URL; used for every other request."""
        header = {"alg": "RS256", "kid": account_url, "nonce": nonce, "url": url}
        return self._sign(header, payload)

    def _sign(self, header: dict[str, Any], payload: bytes) -> dict[str, str]:
        protected = b64url(json.dumps(header).encode("utf-8"))
        payload_b64 = b64url(payload)
        signing_input = f"{protected}.{payload_b64}".encode("ascii")
        try:
            signature = self._key.key.sign(signing_input, padding.PKCS1v15(), hashes.SHA256())
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise SigningError(f"Failed to generate signature: {exc}") from exc
        return {
            "protected": protected,
            "payload": payload_b64,
            "signature": b64url(signature),
        }


def encode_payload(payload: dict | None) -> bytes:
    """JSON-encode a request payload; None means POST-as-GET (empty payload)."""
    if payload is None:
        return b""
    return json.dumps(payload).encode("utf-8")
