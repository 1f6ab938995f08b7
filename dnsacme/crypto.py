"""
Domain private-key generation, CSR creation and certificate inspection.

Boundary: this module owns everything cryptographic that is *domain*-specific.
Account-key operations (JWK, JWS) live in dnsacme/jws.py.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Sequence, Union

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

from dnsacme.errors import CSRGenerationError

PrivateKey = Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey]

_PEM_CERT = re.compile(
    r"-----BEGIN CERTIFICATE-----.+?-----END CERTIFICATE-----\s*", re.DOTALL
)


def generate_rsa_key(key_size: int = 4096) -> rsa.RSAPrivateKey:
    """Generate an RSA private key for a domain certificate."""
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def generate_ec_key() -> ec.EllipticCurvePrivateKey:
    """Generate an EC P-256 private key (smaller, faster than RSA)."""
    return ec.generate_private_key(ec.SECP256R1())


def private_key_to_pem(key: PrivateKey) -> str:
    """Serialize a private key to an unencrypted PEM string."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


def load_private_key(pem: str | bytes) -> PrivateKey:
    if isinstance(pem, str):
        pem = pem.encode()
    key = serialization.load_pem_private_key(pem, password=None)
    if not isinstance(key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
        raise TypeError(f"Unsupported private key type: {type(key).__name__}")
    return key


def create_csr(
    private_key: PrivateKey | str | bytes,
    domains: str | Sequence[str],
    country: Optional[str] = None,
    state: Optional[str] = None,
    locality: Optional[str] = None,
    organization: Optional[str] = None,
    organizational_unit: Optional[str] = None,
) -> str:
    """
    Create a PEM-encoded CSR.

    With several *domains* the first one is the common name and all of them
    go into a subjectAltName extension, next to basicConstraints=CA:FALSE
    and keyUsage=nonRepudiation,digitalSignature,keyEncipherment.
    A single domain produces a CSR with no extensions.

    Subject fields left as None are omitted from the distinguished name.
    Raises CSRGenerationError if the key or a subject field is unusable.
    """
    if isinstance(domains, str):
        domains = [domains]
    domains = list(dict.fromkeys(domains))  # deduplicate, preserve order
    if not domains:
        raise CSRGenerationError("At least one domain is required")

    try:
        if isinstance(private_key, (str, bytes)):
            private_key = load_private_key(private_key)

        attributes = [x509.NameAttribute(NameOID.COMMON_NAME, domains[0])]
        for oid, value in (
            (NameOID.COUNTRY_NAME, country),
            (NameOID.STATE_OR_PROVINCE_NAME, state),
            (NameOID.LOCALITY_NAME, locality),
            (NameOID.ORGANIZATION_NAME, organization),
            (NameOID.ORGANIZATIONAL_UNIT_NAME, organizational_unit),
        ):
            if value is not None:
                attributes.append(x509.NameAttribute(oid, value))

        builder = x509.CertificateSigningRequestBuilder().subject_name(x509.Name(attributes))
        if len(domains) > 1:
            builder = (
                builder
                .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=False)
                .add_extension(
                    x509.KeyUsage(
                        digital_signature=True,
                        content_commitment=True,  # nonRepudiation
                        key_encipherment=True,
                        data_encipherment=False,
                        key_agreement=False,
                        key_cert_sign=False,
                        crl_sign=False,
                        encipher_only=False,
                        decipher_only=False,
                    ),
                    critical=False,
                )
                .add_extension(
                    x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]),
                    critical=False,
                )
            )

        csr = builder.sign(private_key, hashes.SHA256())
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise CSRGenerationError(f"Failed to generate CSR: {exc}") from exc

    return csr.public_bytes(serialization.Encoding.PEM).decode()


# ─── Certificate info ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class CertificateInfo:
    subject: str
    issuer: str
    serial_number: int
    valid_from: datetime
    valid_to: datetime
    dns_names: tuple[str, ...] = ()


def _utc(cert: x509.Certificate, attr: str) -> datetime:
    # cryptography >= 42 exposes *_utc (timezone-aware)
    try:
        return getattr(cert, f"{attr}_utc")
    except AttributeError:
        return getattr(cert, attr).replace(tzinfo=timezone.utc)


def parse_certificate(pem: str | bytes) -> CertificateInfo:
    """Parse the first certificate in *pem*; raises ValueError if malformed."""
    if isinstance(pem, str):
        pem = pem.encode()
    cert = x509.load_pem_x509_certificate(pem)
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        dns_names = tuple(san.value.get_values_for_type(x509.DNSName))
    except x509.ExtensionNotFound:
        dns_names = ()
    return CertificateInfo(
        subject=cert.subject.rfc4514_string(),
        issuer=cert.issuer.rfc4514_string(),
        serial_number=cert.serial_number,
        valid_from=_utc(cert, "not_valid_before"),
        valid_to=_utc(cert, "not_valid_after"),
        dns_names=dns_names,
    )


def get_certificate_expiration(pem: str | bytes) -> Optional[datetime]:
    """Return the notAfter time of *pem*, or None if it cannot be parsed."""
    try:
        return parse_certificate(pem).valid_to
    except ValueError:
        return None


def split_pem_chain(fullchain: str) -> tuple[str, str]:
    """Split a PEM chain into (leaf, intermediates)."""
    blocks = _PEM_CERT.findall(fullchain)
    if not blocks:
        raise ValueError("No certificate found in PEM chain")
    return blocks[0], "".join(blocks[1:])
