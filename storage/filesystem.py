"""
PEM filesystem storage for the ACME DNS-01 client.

Account key:
  FileAccountInfoProvider keeps the account key at ACCOUNT_KEY_PATH
  (mode 0o600). An existing key is never rewritten.

Directory layout per issued certificate:
  ./certs/<domain>/
      cert.pem       : Leaf certificate
      chain.pem      : Intermediate CA chain
      fullchain.pem  : cert + chain (nginx uses this)
      privkey.pem    : Private key (mode 0o600)
      metadata.json  : Issued/expires/order metadata

All writes are atomic: temp file + fsync + atomic rename.
"""
from __future__ import annotations

import json
import stat
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from dnsacme.account import AccountInfoProvider
from dnsacme.crypto import parse_certificate, split_pem_chain
from dnsacme.errors import AccountStorageError
from storage.atomic import atomic_write_text


# ─── Account key ──────────────────────────────────────────────────────────────


class FileAccountInfoProvider(AccountInfoProvider):
    """Account key on disk plus a fixed list of contact e-mails."""

    def __init__(self, key_path: str, contact_emails: Iterable[str] = ()) -> None:
        self.key_path = Path(key_path)
        self.contact_emails = list(contact_emails)

    def get_contact_emails(self) -> list[str]:
        return list(self.contact_emails)

    def get_private_key(self) -> Optional[str]:
        if self.key_path.exists():
            return self.key_path.read_text()
        return None

    def save_private_key(self, private_key: str) -> None:
        if self.key_path.exists():
            raise AccountStorageError(f"Refusing to overwrite existing account key {self.key_path}")
        try:
            atomic_write_text(self.key_path, private_key, mode=stat.S_IRUSR | stat.S_IWUSR)
        except OSError as exc:
            raise AccountStorageError(f"Failed to save account key to {self.key_path}: {exc}") from exc


# ─── Certificates ─────────────────────────────────────────────────────────────


def cert_dir(cert_store_path: str, domain: str) -> Path:
    """Return the Path for a domain's cert directory (creates it if needed)."""
    p = Path(cert_store_path) / domain.replace("*", "_")
    p.mkdir(parents=True, exist_ok=True)
    return p


def read_cert_pem(cert_store_path: str, domain: str) -> Optional[str]:
    """Return the PEM text of the leaf cert, or None if not found."""
    path = cert_dir(cert_store_path, domain) / "cert.pem"
    if path.exists():
        return path.read_text()
    return None


def write_cert_files(
    cert_store_path: str,
    domain: str,
    fullchain_pem: str,
    privkey_pem: str,
    acme_order_url: str = "",
) -> dict:
    """
    Split *fullchain_pem* and write cert.pem, chain.pem, fullchain.pem,
    privkey.pem and metadata.json to ./certs/<domain>/.
    Private key is set to mode 0o600.

    Returns a metadata dict with issued_at, expires_at, acme_order_url.
    """
    d = cert_dir(cert_store_path, domain)
    cert_pem, chain_pem = split_pem_chain(fullchain_pem)

    _write(d / "cert.pem", cert_pem)
    _write(d / "chain.pem", chain_pem)
    _write(d / "fullchain.pem", cert_pem + chain_pem)

    atomic_write_text(d / "privkey.pem", privkey_pem, mode=stat.S_IRUSR | stat.S_IWUSR)  # 0o600

    info = parse_certificate(cert_pem)
    metadata = {
        "issued_at": datetime.now(tz=timezone.utc).isoformat(),
        "expires_at": info.valid_to.isoformat(),
        "dns_names": list(info.dns_names),
        "acme_order_url": acme_order_url,
    }
    _write(d / "metadata.json", json.dumps(metadata, indent=2))

    return metadata


def read_metadata(cert_store_path: str, domain: str) -> Optional[dict]:
    """Return the stored metadata dict for a domain, or None."""
    path = cert_dir(cert_store_path, domain) / "metadata.json"
    if path.exists():
        return json.loads(path.read_text())
    return None


# ─── Internal ──────────────────────────────────────────────────────────────────


def _write(path: Path, content: str) -> None:
    """Atomically write text with fsync to prevent corruption."""
    atomic_write_text(path, content)
