"""
base64url / JSON helpers shared by the JWS and finalization code.

JOSE (RFC 7515 §2) wants URL-safe base64 with the trailing "=" padding
removed; ACME reuses that encoding for the CSR and for DNS-01 TXT values.
"""
from __future__ import annotations

import base64
import json
import re
from typing import Any

_PEM_ARMOR = re.compile(r"-----(BEGIN|END)[^-]*-----")


def b64url(data: bytes | str) -> str:
    """URL-safe base64 encoding with no padding (as required by JOSE)."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(s: str) -> bytes:
    """URL-safe base64 decode, adding padding as needed."""
    pad = 4 - len(s) % 4
    if pad != 4:
        s += "=" * pad
    return base64.urlsafe_b64decode(s)


def canonical_json(obj: Any) -> str:
    """Sorted keys, no whitespace: the RFC 7638 thumbprint input form."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"))


def pem_to_b64url(pem: str) -> str:
    """
    Strip the PEM armor and re-encode the DER body as base64url.

    Only the first PEM block is used; a CSR is always a single block.
    """
    body = _PEM_ARMOR.split(pem)
    # split() yields [pre, "BEGIN", body, "END", post]
    if len(body) < 3:
        raise ValueError("No PEM block found")
    der = base64.b64decode("".join(body[2].split()))
    return b64url(der)
