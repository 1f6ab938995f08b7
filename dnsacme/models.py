"""Pydantic models for the ACME resources this client reads (RFC 8555 §7.1)."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from dnsacme.errors import ProtocolError


class OrderStatus(str, Enum):
    """Order statuses (RFC 8555 §7.1.6)."""

    PENDING = "pending"
    READY = "ready"
    PROCESSING = "processing"
    VALID = "valid"
    INVALID = "invalid"

    @property
    def rank(self) -> int:
        return _ORDER_RANK[self]

    def can_transition_to(self, new: "OrderStatus") -> bool:
        """
        Forward-only along pending -> ready -> processing -> valid.
        'invalid' is reachable from anywhere and nothing leaves it.
        """
        if self is OrderStatus.INVALID:
            return new is OrderStatus.INVALID
        if new is OrderStatus.INVALID:
            return True
        return new.rank >= self.rank


_ORDER_RANK = {
    OrderStatus.PENDING: 0,
    OrderStatus.READY: 1,
    OrderStatus.PROCESSING: 2,
    OrderStatus.VALID: 3,
    OrderStatus.INVALID: 4,
}


class AuthorizationStatus(str, Enum):
    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"
    DEACTIVATED = "deactivated"
    EXPIRED = "expired"
    REVOKED = "revoked"


class Identifier(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str = "dns"
    value: str


class Challenge(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    type: str
    url: str
    token: str = ""
    status: str = "pending"


class _Resource(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    @classmethod
    def from_json(cls, json_body: Any, **extra: Any):
        """Build from a decoded response body, mapping bad shapes to ProtocolError."""
        if not isinstance(json_body, dict):
            raise ProtocolError(f"Expected a JSON object for {cls.__name__}, got {type(json_body).__name__}")
        try:
            return cls.model_validate({**json_body, **extra})
        except ValidationError as exc:
            raise ProtocolError(f"Malformed {cls.__name__}: {exc}") from exc


class Order(_Resource):
    """
    One certificate request, as last reported by the server.

    Instances are immutable; every poll produces a new Order.
    """

    url: str
    status: OrderStatus
    expires: Optional[datetime] = None
    not_before: Optional[datetime] = Field(default=None, alias="notBefore")
    not_after: Optional[datetime] = Field(default=None, alias="notAfter")
    identifiers: list[Identifier] = Field(default_factory=list)
    authorizations: list[str] = Field(default_factory=list)
    finalize_url: str = Field(alias="finalize")
    certificate_url: Optional[str] = Field(default=None, alias="certificate")

    @property
    def domains(self) -> list[str]:
        return [i.value for i in self.identifiers]

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires is None:
            return False
        now = now or datetime.now(tz=timezone.utc)
        expires = self.expires
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        return expires < now

    def did_fail(self) -> bool:
        return self.status is OrderStatus.INVALID

    def is_ready(self) -> bool:
        return self.status is OrderStatus.READY

    def is_processing(self) -> bool:
        return self.status is OrderStatus.PROCESSING

    def is_valid(self) -> bool:
        return self.status is OrderStatus.VALID


class Authorization(_Resource):
    url: str = ""
    order_url: Optional[str] = None
    status: AuthorizationStatus
    expires: Optional[datetime] = None
    identifier: Identifier
    challenges: list[Challenge] = Field(default_factory=list)
    wildcard: bool = False

    @property
    def domain(self) -> str:
        return self.identifier.value

    def is_pending(self) -> bool:
        return self.status is AuthorizationStatus.PENDING
