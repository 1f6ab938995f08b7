"""
DNS-01 challenge support.

Provides:
  compute_key_authorization(token, thumbprint) -> str
  compute_dns_txt_value(key_authorization) -> str
  dns01_record(identifier, key_authorization) -> DnsRecord

  work_on_challenges(...) : publish the TXT record for a pending authorization
  check_challenges(...)   : look the record up again before asking the CA

  DnsProvider (ABC)
      Interface that all DNS provider implementations must satisfy.

  Route53DnsProvider    : uses `boto3`
  CloudflareDnsProvider : uses the `cloudflare` library (>=3.0)
  GoogleCloudDnsProvider: uses `google-cloud-dns`

  make_dns_provider() -> DnsProvider
      Factory that reads settings and returns the appropriate provider.

DNS-01 protocol (RFC 8555 §8.4):
  1. key_authorization = token + "." + jwk_thumbprint
  2. TXT record value = base64url(SHA-256(key_authorization))
  3. DNS name = _acme-challenge.{domain}
  4. Create record → wait for propagation → POST challenge URL → poll
"""
from __future__ import annotations

import hashlib
import logging
import random
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Optional

from dnsacme.codec import b64url
from dnsacme.errors import DNSProviderError, UnsupportedChallengeError

if TYPE_CHECKING:
    from dnsacme.dns_resolver import TxtResolver
    from dnsacme.models import Authorization, Challenge

logger = logging.getLogger(__name__)

DNS01 = "dns-01"
SUPPORTED_CHALLENGE_TYPES = (DNS01,)
CHALLENGE_TTL = 60


# ─── Record computation ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class DnsRecord:
    type: str
    name: str
    value: str
    ttl: int = CHALLENGE_TTL

    @property
    def unquoted_value(self) -> str:
        return self.value.strip('"')


def compute_key_authorization(token: str, thumbprint: str) -> str:
    """Return token + "." + base64url JWK thumbprint."""
    return f"{token}.{thumbprint}"


def compute_dns_txt_value(key_authorization: str) -> str:
    """Return base64url(SHA-256(key_authorization)) with no padding."""
    digest = hashlib.sha256(key_authorization.encode("ascii")).digest()
    return b64url(digest)


def challenge_record_name(domain: str) -> str:
    """_acme-challenge name for *domain*; a wildcard shares its base domain's name."""
    if domain.startswith("*."):
        domain = domain[2:]
    return f"_acme-challenge.{domain}"


def dns01_record(domain: str, key_authorization: str) -> DnsRecord:
    """TXT record answering a DNS-01 challenge, value quoted as in zone files."""
    return DnsRecord(
        type="TXT",
        name=challenge_record_name(domain),
        value=f'"{compute_dns_txt_value(key_authorization)}"',
        ttl=CHALLENGE_TTL,
    )


def _select_challenge(authorization: Authorization) -> Challenge:
    for challenge in authorization.challenges:
        if challenge.type in SUPPORTED_CHALLENGE_TYPES:
            return challenge
    raise UnsupportedChallengeError(
        authorization.domain, [c.type for c in authorization.challenges]
    )


# ─── Authorization handling ───────────────────────────────────────────────────


def work_on_challenges(
    authorization: Authorization,
    thumbprint: str,
    dns_provider: Optional["DnsProvider"],
    dry_run: bool = False,
) -> Optional[str]:
    """
    Prepare the DNS-01 answer for a pending authorization.

    Publishes the TXT record unless *dry_run*; returns the challenge URL so
    the caller can POST the "ready" signal separately. Returns None when the
    authorization is no longer pending.
    """
    if not authorization.is_pending():
        logger.debug("Authorization for %s is %s; nothing to do",
                     authorization.domain, authorization.status.value)
        return None

    challenge = _select_challenge(authorization)
    if not dry_run:
        if dns_provider is None:
            raise DNSProviderError("DNS provider not provisioned")
        key_auth = compute_key_authorization(challenge.token, thumbprint)
        record = dns01_record(authorization.domain, key_auth)
        logger.info("Publishing %s %s for %s", record.type, record.name, authorization.domain)
        dns_provider.add_dns_value(record.type, record.name, record.value, record.ttl)
    return challenge.url


def check_challenges(
    authorization: Authorization,
    thumbprint: str,
    resolver: TxtResolver,
) -> bool:
    """
    Look up the DNS-01 records for *authorization* and compare them with
    the expected value, quoted or not (resolvers differ on quoting).

    Non-pending authorizations pass. Lookup failures count as a miss.
    """
    if not authorization.is_pending():
        return True

    ok = True
    for challenge in authorization.challenges:
        if challenge.type != DNS01:
            continue
        key_auth = compute_key_authorization(challenge.token, thumbprint)
        record = dns01_record(authorization.domain, key_auth)
        try:
            found = resolver.txt_records_for_name(record.name)
        except Exception as exc:
            logger.warning("TXT lookup for %s failed: %s", record.name, exc)
            ok = False
            continue
        if record.value not in found and record.unquoted_value not in found:
            logger.warning("TXT %s does not contain the expected value yet", record.name)
            ok = False
    return ok


# ─── Provider ABC ─────────────────────────────────────────────────────────────


class DnsProvider(ABC):
    """
    Abstract base for DNS-01 record publication.

    Rate-limited calls are retried up to *max_attempts* times with a uniformly
    random sleep between *min_backoff* and *max_backoff* seconds; any other
    error is raised immediately as DNSProviderError.
    """

    def __init__(
        self,
        max_attempts: int = 10,
        min_backoff: float = 1.0,
        max_backoff: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.max_attempts = max_attempts
        self.min_backoff = min_backoff
        self.max_backoff = max_backoff
        self._sleep = sleep

    @abstractmethod
    def add_dns_value(self, record_type: str, name: str, value: str, ttl: int) -> None:
        """Add *value* to the *record_type* record set at *name* (UPSERT).

        Repeated calls for the same name accumulate values; adding a value
        that is already present is a no-op.
        """

    @abstractmethod
    def _is_rate_limited(self, exc: Exception) -> bool:
        """Return True when *exc* is the provider's throttling response."""

    def _call_with_backoff(self, description: str, fn: Callable[[], Any]) -> Any:
        for attempt in range(1, self.max_attempts + 1):
            try:
                return fn()
            except DNSProviderError:
                raise
            except Exception as exc:
                if not self._is_rate_limited(exc):
                    raise DNSProviderError(f"Failed to {description}: {exc}") from exc
                if attempt == self.max_attempts:
                    raise DNSProviderError(
                        f"Failed to {description}: still rate limited after {attempt} attempts"
                    ) from exc
                delay = random.uniform(self.min_backoff, self.max_backoff)
                logger.warning("Rate limited while trying to %s; retrying in %.1fs", description, delay)
                self._sleep(delay)


def _fqdn(name: str) -> str:
    return name if name.endswith(".") else name + "."


# ─── Route 53 ─────────────────────────────────────────────────────────────────

_ROUTE53_THROTTLE_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "PriorRequestNotComplete",
    "RequestLimitExceeded",
    "TooManyRequestsException",
})


class Route53DnsProvider(DnsProvider):
    """DNS-01 provider backed by AWS Route 53 (boto3)."""

    def __init__(
        self,
        hosted_zone_id: str = "",
        region: str = "us-east-1",
        access_key_id: str = "",
        secret_access_key: str = "",
        **backoff: Any,
    ) -> None:
        super().__init__(**backoff)
        try:
            import boto3  # noqa: F401
            self._boto3 = boto3
        except ImportError as exc:
            raise ImportError(
                "boto3 package is required for DNS_PROVIDER='route53'. "
                "Install it with: pip install 'dnsacme[dns-route53]'"
            ) from exc

        self._explicit_zone_id = hosted_zone_id
        self._region = region
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self._client = None
        # (type, fqdn) -> every value published so far; UPSERT replaces the
        # whole set, so each change must carry all of them.
        self._resource_records: defaultdict[tuple[str, str], list[dict[str, str]]] = defaultdict(list)

    def _get_client(self):
        if self._client is None:
            kwargs: dict = {"region_name": self._region}
            if self._access_key_id:
                kwargs["aws_access_key_id"] = self._access_key_id
            if self._secret_access_key:
                kwargs["aws_secret_access_key"] = self._secret_access_key
            self._client = self._boto3.client("route53", **kwargs)
        return self._client

    def _resolve_zone_id(self, name: str) -> str:
        if self._explicit_zone_id:
            return self._explicit_zone_id

        client = self._get_client()
        parts = name.rstrip(".").split(".")
        for i in range(len(parts) - 1):
            candidate = ".".join(parts[i:]) + "."
            response = self._call_with_backoff(
                f"look up hosted zone {candidate}",
                lambda: client.list_hosted_zones_by_name(DNSName=candidate, MaxItems="1"),
            )
            zones = response.get("HostedZones", [])
            if zones and zones[0]["Name"] == candidate:
                # Extract bare ID from "/hostedzone/ZXXXXX"
                return zones[0]["Id"].split("/")[-1]

        raise DNSProviderError(f"Could not discover Route53 hosted zone for {name}")

    def _is_rate_limited(self, exc: Exception) -> bool:
        response = getattr(exc, "response", None)
        if not isinstance(response, dict):
            return False
        code = response.get("Error", {}).get("Code", "")
        return code in _ROUTE53_THROTTLE_CODES

    def add_dns_value(self, record_type: str, name: str, value: str, ttl: int) -> None:
        name = _fqdn(name)
        zone_id = self._resolve_zone_id(name)
        key = (record_type, name)
        rrecords = list(self._resource_records[key])
        entry = {"Value": value}
        if entry not in rrecords:
            rrecords.append(entry)

        client = self._get_client()
        change_batch = {
            "Comment": f"dnsacme {record_type} {name}",
            "Changes": [
                {
                    "Action": "UPSERT",
                    "ResourceRecordSet": {
                        "Name": name,
                        "Type": record_type,
                        "TTL": ttl,
                        "ResourceRecords": rrecords,
                    },
                }
            ],
        }
        self._call_with_backoff(
            f"add {record_type} record {name}",
            lambda: client.change_resource_record_sets(HostedZoneId=zone_id, ChangeBatch=change_batch),
        )
        # Rejected values must not be resent with later UPSERTs
        self._resource_records[key] = rrecords
        logger.info("Upserted Route53 %s record %s (%d value(s))", record_type, name, len(rrecords))


# ─── Cloudflare ───────────────────────────────────────────────────────────────


class CloudflareDnsProvider(DnsProvider):
    """DNS-01 provider backed by the Cloudflare API (cloudflare>=3.0)."""

    def __init__(self, api_token: str, zone_id: str = "", **backoff: Any) -> None:
        super().__init__(**backoff)
        try:
            import cloudflare as cf_mod  # noqa: F401
            self._cf_mod = cf_mod
        except ImportError as exc:
            raise ImportError(
                "cloudflare package is required for DNS_PROVIDER='cloudflare'. "
                "Install it with: pip install 'dnsacme[dns-cloudflare]'"
            ) from exc

        self._api_token = api_token
        self._explicit_zone_id = zone_id

    def _get_client(self):
        return self._cf_mod.Cloudflare(api_token=self._api_token)

    def _is_rate_limited(self, exc: Exception) -> bool:
        return getattr(exc, "status_code", None) == 429

    def _resolve_zone_id(self, cf, name: str) -> str:
        """Return the explicit zone ID if set, else discover it."""
        if self._explicit_zone_id:
            return self._explicit_zone_id

        # Walk from most-specific to least-specific label group
        parts = name.rstrip(".").split(".")
        for i in range(len(parts) - 1):
            candidate = ".".join(parts[i:])
            zone_list = self._call_with_backoff(
                f"look up zone {candidate}", lambda: list(cf.zones.list(name=candidate))
            )
            if zone_list:
                return zone_list[0].id

        raise DNSProviderError(f"Could not discover Cloudflare zone for {name}")

    def add_dns_value(self, record_type: str, name: str, value: str, ttl: int) -> None:
        cf = self._get_client()
        name = name.rstrip(".")
        zone_id = self._resolve_zone_id(cf, name)

        # Cloudflare keeps one record per value, so values accumulate naturally
        existing = self._call_with_backoff(
            f"list {record_type} records {name}",
            lambda: list(cf.dns.records.list(zone_id=zone_id, name=name, type=record_type)),
        )
        for record in existing:
            if getattr(record, "content", None) in (value, value.strip('"')):
                logger.debug("%s record %s already has this value; skipping create", record_type, name)
                return

        self._call_with_backoff(
            f"add {record_type} record {name}",
            lambda: cf.dns.records.create(
                zone_id=zone_id, type=record_type, name=name, content=value, ttl=ttl,
            ),
        )
        logger.info("Created Cloudflare %s record %s", record_type, name)


# ─── Google Cloud DNS ─────────────────────────────────────────────────────────


class GoogleCloudDnsProvider(DnsProvider):
    """DNS-01 provider backed by Google Cloud DNS (google-cloud-dns>=0.34)."""

    def __init__(
        self,
        project_id: str,
        zone_name: str,
        credentials_path: str = "",
        **backoff: Any,
    ) -> None:
        super().__init__(**backoff)
        try:
            from google.cloud import dns as gcp_dns  # noqa: F401
            self._gcp_dns = gcp_dns
        except ImportError as exc:
            raise ImportError(
                "google-cloud-dns package is required for DNS_PROVIDER='google'. "
                "Install it with: pip install 'dnsacme[dns-google]'"
            ) from exc

        self._project_id = project_id
        self._zone_name = zone_name
        self._credentials_path = credentials_path

    def _get_client(self):
        if self._credentials_path:
            return self._gcp_dns.Client.from_service_account_json(
                self._credentials_path, project=self._project_id
            )
        return self._gcp_dns.Client(project=self._project_id)

    def _is_rate_limited(self, exc: Exception) -> bool:
        return getattr(exc, "code", None) == 429

    def add_dns_value(self, record_type: str, name: str, value: str, ttl: int) -> None:
        zone = self._get_client().zone(self._zone_name)
        name = _fqdn(name)

        existing = None
        for record in self._call_with_backoff(
            f"list records in {self._zone_name}", lambda: list(zone.list_resource_record_sets())
        ):
            if record.name == name and record.record_type == record_type:
                existing = record
                break

        rdata = list(existing.rrdatas) if existing else []
        if value in rdata:
            logger.debug("%s record %s already has this value; skipping", record_type, name)
            return
        rdata.append(value)

        # Cloud DNS has no UPSERT: replace the record set in one change
        changes = zone.changes()
        if existing:
            changes.delete_record_set(existing)
        changes.add_record_set(zone.resource_record_set(name, record_type, ttl, rdata))
        self._call_with_backoff(f"add {record_type} record {name}", changes.create)
        logger.info("Updated Google Cloud DNS %s record %s (%d value(s))", record_type, name, len(rdata))


# ─── Factory ──────────────────────────────────────────────────────────────────


def make_dns_provider() -> DnsProvider:
    """Instantiate and return the configured DNS provider.

    Reads settings at call time (mirrors make_client() pattern).
    Raises ValueError for unknown DNS_PROVIDER values.
    """
    from config import settings  # late import to avoid circular dependency

    provider = settings.DNS_PROVIDER
    backoff = {"max_attempts": settings.DNS_RATE_LIMIT_ATTEMPTS}

    if provider == "route53":
        return Route53DnsProvider(
            hosted_zone_id=settings.AWS_ROUTE53_HOSTED_ZONE_ID,
            region=settings.AWS_REGION,
            access_key_id=settings.AWS_ACCESS_KEY_ID,
            secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
            **backoff,
        )
    elif provider == "cloudflare":
        return CloudflareDnsProvider(
            api_token=settings.CLOUDFLARE_API_TOKEN,
            zone_id=settings.CLOUDFLARE_ZONE_ID,
            **backoff,
        )
    elif provider == "google":
        return GoogleCloudDnsProvider(
            project_id=settings.GOOGLE_PROJECT_ID,
            zone_name=settings.GOOGLE_CLOUD_DNS_ZONE_NAME,
            credentials_path=settings.GOOGLE_APPLICATION_CREDENTIALS,
            **backoff,
        )
    else:
        raise ValueError(
            f"Unknown DNS_PROVIDER: {provider!r}. "
            "Must be one of: route53, cloudflare, google"
        )
