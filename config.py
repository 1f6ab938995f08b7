"""
Application configuration via Pydantic Settings.
All values can be overridden by environment variables or a .env file.
"""
from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    DotEnvSettingsSource,
    EnvSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from dnsacme.directory import LETSENCRYPT_PRODUCTION, LETSENCRYPT_STAGING


class _CommaFallbackMixin:
    """Return the raw string when JSON parsing fails.

    pydantic-settings ≥2.7 calls json.loads() on complex-typed fields
    (e.g. List[str]) before field_validators run.  A plain comma-separated
    value like ``ops@example.com,admin@example.com`` is not valid JSON and
    raises SettingsError before the list validators can handle it.
    This mixin catches that ValueError and returns the raw string so the
    field_validator receives it and can split on commas as intended.
    """

    def prepare_field_value(self, field_name, field, value, value_is_complex):  # type: ignore[override]
        try:
            return super().prepare_field_value(field_name, field, value, value_is_complex)  # type: ignore[misc]
        except ValueError:
            return value


class _CSVEnvSource(_CommaFallbackMixin, EnvSettingsSource):
    pass


class _CSVDotEnvSource(_CommaFallbackMixin, DotEnvSettingsSource):
    pass


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── ACME server ────────────────────────────────────────────────────────
    ACME_ENVIRONMENT: Literal["production", "staging", "custom"] = "staging"
    # Only consulted when ACME_ENVIRONMENT="custom"
    ACME_DIRECTORY_URL: str = ""
    ACME_CA_BUNDLE: str = ""       # Path to CA cert bundle; empty = system default
    ACME_INSECURE: bool = False    # Skip TLS verification (never use in production)
    HTTP_TIMEOUT: int = 30

    # ── Account ────────────────────────────────────────────────────────────
    CONTACT_EMAILS: List[str] = []
    ACCOUNT_KEY_PATH: str = "./account.key"
    ACCOUNT_KEY_SIZE: int = 4096

    # ── Storage ────────────────────────────────────────────────────────────
    CERT_STORE_PATH: str = "./certs"
    DOMAIN_KEY_SIZE: int = 4096

    # ── DNS-01 ─────────────────────────────────────────────────────────────
    DNS_PROVIDER: Literal["route53", "cloudflare", "google"] = "route53"
    DNS_RESOLVERS: List[str] = ["8.8.8.8", "1.1.1.1"]
    DNS_PROPAGATION_WAIT_SECONDS: int = 65
    DNS_RATE_LIMIT_ATTEMPTS: int = 10

    AWS_ROUTE53_HOSTED_ZONE_ID: str = ""
    AWS_REGION: str = "us-east-1"
    AWS_ACCESS_KEY_ID: str = ""
    AWS_SECRET_ACCESS_KEY: str = ""

    CLOUDFLARE_API_TOKEN: str = ""
    CLOUDFLARE_ZONE_ID: str = ""

    GOOGLE_PROJECT_ID: str = ""
    GOOGLE_CLOUD_DNS_ZONE_NAME: str = ""
    GOOGLE_APPLICATION_CREDENTIALS: str = ""

    # ── Polling ────────────────────────────────────────────────────────────
    ORDER_READY_POLL_ATTEMPTS: int = 30
    ORDER_READY_POLL_INTERVAL: float = 5
    ORDER_PROCESSING_POLL_ATTEMPTS: int = 5
    ORDER_PROCESSING_POLL_INTERVAL: float = 10
    CERTIFICATE_POLL_INTERVAL: float = 60
    CERTIFICATE_POLL_ATTEMPTS: int = 10

    # ── CSR subject (all optional) ─────────────────────────────────────────
    CSR_COUNTRY: Optional[str] = None
    CSR_STATE: Optional[str] = None
    CSR_LOCALITY: Optional[str] = None
    CSR_ORGANIZATION: Optional[str] = None
    CSR_ORGANIZATIONAL_UNIT: Optional[str] = None

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            _CSVEnvSource(settings_cls),
            _CSVDotEnvSource(settings_cls),
            file_secret_settings,
        )

    @field_validator("CONTACT_EMAILS", "DNS_RESOLVERS", mode="before")
    @classmethod
    def parse_csv(cls, v: object) -> List[str]:
        """Accept comma-separated string or list."""
        if isinstance(v, str):
            return [d.strip() for d in v.split(",") if d.strip()]
        return v  # type: ignore[return-value]

    @field_validator("CSR_COUNTRY")
    @classmethod
    def validate_country(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and len(v) != 2:
            raise ValueError("CSR_COUNTRY must be a two-letter ISO code")
        return v

    @model_validator(mode="after")
    def resolve_acme_directory(self) -> "Settings":
        _PRESETS = {
            "production": LETSENCRYPT_PRODUCTION,
            "staging":    LETSENCRYPT_STAGING,
        }
        if self.ACME_ENVIRONMENT in _PRESETS:
            self.ACME_DIRECTORY_URL = _PRESETS[self.ACME_ENVIRONMENT]
        elif not self.ACME_DIRECTORY_URL:
            raise ValueError("ACME_DIRECTORY_URL must be set when ACME_ENVIRONMENT='custom'")
        return self


# Module-level singleton, imported everywhere.
settings = Settings()
