"""
settings.py
~~~~~~~~~~~
Runtime configuration for the certificate proxy.

• Loads values from environment variables (with .env fallback on dev)
• Validates types at startup
• Exposes a singleton `settings` you can import anywhere
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import (
    AnyHttpUrl,
    Field,
    PositiveInt,
    SecretStr,
    ValidationError,
    field_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

# Auto-load .env when running locally
load_dotenv(Path(__file__).resolve().parent / ".env", override=False)


def _split_csv(value: str | list[str] | None) -> list[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return [v.strip() for v in value if v and v.strip()]
    return [v.strip() for v in value.split(",") if v.strip()]


class _Settings(BaseSettings):
    # ── GENERAL ──────────────────────────────────────────────
    env: Literal["dev", "staging", "prod"] = Field("dev", validation_alias="ENV")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field("INFO", alias="LOG_LEVEL")
    debug: bool = Field(False, alias="DEBUG")
    app_host: str = Field("0.0.0.0", alias="APP_HOST")
    app_port: PositiveInt = Field(3000, alias="PORT")
    allowed_origins: str = Field("", alias="ALLOWED_ORIGINS")

    # ── NIVODA (upstream) ────────────────────────────────────
    nivoda_api: AnyHttpUrl = Field(
        "https://integrations.nivoda.net/api/diamonds", alias="NIVODA_API"
    )
    nivoda_user: SecretStr = Field(..., alias="NIVODA_USER")
    nivoda_pass: SecretStr = Field(..., alias="NIVODA_PASS")
    use_basic_auth: bool = Field(False, alias="USE_BASIC_AUTH")
    token_ttl_hours: float = Field(5.0, ge=4.0, le=6.0, alias="NIVODA_TOKEN_TTL_HOURS")
    upstream_timeout: float = Field(10.0, ge=5.0, le=15.0, alias="UPSTREAM_TIMEOUT")
    pipeline_deadline: float = Field(30.0, gt=0, alias="PIPELINE_DEADLINE")
    query_limit: PositiveInt = Field(5, alias="NIVODA_QUERY_LIMIT")
    query_strategy: Literal["sequential", "batched"] = Field(
        "sequential", alias="NIVODA_QUERY_STRATEGY"
    )

    # ── CERTIFICATE VARIANTS ─────────────────────────────────
    cert_lab_prefixes: str = Field("LG,GIA,IGI,HRD", alias="CERT_LAB_PREFIXES")
    cert_min_length: int = Field(3, ge=2, le=3, alias="CERT_MIN_LENGTH")
    cert_pad_width: PositiveInt = Field(10, alias="CERT_PAD_WIDTH")

    # ── SHOPIFY (storefront) ─────────────────────────────────
    shopify_store: str = Field(..., alias="SHOPIFY_STORE")
    storefront_token: SecretStr | None = Field(None, alias="SHOPIFY_STOREFRONT_TOKEN")
    shop_admin_token: SecretStr | None = Field(None, alias="SHOPIFY_ADMIN_TOKEN")
    create_missing_products: bool = Field(False, alias="SHOPIFY_CREATE_MISSING")
    product_base_url: str | None = Field(None, alias="PRODUCT_BASE_URL")
    fallback_url_template: str | None = Field(None, alias="FALLBACK_URL_TEMPLATE")

    # ── DIAGNOSTICS ──────────────────────────────────────────
    diagnostics_enabled: bool = Field(True, alias="ENABLE_DIAGNOSTICS")
    diagnostic_certificates: str = Field(
        "7235275727,6385008601,2233521189", alias="DIAGNOSTIC_CERTIFICATES"
    )

    # ── OPTIONALS ────────────────────────────────────────────
    sentry_dsn: str | None = Field(None, alias="SENTRY_DSN")

    # Pydantic-settings config
    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("shopify_store")
    @classmethod
    def _bare_domain(cls, v: str) -> str:
        v = v.strip()
        for scheme in ("https://", "http://"):
            if v.lower().startswith(scheme):
                v = v[len(scheme):]
        return v.strip("/")

    # ── derived values ───────────────────────────────────────
    @property
    def cors_origins(self) -> list[str]:
        return _split_csv(self.allowed_origins) or ["*"]

    @property
    def lab_prefixes(self) -> list[str]:
        return [p.upper() for p in _split_csv(self.cert_lab_prefixes)]

    @property
    def known_certificates(self) -> list[str]:
        return _split_csv(self.diagnostic_certificates)

    @property
    def products_url(self) -> str:
        base = self.product_base_url or f"https://{self.shopify_store}/products/"
        return base if base.endswith("/") else base + "/"

    @property
    def fallback_template(self) -> str:
        return self.fallback_url_template or f"https://{self.shopify_store}/search?q={{certificate}}"

    @property
    def token_ttl_seconds(self) -> float:
        return self.token_ttl_hours * 3600


@lru_cache
def _get_settings() -> _Settings:
    try:
        return _Settings()  # validates on first call
    except ValidationError as e:
        print("❌ Invalid configuration:")
        for err in e.errors():
            print(f"   • {err['loc'][0]} – {err['msg']}")
        raise SystemExit(1)


# Singleton instance you import elsewhere
settings: _Settings = _get_settings()
