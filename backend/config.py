"""
Runtime settings loaded from the environment (.env supported via python-dotenv).
"""

import os
import logging
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from .errors import ConfigurationError

ROOT_DIR = Path(__file__).parent

logger = logging.getLogger(__name__)

TAX_MODES = ("remote", "percent", "none")
EMAIL_DRAFTERS = ("template", "generative")


def env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}, using {default}")
        return default
    return value if value >= minimum else default


class CompanyProfile(BaseModel):
    name: str = "Phoenix Phase Converters"
    address: str = "12518 Graceham Road"
    city: str = "Thurmont, MD 21788"
    country: str = "United States"
    phone: str = "+1 800 417 6568"
    email: str = "support@phoenixphaseconverters.com"
    website: str = "www.phoenixphaseconverters.com"


class Settings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    store_domain: str = ""
    api_version: str = "2024-01"
    access_token: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    webhook_secret: Optional[str] = None

    app_url: str = "http://localhost:8000"
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    register_webhooks_on_startup: bool = False

    invoice_prefix: str = "INV-"
    invoice_dir: Path = ROOT_DIR / "invoices"
    assets_dir: Path = ROOT_DIR / "assets" / "cache"
    logo_url: Optional[str] = None
    checkout_base_url: str = "https://phoenixphaseconverters.com/checkout"
    company: CompanyProfile = Field(default_factory=CompanyProfile)
    signoff_name: str = "Glen"
    signoff_message: str = "We appreciate the opportunity to work with you!"

    tax_mode: str = "remote"
    tax_rate_percent: float = 0.0

    max_list_pages: int = 10
    page_size: int = 250
    product_cache_ttl: float = 300.0
    token_refresh_margin: float = 300.0
    http_timeout: float = 30.0

    email_drafter: str = "template"
    anthropic_api_key: Optional[str] = None
    anthropic_model: str = "claude-sonnet-4-20250514"
    transcripts_url: Optional[str] = None
    transcripts_api_key: Optional[str] = None

    @property
    def api_base_url(self) -> str:
        return f"https://{self.store_domain}/admin/api/{self.api_version}"

    @property
    def uses_client_credentials(self) -> bool:
        return not self.access_token and bool(self.client_id)

    @property
    def signing_secret(self) -> Optional[str]:
        return self.webhook_secret or self.client_secret

    def validate_auth(self):
        """Static token and client credentials are mutually exclusive"""
        if self.access_token and (self.client_id or self.client_secret):
            raise ConfigurationError(
                "Set either SHOPIFY_ACCESS_TOKEN or SHOPIFY_CLIENT_ID/SHOPIFY_CLIENT_SECRET, not both"
            )
        if bool(self.client_id) != bool(self.client_secret):
            raise ConfigurationError("SHOPIFY_CLIENT_ID and SHOPIFY_CLIENT_SECRET must be set together")
        if self.tax_mode not in TAX_MODES:
            raise ConfigurationError(f"TAX_MODE must be one of {', '.join(TAX_MODES)}")
        if self.email_drafter not in EMAIL_DRAFTERS:
            raise ConfigurationError(f"EMAIL_DRAFTER must be one of {', '.join(EMAIL_DRAFTERS)}")
        return self

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "Settings":
        load_dotenv(env_file or ROOT_DIR / '.env')
        env = os.environ

        defaults = CompanyProfile()
        company = CompanyProfile(
            name=env.get('COMPANY_NAME', defaults.name),
            address=env.get('COMPANY_ADDRESS', defaults.address),
            city=env.get('COMPANY_CITY', defaults.city),
            phone=env.get('COMPANY_PHONE', defaults.phone),
            email=env.get('COMPANY_EMAIL', defaults.email),
            website=env.get('COMPANY_WEBSITE', defaults.website),
        )

        settings = cls(
            store_domain=env.get('SHOPIFY_STORE_URL', ''),
            api_version=env.get('SHOPIFY_API_VERSION', '2024-01'),
            access_token=env.get('SHOPIFY_ACCESS_TOKEN') or None,
            client_id=env.get('SHOPIFY_CLIENT_ID') or None,
            client_secret=env.get('SHOPIFY_CLIENT_SECRET') or None,
            webhook_secret=env.get('SHOPIFY_WEBHOOK_SECRET') or None,
            app_url=env.get('APP_URL', 'http://localhost:8000').rstrip('/'),
            cors_origins=env.get('CORS_ORIGINS', '*').split(','),
            register_webhooks_on_startup=env_bool('REGISTER_WEBHOOKS_ON_STARTUP'),
            invoice_prefix=env.get('INVOICE_PREFIX', 'INV-'),
            invoice_dir=Path(env.get('INVOICE_DIR', str(ROOT_DIR / "invoices"))),
            assets_dir=Path(env.get('ASSETS_DIR', str(ROOT_DIR / "assets" / "cache"))),
            logo_url=env.get('LOGO_URL') or None,
            checkout_base_url=env.get('CHECKOUT_BASE_URL', 'https://phoenixphaseconverters.com/checkout'),
            company=company,
            signoff_name=env.get('SIGNOFF_NAME', 'Glen'),
            tax_mode=env.get('TAX_MODE', 'remote').lower(),
            tax_rate_percent=float(env.get('TAX_RATE_PERCENT', '0') or 0),
            max_list_pages=env_int('SHOPIFY_MAX_PAGES', 10),
            product_cache_ttl=float(env_int('PRODUCT_CACHE_TTL_SECONDS', 300, minimum=0)),
            email_drafter=env.get('EMAIL_DRAFTER', 'template').lower(),
            anthropic_api_key=env.get('ANTHROPIC_API_KEY') or None,
            anthropic_model=env.get('ANTHROPIC_MODEL', 'claude-sonnet-4-20250514'),
            transcripts_url=env.get('CALL_TRANSCRIPTS_URL') or None,
            transcripts_api_key=env.get('CALL_TRANSCRIPTS_API_KEY') or None,
        )
        return settings.validate_auth()
