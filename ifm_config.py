"""
Invoice Financing Marketplace - Configuration
Registry ceilings, fees and policy switches loaded from IFM_* environment variables.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class MarketplaceSettings(BaseSettings):
    """
    Marketplace settings with validation.

    Every field can be overridden with an environment variable of the same
    name prefixed with ``IFM_`` (for example ``IFM_POOL_FEE=200``).
    """

    model_config = SettingsConfigDict(
        env_prefix="IFM_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Invoice registry
    max_invoices: int = Field(default=10_000, gt=0, description="Registry-wide invoice ceiling")
    max_invoices_per_supplier: int = Field(default=100, gt=0, description="Per-supplier index ceiling")
    creation_fee: int = Field(default=500, ge=0, description="Fee charged to the supplier on mint")

    # Financing pool
    max_listings: int = Field(default=1_000, gt=0, description="Pool-wide listing ceiling")
    pool_fee: int = Field(default=100, ge=0, description="Fee charged to the seller on listing")
    pool_custody_principal: str = Field(
        default="contract",
        min_length=1,
        description="Principal holding escrowed titles and bid funds"
    )
    strict_title_escrow: bool = Field(
        default=False,
        description="Roll back a listing (and its fee) when the title escrow transfer fails"
    )
    refund_superseded_bids: bool = Field(
        default=False,
        description="Refund the previous escrow when a bidder re-bids on the same listing"
    )

    # Payment oracle
    oracle_admin: str = Field(default="ST1TEST", min_length=1, description="Deployer principal of the oracle registry")
    max_oracles: int = Field(default=50, gt=0)
    report_fee: int = Field(default=100, ge=0, description="Fee charged on oracle registration")
    max_reports_per_invoice: int = Field(default=5, gt=0)
    oracle_membership: Literal["name", "principal"] = Field(
        default="name",
        description="How report_payment decides the caller is a registered oracle"
    )

    # Audit / logging
    decision_secret: SecretStr = Field(
        default=SecretStr("IFM_DECISION_LEDGER_KEY_ROTATE_QUARTERLY"),
        description="HMAC key for enforcement decision signatures"
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")


@lru_cache
def get_settings() -> MarketplaceSettings:
    """Get cached settings instance."""
    return MarketplaceSettings()
