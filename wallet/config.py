"""Runtime settings for the wallet ledger.

Values come from environment variables prefixed with ``WALLET_`` (or a
``.env`` file next to the working directory).
"""

from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="WALLET_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    referral_commission_rate: Decimal = Field(
        Decimal("0.05"), ge=0, le=1, description="Share of an approved deposit paid to the referrer"
    )

    jwt_secret: SecretStr = SecretStr("crypto-wallet-secret-key")
    jwt_algorithm: str = "HS256"
    jwt_ttl_minutes: int = Field(7 * 24 * 60, gt=0)
    bcrypt_rounds: int = Field(12, ge=4, le=31)

    admin_email: Optional[str] = None
    admin_password: Optional[SecretStr] = None

    log_level: str = "INFO"
    log_json: bool = False

    seed_demo_data: bool = True
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])


@lru_cache
def get_settings() -> Settings:
    return Settings()


__all__ = ["Settings", "get_settings"]
