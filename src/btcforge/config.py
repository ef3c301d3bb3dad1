"""
Configuration management using pydantic-settings.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from btcforge.constants import DEFAULT_FEE_RATE, DUST_THRESHOLD


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="BTCFORGE_", env_file=".env", env_file_encoding="utf-8", case_sensitive=False
    )

    network: Literal["mainnet", "testnet", "signet", "regtest"] = "regtest"

    # Bitcoin Core RPC
    rpc_url: str = "http://127.0.0.1:18443"
    rpc_user: str = "rpcuser"
    rpc_password: str = "rpcpassword"
    rpc_timeout: float = Field(default=30.0, gt=0)

    # Fee settings
    fee_fallback: float = Field(
        default=DEFAULT_FEE_RATE, gt=0, description="Fee rate (sat/vB) when estimation fails"
    )
    fee_target_blocks: int = Field(default=6, ge=1)

    # Selection
    dust_threshold: int = Field(default=DUST_THRESHOLD, ge=0)
    min_confirmations: int = Field(default=0, ge=0)

    # Previous-transaction lookups in flight at once
    max_concurrent_lookups: int = Field(default=1, ge=1)

    log_level: str = "INFO"


class SendRequest(BaseModel):
    """A request to pay amount_sats to destination."""

    destination: str = Field(min_length=1)
    amount_sats: int = Field(gt=0, description="Amount in sats")
    fee_rate: float | None = Field(default=None, gt=0, description="sat/vB, None = estimate")
    change_address: str | None = None


def get_settings() -> Settings:
    return Settings()
