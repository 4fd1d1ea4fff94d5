"""
Configuration management using pydantic-settings.
"""

from __future__ import annotations

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Highest confirmation count accepted for an incoming deposit
DEFAULT_MAX_CONFIRMATIONS = 9999


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", env_prefix="MIXCOIN_", case_sensitive=False
    )

    network: Literal["mainnet", "testnet", "signet", "regtest"] = "testnet"

    rpc_url: str = "http://127.0.0.1:18332"
    rpc_user: str = ""
    rpc_password: str = ""

    db_file: str = "mixcoin.db"

    # Hex-encoded 32-byte secp256k1 key used to sign warrants.
    # A random key is generated when empty (warrants then only verify
    # for the lifetime of the process).
    private_key: str = ""

    chunk_size: int = Field(default=1_000_000, gt=0)  # satoshis
    min_confirmations: int = Field(default=6, ge=0)
    max_confirmations: int = Field(default=DEFAULT_MAX_CONFIRMATIONS, ge=0)

    # Wall-clock seconds approximating one block, used to turn release
    # delays measured in blocks into timers
    block_interval: float = Field(default=600.0, ge=0)
    poll_interval: float = Field(default=10.0, gt=0)

    fee_seed_combiner: Literal["or", "sha256"] = "sha256"

    payout_max_attempts: int = Field(default=5, ge=1)
    payout_retry_delay: float = Field(default=30.0, ge=0)

    http_host: str = "127.0.0.1"
    http_port: int = 8090

    log_level: str = "INFO"

    @model_validator(mode="after")
    def validate_confirmation_window(self) -> Settings:
        if self.min_confirmations > self.max_confirmations:
            raise ValueError(
                f"min_confirmations ({self.min_confirmations}) must not exceed "
                f"max_confirmations ({self.max_confirmations})"
            )
        return self


def get_settings() -> Settings:
    return Settings()
