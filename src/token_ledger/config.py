from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Process-wide configuration, built once at start-up and handed to each
    component's constructor. Services never read the environment themselves.
    """

    model_config = SettingsConfigDict(env_prefix="TOKEN_LEDGER_", env_file=".env", extra="ignore")

    mongo_uri: Optional[str] = None
    mongo_db: str = "token_ledger"
    mongo_use_transactions: bool = Field(
        default=True, description="Multi-document transactions; needs a replica set."
    )

    intent_ttl_minutes: int = Field(default=30, gt=0)
    exchange_rate: int = Field(default=1000, gt=0, description="Currency units per token.")
    currency: str = "ARS"

    audit_log_path: Path = Path("logs/token_ledger.jsonl")
    log_level: str = "INFO"

    base_url: str = "http://localhost:8000"
    checkout_base_url: str = "https://checkout.example.invalid/pay"

    @property
    def intent_ttl(self) -> timedelta:
        return timedelta(minutes=self.intent_ttl_minutes)


def load_settings(**overrides: object) -> Settings:
    return Settings(**overrides)  # type: ignore[arg-type]
