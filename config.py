# config.py
"""
potcycle: Config
Centralized environment + constants, powered by pydantic-settings (Pydantic v2).
"""

from __future__ import annotations
from typing import Optional, List
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

class Settings(BaseSettings):
    # pydantic-settings config
    model_config = SettingsConfigDict(
        env_file=".potcycle.env",
        env_prefix="",            # read raw names (e.g., RPC_URL)
        extra="ignore",
        case_sensitive=False,
    )

    # =========================
    # App / API
    # =========================
    API_PREFIX: str = "/api"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # normalize API_PREFIX (no trailing slash; always starts with '/')
    @field_validator("API_PREFIX")
    @classmethod
    def _norm_api_prefix(cls, v: str) -> str:
        v = (v or "/api").strip()
        if not v.startswith("/"):
            v = "/" + v
        if v != "/" and v.endswith("/"):
            v = v[:-1]
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def _norm_log_level(cls, v: str) -> str:
        v = (v or "INFO").strip().upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid LOG_LEVEL={v!r}")
        return v

    # =========================
    # CORS (optional)
    # =========================
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:8000",
    ]

    # =========================
    # RPC / Admin
    # =========================
    RPC_URL: str = "https://api.devnet.solana.com"
    ADMIN_TOKEN: Optional[str] = None

    # =========================
    # Wallets (public keys as strings)
    # =========================
    # Receives the per-cycle service fee
    SERVICE_WALLET: str = "HbyQrE2N1V8TPs5HJ9wGDq3M85Zm1i21RmgbLFk39xkS"
    # Receives treasury sweeps (whole escrow balance of one game)
    OPERATOR_WALLET: str = "HbyQrE2N1V8TPs5HJ9wGDq3M85Zm1i21RmgbLFk39xkS"

    # =========================
    # Economics (lamports unless noted)
    # =========================
    DEFAULT_TAX_PERCENTAGE: int = 10
    # used when the node cannot price a message
    DEFAULT_SIGNATURE_FEE: int = 5_000

    # =========================
    # Cycle Logic
    # =========================
    CYCLE_MINUTES: int = 120
    MONITOR_INTERVAL_SECONDS: float = 60.0
    MONITOR_ENABLED: bool = True
    SETTLEMENT_LOCK_TTL_SECONDS: int = 300
    # upper bound when waiting on a client-submitted signature
    CONFIRM_TIMEOUT_SECONDS: float = 60.0

    @field_validator("DEFAULT_TAX_PERCENTAGE")
    @classmethod
    def _check_tax(cls, v: int) -> int:
        if not 0 <= int(v) <= 100:
            raise ValueError("DEFAULT_TAX_PERCENTAGE must be within 0..100")
        return int(v)

    # =========================
    # Database
    # =========================
    DB_PATH: str = "/data/potcycle.db"

    # -------------------------
    # Derived helpers
    # -------------------------
    @property
    def cycle_seconds(self) -> int:
        """Default cycle length in seconds."""
        return int(self.CYCLE_MINUTES) * 60

# Instantiate global settings (values resolved from environment)
settings = Settings()
