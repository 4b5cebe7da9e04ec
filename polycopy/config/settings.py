"""Application settings and configuration loader."""

import os
from decimal import Decimal
from pathlib import Path
from typing import Optional
from functools import lru_cache

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

from .markets import DEFAULT_SPORTS_PATTERNS


class PolymarketConfig(BaseModel):
    """Polymarket wallet and CLOB credentials."""
    private_key: Optional[str] = None
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    api_passphrase: Optional[str] = None
    funder_address: Optional[str] = None  # Proxy wallet holding the positions


class PolymarketApiConfig(BaseModel):
    """Polymarket Data API configuration."""
    base_url: str = "https://data-api.polymarket.com"
    clob_url: str = "https://clob.polymarket.com"
    rate_limit: int = 60
    timeout_seconds: float = 15


class ApiConfig(BaseModel):
    """API configuration."""
    polymarket: PolymarketApiConfig = Field(default_factory=PolymarketApiConfig)


class CopyConfig(BaseModel):
    """Copy trading configuration."""
    wallets_to_track: list[str] = Field(default_factory=list)
    mode: str = "proportional"  # "proportional" or "fixed"
    fixed_stake: Optional[Decimal] = None
    min_stake: Decimal = Decimal("5")
    max_stake: Decimal = Decimal("300")
    max_buys_per_token: int = 3
    cooldown_minutes: int = 30
    skip_sports: bool = False
    max_position_percent: Decimal = Decimal("50")
    poll_interval_seconds: float = 5
    paper_trading: bool = True


class TakeProfitSettings(BaseModel):
    """Exit engine configuration."""
    enabled: bool = True
    profit_trigger_percent: Decimal = Decimal("15")
    trailing_stop_percent: Decimal = Decimal("15")
    sports_trailing_stop_percent: Decimal = Decimal("25")
    update_threshold_percent: Decimal = Decimal("5")
    check_interval_seconds: float = 3
    max_update_attempts: int = 5
    min_update_interval_seconds: float = 30
    stop_loss_enabled: bool = True
    persist_interval_seconds: float = 60
    sports_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_SPORTS_PATTERNS)
    )


class PnLConfig(BaseModel):
    """PnL tracker configuration."""
    update_interval_seconds: float = 30


class StateConfig(BaseModel):
    """Local checkpoint configuration."""
    state_file: Path = Field(default=Path("data/take_profit_state.json"))
    stats_file: Path = Field(default=Path("data/stats.json"))


class Settings(BaseModel):
    """Application settings."""
    polymarket: PolymarketConfig
    api: ApiConfig = Field(default_factory=ApiConfig)
    copy_trading: CopyConfig = Field(default_factory=CopyConfig)
    take_profit: TakeProfitSettings = Field(default_factory=TakeProfitSettings)
    pnl: PnLConfig = Field(default_factory=PnLConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    config_path: Path = Field(default=Path("config.yaml"))

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Settings":
        """Load settings from environment and config file."""
        load_dotenv()

        config_path = config_path or Path(os.getenv("POLYCOPY_CONFIG", "config.yaml"))
        config_data = {}

        if config_path.exists():
            with open(config_path) as f:
                config_data = yaml.safe_load(f) or {}

        # Secrets only come from the environment
        polymarket_config = PolymarketConfig(
            private_key=os.getenv("POLYMARKET_PRIVATE_KEY"),
            api_key=os.getenv("POLYMARKET_API_KEY"),
            api_secret=os.getenv("POLYMARKET_API_SECRET"),
            api_passphrase=os.getenv("POLYMARKET_API_PASSPHRASE"),
            funder_address=os.getenv("POLYMARKET_FUNDER_ADDRESS"),
        )

        api_data = config_data.get("api", {})
        api_config = ApiConfig(
            polymarket=PolymarketApiConfig(**api_data.get("polymarket", {})),
        )

        copy_data = dict(config_data.get("copy_trading", {}))
        wallets_env = os.getenv("WALLETS_TO_TRACK")
        if wallets_env:
            copy_data["wallets_to_track"] = parse_wallet_list(wallets_env)
        if os.getenv("PAPER_TRADING") is not None:
            copy_data["paper_trading"] = os.getenv("PAPER_TRADING", "true").lower() == "true"
        copy_config = CopyConfig(**copy_data)

        take_profit_data = dict(config_data.get("take_profit", {}))
        if os.getenv("TAKE_PROFIT_PERCENT"):
            take_profit_data["profit_trigger_percent"] = os.getenv("TAKE_PROFIT_PERCENT")
        take_profit_config = TakeProfitSettings(**take_profit_data)

        return cls(
            polymarket=polymarket_config,
            api=api_config,
            copy_trading=copy_config,
            take_profit=take_profit_config,
            pnl=PnLConfig(**config_data.get("pnl", {})),
            state=StateConfig(**config_data.get("state", {})),
            config_path=config_path,
        )


def parse_wallet_list(value: str) -> list[str]:
    """Parse a comma separated (or YAML/JSON list) string of wallet addresses."""
    value = value.strip()
    if value.startswith("["):
        parsed = yaml.safe_load(value) or []
        return [str(w).strip().lower() for w in parsed if str(w).strip()]
    return [w.strip().lower() for w in value.split(",") if w.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings.load()
