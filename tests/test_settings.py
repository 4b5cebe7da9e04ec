"""Tests for settings loading and market classification."""

from decimal import Decimal as D

import pytest

from polycopy.config.markets import MarketClassifier
from polycopy.config.settings import Settings, parse_wallet_list
from polycopy.execution.service import (
    risk_limits_from_settings,
    sizing_config_from_settings,
    take_profit_config_from_settings,
)
from polycopy.execution.sizing import SizingMode

ENV_VARS = (
    "POLYMARKET_PRIVATE_KEY",
    "POLYMARKET_FUNDER_ADDRESS",
    "WALLETS_TO_TRACK",
    "PAPER_TRADING",
    "TAKE_PROFIT_PERCENT",
    "POLYCOPY_CONFIG",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    # Keep load_dotenv() away from any developer .env
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "copy_trading:\n"
        "  mode: fixed\n"
        "  fixed_stake: 12.5\n"
        "  max_buys_per_token: 2\n"
        "  skip_sports: true\n"
        "take_profit:\n"
        "  trailing_stop_percent: 10\n"
        "  stop_loss_enabled: false\n"
        "state:\n"
        "  state_file: state/tp.json\n"
    )
    return path


class TestMarketClassifier:

    @pytest.mark.parametrize("slug", ["nba-lal-bos-2026-02-01", "NFL-KC-BUF", "epl-ars-che-spread-1pt5"])
    def test_sports(self, slug):
        assert MarketClassifier().is_sports_market(slug) is True

    @pytest.mark.parametrize("slug", ["will-it-rain-tomorrow", "", None])
    def test_not_sports(self, slug):
        assert MarketClassifier().is_sports_market(slug) is False

    def test_custom_patterns(self):
        assert MarketClassifier([r"^tennis-"]).is_sports_market("tennis-final") is True


class TestWalletList:

    def test_comma_separated(self):
        assert parse_wallet_list(" 0xAAA, 0xbbb ,,") == ["0xaaa", "0xbbb"]

    def test_list_syntax(self):
        assert parse_wallet_list('["0xAAA", "0xBBB"]') == ["0xaaa", "0xbbb"]


class TestSettingsLoad:

    def test_defaults_without_file(self, tmp_path):
        settings = Settings.load(tmp_path / "missing.yaml")

        assert settings.copy_trading.paper_trading is True
        assert settings.copy_trading.min_stake == D("5")
        assert settings.take_profit.profit_trigger_percent == D("15")
        assert settings.polymarket.private_key is None

    def test_yaml_values(self, config_file):
        settings = Settings.load(config_file)

        assert settings.copy_trading.mode == "fixed"
        assert settings.copy_trading.fixed_stake == D("12.5")
        assert settings.take_profit.stop_loss_enabled is False
        assert str(settings.state.state_file) == "state/tp.json"

    def test_env_overrides(self, config_file, monkeypatch):
        monkeypatch.setenv("WALLETS_TO_TRACK", "0xAAA,0xBBB")
        monkeypatch.setenv("PAPER_TRADING", "false")
        monkeypatch.setenv("TAKE_PROFIT_PERCENT", "20")
        monkeypatch.setenv("POLYMARKET_PRIVATE_KEY", "0xkey")

        settings = Settings.load(config_file)

        assert settings.copy_trading.wallets_to_track == ["0xaaa", "0xbbb"]
        assert settings.copy_trading.paper_trading is False
        assert settings.take_profit.profit_trigger_percent == D("20")
        assert settings.polymarket.private_key == "0xkey"

    def test_config_path_from_env(self, config_file, monkeypatch):
        monkeypatch.setenv("POLYCOPY_CONFIG", str(config_file))

        assert Settings.load().copy_trading.max_buys_per_token == 2


class TestComponentConfigs:

    def test_builders(self, config_file):
        settings = Settings.load(config_file)

        sizing = sizing_config_from_settings(settings)
        assert sizing.mode == SizingMode.FIXED
        assert sizing.fixed_stake == D("12.5")

        limits = risk_limits_from_settings(settings)
        assert limits.max_buys_per_token == 2
        assert limits.skip_sports is True

        tp = take_profit_config_from_settings(settings)
        assert tp.trailing_stop_percent == D("10")
        assert tp.stop_loss_enabled is False
