"""Tests for PositionSizer."""

from decimal import Decimal as D

from polycopy.execution.sizing import PositionSizer, SizingConfig, SizingMode


def _sizer(my_balance="0", **config):
    return PositionSizer(SizingConfig(**config), D(my_balance))


class TestPositionSizer:

    def test_whale_trade_clamps_to_min_stake(self):
        sizer = _sizer("10", mode=SizingMode.PROPORTIONAL, min_stake=D("5"))

        result = sizer.calculate(D("1700"), D("3500000"))

        assert result.amount == D("5")
        assert result.capped is True
        assert "capped" in result.reason
        assert result.scaling_factor < D("0.01")

    def test_proportional_within_limits(self):
        sizer = _sizer("1000")

        result = sizer.calculate(D("100"), D("10000"))

        assert result.amount == D("10")
        assert result.scaling_factor == D("0.1")
        assert result.capped is False

    def test_proportional_capped_at_max(self):
        sizer = _sizer("1000", max_stake=D("300"))

        result = sizer.calculate(D("500"), D("1000"))

        assert result.amount == D("300")
        assert result.capped is True

    def test_missing_trader_balance_uses_min_stake(self):
        sizer = _sizer("1000")

        result = sizer.calculate(D("100"), None)

        assert result.amount == D("5")
        assert "missing balance" in result.reason

    def test_zero_own_balance_uses_min_stake(self):
        sizer = _sizer("0")

        assert sizer.calculate(D("100"), D("10000")).amount == D("5")

    def test_fixed_mode(self):
        sizer = _sizer("1000", mode=SizingMode.FIXED, fixed_stake=D("20"))

        result = sizer.calculate(D("5000"), D("10000"))

        assert result.amount == D("20")
        assert result.capped is False

    def test_fixed_mode_defaults_to_min_stake(self):
        sizer = _sizer(mode=SizingMode.FIXED)

        assert sizer.calculate(D("5000")).amount == D("5")

    def test_set_my_balance(self):
        sizer = _sizer("0")
        sizer.set_my_balance(D("2000"))

        assert sizer.calculate(D("100"), D("10000")).amount == D("20")

    def test_every_trade_is_worth_copying(self):
        worth, _ = _sizer().is_worth_copying(D("0.01"))
        assert worth is True
