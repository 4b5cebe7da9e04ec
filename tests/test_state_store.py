"""Tests for JSON state persistence."""

import json
from datetime import datetime, timezone
from decimal import Decimal as D

import pytest

from polycopy.execution.state_store import JsonStateStore, MemoryStateStore, StateStoreError
from polycopy.execution.take_profit import EmergencyReason, ExitState, TrackedPosition


def _tracked(**overrides):
    data = dict(
        token_id="tok-a",
        entry_price=D("0.50"),
        size=D("123.45"),
        highest_price_seen=D("0.6125"),
        market_label="will-it-rain",
        started_at=datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc),
        active_order_id="order-1",
        active_order_price=D("0.600"),
        state=ExitState.ORDER_LIVE,
        update_attempts=2,
        last_update_time=datetime(2026, 1, 1, 12, 5, tzinfo=timezone.utc),
    )
    data.update(overrides)
    return TrackedPosition(**data)


class TestJsonStateStore:

    def test_missing_file_loads_none(self, tmp_path):
        assert JsonStateStore(tmp_path / "state.json").load() is None

    def test_round_trip(self, tmp_path):
        store = JsonStateStore(tmp_path / "data" / "state.json")
        original = _tracked(
            emergency_reason=EmergencyReason.STALE_ORDER,
            emergency_failed_count=3,
            last_emergency_attempt_time=datetime(2026, 1, 1, 13, 0, tzinfo=timezone.utc),
        )

        store.save([original.to_dict()])
        state = store.load()

        assert "saved_at" in state
        restored = TrackedPosition.from_dict(state["positions"][0])
        assert restored == original

    def test_save_replaces_atomically(self, tmp_path):
        path = tmp_path / "state.json"
        store = JsonStateStore(path)

        store.save([_tracked().to_dict()])
        store.save([])

        assert json.loads(path.read_text())["positions"] == []
        assert not (tmp_path / "state.json.tmp").exists()

    def test_corrupt_file_raises(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{truncated")

        with pytest.raises(StateStoreError):
            JsonStateStore(path).load()

    def test_wrong_shape_raises(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"positions": "nope"}))

        with pytest.raises(StateStoreError):
            JsonStateStore(path).load()


class TestMemoryStateStore:

    def test_round_trip(self):
        store = MemoryStateStore()
        assert store.load() is None

        store.save([_tracked().to_dict()])

        assert store.load()["positions"][0]["token_id"] == "tok-a"


class TestTrackedPositionSerialization:

    def test_nullable_fields(self):
        restored = TrackedPosition.from_dict(
            _tracked(active_order_id=None, active_order_price=None, last_update_time=None).to_dict()
        )

        assert restored.active_order_price is None
        assert restored.last_update_time is None
        assert restored.emergency_reason is None

    def test_decimals_keep_precision(self):
        data = _tracked(size=D("0.123456789")).to_dict()

        assert data["size"] == "0.123456789"
        assert TrackedPosition.from_dict(data).size == D("0.123456789")
