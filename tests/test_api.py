"""Tests for the internal API — health, status, zones, signals and position."""

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from zoneforge.api.routers import (
    configure_routers,
    push_signal,
    reset_state,
    update_bot_status,
    update_zone_snapshot,
)
from zoneforge.broker.models import Trade
from zoneforge.main import app, warn_if_live

client = TestClient(app)


# ── Helpers ──────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _clean_state():
    reset_state()
    configure_routers()
    yield
    reset_state()
    configure_routers()


def _make_broker(trades=None):
    """Return a mock broker with a canned list_open_trades response."""
    broker = AsyncMock()
    broker.list_open_trades.return_value = trades or []
    return broker


def _trade(trade_id="123", instrument="EUR_USD", units=1000.0, label="zoneforge") -> Trade:
    return Trade(
        trade_id=trade_id,
        instrument=instrument,
        units=units,
        price=1.08500,
        unrealized_pnl=25.50,
        stop_loss_price=1.07500,
        take_profit_price=1.10500,
        open_time="2025-03-03T10:00:00.000000000Z",
        label=label,
    )


_DEMAND = {"direction": "demand", "top": 1.1025, "bottom": 1.0995,
           "created_at": "2025-03-03T11:00:00+00:00"}
_SUPPLY = {"direction": "supply", "top": 1.1145, "bottom": 1.1115,
           "created_at": "2025-03-03T15:00:00+00:00"}


# ── Tests ────────────────────────────────────────────────────────────────


def test_health():
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


class TestStatusEndpoint:
    def test_defaults(self):
        data = client.get("/status").json()
        assert data["running"] is False
        assert data["zones"] == 0

    def test_reflects_updates(self):
        update_bot_status(running=True, pair="EUR_USD", zones=2, in_session=True)
        data = client.get("/status").json()
        assert data["running"] is True
        assert data["pair"] == "EUR_USD"
        assert data["zones"] == 2
        assert data["in_session"] is True


class TestZonesEndpoint:
    def test_lists_zones_oldest_first(self):
        update_zone_snapshot([_DEMAND, _SUPPLY])
        data = client.get("/zones").json()
        assert data["count"] == 2
        assert data["zones"] == [_DEMAND, _SUPPLY]

    def test_direction_filter(self):
        update_zone_snapshot([_DEMAND, _SUPPLY])
        data = client.get("/zones", params={"direction": "supply"}).json()
        assert data == {"zones": [_SUPPLY], "count": 1}

    def test_snapshot_replaced(self):
        update_zone_snapshot([_DEMAND, _SUPPLY])
        update_zone_snapshot([])
        assert client.get("/zones").json()["count"] == 0


class TestSignalHistory:
    def test_newest_first_with_limit(self):
        for i in range(5):
            push_signal({"direction": "buy", "status": "filled", "order_id": str(i)})
        data = client.get("/signals/history", params={"limit": 2}).json()
        assert [s["order_id"] for s in data["signals"]] == ["4", "3"]

    def test_history_is_capped(self):
        for i in range(60):
            push_signal({"order_id": str(i)})
        data = client.get("/signals/history", params={"limit": 50}).json()
        assert len(data["signals"]) == 50
        assert data["signals"][-1]["order_id"] == "10"

    def test_limit_validated(self):
        assert client.get("/signals/history", params={"limit": 0}).status_code == 422


class TestPositionEndpoint:
    def test_no_broker(self):
        assert client.get("/position").json() == {"position": None}

    def test_own_trade_returned(self):
        broker = _make_broker([_trade(instrument="GBP_USD"), _trade(trade_id="456", units=-2000.0)])
        configure_routers(broker=broker, instrument="EUR_USD", order_label="zoneforge")
        data = client.get("/position").json()
        pos = data["position"]
        assert pos["trade_id"] == "456"
        assert pos["direction"] == "sell"
        assert pos["units"] == 2000.0
        assert pos["stop_loss"] == pytest.approx(1.075)
        assert pos["unrealized_pnl"] == pytest.approx(25.5)

    def test_foreign_trade_ignored(self):
        broker = _make_broker([_trade(label="manual")])
        configure_routers(broker=broker, instrument="EUR_USD", order_label="zoneforge")
        assert client.get("/position").json() == {"position": None}

    def test_broker_error(self):
        broker = _make_broker()
        broker.list_open_trades.side_effect = RuntimeError("OANDA down")
        configure_routers(broker=broker, instrument="EUR_USD", order_label="zoneforge")
        data = client.get("/position").json()
        assert data["position"] is None
        assert "OANDA down" in data["error"]


def test_warn_if_live():
    assert warn_if_live("live") is True
    assert warn_if_live("paper") is False
