"""Tests for the entry evaluator — triggers, sizing, consumption and rescans."""

from datetime import datetime, timedelta, timezone

import pytest

from zoneforge.broker.models import AccountSummary, InstrumentSpec, OrderResponse, Quote
from zoneforge.errors import ExternalFailure, OrderRejected
from zoneforge.strategy.entry import EntryEvaluator, build_signal
from zoneforge.strategy.indicators import IndicatorSnapshot
from zoneforge.strategy.models import CandleData, Zone
from zoneforge.strategy.session_filter import parse_trading_hours
from zoneforge.strategy.zone_registry import ZoneRegistry


T0 = datetime(2025, 3, 3, 0, 0, tzinfo=timezone.utc)
NOW = T0 + timedelta(hours=12)

SPEC = InstrumentSpec(
    name="EUR_USD",
    tick_size=0.00001,
    lot_min=1.0,
    lot_max=100_000_000.0,
    lot_step=1.0,
    margin_rate=0.02,
    display_precision=5,
)

UPTREND = IndicatorSnapshot(atr=0.0020, ema_fast=1.1010, ema_slow=1.1000)
DOWNTREND = IndicatorSnapshot(atr=0.0020, ema_fast=1.1000, ema_slow=1.1010)
QUOTE = Quote("EUR_USD", bid=1.1005, ask=1.1007)


# ── Helpers ──────────────────────────────────────────────────────────────


def _demand(hour: int = 5, bottom: float = 1.0995, top: float = 1.1025) -> Zone:
    return Zone(top=top, bottom=bottom, direction="demand", created_at=T0 + timedelta(hours=hour))


def _supply(hour: int = 6, bottom: float = 1.1015, top: float = 1.1045) -> Zone:
    return Zone(top=top, bottom=bottom, direction="supply", created_at=T0 + timedelta(hours=hour))


def _bullish_touch() -> CandleData:
    """Dips to 1.0994 and closes bullish."""
    return CandleData(T0 + timedelta(hours=11), 1.0998, 1.1010, 1.0994, 1.1005)


def _bearish_touch() -> CandleData:
    """Spikes to 1.1046 and closes bearish."""
    return CandleData(T0 + timedelta(hours=11), 1.1040, 1.1046, 1.1025, 1.1030)


class MockBroker:
    """Duck-typed OandaClient replacement for entry tests."""

    def __init__(self, balance: float = 10_000.0, reject: Exception | None = None) -> None:
        self._balance = balance
        self.reject = reject
        self.placed_orders: list = []

    async def get_account_summary(self):
        return AccountSummary(
            account_id="101-001-XXXXX-001",
            balance=self._balance,
            equity=self._balance,
            margin_available=self._balance,
            open_position_count=0,
            currency="USD",
        )

    async def place_order(self, order_req):
        if self.reject is not None:
            raise self.reject
        self.placed_orders.append(order_req)
        return OrderResponse(
            order_id=str(100 + len(self.placed_orders)),
            instrument=order_req.instrument,
            units=order_req.units,
            price=QUOTE.ask if order_req.units > 0 else QUOTE.bid,
            time=NOW.isoformat(),
        )


def _evaluator(registry, broker, hours: str = "00:00-23:59", max_entries: int = 1):
    return EntryEvaluator(
        registry=registry,
        broker=broker,
        instrument="EUR_USD",
        window=parse_trading_hours(hours),
        risk_pct=1.0,
        sl_atr_mult=1.5,
        tp_atr_mult=3.0,
        label="zoneforge",
        max_entries=max_entries,
    )


def _registry(*zones) -> ZoneRegistry:
    reg = ZoneRegistry()
    for z in zones:
        reg.insert(z)
    return reg


# ── Signal construction ──────────────────────────────────────────────────


class TestBuildSignal:
    def test_demand_signal_levels(self):
        signal = build_signal(_demand(), _bullish_touch(), UPTREND, QUOTE, 1.5, 3.0)
        assert signal is not None
        assert signal.direction == "buy"
        assert signal.entry_price == pytest.approx(1.1007)
        assert signal.stop_loss == pytest.approx(1.1007 - 0.0030)
        assert signal.take_profit == pytest.approx(1.1007 + 0.0060)

    def test_supply_signal_levels(self):
        signal = build_signal(_supply(), _bearish_touch(), DOWNTREND, QUOTE, 1.5, 3.0)
        assert signal is not None
        assert signal.direction == "sell"
        assert signal.entry_price == pytest.approx(1.1005)
        assert signal.stop_loss == pytest.approx(1.1005 + 0.0030)
        assert signal.take_profit == pytest.approx(1.1005 - 0.0060)

    def test_trend_filter_blocks(self):
        assert build_signal(_demand(), _bullish_touch(), DOWNTREND, QUOTE, 1.5, 3.0) is None
        assert build_signal(_supply(), _bearish_touch(), UPTREND, QUOTE, 1.5, 3.0) is None

    def test_flat_trend_blocks_both_sides(self):
        flat = IndicatorSnapshot(atr=0.0020, ema_fast=1.1, ema_slow=1.1)
        assert build_signal(_demand(), _bullish_touch(), flat, QUOTE, 1.5, 3.0) is None

    def test_bar_must_close_in_trade_direction(self):
        bearish = CandleData(T0, 1.1005, 1.1010, 1.0990, 1.0998)
        assert build_signal(_demand(), bearish, UPTREND, QUOTE, 1.5, 3.0) is None

    def test_bar_must_reach_zone(self):
        above = CandleData(T0, 1.1000, 1.1010, 1.0996, 1.1005)
        assert build_signal(_demand(), above, UPTREND, QUOTE, 1.5, 3.0) is None

    def test_exact_touch_triggers(self):
        touch = CandleData(T0, 1.1000, 1.1010, 1.0995, 1.1005)
        assert build_signal(_demand(), touch, UPTREND, QUOTE, 1.5, 3.0) is not None


# ── Evaluator ────────────────────────────────────────────────────────────


class TestEntryEvaluator:
    @pytest.mark.asyncio
    async def test_fill_consumes_zone(self):
        zone = _demand()
        registry = _registry(zone)
        broker = MockBroker()
        outcomes = await _evaluator(registry, broker).evaluate(
            _bullish_touch(), UPTREND, QUOTE, SPEC, NOW,
        )

        assert [o.status for o in outcomes] == ["filled"]
        assert len(registry) == 0
        assert len(broker.placed_orders) == 1
        order = broker.placed_orders[0]
        # risk $100 over a 0.0030 stop → 33,333 units
        assert order.units == 33_333
        assert order.stop_loss_price == pytest.approx(1.0977)
        assert order.take_profit_price == pytest.approx(1.1067)
        assert order.label == "zoneforge"

    @pytest.mark.asyncio
    async def test_sell_order_has_negative_units(self):
        registry = _registry(_supply())
        broker = MockBroker()
        await _evaluator(registry, broker).evaluate(
            _bearish_touch(), DOWNTREND, QUOTE, SPEC, NOW,
        )
        assert broker.placed_orders[0].units == -33_333
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_venue_rejection_keeps_zone(self):
        zone = _demand()
        registry = _registry(zone)
        broker = MockBroker(reject=OrderRejected("MARKET_HALTED"))
        outcomes = await _evaluator(registry, broker).evaluate(
            _bullish_touch(), UPTREND, QUOTE, SPEC, NOW,
        )
        assert outcomes[0].status == "rejected"
        assert outcomes[0].reason == "MARKET_HALTED"
        assert list(registry) == [zone]

    @pytest.mark.asyncio
    async def test_venue_failure_keeps_zone(self):
        registry = _registry(_demand())
        broker = MockBroker(reject=ExternalFailure("timeout"))
        outcomes = await _evaluator(registry, broker).evaluate(
            _bullish_touch(), UPTREND, QUOTE, SPEC, NOW,
        )
        assert outcomes[0].status == "failed"
        assert len(registry) == 1

    @pytest.mark.asyncio
    async def test_sizing_rejection_keeps_zone(self):
        registry = _registry(_demand())
        broker = MockBroker(balance=0.01)
        outcomes = await _evaluator(registry, broker).evaluate(
            _bullish_touch(), UPTREND, QUOTE, SPEC, NOW,
        )
        assert outcomes[0].status == "rejected"
        assert outcomes[0].reason == "below_min_lot"
        assert broker.placed_orders == []
        assert len(registry) == 1

    @pytest.mark.asyncio
    async def test_rejected_zone_can_trigger_again(self):
        registry = _registry(_demand())
        broker = MockBroker(reject=OrderRejected("MARKET_HALTED"))
        evaluator = _evaluator(registry, broker)
        await evaluator.evaluate(_bullish_touch(), UPTREND, QUOTE, SPEC, NOW)

        broker.reject = None
        outcomes = await evaluator.evaluate(_bullish_touch(), UPTREND, QUOTE, SPEC, NOW)
        assert outcomes[0].status == "filled"
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_outside_trading_hours(self):
        registry = _registry(_demand())
        broker = MockBroker()
        evaluator = _evaluator(registry, broker, hours="09:00-17:00")
        early = T0 + timedelta(hours=8)
        assert evaluator.is_active(early) is False
        assert await evaluator.evaluate(_bullish_touch(), UPTREND, QUOTE, SPEC, early) == []
        assert broker.placed_orders == []

    @pytest.mark.asyncio
    async def test_no_zone_skipped_after_removal(self):
        a = _demand(hour=1)
        b = _demand(hour=2, bottom=1.0800, top=1.0830)   # not touched
        c = _demand(hour=3)
        d = _demand(hour=4)
        registry = _registry(a, b, c, d)
        broker = MockBroker()
        outcomes = await _evaluator(registry, broker, max_entries=10).evaluate(
            _bullish_touch(), UPTREND, QUOTE, SPEC, NOW,
        )

        assert [o.zone for o in outcomes] == [a, c, d]
        assert list(registry) == [b]
        assert len(broker.placed_orders) == 3

    @pytest.mark.asyncio
    async def test_single_position_stops_after_first_fill(self):
        a, c = _demand(hour=1), _demand(hour=3)
        registry = _registry(a, c)
        broker = MockBroker()
        outcomes = await _evaluator(registry, broker).evaluate(
            _bullish_touch(), UPTREND, QUOTE, SPEC, NOW,
        )
        assert [o.zone for o in outcomes] == [a]
        assert list(registry) == [c]
