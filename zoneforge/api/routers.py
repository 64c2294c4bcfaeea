"""Internal API routers — /status, /zones, /position, /signals endpoints.

No business logic.  Serves the shared state the engine pushes each cycle and
queries the broker for the live position.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Query

logger = logging.getLogger("zoneforge.api")
router = APIRouter()

# ── Shared state (updated by the engine) ─────────────────────────────────

_DEFAULT_STATUS: dict = {
    "mode": "idle",
    "running": False,
    "pair": None,
    "trading_hours": None,
    "in_session": None,
    "cycle_count": 0,
    "last_cycle_at": None,
    "last_bar_time": None,
    "last_purge_at": None,
    "balance": None,
    "equity": None,
    "zones": 0,
    "zone_capacity": None,
    "zones_dropped": 0,
    "last_order_time": None,
}

_bot_status: dict = {**_DEFAULT_STATUS}
_zones: list[dict] = []
_signal_history: list[dict] = []  # Recent entry outcomes (max 50)
_broker = None  # Set via configure_routers()
_instrument: Optional[str] = None
_order_label: Optional[str] = None

_HISTORY_LIMIT = 50


def configure_routers(
    broker=None,
    instrument: Optional[str] = None,
    order_label: Optional[str] = None,
) -> None:
    """Inject dependencies from the application startup.

    Args:
        broker: An ``OandaClient`` instance for position queries.
        instrument: Instrument the engine trades.
        order_label: Tag identifying the engine's own trades.
    """
    global _broker, _instrument, _order_label  # noqa: PLW0603
    _broker = broker
    _instrument = instrument
    _order_label = order_label


def reset_state() -> None:
    """Restore the initial shared state."""
    _bot_status.clear()
    _bot_status.update(_DEFAULT_STATUS)
    _zones.clear()
    _signal_history.clear()


def update_bot_status(**fields) -> None:
    """Update individual fields of the status dict."""
    _bot_status.update(fields)


def update_zone_snapshot(zones: list[dict]) -> None:
    """Replace the published zone list."""
    _zones[:] = zones


def push_signal(entry: dict) -> None:
    """Append an entry outcome to the signal history (capped)."""
    _signal_history.append(entry)
    if len(_signal_history) > _HISTORY_LIMIT:
        del _signal_history[0]


# ── Endpoints ────────────────────────────────────────────────────────────


@router.get("/status")
async def get_status():
    """Return the engine status."""
    return dict(_bot_status)


@router.get("/zones")
async def get_zones(direction: Optional[str] = Query(default=None)):
    """Return live zones, oldest first, optionally filtered by direction."""
    zones = [z for z in _zones if direction is None or z["direction"] == direction]
    return {"zones": zones, "count": len(zones)}


@router.get("/signals/history")
async def get_signal_history(limit: int = Query(default=20, ge=1, le=_HISTORY_LIMIT)):
    """Return the most recent entry outcomes, newest first."""
    return {"signals": list(reversed(_signal_history))[:limit]}


@router.get("/position")
async def get_position():
    """Return the engine's open trade from OANDA, if any."""
    if _broker is None:
        return {"position": None}
    try:
        trades = await _broker.list_open_trades()
    except Exception as exc:
        logger.error("Failed to fetch open trades: %s", exc)
        return {"position": None, "error": str(exc)}

    for t in trades:
        if _instrument and t.instrument != _instrument:
            continue
        if _order_label and t.label != _order_label:
            continue
        return {
            "position": {
                "trade_id": t.trade_id,
                "instrument": t.instrument,
                "direction": t.direction,
                "units": t.volume,
                "open_price": t.price,
                "stop_loss": t.stop_loss_price,
                "take_profit": t.take_profit_price,
                "unrealized_pnl": t.unrealized_pnl,
                "open_time": t.open_time,
            }
        }
    return {"position": None}
