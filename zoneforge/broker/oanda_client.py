"""OANDA v20 REST API async client.

Handles all communication with OANDA: candles, quotes, instrument metadata,
account queries, order placement, stop modification and partial closes.
"""

import asyncio
import logging
from typing import Optional

import httpx

from zoneforge.broker.models import (
    AccountSummary,
    Candle,
    InstrumentSpec,
    OrderRequest,
    OrderResponse,
    Quote,
    Trade,
)
from zoneforge.config import Config
from zoneforge.errors import DataUnavailable, ExternalFailure, OrderRejected

logger = logging.getLogger("zoneforge.broker")

# Retry settings
_MAX_RETRIES = 3
_RETRY_BASE_DELAY = 2.0  # seconds; doubles each attempt
_RETRYABLE_STATUS_CODES = {502, 503, 504, 429}


class OandaClient:
    """Async client wrapping OANDA v20 REST API."""

    def __init__(self, config: Config) -> None:
        self._config = config
        self._base_url = config.oanda_base_url
        self._account_id = config.oanda_account_id
        self._headers = {
            "Authorization": f"Bearer {config.oanda_api_token}",
            "Content-Type": "application/json",
        }

    @property
    def _account_url(self) -> str:
        return f"{self._base_url}/v3/accounts/{self._account_id}"

    # ── Retry helper ─────────────────────────────────────────────────────

    async def _request_with_retry(
        self,
        method: str,
        url: str,
        **kwargs,
    ) -> httpx.Response:
        """Execute an HTTP request with exponential-backoff retry.

        Retries on transient server errors (502, 503, 504) and rate-limits
        (429).  Non-retryable errors are raised immediately.
        """
        last_exc: Optional[Exception] = None

        for attempt in range(_MAX_RETRIES):
            try:
                async with httpx.AsyncClient() as client:
                    resp = await getattr(client, method)(
                        url,
                        headers=self._headers,
                        timeout=30.0,
                        **kwargs,
                    )

                if resp.status_code in _RETRYABLE_STATUS_CODES:
                    delay = _RETRY_BASE_DELAY * (2 ** attempt)
                    logger.warning(
                        "OANDA %s %s returned %d — retry %d/%d in %.1fs",
                        method.upper(), url, resp.status_code,
                        attempt + 1, _MAX_RETRIES, delay,
                    )
                    await asyncio.sleep(delay)
                    last_exc = httpx.HTTPStatusError(
                        f"Server error '{resp.status_code}'",
                        request=resp.request,
                        response=resp,
                    )
                    continue

                resp.raise_for_status()
                return resp

            except httpx.TransportError as exc:
                delay = _RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning(
                    "OANDA %s %s transport error (%s) — retry %d/%d in %.1fs",
                    method.upper(), url, exc,
                    attempt + 1, _MAX_RETRIES, delay,
                )
                last_exc = exc
                await asyncio.sleep(delay)

        raise last_exc  # type: ignore[misc]

    # ── Market data ──────────────────────────────────────────────────────

    async def fetch_candles(
        self,
        instrument: str,
        granularity: str = "H1",
        count: int = 150,
    ) -> list[Candle]:
        """Fetch candlestick data from OANDA.

        Args:
            instrument: e.g. ``"EUR_USD"``
            granularity: e.g. ``"H1"``
            count: number of candles to request (max 5000)

        Returns:
            List of ``Candle`` objects ordered oldest-first.  The last one
            is usually the still-forming bar (``complete=False``).
        """
        url = f"{self._base_url}/v3/instruments/{instrument}/candles"
        params = {
            "granularity": granularity,
            "count": count,
            "price": "M",  # mid prices
        }

        resp = await self._request_with_retry("get", url, params=params)

        candles: list[Candle] = []
        for c in resp.json().get("candles", []):
            mid = c["mid"]
            candles.append(
                Candle(
                    time=c["time"],
                    open=float(mid["o"]),
                    high=float(mid["h"]),
                    low=float(mid["l"]),
                    close=float(mid["c"]),
                    volume=int(c["volume"]),
                    complete=bool(c["complete"]),
                )
            )
        return candles

    async def get_quote(self, instrument: str) -> Quote:
        """Return the current bid/ask for *instrument*.

        Raises:
            DataUnavailable: When OANDA returns no tradeable price.
        """
        url = f"{self._account_url}/pricing"
        resp = await self._request_with_retry(
            "get", url, params={"instruments": instrument},
        )
        prices = resp.json().get("prices", [])
        if not prices or not prices[0].get("bids") or not prices[0].get("asks"):
            raise DataUnavailable(f"No price available for {instrument}")

        p = prices[0]
        conversion = p.get("quoteHomeConversionFactors", {})
        return Quote(
            instrument=p.get("instrument", instrument),
            bid=float(p["bids"][0]["price"]),
            ask=float(p["asks"][0]["price"]),
            time=p.get("time", ""),
            quote_to_home=float(conversion.get("positiveUnits", "1.0")),
        )

    async def get_instrument(self, instrument: str) -> InstrumentSpec:
        """Return lot constraints, tick size and margin rate for *instrument*."""
        url = f"{self._account_url}/instruments"
        resp = await self._request_with_retry(
            "get", url, params={"instruments": instrument},
        )
        instruments = resp.json().get("instruments", [])
        if not instruments:
            raise DataUnavailable(f"Unknown instrument {instrument}")
        return InstrumentSpec.from_oanda(instruments[0])

    # ── Account ──────────────────────────────────────────────────────────

    async def get_account_summary(self) -> AccountSummary:
        """Query OANDA for balance, equity, free margin and open positions."""
        url = f"{self._account_url}/summary"

        resp = await self._request_with_retry("get", url)

        acct = resp.json()["account"]
        return AccountSummary(
            account_id=acct["id"],
            balance=float(acct["balance"]),
            equity=float(acct["NAV"]),
            margin_available=float(acct.get("marginAvailable", acct["balance"])),
            open_position_count=int(acct["openPositionCount"]),
            currency=acct["currency"],
        )

    # ── Orders ───────────────────────────────────────────────────────────

    async def place_order(self, order: OrderRequest) -> OrderResponse:
        """Place a market order with stop-loss and take-profit.

        Returns:
            ``OrderResponse`` with the fill details.

        Raises:
            OrderRejected: OANDA cancelled or refused the order.
        """
        url = f"{self._account_url}/orders"
        prec = order.price_precision
        units = f"{order.units:.10f}".rstrip("0").rstrip(".")
        body = {
            "order": {
                "type": "MARKET",
                "instrument": order.instrument,
                "units": units,
                "timeInForce": "FOK",
                "positionFill": "DEFAULT",
                "stopLossOnFill": {
                    "price": f"{order.stop_loss_price:.{prec}f}",
                },
                "takeProfitOnFill": {
                    "price": f"{order.take_profit_price:.{prec}f}",
                },
            }
        }
        if order.label:
            body["order"]["clientExtensions"] = {"tag": order.label}
            body["order"]["tradeClientExtensions"] = {"tag": order.label}

        try:
            resp = await self._request_with_retry("post", url, json=body)
        except httpx.HTTPStatusError as exc:
            raise OrderRejected(
                f"http_{exc.response.status_code}", exc.response.text,
            ) from exc
        except httpx.HTTPError as exc:
            raise ExternalFailure(f"order submission failed: {exc}") from exc

        data = resp.json()
        fill = data.get("orderFillTransaction")
        if fill is None:
            cancel = data.get("orderCancelTransaction", {})
            raise OrderRejected(cancel.get("reason", "not_filled"))

        return OrderResponse(
            order_id=fill["id"],
            instrument=fill["instrument"],
            units=float(fill["units"]),
            price=float(fill["price"]),
            time=fill["time"],
            trade_id=fill.get("tradeOpened", {}).get("tradeID", ""),
        )

    # ── Trades ───────────────────────────────────────────────────────────

    async def list_open_trades(self) -> list[Trade]:
        """Return all open trades with SL/TP details."""
        url = f"{self._account_url}/openTrades"

        resp = await self._request_with_retry("get", url)

        trades: list[Trade] = []
        for t in resp.json().get("trades", []):
            sl_price = None
            tp_price = None
            if "stopLossOrder" in t:
                sl_price = float(t["stopLossOrder"].get("price", 0))
            if "takeProfitOrder" in t:
                tp_price = float(t["takeProfitOrder"].get("price", 0))
            trades.append(
                Trade(
                    trade_id=t["id"],
                    instrument=t["instrument"],
                    units=float(t["currentUnits"]),
                    price=float(t["price"]),
                    unrealized_pnl=float(t.get("unrealizedPL", "0")),
                    stop_loss_price=sl_price,
                    take_profit_price=tp_price,
                    open_time=t.get("openTime", ""),
                    label=t.get("clientExtensions", {}).get("tag", ""),
                )
            )
        return trades

    async def modify_trade_sl(
        self,
        trade_id: str,
        new_sl_price: float,
        precision: int = 5,
    ) -> dict:
        """Update the stop-loss on an open trade.

        Raises:
            ExternalFailure: OANDA refused the change or was unreachable.
        """
        url = f"{self._account_url}/trades/{trade_id}/orders"
        body = {
            "stopLoss": {
                "price": f"{new_sl_price:.{precision}f}",
            }
        }

        try:
            resp = await self._request_with_retry("put", url, json=body)
        except httpx.HTTPError as exc:
            raise ExternalFailure(f"modify SL on trade {trade_id} failed: {exc}") from exc
        return resp.json()

    async def close_trade_partial(self, trade_id: str, units: float) -> dict:
        """Close *units* of an open trade, leaving the remainder open.

        Raises:
            ExternalFailure: OANDA refused the close or was unreachable.
        """
        url = f"{self._account_url}/trades/{trade_id}/close"
        body = {"units": f"{abs(units):.10f}".rstrip("0").rstrip(".")}

        try:
            resp = await self._request_with_retry("put", url, json=body)
        except httpx.HTTPError as exc:
            raise ExternalFailure(f"partial close on trade {trade_id} failed: {exc}") from exc
        data = resp.json()
        if "orderFillTransaction" not in data:
            reason = data.get("orderCancelTransaction", {}).get("reason", "not_filled")
            raise ExternalFailure(f"partial close on trade {trade_id} cancelled: {reason}")
        return data
