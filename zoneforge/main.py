"""ZoneForge — application entry point.

Boots the FastAPI internal server and provides the CLI entry point for
paper and live modes.
"""

import logging

from fastapi import FastAPI

from zoneforge.api.routers import router

app = FastAPI(title="ZoneForge Internal API", version="0.1.0")
app.include_router(router)

logger = logging.getLogger("zoneforge")


@app.get("/health")
async def health():
    """Liveness probe."""
    return {"status": "ok"}


def warn_if_live(mode: str) -> bool:
    """Log a prominent warning when running in live mode.

    Returns ``True`` if *mode* is ``"live"``.
    """
    if mode == "live":
        logger.warning(
            "LIVE TRADING MODE — Real money at risk! Starting in 5 seconds..."
        )
        return True
    return False


# ── CLI ──────────────────────────────────────────────────────────────────


def _run_cli() -> None:
    """Parse CLI arguments and start the engine (and API server)."""
    import argparse
    import asyncio
    import signal
    import sys
    import time

    from zoneforge.api.routers import configure_routers, update_bot_status
    from zoneforge.broker.oanda_client import OandaClient
    from zoneforge.config import load_config
    from zoneforge.engine import TradingEngine
    from zoneforge.errors import ConfigurationError

    parser = argparse.ArgumentParser(description="ZoneForge supply/demand zone trader")
    parser.add_argument(
        "--mode",
        choices=["paper", "live"],
        default="paper",
        help="Trading mode (default: paper)",
    )
    parser.add_argument("--env-file", help="Path to a .env file")
    parser.add_argument(
        "--engine-only",
        action="store_true",
        help="Run the trading engine without the API server",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        config = load_config(args.env_file)
    except ConfigurationError as exc:
        logger.error("Configuration error — engine not started: %s", exc)
        sys.exit(2)
    logging.getLogger().setLevel(config.log_level.upper())

    if warn_if_live(args.mode):
        time.sleep(5)

    broker = OandaClient(config)
    engine = TradingEngine(config=config, broker=broker)
    configure_routers(
        broker=broker,
        instrument=config.trade_pair,
        order_label=config.order_label,
    )
    update_bot_status(mode=args.mode, pair=config.trade_pair, running=False)

    def handle_shutdown(signum, frame):
        logger.info("Shutdown signal received — stopping gracefully.")
        engine.stop()

    signal.signal(signal.SIGINT, handle_shutdown)

    if args.engine_only:
        asyncio.run(_run_engine_only(engine, args.mode))
    else:
        asyncio.run(_run_with_server(engine, args.mode, config.health_port))


async def _run_with_server(engine, mode: str, port: int = 8080) -> None:
    """Start the API server and the trading engine concurrently."""
    import asyncio

    import uvicorn

    logger.info("Starting ZoneForge in %s mode on %s.", mode, engine.instrument)

    uvi_config = uvicorn.Config(
        app,
        host="0.0.0.0",
        port=port,
        log_level="info",
    )
    server = uvicorn.Server(uvi_config)

    async def _run_engine():
        await engine.initialize()
        await engine.run()
        server.should_exit = True
        return engine.cycle_count

    logger.info("API available at http://localhost:%d", port)
    results = await asyncio.gather(
        server.serve(),
        _run_engine(),
        return_exceptions=True,
    )
    logger.info("ZoneForge stopped. Results: %s", results)


async def _run_engine_only(engine, mode: str) -> None:
    """Run the trading engine without starting the API server."""
    logger.info("Starting ZoneForge engine (no API) in %s mode on %s.",
                mode, engine.instrument)
    await engine.initialize()
    await engine.run()
    logger.info("ZoneForge engine stopped.")


if __name__ == "__main__":
    _run_cli()
