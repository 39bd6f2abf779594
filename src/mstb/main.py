"""
MSTB - Multi-Symbol Trading Bot

Main entry point for the trading bot application.
Wires the exchange connector, per-symbol engines, ledgers and the portfolio
coordinator together and runs the cooperative decision loop until a
shutdown signal or the kill switch stops it.
"""

import asyncio
import signal
import sys
from datetime import UTC, datetime
from typing import NoReturn

from mstb.config import Settings, load_settings
from mstb.data import CcxtExchangeConnector, PaperExchangeConnector
from mstb.monitoring import MetricsManager
from mstb.portfolio import PortfolioCoordinator, create_coordinator
from mstb.trading import FlagFileKillSwitch
from mstb.utils import AsyncioScheduler, LogConfig, get_logger, setup_logging

VERSION = "0.1.0"

# Global shutdown flag
shutdown_event = asyncio.Event()


def setup_signal_handlers() -> None:
    """Setup graceful shutdown handlers for SIGINT and SIGTERM."""

    def signal_handler(signum: int, frame: object) -> None:
        logger = get_logger(__name__)
        logger.info("shutdown_signal_received", signal=signal.Signals(signum).name)
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


async def initialize_components(settings: Settings) -> dict:
    """
    Initialize all system components.

    Returns:
        Dictionary containing initialized components.
    """
    logger = get_logger(__name__)
    logger.info("initializing_components")

    components: dict = {}

    metrics = None
    if settings.metrics.enabled:
        metrics = MetricsManager(port=settings.metrics.port, version=VERSION)
        metrics.start_server(mode="paper" if settings.trading.paper_trading else "live")
        components["metrics"] = metrics

    market = CcxtExchangeConnector.from_settings(settings.exchange)
    try:
        await market.connect()
    except Exception as e:
        logger.error("exchange_init_failed", error=str(e))
        raise RuntimeError(f"Exchange initialization failed: {e}") from e
    components["market"] = market

    if settings.trading.paper_trading:
        connector = PaperExchangeConnector(market_data=market)
        logger.info("paper_exchange_selected")
    else:
        connector = market
        logger.info("live_exchange_selected", testnet=settings.exchange.testnet)
    components["connector"] = connector

    kill_switch = FlagFileKillSwitch(settings.ledger.kill_switch_path)
    components["kill_switch"] = kill_switch

    coordinator = await create_coordinator(
        settings,
        connector=connector,
        kill_switch=kill_switch,
        metrics=metrics,
    )
    components["coordinator"] = coordinator

    scheduler = AsyncioScheduler()
    coordinator.start(scheduler)
    components["scheduler"] = scheduler

    logger.info("components_initialized", count=len(components))
    return components


async def shutdown_components(components: dict) -> None:
    """
    Gracefully shutdown all components.

    Args:
        components: Dictionary of initialized components.
    """
    logger = get_logger(__name__)
    logger.info("shutting_down_components")

    if "coordinator" in components:
        components["coordinator"].stop()

    if "scheduler" in components:
        try:
            await components["scheduler"].shutdown()
            logger.info("scheduler_stopped")
        except Exception as e:
            logger.error("scheduler_stop_failed", error=str(e))

    if "market" in components:
        try:
            await components["market"].close()
        except Exception as e:
            logger.error("exchange_close_failed", error=str(e))

    logger.info("components_shutdown_complete")


async def main_loop(components: dict, settings: Settings) -> None:
    """
    Main trading loop.

    Each iteration fetches the latest candle for every symbol and runs one
    coordinator cycle. The loop ends on a shutdown signal or once the kill
    switch has halted the portfolio.
    """
    logger = get_logger(__name__)
    coordinator: PortfolioCoordinator = components["coordinator"]
    connector = components["connector"]
    loop_interval = settings.trading.loop_interval_seconds

    logger.info(
        "main_loop_started",
        symbols=settings.trading.symbols,
        timeframe=settings.trading.timeframe,
        paper_mode=settings.trading.paper_trading,
        interval_seconds=loop_interval,
    )

    iteration = 0
    while not shutdown_event.is_set():
        try:
            iteration += 1
            loop_start = datetime.now(UTC)

            candles = await coordinator.fetch_latest_candles(
                connector,
                settings.trading.timeframe,
                max_concurrency=settings.portfolio.max_fetch_concurrency,
            )
            await coordinator.update(candles)

            if not coordinator.trading_enabled:
                logger.critical("kill_switch_shutdown", iteration=iteration)
                break

            if iteration % 10 == 0:
                status = coordinator.get_status()
                logger.info(
                    "portfolio_status",
                    equity=round(status["portfolio_equity"], 2),
                    value_at_risk=round(status["risk"]["value_at_risk"], 2),
                    modes={s: e["active_mode"] for s, e in status["engines"].items()},
                )
            if "metrics" in components:
                components["metrics"].update_uptime()

            elapsed = (datetime.now(UTC) - loop_start).total_seconds()
            sleep_time = max(loop_interval - elapsed, 1)

            logger.debug(
                "loop_iteration_complete",
                iteration=iteration,
                elapsed_seconds=round(elapsed, 2),
                sleep_seconds=round(sleep_time, 2),
            )

            # Wait for next iteration or shutdown
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=sleep_time)
            except TimeoutError:
                pass

        except asyncio.CancelledError:
            logger.info("main_loop_cancelled")
            break
        except Exception as e:
            logger.error("main_loop_error", error=str(e), exc_info=True)
            await asyncio.sleep(5)

    logger.info("main_loop_stopped", total_iterations=iteration)


async def async_main() -> int:
    """
    Async main function.

    Returns:
        Exit code (0 for success, non-zero for error).
    """
    settings = load_settings()

    setup_logging(
        LogConfig(
            level=settings.logging.level,
            format=settings.logging.format,
            file_path=settings.logging.file_path,
            environment="paper" if settings.trading.paper_trading else "live",
            app_version=VERSION,
        )
    )

    logger = get_logger(__name__)
    logger.info(
        "mstb_starting",
        version=VERSION,
        symbols=settings.trading.symbols,
        paper_mode=settings.trading.paper_trading,
    )

    setup_signal_handlers()

    components: dict = {}
    try:
        components = await initialize_components(settings)
        await main_loop(components, settings)
        return 0

    except KeyboardInterrupt:
        logger.info("keyboard_interrupt")
        return 0
    except Exception as e:
        logger.critical("fatal_error", error=str(e), exc_info=True)
        return 1
    finally:
        await shutdown_components(components)
        logger.info("mstb_stopped")


def main() -> NoReturn:
    """
    Main entry point.

    This function is called when running the bot via the CLI.
    """
    exit_code = asyncio.run(async_main())
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
