"""Process entry point: wire collaborators and run the scheduler with the operator API."""

from __future__ import annotations

import asyncio
import sys

import structlog
import uvicorn

from gridpilot.api.operator import create_app
from gridpilot.config.settings import load_settings
from gridpilot.connectors import AdvisoryClient, BinanceSpotClient, NullAdvisor
from gridpilot.connectors.advisory import Advisor
from gridpilot.features.pipeline import FeaturePipeline
from gridpilot.grid.reconciler import GridReconciler
from gridpilot.monitoring import Metrics, configure_logging
from gridpilot.risk.governor import RiskGovernor
from gridpilot.runtime import GridService, Scheduler, StrategyService, TickContext
from gridpilot.storage import StateStore

log = structlog.get_logger(__name__)


async def main_async() -> None:
    settings = load_settings()
    configure_logging(settings.monitoring.log_level, settings.storage.logs_path, settings.monitoring)
    if sys.version_info < (3, 10):
        log.warning(
            "python_version_unverified",
            version=f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
        )
    allowed, reasons = settings.trading_gate()
    log.info(
        "startup",
        trading_enabled=allowed,
        trading_blocked_reasons=reasons,
        testnet=settings.exchange.use_testnet,
        grid_symbols=settings.grid.symbols,
        strategy_symbols=settings.strategy.symbols,
    )

    metrics = Metrics()
    if settings.monitoring.metrics_enabled:
        metrics.start(settings.monitoring.metrics_port)

    exchange = BinanceSpotClient(settings, metrics=metrics)
    advisor: Advisor = NullAdvisor()
    if settings.advisory.enabled:
        if settings.openai_api_key:
            advisor = AdvisoryClient(settings.advisory, settings.openai_api_key)
        else:
            log.warning("advisory_disabled_missing_key")

    store = StateStore(settings.storage.state_path)
    context = TickContext.create(settings, exchange, store, metrics=metrics, advisor=advisor)
    timeout = settings.scheduler.fetch_timeout_sec
    pipeline = FeaturePipeline(
        exchange, timeout_sec=timeout, kline_limit=settings.strategy.kline_limit, metrics=metrics
    )
    governor = RiskGovernor(
        settings.governor, exchange, pipeline, grid_config=context.grid_config, metrics=metrics
    )
    reconciler = GridReconciler(
        exchange,
        context.grid_config,
        settings.governor,
        settings.risk,
        pipeline=pipeline,
        metrics=metrics,
        timeout_sec=timeout,
    )
    grids = GridService(context, reconciler)
    strategies = StrategyService(context, pipeline)
    scheduler = Scheduler(context, governor, strategies, grids)
    stop_event = asyncio.Event()

    async def api_server() -> None:
        """Run the operator API server."""
        try:
            config = uvicorn.Config(
                create_app(context, grids),
                host="127.0.0.1",
                port=settings.monitoring.api_port,
                log_level="info",
            )
            server = uvicorn.Server(config)
            await server.serve()
        except Exception as exc:
            log.warning("api_server_failed", error=str(exc))
        finally:
            stop_event.set()

    try:
        await asyncio.gather(scheduler.run_forever(stop_event), api_server())
    finally:
        context.persist()
        await exchange.close()


def main() -> None:
    asyncio.run(main_async())


if __name__ == "__main__":
    main()
