"""Refresh per-symbol strategy bundles."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import structlog

from gridpilot.features.pipeline import FeaturePipeline
from gridpilot.models import Horizon
from gridpilot.risk.equity import AssetPricer
from gridpilot.risk.governor import RiskGovernorDecision
from gridpilot.runtime.context import TickContext
from gridpilot.strategy.engine import StrategyBundle, StrategyEngine

log = structlog.get_logger(__name__)


class StrategyService:
    """Gather market inputs for a symbol and build its plan bundle."""

    def __init__(
        self,
        context: TickContext,
        pipeline: FeaturePipeline,
        engine: StrategyEngine | None = None,
    ) -> None:
        self._context = context
        self._pipeline = pipeline
        self._engine = engine or StrategyEngine(
            context.settings.risk, context.settings.strategy.regime
        )

    async def refresh(
        self,
        symbol: str,
        decision: RiskGovernorDecision,
        now: datetime | None = None,
    ) -> StrategyBundle:
        """Build and store the bundle for ``symbol``.

        Indicator failures degrade to neutral snapshots inside the pipeline;
        a failed ticker or symbol lookup propagates to the caller.
        """
        now = now or datetime.now(timezone.utc)
        exchange = self._context.exchange
        timeout = self._context.settings.scheduler.fetch_timeout_sec
        home = self._context.settings.risk.home_asset

        market = await asyncio.wait_for(exchange.get_24h_stats(symbol), timeout)
        info = await asyncio.wait_for(exchange.get_symbol_info(symbol), timeout)

        quote_to_home = await AssetPricer(exchange).rate_to_home(info.quote_asset, home)
        if quote_to_home is None:
            log.warning("quote_to_home_unavailable", symbol=symbol, quote=info.quote_asset, home=home)
            quote_to_home = 1.0

        horizons = list(Horizon)
        snapshots = await asyncio.gather(
            *(
                self._pipeline.snapshot(
                    symbol, h.interval, fallback_close=market.price, fallback_volume=market.volume
                )
                for h in horizons
            )
        )
        rationales = await asyncio.gather(
            *(
                self._context.advisor.get_rationale(h, market, self._context.settings.risk)
                for h in horizons
            )
        )

        bundle = self._engine.build_bundle(
            market,
            dict(zip(horizons, snapshots)),
            quote_to_home=quote_to_home,
            rules=info.rules,
            entries_paused=decision.entries_paused,
            notes={h: r.text for h, r in zip(horizons, rationales)},
            now=now,
        )
        self._context.bundles[bundle.symbol] = bundle
        log.info(
            "strategy_bundle_refreshed",
            symbol=bundle.symbol,
            regimes={h.value: p.regime.value for h, p in bundle.plans.items()},
            entries_paused=decision.entries_paused,
        )
        return bundle
