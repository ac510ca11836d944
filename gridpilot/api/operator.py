"""Operator API for inspecting runtime state and taking safe grid actions."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, HTTPException, Query

from gridpilot import __version__
from gridpilot.grid.tuning import GridTuning, apply_grid_tuning
from gridpilot.runtime.context import TickContext
from gridpilot.runtime.grid_service import GridService


def create_app(context: TickContext, grids: GridService) -> FastAPI:
    """Create the FastAPI application bound to an explicit runtime context."""
    app = FastAPI(
        title="Gridpilot Operator API",
        description="Inspect governor, grid and strategy state; start/stop grids; tune grid knobs",
        version=__version__,
    )
    started = time.time()

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Get process health and trading gate status."""
        settings = context.settings
        allowed, reasons = settings.trading_gate()
        return {
            "status": "healthy",
            "uptime_sec": time.time() - started,
            "trading_enabled": allowed,
            "trading_blocked_reasons": reasons,
            "testnet": settings.exchange.use_testnet,
            "last_tick_at": context.last_tick_at.isoformat() if context.last_tick_at else None,
            "api_port": settings.monitoring.api_port,
            "metrics_port": settings.monitoring.metrics_port,
        }

    @app.get("/risk")
    async def risk() -> dict[str, Any]:
        """Get the risk governor decision and telemetry."""
        snapshot = context.governor_snapshot
        return {
            "decision": context.decision().to_dict(),
            "governor": snapshot.to_dict(),
            "rolling_baseline": snapshot.rolling_baseline,
        }

    @app.get("/grids")
    async def list_grids() -> dict[str, Any]:
        grid_states = context.state.grids
        return {
            "count": len(grid_states),
            "running": len(context.running_grids()),
            "config": context.grid_config.model_dump(),
            "grids": {symbol: grid.to_dict() for symbol, grid in grid_states.items()},
        }

    @app.get("/grids/{symbol}")
    async def get_grid(symbol: str) -> dict[str, Any]:
        grid = context.state.grids.get(symbol.upper())
        if grid is None:
            raise HTTPException(status_code=404, detail=f"No grid found for {symbol.upper()}")
        return grid.to_dict()

    @app.post("/grids/{symbol}/start")
    async def start_grid(symbol: str) -> dict[str, Any]:
        """Start a grid for ``symbol`` (no-op if it is already running)."""
        result = await grids.start_grid(symbol)
        if result.ok:
            context.persist()
        return result.to_dict()

    @app.post("/grids/{symbol}/stop")
    async def stop_grid(symbol: str) -> dict[str, Any]:
        """Cancel tracked orders and stop the grid."""
        result = await grids.stop_grid(symbol)
        if result.ok:
            context.persist()
        return result.to_dict()

    @app.get("/strategies/{symbol}")
    async def get_strategy(symbol: str) -> dict[str, Any]:
        bundle = context.bundles.get(symbol.upper())
        if bundle is None:
            raise HTTPException(status_code=404, detail=f"No strategy bundle for {symbol.upper()}")
        return bundle.to_dict()

    @app.post("/tuning")
    async def tuning(
        tune: GridTuning,
        dry_run: bool = Query(default=False, description="Report what would apply without applying"),
    ) -> dict[str, Any]:
        """Apply clamped grid tuning suggestions."""
        updated, outcome = apply_grid_tuning(
            tune,
            context.grid_config,
            context.tuning_ledger,
            context.settings.tuning,
            now=datetime.now(timezone.utc),
            dry_run=dry_run,
        )
        if outcome.ok and not outcome.dry_run:
            context.apply_grid_overrides(updated, outcome.applied, outcome.ledger)
            context.persist()
        return outcome.to_dict()

    @app.get("/")
    async def root() -> dict[str, Any]:
        """Root endpoint with API info."""
        return {
            "name": "Gridpilot Operator API",
            "version": __version__,
            "endpoints": {
                "health": "GET /health",
                "risk": "GET /risk",
                "grids": "GET /grids",
                "grid": "GET /grids/{symbol}",
                "start_grid": "POST /grids/{symbol}/start",
                "stop_grid": "POST /grids/{symbol}/stop",
                "strategy": "GET /strategies/{symbol}",
                "tuning": "POST /tuning?dry_run=<bool>",
            },
        }

    return app
