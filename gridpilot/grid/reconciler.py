"""Grid order reconciliation.

One ``reconcile`` call is one tick for one grid: read the venue's view
(price, open orders), update the buy-pause guards, account for fills, then
cancel/place orders so every level carries at most one live order. The
open-order snapshot read at the start of the tick is authoritative; nothing
is assumed about orders that snapshot does not show.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog

from gridpilot.config.settings import GovernorConfig, GridConfig, RiskConfig
from gridpilot.connectors.exchange import ExchangeClient, ExchangeError
from gridpilot.features.indicators import IndicatorSnapshot
from gridpilot.features.pipeline import FeaturePipeline
from gridpilot.grid.guards import evaluate_liquidity_guard, evaluate_trend_guard, update_buy_pause
from gridpilot.grid.models import BreakoutAction, GridOrder, GridPerformance, GridState, GridStatus
from gridpilot.grid.performance import FillRecord, apply_fill, ensure_performance, revalue
from gridpilot.models import Balance, ExchangeOrder, OrderRequest, OrderType, Side, SymbolRules
from gridpilot.monitoring.metrics import Metrics
from gridpilot.risk.governor import RiskGovernorDecision
from gridpilot.risk.sizing import decimals_for_step, floor_to_step

log = structlog.get_logger(__name__)


class ActionType(str, Enum):
    PLACE = "place"
    CANCEL = "cancel"
    QUERY = "query"
    BOOTSTRAP = "bootstrap"
    LIQUIDATE = "liquidate"


@dataclass(frozen=True)
class ActionError:
    """A single failed venue action; the rest of the tick carries on."""

    action: ActionType
    reason: str
    side: Side | None = None
    level_index: int | None = None
    price: float | None = None
    order_id: int | None = None
    code: int | None = None

    @classmethod
    def from_exception(cls, action: ActionType, exc: BaseException, **context: Any) -> ActionError:
        code = exc.code if isinstance(exc, ExchangeError) else None
        return cls(action=action, reason=str(exc) or type(exc).__name__, code=code, **context)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "reason": self.reason,
            "side": self.side.value if self.side else None,
            "level_index": self.level_index,
            "price": self.price,
            "order_id": self.order_id,
            "code": self.code,
        }


@dataclass
class ReconcileResult:
    grid: GridState
    placed: list[GridOrder] = field(default_factory=list)
    cancelled: list[GridOrder] = field(default_factory=list)
    errors: list[ActionError] = field(default_factory=list)
    fills: list[FillRecord] = field(default_factory=list)

    @property
    def fees_home(self) -> float:
        return sum(f.fee_estimate for f in self.fills)

    @property
    def notional_home(self) -> float:
        return sum(f.notional for f in self.fills)


def _free_balances(balances: list[Balance]) -> dict[str, float]:
    return {b.asset.upper(): max(0.0, b.free) for b in balances}


def _price_key(side: Side, price: float, tick: float) -> tuple[Side, str]:
    return side, f"{price:.{decimals_for_step(tick)}f}"


class GridReconciler:
    """Drive one grid's live orders toward its declared ladder."""

    def __init__(
        self,
        exchange: ExchangeClient,
        config: GridConfig,
        governor_config: GovernorConfig,
        risk: RiskConfig,
        pipeline: FeaturePipeline | None = None,
        metrics: Metrics | None = None,
        timeout_sec: float = 10.0,
    ) -> None:
        self.config = config
        self.governor_config = governor_config
        self.risk = risk
        self._exchange = exchange
        self._pipeline = pipeline or FeaturePipeline(exchange, timeout_sec=timeout_sec)
        self._metrics = metrics
        self._timeout = timeout_sec

    async def reconcile(
        self,
        grid: GridState,
        rules: SymbolRules,
        balances: list[Balance],
        *,
        decision: RiskGovernorDecision | None = None,
        indicators: IndicatorSnapshot | None = None,
        now: datetime | None = None,
    ) -> ReconcileResult:
        """Run one reconciliation tick.

        Args:
            grid: Current grid state.
            rules: Venue increments and minimums for the grid symbol.
            balances: Account balances read for this tick.
            decision: Current risk governor decision; new BUYs are withheld
                while entries are paused.
            indicators: Guard snapshot. Fetched through the feature pipeline
                on ``guard_interval`` when omitted.
            now: Tick time.

        Returns:
            The next grid state plus every action taken. Venue failures are
            reported on the result, never raised.
        """
        now = now or datetime.now(timezone.utc)
        result = await self._reconcile(grid, rules, balances, decision, indicators, now)
        if self._metrics is not None:
            self._metrics.record_reconcile(result)
        return result

    async def _reconcile(
        self,
        grid: GridState,
        rules: SymbolRules,
        balances: list[Balance],
        decision: RiskGovernorDecision | None,
        indicators: IndicatorSnapshot | None,
        now: datetime,
    ) -> ReconcileResult:
        result = ReconcileResult(grid=grid)
        if not grid.is_running:
            return result
        symbol = grid.symbol

        try:
            stats = await asyncio.wait_for(self._exchange.get_24h_stats(symbol), self._timeout)
        except Exception as exc:
            log.warning("grid_stats_failed", symbol=symbol, error=str(exc) or type(exc).__name__)
            result.grid = grid.with_error(f"Market stats unavailable: {exc}", now)
            return result
        price = stats.price
        if not math.isfinite(price) or price <= 0:
            result.grid = grid.with_error("Invalid market price", now)
            return result

        perf = ensure_performance(grid, now)
        free = _free_balances(balances)

        action = BreakoutAction(self.config.breakout_action)
        buffer = max(0.0, self.config.breakout_buffer_pct) / 100
        if action != BreakoutAction.NONE and (
            price < grid.lower_price * (1 - buffer) or price > grid.upper_price * (1 + buffer)
        ):
            return await self._breakout(grid, perf, price, rules, free, action, now, result)

        # Guards
        if indicators is None:
            indicators = await self._pipeline.snapshot(
                symbol, self.config.guard_interval, fallback_close=price, fallback_volume=stats.volume
            )
        was_paused = grid.buy_paused
        trend = evaluate_trend_guard(
            price, indicators, grid.lower_price, grid.breakdown_streak, self.config, self.governor_config
        )
        liquidity = evaluate_liquidity_guard(stats.quote_volume, self.config)
        grid = update_buy_pause(grid, trend, liquidity, self.config, now)
        if grid.buy_paused and not was_paused:
            log.warning(
                "grid_buy_paused",
                symbol=symbol,
                reason=grid.buy_pause_reason.value,
                detail=trend.detail if trend.breach else liquidity.detail,
                price=price,
            )
        elif was_paused and not grid.buy_paused:
            log.info("grid_buy_resumed", symbol=symbol, price=price)

        halt_buys = grid.buy_paused or (decision is not None and decision.grid_buy_paused_global)
        block_buys = halt_buys or (decision is not None and decision.entries_paused)

        try:
            open_orders = await asyncio.wait_for(self._exchange.get_open_orders(symbol), self._timeout)
        except Exception as exc:
            log.warning("grid_open_orders_failed", symbol=symbol, error=str(exc) or type(exc).__name__)
            result.grid = replace(grid, performance=perf).with_error(f"Open orders unavailable: {exc}", now)
            return result
        open_by_id = {o.order_id: o for o in open_orders if o.order_id > 0 and o.price > 0}

        # Orders that left the open set are filled or cancelled; query a bounded number per tick.
        tracked: dict[int, GridOrder] = {}
        checks = 0
        for idx, order in grid.orders_by_level.items():
            if order.order_id in open_by_id:
                tracked[idx] = replace(order, last_seen_at=now)
                continue
            if checks >= self.config.max_order_checks_per_tick:
                tracked[idx] = order
                continue
            checks += 1
            try:
                detail = await asyncio.wait_for(
                    self._exchange.get_order(symbol, order.order_id), self._timeout
                )
            except Exception as exc:
                result.errors.append(
                    ActionError.from_exception(
                        ActionType.QUERY, exc, side=order.side, level_index=idx, order_id=order.order_id
                    )
                )
                log.warning("grid_fill_query_failed", symbol=symbol, order_id=order.order_id, error=str(exc))
                tracked[idx] = order
                continue
            if detail is not None and detail.is_open:
                # Open on the venue but missing from the snapshot; keep it and re-check next tick.
                tracked[idx] = order
                continue
            perf, fill = apply_fill(perf, detail, self.risk.maker_fee_rate, self.risk.taker_fee_rate, now)
            if fill is not None:
                result.fills.append(fill)
                log.info(
                    "grid_fill",
                    symbol=symbol,
                    side=fill.side.value,
                    qty=fill.executed_qty,
                    price=fill.price,
                    level=idx,
                )

        cancelled_ids: set[int] = set()
        if halt_buys:
            for idx, order in list(tracked.items()):
                if order.side != Side.BUY or order.order_id not in open_by_id:
                    continue
                cancelled, perf = await self._cancel_tracked(symbol, order, idx, perf, now, result)
                if cancelled:
                    cancelled_ids.add(order.order_id)
                    del tracked[idx]
            tracked_ids = {o.order_id for o in tracked.values()}
            tick = rules.tick_size
            level_keys = {_price_key(Side.BUY, floor_to_step(p, tick), tick) for p in grid.prices}
            for open_order in open_by_id.values():
                if open_order.side != Side.BUY or open_order.order_id in tracked_ids:
                    continue
                if open_order.order_id in cancelled_ids:
                    continue
                if _price_key(Side.BUY, open_order.price, rules.tick_size) not in level_keys:
                    continue
                stray = GridOrder(
                    order_id=open_order.order_id,
                    side=Side.BUY,
                    price=open_order.price,
                    quantity=open_order.orig_qty,
                    placed_at=open_order.update_time or now,
                )
                if await self._cancel(symbol, stray, None, result) is not None:
                    cancelled_ids.add(open_order.order_id)

        if grid.bootstrap_base_pct > 0 and not block_buys:
            perf, free = await self._bootstrap(grid, perf, price, rules, free, now, result)

        perf = await self._place_levels(
            grid, perf, price, rules, free, tracked, open_by_id, cancelled_ids, block_buys, now, result
        )

        perf = revalue(perf, price, now)
        result.grid = replace(
            grid,
            status=GridStatus.RUNNING,
            orders_by_level=tracked,
            performance=perf,
            updated_at=now,
            last_tick_at=now,
            last_error=result.errors[-1].reason if result.errors else None,
        )
        return result

    async def _place_levels(
        self,
        grid: GridState,
        perf: GridPerformance,
        price: float,
        rules: SymbolRules,
        free: dict[str, float],
        tracked: dict[int, GridOrder],
        open_by_id: dict[int, ExchangeOrder],
        cancelled_ids: set[int],
        block_buys: bool,
        now: datetime,
        result: ReconcileResult,
    ) -> GridPerformance:
        symbol = grid.symbol
        tick = rules.tick_size
        tracked_ids = {o.order_id for o in tracked.values()}
        importable: dict[tuple[Side, str], ExchangeOrder] = {}
        for open_order in open_by_id.values():
            if open_order.order_id in tracked_ids or open_order.order_id in cancelled_ids:
                continue
            importable.setdefault(_price_key(open_order.side, open_order.price, tick), open_order)

        free_quote = free.get(grid.quote_asset, 0.0)
        free_base = free.get(grid.base_asset, 0.0)
        # Grid budget left after what tracked orders already commit.
        committed_quote = sum(o.quantity * o.price for o in tracked.values() if o.side == Side.BUY)
        available_quote = max(0.0, perf.quote_virtual - committed_quote)
        available_base = max(
            0.0, perf.base_virtual - sum(o.quantity for o in tracked.values() if o.side == Side.SELL)
        )
        gap = self.config.gap_bps / 10_000
        placed = 0

        for idx, raw_price in enumerate(grid.prices):
            if placed >= self.config.max_new_orders_per_tick:
                break
            level_price = floor_to_step(raw_price, tick)
            if not math.isfinite(level_price) or level_price <= 0:
                continue
            if abs(level_price - price) / price < gap:
                continue
            side = Side.BUY if level_price < price else Side.SELL

            existing = tracked.get(idx)
            if existing is not None:
                if existing.side == side and abs(existing.price - level_price) <= max(tick, 1e-12):
                    continue
                # Ladder moved (or the level flipped side) under a live order: replace it.
                before = perf
                cancelled, perf = await self._cancel_tracked(symbol, existing, idx, perf, now, result)
                if not cancelled:
                    continue
                del tracked[idx]
                # A partial fill before the cancel already moved the virtual inventory.
                available_quote = max(0.0, available_quote + perf.quote_virtual - before.quote_virtual)
                available_base = max(0.0, available_base + perf.base_virtual - before.base_virtual)
                if existing.side == Side.BUY:
                    available_quote += existing.quantity * existing.price
                else:
                    available_base += existing.quantity

            if side == Side.BUY and block_buys:
                continue

            match = importable.pop(_price_key(side, level_price, tick), None)
            if match is not None:
                tracked[idx] = GridOrder(
                    order_id=match.order_id,
                    side=side,
                    price=level_price,
                    quantity=match.orig_qty,
                    placed_at=now,
                    last_seen_at=now,
                )
                if side == Side.BUY:
                    available_quote = max(0.0, available_quote - match.orig_qty * level_price)
                else:
                    available_base = max(0.0, available_base - match.orig_qty)
                log.info("grid_order_imported", symbol=symbol, order_id=match.order_id, level=idx)
                continue

            qty = floor_to_step(grid.order_notional_home / max(level_price, 1e-8), rules.step_size)
            if not math.isfinite(qty) or qty <= 0:
                continue
            if rules.min_qty and qty < rules.min_qty:
                continue
            if rules.min_notional and qty * level_price < rules.min_notional:
                continue
            required = qty * level_price
            if side == Side.BUY and (free_quote < required or available_quote < required):
                continue
            if side == Side.SELL and (free_base < qty or available_base < qty):
                continue

            request = OrderRequest(
                symbol=symbol, side=side, quantity=qty, price=level_price, type=OrderType.LIMIT
            )
            order = await self._submit(request, ActionType.PLACE, idx, result)
            if order is None or order.order_id <= 0:
                continue
            grid_order = GridOrder(
                order_id=order.order_id,
                side=side,
                price=level_price,
                quantity=qty,
                placed_at=now,
                last_seen_at=now,
            )
            tracked[idx] = grid_order
            result.placed.append(grid_order)
            placed += 1
            if side == Side.BUY:
                free_quote -= required
                available_quote = max(0.0, available_quote - required)
            else:
                free_base -= qty
                available_base = max(0.0, available_base - qty)
            log.info(
                "grid_order_placed", symbol=symbol, side=side.value, price=level_price, qty=qty, level=idx
            )
        return perf

    async def _breakout(
        self,
        grid: GridState,
        perf: GridPerformance,
        price: float,
        rules: SymbolRules,
        free: dict[str, float],
        action: BreakoutAction,
        now: datetime,
        result: ReconcileResult,
    ) -> ReconcileResult:
        for idx, order in grid.orders_by_level.items():
            _, perf = await self._cancel_tracked(grid.symbol, order, idx, perf, now, result)
        if action == BreakoutAction.CANCEL_AND_LIQUIDATE:
            perf = await self._liquidate(grid, perf, price, rules, free, now, result)
        perf = revalue(replace(perf, breakouts=perf.breakouts + 1), price, now)
        reason = f"Breakout: price {price} outside [{grid.lower_price}, {grid.upper_price}]"
        log.warning(
            "grid_breakout",
            symbol=grid.symbol,
            price=price,
            lower=grid.lower_price,
            upper=grid.upper_price,
            action=action.value,
        )
        result.grid = replace(
            grid,
            status=GridStatus.STOPPED,
            orders_by_level={},
            performance=perf,
            updated_at=now,
            last_tick_at=now,
            last_error=reason,
        )
        return result

    async def _liquidate(
        self,
        grid: GridState,
        perf: GridPerformance,
        price: float,
        rules: SymbolRules,
        free: dict[str, float],
        now: datetime,
        result: ReconcileResult,
    ) -> GridPerformance:
        held = min(free.get(grid.base_asset, 0.0), max(0.0, perf.base_virtual))
        qty = floor_to_step(held, rules.step_size)
        if not math.isfinite(qty) or qty <= 0:
            return perf
        if rules.min_qty and qty < rules.min_qty:
            return perf
        if rules.min_notional and qty * price < rules.min_notional:
            return perf
        request = OrderRequest(symbol=grid.symbol, side=Side.SELL, quantity=qty, type=OrderType.MARKET)
        order = await self._submit(request, ActionType.LIQUIDATE, None, result)
        return self._account(perf, order, now, result)

    async def _bootstrap(
        self,
        grid: GridState,
        perf: GridPerformance,
        price: float,
        rules: SymbolRules,
        free: dict[str, float],
        now: datetime,
        result: ReconcileResult,
    ) -> tuple[GridPerformance, dict[str, float]]:
        """Market-buy base inventory up to ``bootstrap_base_pct`` of the allocation."""
        target_spend = grid.allocation_home * grid.bootstrap_base_pct / 100
        free_quote = free.get(grid.quote_asset, 0.0)
        if target_spend <= 0 or free_quote <= 0:
            return perf, free
        missing = target_spend / price - free.get(grid.base_asset, 0.0)
        qty = floor_to_step(max(0.0, missing), rules.step_size)
        if not math.isfinite(qty) or qty <= 0:
            return perf, free
        if rules.min_qty and qty < rules.min_qty:
            return perf, free
        if rules.min_notional and qty * price < rules.min_notional:
            return perf, free
        if qty * price > free_quote:
            return perf, free

        request = OrderRequest(symbol=grid.symbol, side=Side.BUY, quantity=qty, type=OrderType.MARKET)
        order = await self._submit(request, ActionType.BOOTSTRAP, None, result)
        if order is None:
            return perf, free
        perf = self._account(perf, order, now, result)
        try:
            balances = await asyncio.wait_for(self._exchange.get_balances(), self._timeout)
            return perf, _free_balances(balances)
        except Exception as exc:
            log.warning("grid_balance_refresh_failed", symbol=grid.symbol, error=str(exc))
            spent = order.filled_notional if order.executed_qty > 0 else qty * price
            updated = dict(free)
            updated[grid.quote_asset] = max(0.0, free_quote - spent)
            updated[grid.base_asset] = free.get(grid.base_asset, 0.0) + (order.executed_qty or qty)
            return perf, updated

    def _account(
        self,
        perf: GridPerformance,
        order: ExchangeOrder | None,
        now: datetime,
        result: ReconcileResult,
    ) -> GridPerformance:
        perf, fill = apply_fill(perf, order, self.risk.maker_fee_rate, self.risk.taker_fee_rate, now)
        if fill is not None:
            result.fills.append(fill)
        return perf

    async def _submit(
        self,
        request: OrderRequest,
        action: ActionType,
        level_index: int | None,
        result: ReconcileResult,
    ) -> ExchangeOrder | None:
        try:
            return await asyncio.wait_for(self._exchange.place_order(request), self._timeout)
        except Exception as exc:
            result.errors.append(
                ActionError.from_exception(
                    action, exc, side=request.side, level_index=level_index, price=request.price
                )
            )
            log.warning(
                "grid_order_failed",
                symbol=request.symbol,
                action=action.value,
                side=request.side.value,
                price=request.price,
                error=str(exc) or type(exc).__name__,
            )
            return None

    async def _cancel(
        self,
        symbol: str,
        order: GridOrder,
        level_index: int | None,
        result: ReconcileResult,
    ) -> ExchangeOrder | None:
        try:
            ack = await asyncio.wait_for(self._exchange.cancel_order(symbol, order.order_id), self._timeout)
        except Exception as exc:
            result.errors.append(
                ActionError.from_exception(
                    ActionType.CANCEL,
                    exc,
                    side=order.side,
                    level_index=level_index,
                    price=order.price,
                    order_id=order.order_id,
                )
            )
            log.warning(
                "grid_cancel_failed",
                symbol=symbol,
                order_id=order.order_id,
                error=str(exc) or type(exc).__name__,
            )
            return None
        result.cancelled.append(order)
        log.info("grid_order_cancelled", symbol=symbol, order_id=order.order_id, side=order.side.value)
        return ack

    async def _cancel_tracked(
        self,
        symbol: str,
        order: GridOrder,
        level_index: int | None,
        perf: GridPerformance,
        now: datetime,
        result: ReconcileResult,
    ) -> tuple[bool, GridPerformance]:
        """Cancel a grid order and book whatever it executed before the cancel landed."""
        ack = await self._cancel(symbol, order, level_index, result)
        if ack is None:
            return False, perf
        perf = self._account(perf, ack, now, result)
        if ack.executed_qty > 0:
            log.info(
                "grid_fill",
                symbol=symbol,
                side=ack.side.value,
                qty=ack.executed_qty,
                level=level_index,
                cancelled=True,
            )
        return True, perf
