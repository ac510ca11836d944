"""Advisory rationale client (display-only free text, never gating)."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog
from openai import AsyncOpenAI

from gridpilot.config.settings import AdvisoryConfig, RiskConfig
from gridpilot.models import Horizon, MarketStats


@dataclass(frozen=True)
class Rationale:
    text: str = ""
    cautions: list[str] = field(default_factory=list)
    confidence: float = 0.0


class Advisor(Protocol):
    async def get_rationale(
        self, horizon: Horizon, market: MarketStats, risk: RiskConfig
    ) -> Rationale: ...


class NullAdvisor:
    """Advisor used when the advisory service is disabled."""

    async def get_rationale(
        self, horizon: Horizon, market: MarketStats, risk: RiskConfig
    ) -> Rationale:
        return Rationale()


class AdvisoryClient:
    """Ask an OpenAI-compatible chat model for a short trade rationale."""

    def __init__(
        self,
        config: AdvisoryConfig,
        api_key: str,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self.config = config
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=config.base_url)
        self._call_times: list[float] = []
        self._log = structlog.get_logger(__name__)

    async def get_rationale(
        self, horizon: Horizon, market: MarketStats, risk: RiskConfig
    ) -> Rationale:
        if not self._allow_call():
            self._log.info("advisory_rate_limited", symbol=market.symbol, horizon=horizon.value)
            return Rationale()
        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(
                    model=self.config.model,
                    messages=[{"role": "user", "content": self._prompt(horizon, market, risk)}],
                    temperature=0.2,
                    max_tokens=300,
                ),
                timeout=self.config.timeout_sec,
            )
        except Exception as exc:
            self._log.warning(
                "advisory_request_failed",
                symbol=market.symbol,
                horizon=horizon.value,
                error=str(exc),
            )
            return Rationale()
        content = response.choices[0].message.content or "{}"
        return parse_rationale(content)

    def _allow_call(self) -> bool:
        loop = asyncio.get_running_loop()
        now = loop.time()
        self._call_times = [t for t in self._call_times if now - t < 3600]
        if len(self._call_times) >= self.config.max_calls_per_hour:
            return False
        self._call_times.append(now)
        return True

    @staticmethod
    def _prompt(horizon: Horizon, market: MarketStats, risk: RiskConfig) -> str:
        return (
            "You are a cautious spot crypto trading assistant. Output ONLY valid JSON.\n\n"
            f"Symbol: {market.symbol}\nHorizon: {horizon.value} ({horizon.interval} candles)\n"
            f"Price: {market.price}\n24h change: {market.price_change_pct}%\n"
            f"24h range: {market.low} - {market.high}\n"
            f"Quote volume: {market.quote_volume}\n"
            f"Max position ({risk.home_asset}): {risk.max_position_notional}\n"
            f"Risk per trade: {risk.risk_per_trade_fraction}\n\n"
            "OUTPUT FORMAT:\n"
            "{\n"
            '  "rationale": "two sentences at most",\n'
            '  "cautions": ["short caution"],\n'
            '  "confidence": 0.0\n'
            "}\n"
        )


def parse_rationale(raw: str) -> Rationale:
    """Parse a model reply; anything malformed collapses to plain text with zero confidence."""
    try:
        data: Any = json.loads(raw)
    except json.JSONDecodeError:
        return Rationale(text=raw.strip()[:500])
    if not isinstance(data, dict):
        return Rationale(text=str(data)[:500])
    cautions = data.get("cautions", [])
    if not isinstance(cautions, list):
        cautions = []
    try:
        confidence = float(data.get("confidence", 0.0))
    except (TypeError, ValueError):
        confidence = 0.0
    return Rationale(
        text=str(data.get("rationale", ""))[:500],
        cautions=[str(c) for c in cautions if c][:5],
        confidence=max(0.0, min(1.0, confidence)),
    )
