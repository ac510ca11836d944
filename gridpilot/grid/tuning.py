"""Bounded application of suggested grid tuning.

Suggestions (from the operator or the advisory service) are never applied
as-is: each knob is clamped to its configured bounds, and increases of the
grid allocation are limited per UTC day through a small persisted ledger.
Decreases are always allowed.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict

from gridpilot.config.settings import GridConfig, TuningConfig

log = structlog.get_logger(__name__)


class GridTuning(BaseModel):
    """Requested grid knob changes. Unset fields are left alone."""

    model_config = ConfigDict(extra="forbid")

    max_alloc_pct: float | None = None
    levels: int | None = None
    min_quote_volume: float | None = None
    gap_bps: float | None = None

    def requested(self) -> dict[str, float]:
        return {k: v for k, v in self.model_dump().items() if v is not None}


@dataclass(frozen=True)
class TuningLedger:
    """Allocation increases already applied on ``day_key`` (UTC date)."""

    day_key: str
    alloc_increase_pct: float = 0.0
    last_at: datetime | None = None

    def for_day(self, day_key: str) -> TuningLedger:
        return self if self.day_key == day_key else TuningLedger(day_key=day_key)

    def to_dict(self) -> dict[str, Any]:
        return {
            "day_key": self.day_key,
            "alloc_increase_pct": self.alloc_increase_pct,
            "last_at": self.last_at.isoformat() if self.last_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> TuningLedger | None:
        if not data:
            return None
        last_at = data.get("last_at")
        return cls(
            day_key=str(data["day_key"]),
            alloc_increase_pct=float(data.get("alloc_increase_pct", 0.0)),
            last_at=datetime.fromisoformat(last_at) if last_at else None,
        )


@dataclass(frozen=True)
class TuningOutcome:
    ok: bool
    dry_run: bool
    requested: dict[str, float]
    applied: dict[str, float] = field(default_factory=dict)
    notes: list[str] = field(default_factory=list)
    error: str | None = None
    ledger: TuningLedger | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "dry_run": self.dry_run,
            "requested": self.requested,
            "applied": self.applied,
            "notes": self.notes,
            "error": self.error,
        }


def _bounded(
    tune: GridTuning, config: TuningConfig, grid: GridConfig, notes: list[str]
) -> dict[str, float]:
    bounds: dict[str, tuple[float, float]] = {
        "max_alloc_pct": (0.0, 100.0),
        "levels": (float(config.levels_min), float(config.levels_max)),
        "min_quote_volume": (config.min_quote_volume_min, config.min_quote_volume_max),
        "gap_bps": (0.0, 1000.0),
    }
    out: dict[str, float] = {}
    for key, value in tune.requested().items():
        if not math.isfinite(value):
            notes.append(f"{key} ignored: not a finite number")
            continue
        low, high = bounds[key]
        clamped = min(high, max(low, value))
        if clamped != value:
            notes.append(f"{key} clamped to {clamped:g}")
        if key == "levels":
            clamped = int(clamped)
        if clamped == getattr(grid, key):
            continue
        out[key] = clamped
    return out


def apply_grid_tuning(
    tune: GridTuning,
    current: GridConfig,
    ledger: TuningLedger | None,
    config: TuningConfig,
    now: datetime | None = None,
    dry_run: bool = False,
) -> tuple[GridConfig, TuningOutcome]:
    """Clamp ``tune`` and return the resulting grid config with an outcome record.

    With ``dry_run`` the returned config is ``current`` unchanged and the
    ledger is not advanced; the outcome still reports what would apply.
    """
    now = now or datetime.now(timezone.utc)
    requested = tune.requested()
    if not requested:
        return current, TuningOutcome(
            ok=False, dry_run=dry_run, requested=requested, error="No tuning values provided."
        )

    notes: list[str] = []
    final = _bounded(tune, config, current, notes)

    day_key = now.astimezone(timezone.utc).date().isoformat()
    day = (ledger or TuningLedger(day_key=day_key)).for_day(day_key)
    increase = 0.0
    if "max_alloc_pct" in final and final["max_alloc_pct"] > current.max_alloc_pct:
        remaining = max(0.0, config.max_grid_alloc_increase_pct_per_day - day.alloc_increase_pct)
        desired = final["max_alloc_pct"] - current.max_alloc_pct
        increase = min(desired, remaining)
        if increase <= 0:
            del final["max_alloc_pct"]
            notes.append(
                "Grid alloc increase blocked: daily cap reached "
                f"({config.max_grid_alloc_increase_pct_per_day}%/day)."
            )
        else:
            final["max_alloc_pct"] = current.max_alloc_pct + increase
            if increase < desired:
                notes.append(f"Grid alloc increase clamped to +{increase:.2f}% today.")

    if not final:
        return current, TuningOutcome(
            ok=False,
            dry_run=dry_run,
            requested=requested,
            notes=notes,
            error="Tuning was fully blocked by safety clamps.",
            ledger=ledger,
        )
    if dry_run:
        return current, TuningOutcome(
            ok=True, dry_run=True, requested=requested, applied=final, notes=notes, ledger=ledger
        )

    updated = current.model_copy(update=final)
    if increase > 0:
        day = TuningLedger(
            day_key=day_key, alloc_increase_pct=day.alloc_increase_pct + increase, last_at=now
        )
    log.info("grid_tuning_applied", applied=final, notes=notes)
    return updated, TuningOutcome(
        ok=True, dry_run=False, requested=requested, applied=final, notes=notes, ledger=day
    )
