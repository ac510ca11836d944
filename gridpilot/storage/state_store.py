"""Persist the scheduler's state document to survive process restarts."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import orjson
import structlog

from gridpilot.grid.models import GridState
from gridpilot.risk.equity import RiskGovernorSnapshot

log = structlog.get_logger(__name__)


@dataclass
class PersistedState:
    """Everything the scheduler carries across restarts."""

    governor: RiskGovernorSnapshot | None = None
    grids: dict[str, GridState] = field(default_factory=dict)
    meta: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "governor": self.governor.to_dict() if self.governor else None,
            "grids": {symbol: grid.to_dict() for symbol, grid in self.grids.items()},
            "meta": self.meta,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], home_asset: str) -> PersistedState:
        governor = data.get("governor")
        grids: dict[str, GridState] = {}
        for symbol, raw in (data.get("grids") or {}).items():
            try:
                grids[symbol.upper()] = GridState.from_dict(raw)
            except (KeyError, TypeError, ValueError) as exc:
                log.warning("state_grid_invalid", symbol=symbol, error=str(exc))
        return cls(
            governor=RiskGovernorSnapshot.from_dict(governor, home_asset) if governor else None,
            grids=grids,
            meta=dict(data.get("meta") or {}),
        )


class StateStore:
    """Read and replace one whole JSON document on disk."""

    def __init__(self, state_path: str | Path, filename: str = "state.json") -> None:
        self.state_path = Path(state_path)
        self.state_path.mkdir(parents=True, exist_ok=True)
        self._file = self.state_path / filename

    @property
    def path(self) -> Path:
        return self._file

    def load(self, home_asset: str) -> PersistedState:
        """Load the document; a missing or unreadable file yields an empty state."""
        if not self._file.exists():
            return PersistedState()
        try:
            data = orjson.loads(self._file.read_bytes())
        except (OSError, orjson.JSONDecodeError) as exc:
            log.warning("state_load_failed", path=str(self._file), error=str(exc))
            return PersistedState()
        if not isinstance(data, dict):
            log.warning("state_load_failed", path=str(self._file), error="not an object")
            return PersistedState()
        try:
            return PersistedState.from_dict(data, home_asset)
        except (KeyError, TypeError, ValueError) as exc:
            log.warning("state_load_failed", path=str(self._file), error=str(exc))
            return PersistedState()

    def save(self, state: PersistedState) -> None:
        """Write to a temp file, then atomically replace the document."""
        tmp = self._file.with_suffix(self._file.suffix + ".tmp")
        with open(tmp, "wb") as f:
            f.write(orjson.dumps(state.to_dict(), option=orjson.OPT_INDENT_2))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self._file)

    def clear(self) -> None:
        if self._file.exists():
            self._file.unlink()
