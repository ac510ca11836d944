import pytest

from gridpilot.models import SymbolRules
from gridpilot.risk.sizing import PositionSizer, SizeRejection, decimals_for_step, floor_to_step


def _sizer(slippage_bps: float = 0.0) -> PositionSizer:
    return PositionSizer(max_position_notional=200.0, risk_per_trade_fraction=0.005, slippage_bps=slippage_bps)


def test_position_sizer_risks_fraction_of_cap() -> None:
    size = _sizer().calculate_size(100.0, 98.0, symbol_rules=SymbolRules(step_size=0.001))
    assert size.ok
    assert size.quantity == pytest.approx(0.5)
    assert size.notional == pytest.approx(50.0)


def test_position_sizer_applies_slippage_then_floors() -> None:
    size = _sizer(slippage_bps=50).calculate_size(100.0, 98.0, symbol_rules=SymbolRules(step_size=0.001))
    assert size.quantity == pytest.approx(0.497)


def test_position_sizer_caps_at_max_notional() -> None:
    size = _sizer().calculate_size(100.0, 99.99)
    assert size.quantity == pytest.approx(2.0)


def test_position_sizer_converts_quote_to_home() -> None:
    size = _sizer().calculate_size(100.0, 98.0, quote_to_home=2.0)
    assert size.quantity == pytest.approx(0.25)


def test_position_sizer_requires_stop() -> None:
    size = _sizer().calculate_size(100.0, None)
    assert size.quantity == 0.0
    assert size.reason == SizeRejection.NO_STOP


def test_position_sizer_zero_distance_is_invalid() -> None:
    size = _sizer().calculate_size(100.0, 100.0)
    assert size.reason == SizeRejection.INVALID_SIZE
    assert not size.ok


def test_position_sizer_respects_min_qty() -> None:
    size = _sizer().calculate_size(100.0, 98.0, symbol_rules=SymbolRules(step_size=0.001, min_qty=1.0))
    assert size.quantity == 0.0
    assert size.reason == SizeRejection.BELOW_MIN_QTY


def test_position_sizer_respects_min_notional() -> None:
    size = _sizer().calculate_size(100.0, 98.0, symbol_rules=SymbolRules(step_size=0.001, min_notional=100.0))
    assert size.quantity == 0.0
    assert size.reason == SizeRejection.BELOW_MIN_NOTIONAL


def test_floor_to_step_and_decimals() -> None:
    assert floor_to_step(0.12999, 0.01) == pytest.approx(0.12)
    assert floor_to_step(123.456, 0.0) == 123.456
    assert floor_to_step(27123.456, 0.1) == pytest.approx(27123.4)
    assert decimals_for_step(0.001) == 3
    assert decimals_for_step(1.0) == 0
    assert decimals_for_step(0.0) == 8
