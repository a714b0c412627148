import pytest

from dca.models import IntervalFrequency, Limits, StrategyDefinition
from engine.errors import InvalidStrategy
from engine.models import ExecutionRequest, Quote
from risk.manager import RiskManager
from tests.conftest import T0


def _request(amount=50.0, slippage=100) -> ExecutionRequest:
    return ExecutionRequest("s1", "alice", "USDT", "BTC", amount, slippage, T0)


def _quote(impact_bps=10.0, expected_out=0.5) -> Quote:
    return Quote("USDT", "BTC", 50.0, expected_out, impact_bps)


def test_risk_allows_quote_within_tolerance():
    decision = RiskManager().evaluate(_request(), _quote(impact_bps=100.0))
    assert decision.allowed
    assert decision.reason is None


def test_risk_price_impact_block():
    decision = RiskManager().evaluate(_request(slippage=50), _quote(impact_bps=75.0))
    assert not decision.allowed
    assert "75.0 bps" in decision.reason


def test_risk_empty_quote_and_bad_amount():
    assert not RiskManager().evaluate(_request(), _quote(expected_out=0.0)).allowed
    assert not RiskManager().evaluate(_request(amount=0.0), _quote()).allowed


def test_risk_slippage_cap():
    rm = RiskManager(max_slippage_cap_bps=200)
    assert not rm.evaluate(_request(slippage=500), _quote(impact_bps=0.0)).allowed
    with pytest.raises(InvalidStrategy):
        rm.validate_slippage(201)
    with pytest.raises(InvalidStrategy):
        rm.validate_slippage(-1)


def test_validate_definition_applies_default_slippage():
    rm = RiskManager(max_slippage_cap_bps=1000)
    definition = StrategyDefinition(
        owner="alice",
        asset_in="USDT",
        asset_out="BTC",
        per_execution_amount=50,
        frequency=IntervalFrequency.parse("1d"),
    )
    assert rm.validate_definition(definition, 100) == 100
    assert rm.validate_definition(definition.model_copy(update={"max_slippage_bps": 30}), 100) == 30
    with pytest.raises(InvalidStrategy):
        rm.validate_definition(definition.model_copy(update={"limits": Limits(max_total_invested=10)}), 100)
