import pytest

from marketsync.core.models import PositionRecord
from marketsync.core.store import StateStore, StoreUnavailableError
from marketsync.core.valuator import (
    PortfolioValuator,
    compute_snapshot,
    is_open,
    resolve_current_price,
)

from fakes import FakeClock, position_payload


def _position(**overrides) -> PositionRecord:
    return PositionRecord.from_dict(position_payload(current_price=0.4, **overrides))


def test_live_price_overrides_embedded_price():
    snapshot = compute_snapshot(100.0, [_position()], {"o1": 0.6}, now=1.0)
    assert snapshot.positions_value == pytest.approx(6.0)
    assert snapshot.total_value == pytest.approx(106.0)
    assert snapshot.open_positions == 1


def test_current_price_precedence():
    bare = PositionRecord(id="p", outcome_id="o1", status="filled", volume=1)
    assert resolve_current_price(bare, {}) == 0.5
    assert resolve_current_price(PositionRecord.from_dict({"id": "p", "probability": 0.3}), {}) == 0.3
    assert resolve_current_price(PositionRecord.from_dict({"id": "p", "outcome": {"probability": 0.2}}), {}) == 0.2
    assert resolve_current_price(_position(), {}) == 0.4
    assert resolve_current_price(_position(), {"o1": 0.9}) == 0.9


def test_embedded_value_used_without_volume():
    record = PositionRecord.from_dict(position_payload(volume=None, current_value=12.5))
    snapshot = compute_snapshot(0.0, [record], {})
    assert snapshot.positions_value == pytest.approx(12.5)


def test_closed_lost_empty_and_unfilled_positions_are_excluded():
    excluded = [
        _position(volume=0),
        _position(status="won"),
        _position(status="open"),
        _position(resolved_status="lost"),
        _position(market_status="closed"),
    ]
    for record in excluded:
        assert not is_open(record, {"o1": 0.6})

    snapshot = compute_snapshot(50.0, excluded + [_position(id="kept")], {"o1": 0.6})
    assert snapshot.open_positions == 1
    assert snapshot.total_value == pytest.approx(56.0)


def test_missing_balance_counts_as_zero():
    snapshot = compute_snapshot(None, [], {})
    assert snapshot.balance == 0.0
    assert snapshot.total_value == 0.0


def test_valuator_recomputes_once_per_transaction():
    store = StateStore()
    valuator = PortfolioValuator(store, clock=FakeClock(5.0))
    valuator.attach()
    assert valuator.recomputes == 1

    store.update(balance=100.0, positions=[_position()], prices={"o1": 0.6})
    assert valuator.recomputes == 2
    assert store.get("portfolio").total_value == pytest.approx(106.0)
    assert store.get("portfolio").computed_at == 5.0


def test_valuator_ignores_unrelated_keys_and_equal_inputs():
    store = StateStore()
    valuator = PortfolioValuator(store)
    valuator.attach()
    store.update(balance=10.0)
    count = valuator.recomputes

    store.set("refreshing", True)
    store.set("wallet_address", "0xabc")
    assert valuator.recomputes == count

    # same prices object, new positions list
    store.set("positions", [_position()])
    assert valuator.recomputes == count + 1


def test_detached_valuator_stops_recomputing():
    store = StateStore()
    valuator = PortfolioValuator(store)
    valuator.attach()
    valuator.detach()
    store.set("balance", 42.0)
    assert valuator.recomputes == 1


def test_valuator_uses_provided_store():
    store = StateStore()
    with store.provide():
        valuator = PortfolioValuator()
    assert valuator.store is store


def test_valuator_outside_provider_raises():
    with pytest.raises(StoreUnavailableError):
        PortfolioValuator()
