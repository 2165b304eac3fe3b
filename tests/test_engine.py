import asyncio

import pytest

from marketsync.config.settings import PollIntervals
from marketsync.core.engine import BALANCE_TASK, POSITIONS_TASK, PRICES_TASK, SyncEngine
from marketsync.core.pricing import BatchPriceFetcher
from marketsync.core.quote_cache import QuoteCache
from marketsync.core.store import StateStore

from fakes import FakeBackend, FakeClock, FakePriceSource, position_payload


def _backend() -> FakeBackend:
    return FakeBackend(
        {
            "filled": [position_payload("p1", volume=5, updated_at="2025-01-01T00:00:00Z")],
            "open": [
                position_payload("p1", volume=8, updated_at="2025-01-02T00:00:00Z"),
                position_payload("p2", "o2", token="tok-2"),
            ],
        },
        balance=100.0,
    )


def _engine(backend=None, source=None, clock=None, **kwargs):
    source = source or FakePriceSource({"tok-1": 0.5, "tok-2": 0.25})
    cache = QuoteCache(ttl=30, clock=clock or FakeClock(0.0))
    engine = SyncEngine(BatchPriceFetcher(source, cache), backend or _backend(), store=StateStore(), **kwargs)
    return engine, source


def test_refresh_now_publishes_reconciled_state_in_one_transaction():
    async def _run():
        engine, source = _engine()
        seen = []
        engine.store.subscribe(seen.append)
        result = await engine.refresh_now()
        return engine, source, seen, result

    engine, source, seen, result = asyncio.run(_run())
    assert result.ok
    assert result.error is None
    assert engine.backend.position_calls == ["won", "filled", "open"]
    assert len(source.batch_calls) == 1

    positions = engine.store.get("positions")
    assert sorted(p.id for p in positions) == ["p1", "p2"]
    assert next(p for p in positions if p.id == "p1").volume == 8

    # 8 * 0.5 + 10 * 0.25
    assert result.snapshot.positions_value == pytest.approx(6.5)
    assert result.snapshot.total_value == pytest.approx(106.5)
    assert engine.valuator.recomputes == 2
    assert seen[0] == frozenset({"refreshing"})
    published = [changed for changed in seen if "positions" in changed]
    assert len(published) == 1
    assert {"balance", "prices", "refreshing"} <= published[0]
    assert engine.store.get("refreshing") is False


def test_refresh_now_reports_balance_failure():
    async def _run():
        backend = _backend()
        backend.fail_balance = True
        engine, _ = _engine(backend)
        return engine, await engine.refresh_now()

    engine, result = asyncio.run(_run())
    assert not result.ok
    assert "balance" in result.error
    assert engine.store.get("last_error") == result.error
    assert engine.store.get("balance") is None
    assert len(engine.store.get("positions")) == 2
    assert result.snapshot.balance == 0.0


def test_refresh_now_keeps_previous_positions_when_positions_fail():
    async def _run():
        engine, _ = _engine()
        await engine.refresh_now()
        before = engine.store.get("positions")
        engine.backend.fail_positions = True
        result = await engine.refresh_now()
        return engine, before, result

    engine, before, result = asyncio.run(_run())
    assert not result.ok
    assert result.error.startswith("positions:")
    assert engine.store.get("positions") is before


def test_refresh_now_reports_price_failure_and_uses_embedded_prices():
    async def _run():
        source = FakePriceSource({"tok-1": 0.9})
        source.fail = True
        engine, _ = _engine(source=source)
        return await engine.refresh_now()

    result = asyncio.run(_run())
    assert not result.ok
    assert "prices" in result.error
    # no live quotes: both positions fall back to 0.5
    assert result.snapshot.positions_value == pytest.approx(9.0)


def test_successful_refresh_clears_previous_error():
    async def _run():
        backend = _backend()
        backend.fail_balance = True
        engine, _ = _engine(backend)
        await engine.refresh_now()
        backend.fail_balance = False
        return engine, await engine.refresh_now()

    engine, result = asyncio.run(_run())
    assert result.ok
    assert engine.store.get("last_error") is None
    assert engine.store.get("balance") == 100.0


def test_background_polls_degrade_silently():
    async def _run():
        engine, _ = _engine()
        assert await engine.refresh_positions()
        before = engine.store.get("positions")

        engine.backend.fail_positions = True
        engine.backend.fail_balance = True
        ok_positions = await engine.refresh_positions()
        ok_balance = await engine.refresh_balance()
        return engine, before, ok_positions, ok_balance

    engine, before, ok_positions, ok_balance = asyncio.run(_run())
    assert not ok_positions
    assert not ok_balance
    assert engine.store.get("positions") is before
    assert engine.store.get("last_error") is None


def test_price_poll_drops_outcomes_no_longer_held():
    async def _run():
        engine, _ = _engine()
        engine.backend.by_status = {"filled": [position_payload("p1", "o1")]}
        await engine.refresh_positions()
        await engine.refresh_prices()
        first = engine.store.get("prices")

        engine.backend.by_status = {"filled": [position_payload("p2", "o2", token="tok-2")]}
        await engine.refresh_positions()
        await engine.refresh_prices()
        return first, engine.store.get("prices")

    first, second = asyncio.run(_run())
    assert first == {"o1": 0.5}
    assert second == {"o2": 0.25}


def test_failed_price_lookup_keeps_last_price_for_held_outcomes_only():
    async def _run():
        clock = FakeClock(0.0)
        engine, source = _engine(clock=clock)
        await engine.refresh_positions()
        await engine.refresh_prices()

        source.fail = True
        clock.now = 120.0
        engine.backend.by_status = {"filled": [position_payload("p1", "o1")]}
        await engine.refresh_positions()
        await engine.refresh_prices()
        return engine.store.get("prices")

    assert asyncio.run(_run()) == {"o1": 0.5}


def test_price_poll_without_positions_clears_prices():
    async def _run():
        engine, _ = _engine(FakeBackend({}))
        engine.store.set("prices", {"o9": 0.7})
        await engine.refresh_prices()
        return engine.store.get("prices")

    assert asyncio.run(_run()) == {}


def test_start_schedules_all_polls_and_stop_cancels_them():
    async def _run():
        engine, _ = _engine()
        engine.intervals = PollIntervals(prices=0.05, balance=0.05, positions=0.05)
        engine.start()
        handles = [engine.scheduler.handle(t) for t in (PRICES_TASK, BALANCE_TASK, POSITIONS_TASK)]
        await asyncio.sleep(0.02)
        await engine.stop()
        calls = engine.backend.balance_calls
        await asyncio.sleep(0.08)
        await engine.aclose()
        return engine, handles, calls

    engine, handles, calls = asyncio.run(_run())
    assert all(h is not None and h.cancelled for h in handles)
    assert calls == 1
    assert engine.backend.balance_calls == calls
    assert engine.store.get("balance") == 100.0


def test_merged_positions_mode_deduplicates_the_merged_list():
    async def _run():
        backend = _backend()
        engine, _ = _engine(backend, statuses=())
        result = await engine.refresh_now()
        return backend, engine, result

    backend, engine, result = asyncio.run(_run())
    assert result.ok
    assert backend.merged_calls == 1
    assert backend.position_calls == []
    positions = engine.store.get("positions")
    assert sorted(p.id for p in positions) == ["p1", "p2"]
    assert next(p for p in positions if p.id == "p1").volume == 8


def test_merged_positions_failure_keeps_previous_positions():
    async def _run():
        engine, _ = _engine(statuses=())
        await engine.refresh_positions()
        before = engine.store.get("positions")
        engine.backend.fail_positions = True
        ok = await engine.refresh_positions()
        return engine, before, ok

    engine, before, ok = asyncio.run(_run())
    assert not ok
    assert len(before) == 2
    assert engine.store.get("positions") is before
