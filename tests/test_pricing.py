import asyncio

from marketsync.core.models import MarketRef, OutcomeRef, PositionRecord, QuoteKey
from marketsync.core.pricing import BatchPriceFetcher, resolve_token
from marketsync.core.quote_cache import QuoteCache

from fakes import FakeClock, FakePriceSource


def test_concurrent_overlapping_requests_share_one_batch():
    async def _run():
        source = FakePriceSource({"a": 0.1, "b": 0.2, "c": 0.3}, delay=0.01)
        fetcher = BatchPriceFetcher(source, QuoteCache(ttl=30.0))
        results = await asyncio.gather(
            fetcher.resolve_prices([QuoteKey("a"), QuoteKey("b")]),
            fetcher.resolve_prices([QuoteKey("b"), QuoteKey("c")]),
            fetcher.resolve_prices([QuoteKey("a"), QuoteKey("c")]),
        )
        return source, fetcher, results

    source, fetcher, results = asyncio.run(_run())
    assert len(source.batch_calls) == 1
    assert sorted(k.instrument_id for k in source.batch_calls[0]) == ["a", "b", "c"]
    assert fetcher.batches_issued == 1
    assert results == [{"a": 0.1, "b": 0.2}, {"b": 0.2, "c": 0.3}, {"a": 0.1, "c": 0.3}]


def test_fresh_quotes_are_served_without_upstream_call():
    async def _run():
        source = FakePriceSource({"a": 0.1, "b": 0.2})
        fetcher = BatchPriceFetcher(source, QuoteCache(ttl=30.0))
        await fetcher.resolve_prices([QuoteKey("a")])
        second = await fetcher.resolve_prices([QuoteKey("a"), QuoteKey("b")])
        return source, second

    source, second = asyncio.run(_run())
    assert second == {"a": 0.1, "b": 0.2}
    assert [[k.instrument_id for k in call] for call in source.batch_calls] == [["a"], ["b"]]


def test_expired_quotes_are_refetched():
    clock = FakeClock(0.0)

    async def _run():
        source = FakePriceSource({"a": 0.1})
        fetcher = BatchPriceFetcher(source, QuoteCache(ttl=30.0, clock=clock))
        await fetcher.resolve_prices([QuoteKey("a")])
        source.prices["a"] = 0.15
        clock.now = 31.0
        return source, await fetcher.resolve_prices([QuoteKey("a")])

    source, result = asyncio.run(_run())
    assert result == {"a": 0.15}
    assert len(source.batch_calls) == 2


def test_keys_missing_from_batch_are_omitted_not_zeroed():
    async def _run():
        source = FakePriceSource({"a": 0.1})
        fetcher = BatchPriceFetcher(source)
        result = await fetcher.resolve_prices([QuoteKey("a"), QuoteKey("ghost")])
        return fetcher, result

    fetcher, result = asyncio.run(_run())
    assert result == {"a": 0.1}
    assert fetcher.cache.peek(QuoteKey("ghost")) is None
    assert fetcher.failed_batches == 0


def test_failed_batch_degrades_to_cache_hits_and_keeps_stale_value():
    clock = FakeClock(0.0)

    async def _run():
        source = FakePriceSource({"a": 0.4, "b": 0.7})
        fetcher = BatchPriceFetcher(source, QuoteCache(ttl=30.0, clock=clock))
        await fetcher.resolve_prices([QuoteKey("a")])
        clock.now = 20.0
        await fetcher.resolve_prices([QuoteKey("b")])

        clock.now = 40.0  # "a" is stale, "b" still fresh
        source.fail = True
        batch = await fetcher.resolve_prices([QuoteKey("a"), QuoteKey("b")])
        strict = await fetcher.resolve_price(QuoteKey("a"))
        fallback = await fetcher.resolve_price(QuoteKey("a"), allow_stale=True)
        return fetcher, batch, strict, fallback

    fetcher, batch, strict, fallback = asyncio.run(_run())
    assert batch == {"b": 0.7}
    assert strict is None
    assert fallback == 0.4
    assert fetcher.failed_batches == 1


def test_single_key_lookup_joins_inflight_batch():
    async def _run():
        source = FakePriceSource({"a": 0.33}, delay=0.05)
        fetcher = BatchPriceFetcher(source)
        batch = asyncio.ensure_future(fetcher.resolve_prices([QuoteKey("a")]))
        await asyncio.sleep(0.01)
        single = await fetcher.resolve_price(QuoteKey("a"))
        return source, single, await batch

    source, single, batch = asyncio.run(_run())
    assert single == 0.33
    assert batch == {"a": 0.33}
    assert source.single_calls == []
    assert len(source.batch_calls) == 1


def test_concurrent_single_key_lookups_issue_one_call():
    async def _run():
        source = FakePriceSource({"a": 0.5}, delay=0.01)
        fetcher = BatchPriceFetcher(source)
        results = await asyncio.gather(*(fetcher.resolve_price(QuoteKey("a")) for _ in range(5)))
        return source, results

    source, results = asyncio.run(_run())
    assert results == [0.5] * 5
    assert len(source.single_calls) == 1


def test_cancelled_caller_does_not_cancel_shared_fetch():
    async def _run():
        source = FakePriceSource({"a": 0.5}, delay=0.05)
        fetcher = BatchPriceFetcher(source)
        first = asyncio.ensure_future(fetcher.resolve_prices([QuoteKey("a")]))
        second = asyncio.ensure_future(fetcher.resolve_prices([QuoteKey("a")]))
        await asyncio.sleep(0.01)
        first.cancel()
        return await second

    assert asyncio.run(_run()) == {"a": 0.5}


def test_prices_for_positions_maps_back_to_outcome_ids():
    market = MarketRef(
        id="m2",
        outcomes=(OutcomeRef(id="o2-yes", clob_id="tok-2y"), OutcomeRef(id="o2-no", clob_id="tok-2n")),
    )
    positions = [
        PositionRecord(id="p1", outcome_id="o1", outcome=OutcomeRef(id="o1", clob_id="tok-1")),
        PositionRecord(id="p2", outcome_id="o2-no", market=market),
        PositionRecord(id="p3", outcome_id="o3"),  # no token to price
    ]

    async def _run():
        source = FakePriceSource({"tok-1": 0.25, "tok-2n": 0.8, "tok-2y": 0.2})
        fetcher = BatchPriceFetcher(source)
        return source, await fetcher.prices_for_positions(positions)

    source, prices = asyncio.run(_run())
    assert prices == {"o1": 0.25, "o2-no": 0.8}
    assert sorted(k.instrument_id for k in source.batch_calls[0]) == ["tok-1", "tok-2n"]
    assert all(k.side == "BUY" for k in source.batch_calls[0])


def test_resolve_token_uses_single_outcome_market():
    market = MarketRef(id="m9", outcomes=(OutcomeRef(id="only", clob_id="tok-only"),))
    assert resolve_token(PositionRecord(id="p9", market=market)) == ("tok-only", "only")
    assert resolve_token(PositionRecord(id="p10")) is None


def test_cancelled_flush_releases_queued_keys():
    async def _run():
        source = FakePriceSource({"a": 0.1})
        fetcher = BatchPriceFetcher(source, QuoteCache(ttl=30.0))
        caller = asyncio.ensure_future(fetcher.resolve_prices([QuoteKey("a")]))
        await asyncio.sleep(0)
        flush = fetcher._flush_task
        assert flush is not None
        flush.cancel()
        first = await asyncio.wait_for(caller, timeout=1.0)

        second = await asyncio.wait_for(fetcher.resolve_prices([QuoteKey("a")]), timeout=1.0)
        return source, fetcher, first, second

    source, fetcher, first, second = asyncio.run(_run())
    assert first == {}
    assert second == {"a": 0.1}
    assert len(source.batch_calls) == 1
    assert fetcher.cache.inflight(QuoteKey("a")) is None
