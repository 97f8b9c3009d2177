"""Tests for signal_agent.pipeline and signal_agent.market_data caching."""

import asyncio

import pytest

from signal_agent.errors import (
    InvalidInputError,
    NotFoundError,
    RateLimitedError,
    UpstreamUnavailableError,
)
from signal_agent.market_data import CachedMarketData, exchange_symbol
from signal_agent.models.market import Direction
from signal_agent.models.signal import IndicatorVote, UnitState
from tests.conftest import (
    CYCLE_TS,
    FakeProvider,
    MemoryStore,
    make_pipeline,
    make_series,
    make_signal,
    make_uptrend,
)

L, S, N = Direction.LONG, Direction.SHORT, Direction.NEUTRAL


def universe():
    """BTC: two good timeframes. ETH: one good, one too short. SOL: no data at all."""
    return FakeProvider(series={
        ("BTC/USDT", "1h"): make_uptrend("1h", "BTC/USDT"),
        ("BTC/USDT", "4h"): make_uptrend("4h", "BTC/USDT"),
        ("ETH/USDT", "1h"): make_uptrend("1h", "ETH/USDT"),
        ("ETH/USDT", "4h"): make_series([100, 101, 102, 103, 104], symbol="ETH/USDT"),
    })


SYMBOLS = ["BTC/USDT", "ETH/USDT", "SOL/USDT"]
TIMEFRAMES = ["1h", "4h"]


# ── Cycle ───────────────────────────────────────────────────────────

class TestRunCycle:
    def test_report_counts(self):
        pipeline = make_pipeline(universe(), SYMBOLS, TIMEFRAMES)
        report = asyncio.run(pipeline.run_cycle(CYCLE_TS))
        assert report.total == 6
        assert report.ready == 3
        assert report.insufficient_data == 1
        assert report.errored == 2
        assert report.started_at == CYCLE_TS
        assert pipeline.last_report == report

    def test_unit_results(self):
        pipeline = make_pipeline(universe(), SYMBOLS, TIMEFRAMES)
        asyncio.run(pipeline.run_cycle(CYCLE_TS))
        assert pipeline.get_unit_result("BTC/USDT", "4h").state is UnitState.READY
        eth = pipeline.get_unit_result("ETH/USDT", "4h")
        assert eth.state is UnitState.INSUFFICIENT_DATA
        assert eth.signal is None
        sol = pipeline.get_unit_result("SOL/USDT", "1h")
        assert sol.state is UnitState.ERROR
        assert "UpstreamUnavailableError" in sol.reason

    def test_unknown_unit(self):
        pipeline = make_pipeline(universe(), SYMBOLS, TIMEFRAMES)
        asyncio.run(pipeline.run_cycle(CYCLE_TS))
        with pytest.raises(NotFoundError):
            pipeline.get_unit_result("DOGE/USDT", "1h")

    def test_failure_is_isolated(self):
        provider = universe()
        provider.fail_next("BTC/USDT", "1h", RuntimeError("socket exploded"))
        pipeline = make_pipeline(provider, SYMBOLS, TIMEFRAMES)
        report = asyncio.run(pipeline.run_cycle(CYCLE_TS))
        assert report.errored == 3
        assert report.ready == 2
        assert pipeline.get_unit_result("BTC/USDT", "4h").state is UnitState.READY

    def test_signals_and_filters(self):
        pipeline = make_pipeline(universe(), SYMBOLS, TIMEFRAMES)
        asyncio.run(pipeline.run_cycle(CYCLE_TS))
        assert len(pipeline.list_signals()) == 3
        assert len(pipeline.list_signals(symbol="BTC/USDT")) == 2
        assert len(pipeline.list_signals(timeframe="1h")) == 2
        only = pipeline.list_signals(symbol="ETH/USDT", timeframe="1h")
        assert len(only) == 1
        assert only[0].direction is L

    def test_peer_timeframes_feed_consensus(self):
        pipeline = make_pipeline(universe(), SYMBOLS, TIMEFRAMES)
        asyncio.run(pipeline.run_cycle(CYCLE_TS))
        btc = pipeline.list_signals(symbol="BTC/USDT", timeframe="4h")[0]
        eth = pipeline.list_signals(symbol="ETH/USDT", timeframe="1h")[0]
        # BTC's 1h agrees; ETH's 4h never reached a majority
        assert btc.confluence.components.timeframe_consensus == 1.0
        assert eth.confluence.components.timeframe_consensus == 0.5

    def test_risk_for_directional_signals(self):
        pipeline = make_pipeline(universe(), SYMBOLS, TIMEFRAMES)
        asyncio.run(pipeline.run_cycle(CYCLE_TS))
        a = pipeline.get_risk_assessment("BTC/USDT", "4h")
        signal = pipeline.list_signals(symbol="BTC/USDT", timeframe="4h")[0]
        assert a.signal_id == signal.id
        assert 0.0 <= a.win_probability <= 1.0
        with pytest.raises(NotFoundError):
            pipeline.get_risk_assessment("ETH/USDT", "4h")

    def test_repeated_cycle_reproduces_risk(self):
        pipeline = make_pipeline(universe(), SYMBOLS, TIMEFRAMES)

        def assessments():
            asyncio.run(pipeline.run_cycle(CYCLE_TS))
            return {
                (s.symbol, s.timeframe): pipeline.get_risk_assessment(s.symbol, s.timeframe)
                for s in pipeline.list_signals()
                if s.direction is not N
            }

        first = assessments()
        second = assessments()
        assert set(first) == {("BTC/USDT", "1h"), ("BTC/USDT", "4h"), ("ETH/USDT", "1h")}
        assert first == second

    def test_persists_results(self):
        store = MemoryStore()
        pipeline = make_pipeline(universe(), SYMBOLS, TIMEFRAMES, store=store)
        asyncio.run(pipeline.run_cycle(CYCLE_TS))
        assert len(store.signals) == 3
        assert len(store.assessments) == 3

    def test_failing_pattern_source_is_ignored(self):
        def broken(series):
            raise ValueError("detector offline")

        pipeline = make_pipeline(universe(), SYMBOLS, TIMEFRAMES, pattern_source=broken)
        report = asyncio.run(pipeline.run_cycle(CYCLE_TS))
        assert report.ready == 3

    def test_snapshot_replaced_only_when_cycle_completes(self):
        provider = universe()
        pipeline = make_pipeline(provider, SYMBOLS, TIMEFRAMES)
        seen_during = []
        original = provider.get_price_series

        async def observing(symbol, timeframe, min_bars):
            seen_during.append(len(pipeline.list_signals()))
            return await original(symbol, timeframe, min_bars)

        async def scenario():
            await pipeline.run_cycle(CYCLE_TS)
            provider.series.clear()
            provider.get_price_series = observing
            await pipeline.run_cycle(CYCLE_TS)

        asyncio.run(scenario())
        assert seen_during and all(n == 3 for n in seen_during)
        assert pipeline.list_signals() == []
        assert pipeline.last_report.errored == 6

    def test_cycles_do_not_overlap(self):
        pipeline = make_pipeline(universe(), SYMBOLS, TIMEFRAMES)
        events = []
        original = pipeline._run_cycle

        async def tracked(timestamp):
            events.append("enter")
            await asyncio.sleep(0.01)
            result = await original(timestamp)
            events.append("exit")
            return result

        pipeline._run_cycle = tracked

        async def scenario():
            await asyncio.gather(pipeline.run_cycle(CYCLE_TS), pipeline.run_cycle(CYCLE_TS))

        asyncio.run(scenario())
        assert events == ["enter", "exit", "enter", "exit"]

    def test_run_forever_stops(self):
        pipeline = make_pipeline(universe(), SYMBOLS, TIMEFRAMES)
        reports = []

        async def scenario():
            stop = asyncio.Event()

            async def on_cycle(report):
                reports.append(report)
                if len(reports) == 2:
                    stop.set()

            await pipeline.run_forever(0.01, on_cycle=on_cycle, stop_event=stop)

        asyncio.run(scenario())
        assert pipeline.cycles_run == 2
        assert len(reports) == 2


# ── Feedback ────────────────────────────────────────────────────────

class TestRecordTradeOutcome:
    def test_aligned_and_opposing_votes(self):
        store = MemoryStore()
        pipeline = make_pipeline(FakeProvider(), [], TIMEFRAMES, store=store)
        signal = make_signal(votes=[
            IndicatorVote(name="macd", direction=L),
            IndicatorVote(name="rsi", direction=S),
            IndicatorVote(name="stochastic", direction=N),
        ])
        pipeline._remember(signal)
        applied = asyncio.run(pipeline.record_trade_outcome(signal.id, 0.8))
        assert applied == pytest.approx({"macd": 0.8, "rsi": 0.2})
        assert len(pipeline.weights.get_record("macd").performance_history) == 1
        assert pipeline.weights.get_record("stochastic").performance_history == ()
        assert {(name, sid) for name, _, sid in store.outcomes} == {("macd", signal.id), ("rsi", signal.id)}

    def test_weights_move_after_full_history(self):
        pipeline = make_pipeline(FakeProvider(), [], TIMEFRAMES)
        signal = make_signal(votes=[IndicatorVote(name="macd", direction=L)])
        pipeline._remember(signal)

        async def scenario():
            for _ in range(10):
                await pipeline.record_trade_outcome(signal.id, 1.0)

        asyncio.run(scenario())
        assert pipeline.weights.get_weight("macd") == pytest.approx(0.265)

    def test_unknown_signal(self):
        pipeline = make_pipeline(FakeProvider(), [], TIMEFRAMES)
        with pytest.raises(NotFoundError):
            asyncio.run(pipeline.record_trade_outcome("nope", 0.5))

    @pytest.mark.parametrize("bad", [-0.5, 1.2, float("nan")])
    def test_invalid_score(self, bad):
        pipeline = make_pipeline(FakeProvider(), [], TIMEFRAMES)
        signal = make_signal(votes=[IndicatorVote(name="macd", direction=L)])
        pipeline._remember(signal)
        with pytest.raises(InvalidInputError):
            asyncio.run(pipeline.record_trade_outcome(signal.id, bad))

    def test_registry_is_bounded(self):
        pipeline = make_pipeline(FakeProvider(), [], TIMEFRAMES, registry_size=2)
        for i in range(3):
            pipeline._remember(make_signal(symbol=f"S{i}/USDT"))
        with pytest.raises(NotFoundError):
            pipeline.get_signal(make_signal(symbol="S0/USDT").id)
        assert pipeline.get_signal(make_signal(symbol="S2/USDT").id).symbol == "S2/USDT"

    def test_restore_weights(self):
        store = MemoryStore()
        store.outcomes = [("macd", 1.0, None)] * 10
        pipeline = make_pipeline(FakeProvider(), [], TIMEFRAMES, store=store)
        replayed = asyncio.run(pipeline.restore_weights())
        assert replayed == 10
        assert pipeline.weights.get_weight("macd") == pytest.approx(0.265)


# ── Market data cache ───────────────────────────────────────────────

class TestCachedMarketData:
    def test_symbol_mapping(self):
        assert exchange_symbol("btc/usdt") == "BTCUSDT"

    def test_retry_then_success(self):
        provider = universe()
        provider.fail_next("BTC/USDT", "1h", RateLimitedError("slow down"))
        cached = CachedMarketData(provider, retries=2, backoff=0, ttl=0)
        series = asyncio.run(cached.get_price_series("BTC/USDT", "1h", 200))
        assert len(series) == 60
        assert provider.calls.count(("BTC/USDT", "1h")) == 2
        assert cached.stale_hits == 0

    def test_stale_fallback(self):
        provider = universe()
        cached = CachedMarketData(provider, retries=1, backoff=0, ttl=0)

        async def scenario():
            first = await cached.get_price_series("BTC/USDT", "1h", 200)
            provider.fail_next("BTC/USDT", "1h", UpstreamUnavailableError("down"), times=5)
            second = await cached.get_price_series("BTC/USDT", "1h", 200)
            return first, second

        first, second = asyncio.run(scenario())
        assert first == second
        assert cached.stale_hits == 1

    def test_no_cache_propagates(self):
        provider = FakeProvider()
        cached = CachedMarketData(provider, retries=1, backoff=0, ttl=0)
        with pytest.raises(UpstreamUnavailableError):
            asyncio.run(cached.get_price_series("BTC/USDT", "1h", 200))
        assert len(provider.calls) == 2

    def test_ttl_serves_fresh_cache(self):
        provider = universe()
        cached = CachedMarketData(provider, ttl=60)

        async def scenario():
            await cached.get_price_series("BTC/USDT", "1h", 200)
            await cached.get_price_series("BTC/USDT", "1h", 200)

        asyncio.run(scenario())
        assert provider.calls == [("BTC/USDT", "1h")]

    def test_timeout_counts_as_unavailable(self):
        class Hanging(FakeProvider):
            async def get_price_series(self, symbol, timeframe, min_bars):
                await asyncio.sleep(1)

        cached = CachedMarketData(Hanging(), retries=0, backoff=0, timeout=0.01, ttl=0)
        with pytest.raises(UpstreamUnavailableError):
            asyncio.run(cached.get_price_series("BTC/USDT", "1h", 200))

    def test_pipeline_survives_outage_on_cache(self):
        provider = universe()
        cached = CachedMarketData(provider, retries=0, backoff=0, ttl=0)
        pipeline = make_pipeline(cached, ["BTC/USDT"], TIMEFRAMES)

        async def scenario():
            await pipeline.run_cycle(CYCLE_TS)
            for tf in TIMEFRAMES:
                provider.fail_next("BTC/USDT", tf, UpstreamUnavailableError("down"))
            return await pipeline.run_cycle(CYCLE_TS)

        report = asyncio.run(scenario())
        assert report.ready == 2
        assert cached.stale_hits == 2

    def test_long_retry_after_serves_cache_without_waiting(self):
        provider = universe()
        cached = CachedMarketData(provider, retries=1, backoff=0, ttl=0, max_backoff=5)

        async def scenario():
            await cached.get_price_series("BTC/USDT", "1h", 200)
            provider.fail_next("BTC/USDT", "1h", RateLimitedError("banned", retry_after=3600))
            return await asyncio.wait_for(cached.get_price_series("BTC/USDT", "1h", 200), timeout=2)

        series = asyncio.run(scenario())
        assert len(series) == 60
        assert cached.stale_hits == 1
        # no retry was attempted after the long Retry-After
        assert provider.calls.count(("BTC/USDT", "1h")) == 2

    def test_backoff_is_capped(self):
        provider = universe()
        provider.fail_next("BTC/USDT", "1h", UpstreamUnavailableError("down"))
        cached = CachedMarketData(provider, retries=1, backoff=600, ttl=0, max_backoff=0.01)

        async def scenario():
            return await asyncio.wait_for(cached.get_price_series("BTC/USDT", "1h", 200), timeout=2)

        assert len(asyncio.run(scenario())) == 60
        assert cached.stale_hits == 0
