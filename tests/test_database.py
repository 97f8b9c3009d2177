"""Tests for signal_agent.db.database — SQLite persistence."""

import asyncio

from signal_agent.db.database import Database
from signal_agent.models.market import Direction
from signal_agent.models.signal import RiskAssessment, RiskLevel
from tests.conftest import make_signal


def run_with_db(tmp_path, body):
    async def scenario():
        db = Database(str(tmp_path / "nested" / "signals.db"))
        await db.connect()
        try:
            return await body(db)
        finally:
            await db.disconnect()

    return asyncio.run(scenario())


class TestDatabase:
    def test_signal_roundtrip(self, tmp_path):
        signal = make_signal(direction=Direction.SHORT, stop="105", target="90")

        async def body(db):
            await db.save_signal(signal)
            return await db.get_signal(signal.id)

        assert run_with_db(tmp_path, body) == signal

    def test_missing_signal(self, tmp_path):
        async def body(db):
            return await db.get_signal("nope")

        assert run_with_db(tmp_path, body) is None

    def test_list_by_symbol(self, tmp_path):
        async def body(db):
            await db.save_signal(make_signal())
            await db.save_signal(make_signal(symbol="ETH/USDT"))
            return await db.list_signals(symbol="ETH/USDT"), await db.list_signals()

        eth, everything = run_with_db(tmp_path, body)
        assert [s.symbol for s in eth] == ["ETH/USDT"]
        assert len(everything) == 2

    def test_risk_assessment(self, tmp_path):
        assessment = RiskAssessment(
            signal_id="BTC/USDT:1h:1",
            symbol="BTC/USDT",
            timeframe="1h",
            expected_return=0.01,
            value_at_risk_95=-0.03,
            sharpe_ratio=None,
            max_drawdown=0.02,
            win_probability=0.55,
            risk_level=RiskLevel.UNDEFINED,
            confidence_interval=(0.005, 0.015),
            iterations=1000,
            horizon_bars=24,
            seed=12345,
        )

        async def body(db):
            await db.save_risk_assessment(assessment)
            return await db.get_risk_assessment(assessment.signal_id)

        assert run_with_db(tmp_path, body) == assessment

    def test_outcomes_oldest_first_and_limited(self, tmp_path):
        async def body(db):
            for score in (0.1, 0.2, 0.3, 0.4):
                await db.save_outcome("macd", score, "sig")
            await db.save_outcome("rsi", 0.9)
            return await db.load_recent_outcomes("macd", 3)

        assert run_with_db(tmp_path, body) == [0.2, 0.3, 0.4]

    def test_migrations_are_idempotent(self, tmp_path):
        async def body(db):
            await db._run_migrations()
            await db.save_outcome("ema", 0.5)
            return await db.load_recent_outcomes("ema", 10)

        assert run_with_db(tmp_path, body) == [0.5]
