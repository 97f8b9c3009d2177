"""SQLite persistence for signals, risk assessments and indicator outcomes."""

from pathlib import Path
from typing import Protocol

import aiosqlite
from loguru import logger

from signal_agent.config import settings
from signal_agent.models.signal import RiskAssessment, Signal


class SignalStore(Protocol):
    async def save_signal(self, signal: Signal) -> None: ...

    async def save_risk_assessment(self, assessment: RiskAssessment) -> None: ...

    async def save_outcome(self, indicator: str, score: float, signal_id: str | None = None) -> None: ...

    async def load_recent_outcomes(self, indicator: str, limit: int) -> list[float]: ...


class Database:
    def __init__(self, db_path: str | None = None):
        self.db_path = db_path or settings.db_path
        self._db: aiosqlite.Connection | None = None

    async def connect(self):
        """Connect to SQLite and run migrations."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA synchronous=NORMAL")
        await self._db.execute("PRAGMA temp_store=MEMORY")
        await self._run_migrations()
        logger.info(f"Database connected: {self.db_path}")

    async def disconnect(self):
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("Database disconnected")

    async def _run_migrations(self):
        migrations_dir = Path(__file__).parent / "migrations"
        for sql_file in sorted(migrations_dir.glob("*.sql")):
            await self._db.executescript(sql_file.read_text())
        await self._db.commit()

    # --- Signals ---

    async def save_signal(self, signal: Signal):
        await self._db.execute(
            """INSERT OR REPLACE INTO signals
               (id, symbol, timeframe, direction, confidence, entry_price, stop_loss,
                take_profit, regime, confluence, payload_json, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                signal.id,
                signal.symbol,
                signal.timeframe,
                signal.direction.value,
                signal.confidence,
                str(signal.entry_price),
                str(signal.stop_loss),
                str(signal.take_profit),
                signal.regime.type.value,
                signal.confluence.value,
                signal.model_dump_json(),
                signal.timestamp.isoformat(),
            ),
        )
        await self._db.commit()

    async def get_signal(self, signal_id: str) -> Signal | None:
        cursor = await self._db.execute(
            "SELECT payload_json FROM signals WHERE id = ?", (signal_id,)
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return Signal.model_validate_json(row["payload_json"])

    async def list_signals(self, symbol: str | None = None, limit: int = 100) -> list[Signal]:
        if symbol:
            cursor = await self._db.execute(
                "SELECT payload_json FROM signals WHERE symbol = ? ORDER BY created_at DESC LIMIT ?",
                (symbol, limit),
            )
        else:
            cursor = await self._db.execute(
                "SELECT payload_json FROM signals ORDER BY created_at DESC LIMIT ?", (limit,)
            )
        rows = await cursor.fetchall()
        return [Signal.model_validate_json(r["payload_json"]) for r in rows]

    # --- Risk ---

    async def save_risk_assessment(self, assessment: RiskAssessment):
        await self._db.execute(
            """INSERT OR REPLACE INTO risk_assessments
               (signal_id, risk_level, expected_return, value_at_risk_95, win_probability, payload_json)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                assessment.signal_id,
                assessment.risk_level.value,
                assessment.expected_return,
                assessment.value_at_risk_95,
                assessment.win_probability,
                assessment.model_dump_json(),
            ),
        )
        await self._db.commit()

    async def get_risk_assessment(self, signal_id: str) -> RiskAssessment | None:
        cursor = await self._db.execute(
            "SELECT payload_json FROM risk_assessments WHERE signal_id = ?", (signal_id,)
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return RiskAssessment.model_validate_json(row["payload_json"])

    # --- Indicator outcomes ---

    async def save_outcome(self, indicator: str, score: float, signal_id: str | None = None):
        await self._db.execute(
            "INSERT INTO indicator_outcomes (indicator, signal_id, score) VALUES (?, ?, ?)",
            (indicator, signal_id, score),
        )
        await self._db.commit()

    async def load_recent_outcomes(self, indicator: str, limit: int) -> list[float]:
        """Most recent `limit` outcome scores for one indicator, oldest first."""
        cursor = await self._db.execute(
            "SELECT score FROM indicator_outcomes WHERE indicator = ? ORDER BY id DESC LIMIT ?",
            (indicator, limit),
        )
        rows = await cursor.fetchall()
        return [r["score"] for r in reversed(rows)]
