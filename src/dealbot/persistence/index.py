"""
Optional relational index over deal logs.

Projects runs, evidence, rubric scores, hypotheses and persona outcomes into
SQLite for querying. Every row can be regenerated from the event log, so the
index may be dropped and rebuilt at any time.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable

import aiosqlite
import orjson

from dealbot.logging import get_logger
from dealbot.types import RUBRIC_DIMENSIONS, DealEvent, EventType, PersonaRecord, RunRecord

logger = get_logger(__name__)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS runs (
        run_id TEXT PRIMARY KEY,
        deal_id TEXT NOT NULL,
        seq INTEGER NOT NULL,
        status TEXT NOT NULL,
        started_at TEXT NOT NULL,
        completed_at TEXT,
        decision TEXT,
        avg_score INTEGER,
        duration_ms INTEGER,
        error TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS evidence (
        deal_id TEXT NOT NULL,
        evidence_id TEXT NOT NULL,
        run_id TEXT,
        title TEXT,
        snippet TEXT,
        source TEXT,
        url TEXT,
        retrieved_at TEXT,
        PRIMARY KEY (deal_id, evidence_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rubric_scores (
        deal_id TEXT NOT NULL,
        run_id TEXT NOT NULL,
        dimension TEXT NOT NULL,
        score INTEGER NOT NULL,
        reasons_json TEXT,
        UNIQUE (deal_id, run_id, dimension)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS hypotheses (
        deal_id TEXT NOT NULL,
        run_id TEXT NOT NULL,
        hypothesis_id TEXT NOT NULL,
        text TEXT NOT NULL,
        support_evidence_ids TEXT,
        risks TEXT,
        PRIMARY KEY (deal_id, run_id, hypothesis_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS personas (
        deal_id TEXT NOT NULL,
        run_id TEXT NOT NULL,
        persona_id TEXT NOT NULL,
        persona_type TEXT NOT NULL,
        specialization TEXT,
        status TEXT NOT NULL,
        output_json TEXT,
        validation_ok INTEGER,
        retry_count INTEGER,
        latency_ms INTEGER,
        PRIMARY KEY (deal_id, run_id, persona_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_runs_deal ON runs(deal_id)",
    "CREATE INDEX IF NOT EXISTS idx_rubric_deal ON rubric_scores(deal_id, run_id)",
]

_PROJECTED_TABLES = ("runs", "evidence", "rubric_scores", "hypotheses", "personas")


class RelationalIndex:
    """SQLite projection of deal logs, maintained on every append."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self._db: aiosqlite.Connection | None = None

    async def init(self) -> None:
        """Open the database and create tables. Safe to call repeatedly."""
        if self._db is not None:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        for statement in _SCHEMA:
            await self._db.execute(statement)
        await self._db.commit()
        logger.info("Relational index initialized", db_path=str(self.db_path))

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    def _conn(self) -> aiosqlite.Connection:
        if not self._db:
            raise RuntimeError("RelationalIndex not initialized. Call init() first.")
        return self._db

    # ------------------------------------------------------------------
    # Projection
    # ------------------------------------------------------------------

    async def project(self, event: DealEvent, commit: bool = True) -> None:
        """Apply one event's projection. Audit-only types are ignored."""
        db = self._conn()
        payload = event.payload
        run_id = event.run_id or ""

        if event.type == EventType.EVIDENCE_ADDED:
            for item in payload.get("items") or []:
                await db.execute(
                    """
                    INSERT INTO evidence (
                        deal_id, evidence_id, run_id, title, snippet, source, url, retrieved_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(deal_id, evidence_id) DO UPDATE SET
                        title = excluded.title,
                        snippet = excluded.snippet,
                        url = excluded.url
                    """,
                    (
                        event.deal_id,
                        item["evidence_id"],
                        run_id,
                        item.get("title"),
                        item.get("snippet", ""),
                        item.get("source", "unknown"),
                        item.get("url"),
                        item.get("retrieved_at"),
                    ),
                )

        elif event.type == EventType.STATE_PATCH:
            if payload.get("hypotheses") is not None:
                await db.execute(
                    "DELETE FROM hypotheses WHERE deal_id = ? AND run_id = ?",
                    (event.deal_id, run_id),
                )
                for hyp in payload["hypotheses"]:
                    await db.execute(
                        """
                        INSERT OR REPLACE INTO hypotheses (
                            deal_id, run_id, hypothesis_id, text, support_evidence_ids, risks
                        ) VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (
                            event.deal_id,
                            run_id,
                            hyp["id"],
                            hyp["text"],
                            orjson.dumps(hyp.get("support_evidence_ids", [])).decode(),
                            orjson.dumps(hyp.get("risks", [])).decode(),
                        ),
                    )
            for dim, value in (payload.get("rubric") or {}).items():
                if dim not in RUBRIC_DIMENSIONS or not isinstance(value, dict):
                    continue
                await db.execute(
                    """
                    INSERT INTO rubric_scores (deal_id, run_id, dimension, score, reasons_json)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(deal_id, run_id, dimension) DO UPDATE SET
                        score = excluded.score,
                        reasons_json = excluded.reasons_json
                    """,
                    (
                        event.deal_id,
                        run_id,
                        dim,
                        int(value.get("score", 0)),
                        orjson.dumps(value.get("reasons", [])).decode(),
                    ),
                )

        if commit:
            await db.commit()

    async def upsert_run(self, run: RunRecord) -> None:
        db = self._conn()
        await db.execute(
            """
            INSERT OR REPLACE INTO runs (
                run_id, deal_id, seq, status, started_at, completed_at,
                decision, avg_score, duration_ms, error
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run.run_id,
                run.deal_id,
                run.seq,
                run.status.value,
                run.started_at,
                run.completed_at,
                run.decision,
                run.avg_score,
                run.duration_ms,
                run.error,
            ),
        )
        await db.commit()

    async def upsert_persona(self, deal_id: str, run_id: str, record: PersonaRecord) -> None:
        db = self._conn()
        await db.execute(
            """
            INSERT OR REPLACE INTO personas (
                deal_id, run_id, persona_id, persona_type, specialization, status,
                output_json, validation_ok, retry_count, latency_ms
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                deal_id,
                run_id,
                record.persona_id,
                record.persona_type.value,
                record.specialization,
                record.status.value,
                orjson.dumps(record.output).decode() if record.output is not None else None,
                int(record.validation_ok),
                record.retry_count,
                record.latency_ms,
            ),
        )
        await db.commit()

    async def drop(self, deal_id: str) -> None:
        """Delete every projected row for a deal."""
        db = self._conn()
        for table in _PROJECTED_TABLES:
            await db.execute(f"DELETE FROM {table} WHERE deal_id = ?", (deal_id,))
        await db.commit()

    async def rebuild(
        self,
        deal_id: str,
        events: Iterable[DealEvent],
        runs: Iterable[RunRecord],
        personas: Iterable[tuple[str, PersonaRecord]] = (),
    ) -> int:
        """Drop and regenerate all projections for a deal.

        Returns:
            Number of events replayed.
        """
        await self.drop(deal_id)
        count = 0
        for event in events:
            await self.project(event, commit=False)
            count += 1
        await self._conn().commit()
        for run in runs:
            await self.upsert_run(run)
        for run_id, record in personas:
            await self.upsert_persona(deal_id, run_id, record)
        logger.info("Rebuilt relational index", deal_id=deal_id, events=count)
        return count

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_runs(self, deal_id: str) -> list[dict[str, Any]]:
        cursor = await self._conn().execute(
            "SELECT * FROM runs WHERE deal_id = ? ORDER BY seq", (deal_id,)
        )
        return [dict(row) for row in await cursor.fetchall()]

    async def get_evidence(self, deal_id: str) -> list[dict[str, Any]]:
        cursor = await self._conn().execute(
            "SELECT * FROM evidence WHERE deal_id = ? ORDER BY rowid", (deal_id,)
        )
        return [dict(row) for row in await cursor.fetchall()]

    async def get_rubric(self, deal_id: str, run_id: str) -> dict[str, int]:
        cursor = await self._conn().execute(
            "SELECT dimension, score FROM rubric_scores WHERE deal_id = ? AND run_id = ?",
            (deal_id, run_id),
        )
        return {row["dimension"]: row["score"] for row in await cursor.fetchall()}

    async def get_hypotheses(self, deal_id: str, run_id: str) -> list[dict[str, Any]]:
        cursor = await self._conn().execute(
            "SELECT * FROM hypotheses WHERE deal_id = ? AND run_id = ? ORDER BY rowid",
            (deal_id, run_id),
        )
        return [dict(row) for row in await cursor.fetchall()]

    async def get_personas(self, deal_id: str, run_id: str) -> list[dict[str, Any]]:
        cursor = await self._conn().execute(
            "SELECT * FROM personas WHERE deal_id = ? AND run_id = ? ORDER BY persona_id",
            (deal_id, run_id),
        )
        return [dict(row) for row in await cursor.fetchall()]

    async def count(self, table: str, deal_id: str) -> int:
        if table not in _PROJECTED_TABLES:
            raise ValueError(f"Unknown table: {table}")
        cursor = await self._conn().execute(
            f"SELECT COUNT(*) FROM {table} WHERE deal_id = ?", (deal_id,)
        )
        row = await cursor.fetchone()
        return row[0] if row else 0
