"""
Run ledger.

Durable record of analysis runs: status, current stage, and every persisted
stage output. The ledger is the resume source for a failed run.

Two implementations share one contract:
- SQLiteRunLedger: aiosqlite-backed, JSON columns serialized with orjson
- InMemoryRunLedger: process-local, for tests and dry runs

A subject has at most one pending or running run. In SQLite a partial unique
index enforces this; a losing concurrent insert re-reads the winner.
"""

from __future__ import annotations

import asyncio
import copy
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, AsyncIterator, Protocol, runtime_checkable

import aiosqlite
import orjson
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from cap.config import Settings
from cap.exceptions import PersistenceError, RunInProgressError
from cap.logging import get_logger
from cap.types import AnalysisRun, RunStatus, utc_now

logger = get_logger(__name__)

DEFAULT_STALE_AFTER_SECONDS = 900.0
DEFAULT_MAX_RESUME_ATTEMPTS = 5


@runtime_checkable
class RunLedger(Protocol):
    """Persistence contract used by the orchestrator."""

    async def init(self) -> None: ...

    async def close(self) -> None: ...

    async def get_or_create_run(self, subject_id: str) -> tuple[AnalysisRun, bool]:
        """Return the subject's unfinished run, or create a new pending one.

        Returns:
            (run, is_resume). ``is_resume`` is True when an existing run is
            returned; its stage outputs are the resume seed.
        """
        ...

    async def set_current_stage(
        self, run_id: str, stage_id: str, begin_attempt: bool = False
    ) -> AnalysisRun: ...

    async def record_stage_output(
        self, run_id: str, stage_id: str, output: dict[str, Any]
    ) -> AnalysisRun: ...

    async def complete(self, run_id: str) -> AnalysisRun: ...

    async def fail(self, run_id: str, reason: str, stage_id: str | None) -> AnalysisRun: ...

    async def get_run(self, run_id: str) -> AnalysisRun | None: ...

    async def latest_run(self, subject_id: str) -> AnalysisRun | None: ...

    async def list_runs(self, subject_id: str) -> list[AnalysisRun]: ...


def is_stale(run: AnalysisRun, stale_after_seconds: float, now: datetime | None = None) -> bool:
    """Whether a running run has made no progress within the stale window."""
    if run.status != RunStatus.RUNNING:
        return False
    now = now or utc_now()
    return now - run.updated_at > timedelta(seconds=stale_after_seconds)


def _stale_reason(run: AnalysisRun) -> str:
    return f"stale: no progress since {run.updated_at.isoformat()}"


# ============== In-memory ==============

class InMemoryRunLedger:
    """Process-local ledger.

    Runs are copied on the way in and out so callers never alias ledger state.
    """

    def __init__(
        self,
        stale_after_seconds: float = DEFAULT_STALE_AFTER_SECONDS,
        max_resume_attempts: int = DEFAULT_MAX_RESUME_ATTEMPTS,
    ) -> None:
        self.stale_after_seconds = stale_after_seconds
        self.max_resume_attempts = max_resume_attempts
        self._runs: dict[str, AnalysisRun] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> InMemoryRunLedger:
        return cls(
            stale_after_seconds=settings.RUN_STALE_AFTER_SECONDS,
            max_resume_attempts=settings.MAX_RESUME_ATTEMPTS,
        )

    async def init(self) -> None:
        return None

    async def close(self) -> None:
        return None

    def add(self, run: AnalysisRun) -> None:
        """Seed a run directly (fixtures, imports)."""
        self._runs[run.id] = copy.deepcopy(run)

    def _latest(self, subject_id: str) -> AnalysisRun | None:
        runs = [r for r in self._runs.values() if r.subject_id == subject_id]
        return runs[-1] if runs else None

    def _get(self, run_id: str, operation: str) -> AnalysisRun:
        run = self._runs.get(run_id)
        if run is None:
            raise PersistenceError(
                f"Unknown run: {run_id}", context={"run_id": run_id, "operation": operation}
            )
        if run.status == RunStatus.COMPLETED:
            raise PersistenceError(
                "Completed runs are immutable",
                context={"run_id": run_id, "operation": operation},
            )
        return run

    async def get_or_create_run(self, subject_id: str) -> tuple[AnalysisRun, bool]:
        async with self._lock:
            latest = self._latest(subject_id)
            if latest is not None and latest.status != RunStatus.COMPLETED:
                if is_stale(latest, self.stale_after_seconds):
                    logger.warning("Marking stale run as failed", run_id=latest.id)
                    latest.failure_reason = _stale_reason(latest)
                    latest.failure_stage = latest.current_stage
                    latest.status = RunStatus.FAILED
                    latest.updated_at = utc_now()

                if not (
                    latest.status == RunStatus.FAILED
                    and latest.attempts >= self.max_resume_attempts
                ):
                    return copy.deepcopy(latest), True

                logger.info(
                    "Abandoning run after too many attempts",
                    run_id=latest.id,
                    attempts=latest.attempts,
                )

            run = AnalysisRun.create(subject_id)
            self._runs[run.id] = run
            return copy.deepcopy(run), False

    async def set_current_stage(
        self, run_id: str, stage_id: str, begin_attempt: bool = False
    ) -> AnalysisRun:
        async with self._lock:
            run = self._get(run_id, "set_current_stage")
            if begin_attempt and run.status == RunStatus.RUNNING:
                raise RunInProgressError(
                    "Run is already executing",
                    context={"run_id": run_id, "subject_id": run.subject_id},
                )
            run.status = RunStatus.RUNNING
            run.current_stage = stage_id
            run.failure_stage = None
            run.failure_reason = None
            if begin_attempt:
                run.attempts += 1
            run.updated_at = utc_now()
            return copy.deepcopy(run)

    async def record_stage_output(
        self, run_id: str, stage_id: str, output: dict[str, Any]
    ) -> AnalysisRun:
        async with self._lock:
            run = self._get(run_id, "record_stage_output")
            run.stage_outputs[stage_id] = copy.deepcopy(output)
            run.updated_at = utc_now()
            return copy.deepcopy(run)

    async def complete(self, run_id: str) -> AnalysisRun:
        async with self._lock:
            run = self._get(run_id, "complete")
            now = utc_now()
            run.status = RunStatus.COMPLETED
            run.failure_stage = None
            run.failure_reason = None
            run.updated_at = now
            run.completed_at = now
            return copy.deepcopy(run)

    async def fail(self, run_id: str, reason: str, stage_id: str | None) -> AnalysisRun:
        async with self._lock:
            run = self._get(run_id, "fail")
            run.status = RunStatus.FAILED
            run.failure_reason = reason
            run.failure_stage = stage_id
            run.updated_at = utc_now()
            return copy.deepcopy(run)

    async def get_run(self, run_id: str) -> AnalysisRun | None:
        run = self._runs.get(run_id)
        return copy.deepcopy(run) if run else None

    async def latest_run(self, subject_id: str) -> AnalysisRun | None:
        run = self._latest(subject_id)
        return copy.deepcopy(run) if run else None

    async def list_runs(self, subject_id: str) -> list[AnalysisRun]:
        runs = [r for r in self._runs.values() if r.subject_id == subject_id]
        return [copy.deepcopy(r) for r in reversed(runs)]


# ============== SQLite ==============

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS analysis_runs (
        id TEXT PRIMARY KEY,
        subject_id TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'running', 'completed', 'failed')),
        current_stage TEXT,
        stage_outputs TEXT NOT NULL DEFAULT '{}',
        failure_stage TEXT,
        failure_reason TEXT,
        attempts INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        completed_at TEXT
    )
"""

_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_analysis_runs_subject ON analysis_runs(subject_id)",
    "CREATE INDEX IF NOT EXISTS idx_analysis_runs_status ON analysis_runs(status)",
    # One live run per subject
    """CREATE UNIQUE INDEX IF NOT EXISTS idx_analysis_runs_active
        ON analysis_runs(subject_id)
        WHERE status IN ('pending', 'running')""",
)

_retry_locked = retry(
    retry=retry_if_exception_type(sqlite3.OperationalError),
    wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
    stop=stop_after_attempt(4),
    reraise=True,
)


def _row_to_run(row: aiosqlite.Row) -> AnalysisRun:
    return AnalysisRun(
        id=row["id"],
        subject_id=row["subject_id"],
        status=RunStatus(row["status"]),
        current_stage=row["current_stage"],
        stage_outputs=orjson.loads(row["stage_outputs"]),
        failure_stage=row["failure_stage"],
        failure_reason=row["failure_reason"],
        attempts=row["attempts"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        completed_at=(
            datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None
        ),
    )


class SQLiteRunLedger:
    """SQLite-backed run ledger.

    Transient lock errors are retried with backoff; every other store failure
    surfaces as PersistenceError.
    """

    def __init__(
        self,
        db_path: str | Path,
        stale_after_seconds: float = DEFAULT_STALE_AFTER_SECONDS,
        max_resume_attempts: int = DEFAULT_MAX_RESUME_ATTEMPTS,
    ) -> None:
        """Initialize the ledger.

        Args:
            db_path: SQLite database file, or ":memory:".
            stale_after_seconds: Age after which a running run counts as abandoned.
            max_resume_attempts: Attempts after which a failed run is replaced.
        """
        self.db_path = db_path if str(db_path) == ":memory:" else Path(db_path)
        self.stale_after_seconds = stale_after_seconds
        self.max_resume_attempts = max_resume_attempts
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> SQLiteRunLedger:
        return cls(
            settings.LEDGER_PATH,
            stale_after_seconds=settings.RUN_STALE_AFTER_SECONDS,
            max_resume_attempts=settings.MAX_RESUME_ATTEMPTS,
        )

    async def init(self) -> None:
        """Open the connection and create the schema."""
        if self._db is not None:
            return
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self._db = await aiosqlite.connect(self.db_path)
            self._db.row_factory = aiosqlite.Row
            await self._db.execute(_SCHEMA)
            for statement in _INDEXES:
                await self._db.execute(statement)
            await self._db.commit()
        except sqlite3.Error as e:
            raise PersistenceError(
                f"Could not open ledger: {e}", context={"path": str(self.db_path)}
            ) from e

        logger.info("Run ledger initialized", path=str(self.db_path))

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise PersistenceError("Ledger not initialized. Call init() first.")
        return self._db

    @asynccontextmanager
    async def _operation(self, operation: str, **context: Any) -> AsyncIterator[None]:
        """Serialize a ledger operation and translate store failures."""
        async with self._lock:
            try:
                yield
            except sqlite3.Error as e:
                await self._rollback()
                raise PersistenceError(
                    f"Ledger {operation} failed: {e}",
                    context={"operation": operation, **context},
                ) from e
            except PersistenceError:
                await self._rollback()
                raise

    async def _rollback(self) -> None:
        if self._db is None:
            return
        try:
            await self._db.rollback()
        except sqlite3.Error as e:
            logger.warning("Ledger rollback failed", error=str(e))

    # ---------- queries ----------

    async def _fetch_run(self, run_id: str) -> AnalysisRun | None:
        async with self.db.execute(
            "SELECT * FROM analysis_runs WHERE id = ?", (run_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_run(row) if row else None

    async def _fetch_latest(self, subject_id: str) -> AnalysisRun | None:
        async with self.db.execute(
            """
            SELECT * FROM analysis_runs WHERE subject_id = ?
            ORDER BY created_at DESC, rowid DESC LIMIT 1
            """,
            (subject_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_run(row) if row else None

    async def _fetch_active(self, subject_id: str) -> AnalysisRun | None:
        async with self.db.execute(
            """
            SELECT * FROM analysis_runs
            WHERE subject_id = ? AND status IN ('pending', 'running')
            """,
            (subject_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_run(row) if row else None

    async def _require_mutable(self, run_id: str, operation: str) -> AnalysisRun:
        run = await self._fetch_run(run_id)
        if run is None:
            raise PersistenceError(
                f"Unknown run: {run_id}", context={"run_id": run_id, "operation": operation}
            )
        if run.status == RunStatus.COMPLETED:
            raise PersistenceError(
                "Completed runs are immutable",
                context={"run_id": run_id, "operation": operation},
            )
        return run

    async def get_run(self, run_id: str) -> AnalysisRun | None:
        async with self._operation("get_run", run_id=run_id):
            return await self._fetch_run(run_id)

    async def latest_run(self, subject_id: str) -> AnalysisRun | None:
        async with self._operation("latest_run", subject_id=subject_id):
            return await self._fetch_latest(subject_id)

    async def list_runs(self, subject_id: str) -> list[AnalysisRun]:
        async with self._operation("list_runs", subject_id=subject_id):
            async with self.db.execute(
                """
                SELECT * FROM analysis_runs WHERE subject_id = ?
                ORDER BY created_at DESC, rowid DESC
                """,
                (subject_id,),
            ) as cursor:
                rows = await cursor.fetchall()
            return [_row_to_run(row) for row in rows]

    # ---------- writes ----------

    @_retry_locked
    async def _write(self, sql: str, params: tuple[Any, ...]) -> int:
        """Execute and commit one statement; a lock error rolls it back before the retry."""
        try:
            cursor = await self.db.execute(sql, params)
            await self.db.commit()
        except sqlite3.OperationalError:
            await self._rollback()
            raise
        return cursor.rowcount

    async def _insert_run(self, run: AnalysisRun) -> None:
        await self._write(
            """
            INSERT INTO analysis_runs (
                id, subject_id, status, current_stage, stage_outputs,
                attempts, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run.id,
                run.subject_id,
                run.status.value,
                run.current_stage,
                orjson.dumps(run.stage_outputs).decode("utf-8"),
                run.attempts,
                run.created_at.isoformat(),
                run.updated_at.isoformat(),
            ),
        )

    async def _mark_failed(self, run: AnalysisRun, reason: str, stage_id: str | None) -> None:
        await self._write(
            """
            UPDATE analysis_runs
            SET status = 'failed', failure_reason = ?, failure_stage = ?, updated_at = ?
            WHERE id = ? AND status != 'completed'
            """,
            (reason, stage_id, utc_now().isoformat(), run.id),
        )

    async def get_or_create_run(self, subject_id: str) -> tuple[AnalysisRun, bool]:
        async with self._operation("get_or_create_run", subject_id=subject_id):
            latest = await self._fetch_latest(subject_id)
            if latest is not None and latest.status != RunStatus.COMPLETED:
                if is_stale(latest, self.stale_after_seconds):
                    logger.warning("Marking stale run as failed", run_id=latest.id)
                    await self._mark_failed(latest, _stale_reason(latest), latest.current_stage)
                    latest = await self._fetch_run(latest.id)

                if latest is not None and not (
                    latest.status == RunStatus.FAILED
                    and latest.attempts >= self.max_resume_attempts
                ):
                    return latest, True

                logger.info("Abandoning run after too many attempts", subject_id=subject_id)

            run = AnalysisRun.create(subject_id)
            try:
                await self._insert_run(run)
            except sqlite3.IntegrityError:
                # Another writer created the live run first
                await self._rollback()
                winner = await self._fetch_active(subject_id)
                if winner is None:
                    raise
                return winner, True
            return run, False

    async def set_current_stage(
        self, run_id: str, stage_id: str, begin_attempt: bool = False
    ) -> AnalysisRun:
        async with self._operation("set_current_stage", run_id=run_id, stage=stage_id):
            updated = await self._write(
                """
                UPDATE analysis_runs
                SET status = 'running', current_stage = ?, failure_stage = NULL,
                    failure_reason = NULL, attempts = attempts + ?, updated_at = ?
                WHERE id = ? AND status != 'completed' AND (? = 0 OR status != 'running')
                """,
                (
                    stage_id,
                    1 if begin_attempt else 0,
                    utc_now().isoformat(),
                    run_id,
                    1 if begin_attempt else 0,
                ),
            )
            if not updated:
                run = await self._require_mutable(run_id, "set_current_stage")
                raise RunInProgressError(
                    "Run is already executing",
                    context={"run_id": run_id, "subject_id": run.subject_id},
                )
            run = await self._fetch_run(run_id)
            assert run is not None
            return run

    async def record_stage_output(
        self, run_id: str, stage_id: str, output: dict[str, Any]
    ) -> AnalysisRun:
        async with self._operation("record_stage_output", run_id=run_id, stage=stage_id):
            run = await self._require_mutable(run_id, "record_stage_output")
            run.stage_outputs[stage_id] = output
            run.updated_at = utc_now()
            await self._write(
                "UPDATE analysis_runs SET stage_outputs = ?, updated_at = ? WHERE id = ?",
                (
                    orjson.dumps(run.stage_outputs).decode("utf-8"),
                    run.updated_at.isoformat(),
                    run_id,
                ),
            )
            return run

    async def complete(self, run_id: str) -> AnalysisRun:
        async with self._operation("complete", run_id=run_id):
            await self._require_mutable(run_id, "complete")
            now = utc_now().isoformat()
            await self._write(
                """
                UPDATE analysis_runs
                SET status = 'completed', failure_stage = NULL, failure_reason = NULL,
                    updated_at = ?, completed_at = ?
                WHERE id = ?
                """,
                (now, now, run_id),
            )
            run = await self._fetch_run(run_id)
            assert run is not None
            return run

    async def fail(self, run_id: str, reason: str, stage_id: str | None) -> AnalysisRun:
        async with self._operation("fail", run_id=run_id, stage=stage_id):
            run = await self._require_mutable(run_id, "fail")
            await self._mark_failed(run, reason, stage_id)
            updated = await self._fetch_run(run_id)
            assert updated is not None
            return updated
