"""
Tests for the run ledger (in-memory and SQLite).
"""

from __future__ import annotations

import asyncio
import sqlite3
from datetime import timedelta
from pathlib import Path
from typing import Any, AsyncGenerator, Callable

import pytest

from cap.coordinator.ledger import (
    InMemoryRunLedger,
    RunLedger,
    SQLiteRunLedger,
    is_stale,
)
from cap.exceptions import PersistenceError, RunInProgressError
from cap.types import AnalysisRun, RunStatus, utc_now

LedgerFactory = Callable[..., Any]


@pytest.fixture(params=["memory", "sqlite"])
def ledger_factory(request: pytest.FixtureRequest, temp_dir: Path) -> LedgerFactory:
    """Build either ledger implementation with the given policy."""

    def factory(**kwargs: Any) -> RunLedger:
        if request.param == "memory":
            return InMemoryRunLedger(**kwargs)
        return SQLiteRunLedger(temp_dir / "ledger.db", **kwargs)

    return factory


@pytest.fixture
async def ledger(ledger_factory: LedgerFactory) -> AsyncGenerator[RunLedger, None]:
    """An initialized ledger with the default policy."""
    store = ledger_factory()
    await store.init()
    yield store
    await store.close()


class TestRunCreation:
    """Tests for get_or_create_run."""

    @pytest.mark.asyncio
    async def test_creates_pending_run(self, ledger: RunLedger) -> None:
        """Test that a new subject gets a fresh pending run."""
        run, is_resume = await ledger.get_or_create_run("conv-1")

        assert is_resume is False
        assert run.status == RunStatus.PENDING
        assert run.subject_id == "conv-1"
        assert run.id.startswith("run_")
        assert run.stage_outputs == {}

    @pytest.mark.asyncio
    async def test_returns_existing_unfinished_run(self, ledger: RunLedger) -> None:
        """Test that a second call returns the same run as a resume."""
        first, _ = await ledger.get_or_create_run("conv-1")
        second, is_resume = await ledger.get_or_create_run("conv-1")

        assert second.id == first.id
        assert is_resume is True

    @pytest.mark.asyncio
    async def test_concurrent_creation_is_idempotent(self, ledger: RunLedger) -> None:
        """Test that simultaneous callers share one run."""
        results = await asyncio.gather(*(ledger.get_or_create_run("conv-1") for _ in range(10)))

        assert len({run.id for run, _ in results}) == 1
        assert sum(1 for _, is_resume in results if not is_resume) == 1
        assert len(await ledger.list_runs("conv-1")) == 1

    @pytest.mark.asyncio
    async def test_subjects_are_independent(self, ledger: RunLedger) -> None:
        """Test that different subjects get different runs."""
        a, _ = await ledger.get_or_create_run("conv-a")
        b, _ = await ledger.get_or_create_run("conv-b")

        assert a.id != b.id

    @pytest.mark.asyncio
    async def test_completed_run_not_resumed(self, ledger: RunLedger) -> None:
        """Test that a completed run is history and a new run is created."""
        first, _ = await ledger.get_or_create_run("conv-1")
        await ledger.complete(first.id)

        second, is_resume = await ledger.get_or_create_run("conv-1")

        assert second.id != first.id
        assert is_resume is False
        assert [r.id for r in await ledger.list_runs("conv-1")] == [second.id, first.id]

    @pytest.mark.asyncio
    async def test_failed_run_resumed(self, ledger: RunLedger) -> None:
        """Test that a failed run comes back with its outputs."""
        run, _ = await ledger.get_or_create_run("conv-1")
        await ledger.set_current_stage(run.id, "conversation_map", begin_attempt=True)
        await ledger.record_stage_output(run.id, "conversation_map", {"summary": "s"})
        await ledger.set_current_stage(run.id, "claims_verification")
        await ledger.fail(run.id, "boom", "claims_verification")

        resumed, is_resume = await ledger.get_or_create_run("conv-1")

        assert is_resume is True
        assert resumed.id == run.id
        assert resumed.status == RunStatus.FAILED
        assert resumed.failure_stage == "claims_verification"
        assert resumed.stage_outputs == {"conversation_map": {"summary": "s"}}


class TestRunProgress:
    """Tests for stage bookkeeping."""

    @pytest.mark.asyncio
    async def test_outputs_keep_execution_order(self, ledger: RunLedger) -> None:
        """Test that stage outputs are ordered and overwritten in place."""
        run, _ = await ledger.get_or_create_run("conv-1")
        await ledger.record_stage_output(run.id, "b", {"n": 1})
        await ledger.record_stage_output(run.id, "a", {"n": 2})
        updated = await ledger.record_stage_output(run.id, "b", {"n": 3})

        assert updated.completed_stages == ["b", "a"]
        assert updated.stage_outputs["b"] == {"n": 3}

        stored = await ledger.get_run(run.id)
        assert stored is not None
        assert stored.completed_stages == ["b", "a"]

    @pytest.mark.asyncio
    async def test_set_current_stage(self, ledger: RunLedger) -> None:
        """Test that starting a stage marks the run running and clears failure."""
        run, _ = await ledger.get_or_create_run("conv-1")
        await ledger.fail(run.id, "earlier failure", "conversation_map")

        updated = await ledger.set_current_stage(run.id, "conversation_map", begin_attempt=True)

        assert updated.status == RunStatus.RUNNING
        assert updated.current_stage == "conversation_map"
        assert updated.failure_stage is None
        assert updated.failure_reason is None
        assert updated.attempts == 1

    @pytest.mark.asyncio
    async def test_attempts_count_only_claims(self, ledger: RunLedger) -> None:
        """Test that moving between stages does not add attempts."""
        run, _ = await ledger.get_or_create_run("conv-1")
        await ledger.set_current_stage(run.id, "a", begin_attempt=True)
        updated = await ledger.set_current_stage(run.id, "b")

        assert updated.attempts == 1
        assert updated.current_stage == "b"

    @pytest.mark.asyncio
    async def test_second_claim_rejected(self, ledger: RunLedger) -> None:
        """Test that a running run cannot be claimed again."""
        run, _ = await ledger.get_or_create_run("conv-1")
        await ledger.set_current_stage(run.id, "a", begin_attempt=True)

        with pytest.raises(RunInProgressError):
            await ledger.set_current_stage(run.id, "a", begin_attempt=True)

    @pytest.mark.asyncio
    async def test_fail_records_reason(self, ledger: RunLedger) -> None:
        """Test that failing stores the reason and stage."""
        run, _ = await ledger.get_or_create_run("conv-1")
        failed = await ledger.fail(run.id, "Reasoning service error 500", "issue_linking")

        assert failed.status == RunStatus.FAILED
        assert failed.failure_reason == "Reasoning service error 500"
        assert failed.failure_stage == "issue_linking"

    @pytest.mark.asyncio
    async def test_complete(self, ledger: RunLedger) -> None:
        """Test that completing stamps the run."""
        run, _ = await ledger.get_or_create_run("conv-1")
        done = await ledger.complete(run.id)

        assert done.status == RunStatus.COMPLETED
        assert done.completed_at is not None

    @pytest.mark.asyncio
    async def test_completed_runs_are_immutable(self, ledger: RunLedger) -> None:
        """Test that no write touches a completed run."""
        run, _ = await ledger.get_or_create_run("conv-1")
        await ledger.complete(run.id)

        with pytest.raises(PersistenceError):
            await ledger.record_stage_output(run.id, "a", {})
        with pytest.raises(PersistenceError):
            await ledger.set_current_stage(run.id, "a")
        with pytest.raises(PersistenceError):
            await ledger.fail(run.id, "late", "a")

    @pytest.mark.asyncio
    async def test_unknown_run(self, ledger: RunLedger) -> None:
        """Test that writes to an unknown run fail."""
        assert await ledger.get_run("run_missing") is None

        with pytest.raises(PersistenceError):
            await ledger.record_stage_output("run_missing", "a", {})

    @pytest.mark.asyncio
    async def test_latest_run(self, ledger: RunLedger) -> None:
        """Test that the newest run is returned."""
        assert await ledger.latest_run("conv-1") is None

        first, _ = await ledger.get_or_create_run("conv-1")
        await ledger.complete(first.id)
        second, _ = await ledger.get_or_create_run("conv-1")

        latest = await ledger.latest_run("conv-1")
        assert latest is not None
        assert latest.id == second.id


class TestRecoveryPolicy:
    """Tests for stale runs and attempt limits."""

    @pytest.mark.asyncio
    async def test_stale_running_run_failed_and_resumed(self, ledger_factory: LedgerFactory) -> None:
        """Test that a running run with no progress is treated as failed."""
        ledger = ledger_factory(stale_after_seconds=0.01)
        await ledger.init()
        try:
            run, _ = await ledger.get_or_create_run("conv-1")
            await ledger.set_current_stage(run.id, "issue_linking", begin_attempt=True)
            await asyncio.sleep(0.05)

            resumed, is_resume = await ledger.get_or_create_run("conv-1")

            assert is_resume is True
            assert resumed.id == run.id
            assert resumed.status == RunStatus.FAILED
            assert resumed.failure_stage == "issue_linking"
            assert resumed.failure_reason.startswith("stale")
        finally:
            await ledger.close()

    @pytest.mark.asyncio
    async def test_abandoned_after_max_attempts(self, ledger_factory: LedgerFactory) -> None:
        """Test that a run failed too often is replaced by a fresh one."""
        ledger = ledger_factory(max_resume_attempts=2)
        await ledger.init()
        try:
            run, _ = await ledger.get_or_create_run("conv-1")
            for _ in range(2):
                await ledger.set_current_stage(run.id, "a", begin_attempt=True)
                await ledger.fail(run.id, "boom", "a")

            fresh, is_resume = await ledger.get_or_create_run("conv-1")

            assert is_resume is False
            assert fresh.id != run.id
            old = await ledger.get_run(run.id)
            assert old is not None and old.status == RunStatus.FAILED
        finally:
            await ledger.close()

    def test_is_stale(self) -> None:
        """Test the staleness rule."""
        run = AnalysisRun.create("conv-1")
        later = run.updated_at + timedelta(seconds=120)

        assert not is_stale(run, 60, now=later)
        run.status = RunStatus.RUNNING
        assert is_stale(run, 60, now=later)
        assert not is_stale(run, 600, now=later)
        assert not is_stale(run, 60, now=utc_now())


class TestInMemoryRunLedger:
    """Tests specific to the in-memory ledger."""

    @pytest.mark.asyncio
    async def test_returned_runs_are_copies(self) -> None:
        """Test that callers cannot mutate ledger state."""
        ledger = InMemoryRunLedger()
        run, _ = await ledger.get_or_create_run("conv-1")
        run.stage_outputs["x"] = {}

        stored = await ledger.get_run(run.id)
        assert stored is not None
        assert stored.stage_outputs == {}

    @pytest.mark.asyncio
    async def test_add_seeds_run(self) -> None:
        """Test that a seeded run is resumed."""
        ledger = InMemoryRunLedger()
        seeded = AnalysisRun.create("conv-1")
        seeded.status = RunStatus.FAILED
        ledger.add(seeded)

        run, is_resume = await ledger.get_or_create_run("conv-1")

        assert run.id == seeded.id
        assert is_resume is True

    def test_satisfies_protocol(self) -> None:
        """Test both implementations satisfy the ledger protocol."""
        assert isinstance(InMemoryRunLedger(), RunLedger)
        assert isinstance(SQLiteRunLedger(":memory:"), RunLedger)


class TestSQLiteRunLedger:
    """Tests specific to the SQLite ledger."""

    @pytest.mark.asyncio
    async def test_requires_init(self, temp_dir: Path) -> None:
        """Test that use before init is a persistence error."""
        ledger = SQLiteRunLedger(temp_dir / "ledger.db")

        with pytest.raises(PersistenceError):
            await ledger.get_or_create_run("conv-1")

    @pytest.mark.asyncio
    async def test_survives_reopen(self, temp_dir: Path) -> None:
        """Test that progress is durable across connections."""
        path = temp_dir / "nested" / "ledger.db"
        ledger = SQLiteRunLedger(path)
        await ledger.init()
        run, _ = await ledger.get_or_create_run("conv-1")
        await ledger.record_stage_output(run.id, "conversation_map", {"summary": "ü ok"})
        await ledger.record_stage_output(run.id, "claims_verification", {"claimsLedger": []})
        await ledger.fail(run.id, "boom", "issue_linking")
        await ledger.close()

        reopened = SQLiteRunLedger(path)
        await reopened.init()
        try:
            resumed, is_resume = await reopened.get_or_create_run("conv-1")
        finally:
            await reopened.close()

        assert is_resume is True
        assert resumed.id == run.id
        assert resumed.completed_stages == ["conversation_map", "claims_verification"]
        assert resumed.stage_outputs["conversation_map"] == {"summary": "ü ok"}
        assert resumed.failure_stage == "issue_linking"

    @pytest.mark.asyncio
    async def test_locked_commit_is_retried_cleanly(
        self, temp_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test that a claim whose commit hits a lock is retried, not misread as taken."""
        ledger = SQLiteRunLedger(temp_dir / "ledger.db")
        await ledger.init()
        try:
            run, _ = await ledger.get_or_create_run("conv-1")
            real_commit = ledger.db.commit
            failures: list[int] = []

            async def locked_once() -> None:
                if not failures:
                    failures.append(1)
                    raise sqlite3.OperationalError("database is locked")
                await real_commit()

            monkeypatch.setattr(ledger.db, "commit", locked_once)

            claimed = await ledger.set_current_stage(
                run.id, "conversation_map", begin_attempt=True
            )
        finally:
            await ledger.close()

        assert failures == [1]
        assert claimed.status == RunStatus.RUNNING
        assert claimed.current_stage == "conversation_map"
        assert claimed.attempts == 1

    @pytest.mark.asyncio
    async def test_two_connections_share_one_live_run(self, temp_dir: Path) -> None:
        """Test that the one-live-run rule holds across connections."""
        path = temp_dir / "ledger.db"
        a = SQLiteRunLedger(path)
        b = SQLiteRunLedger(path)
        await a.init()
        await b.init()
        try:
            (run_a, _), (run_b, _) = await asyncio.gather(
                a.get_or_create_run("conv-1"), b.get_or_create_run("conv-1")
            )
            assert run_a.id == run_b.id
            assert len(await a.list_runs("conv-1")) == 1
        finally:
            await a.close()
            await b.close()

    @pytest.mark.asyncio
    async def test_from_settings(self, mock_settings: Any) -> None:
        """Test that the ledger is configured from settings."""
        ledger = SQLiteRunLedger.from_settings(mock_settings)

        assert ledger.db_path == mock_settings.LEDGER_PATH
        assert ledger.max_resume_attempts == 3
