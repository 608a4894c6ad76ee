"""
Tests for the backfill job controller.
"""

from datetime import date
import threading

import pytest
from sqlalchemy.exc import OperationalError

from rankhistory.backfill import RunResult
from rankhistory.controller import BackfillController
from rankhistory.database import BackfillJob, BackfillStatus

from conftest import WINDOW_END, WINDOW_START, FakeQuoteSource


class RecordingLauncher:
    """Launcher that records job ids and treats each launched run as alive until ``finish``."""

    def __init__(self):
        self.launched = []
        self.alive = set()

    def __call__(self, job_id):
        if job_id in self.alive:
            return False
        self.launched.append(job_id)
        self.alive.add(job_id)
        return True

    def finish(self, job_id):
        self.alive.discard(job_id)


@pytest.fixture
def launcher():
    return RecordingLauncher()


@pytest.fixture
def launched(launcher):
    return launcher.launched


@pytest.fixture
def controller(job_store, make_engine, three_token_quotes, launcher):
    """Controller whose launcher only records job ids."""
    engine = make_engine(FakeQuoteSource(three_token_quotes))
    return BackfillController(job_store, engine, launcher=launcher)


class TestStart:
    """Test job creation and resume."""

    def test_start_creates_queued_job(self, controller, job_store, launched):
        result = controller.start(WINDOW_START, WINDOW_END, 3)

        assert result.success is True
        assert result.action == "started"
        assert result.status == "QUEUED"
        assert result.message == "Backfill started"
        assert launched == [result.job_id]
        job = job_store.find_job_by_id(result.job_id)
        assert job.status == BackfillStatus.QUEUED
        assert job.tokens_processed == 0

    def test_duplicate_start_returns_same_job(self, controller, job_store, session_factory, launched):
        """Two identical requests before completion share one job record."""
        first = controller.start(WINDOW_START, WINDOW_END, 3)
        second = controller.start(WINDOW_START, WINDOW_END, 3)

        assert second.job_id == first.job_id
        assert second.action == "already_queued"
        assert launched == [first.job_id]
        session = session_factory()
        assert session.query(BackfillJob).count() == 1
        session.close()

    def test_start_on_running_job_is_noop(self, controller, job_store, launched):
        first = controller.start(WINDOW_START, WINDOW_END, 3)
        job_store.update_job(first.job_id, status=BackfillStatus.RUNNING)

        second = controller.start(WINDOW_START, WINDOW_END, 3)

        assert second.job_id == first.job_id
        assert second.action == "already_running"
        assert second.status == "RUNNING"
        assert launched == [first.job_id]

    def test_start_on_complete_job_is_noop(self, controller, job_store, launched):
        """A finished window returns its job and triggers no new run."""
        first = controller.start(WINDOW_START, WINDOW_END, 3)
        job_store.update_job(first.job_id, status=BackfillStatus.COMPLETE)

        second = controller.start(WINDOW_START, WINDOW_END, 3)

        assert second.success is True
        assert second.job_id == first.job_id
        assert second.status == "COMPLETE"
        assert second.action == "already_complete"
        assert launched == [first.job_id]

    @pytest.mark.parametrize("previous", [BackfillStatus.PAUSED, BackfillStatus.FAILED])
    def test_start_resumes_paused_or_failed(self, controller, job_store, launcher, launched, previous):
        first = controller.start(WINDOW_START, WINDOW_END, 3)
        job_store.update_job(first.job_id, status=previous)
        launcher.finish(first.job_id)

        second = controller.start(WINDOW_START, WINDOW_END, 3)

        assert second.job_id == first.job_id
        assert second.action == "resumed"
        assert second.status == "QUEUED"
        assert second.message == "Backfill resumed"
        assert launched == [first.job_id, first.job_id]
        assert job_store.find_job_by_id(first.job_id).status == BackfillStatus.QUEUED

    def test_resume_while_previous_run_alive(self, controller, job_store, launched):
        """The live worker picks the job back up, so no second run is launched."""
        first = controller.start(WINDOW_START, WINDOW_END, 3)
        job_store.update_job(first.job_id, status=BackfillStatus.PAUSED)

        second = controller.start(WINDOW_START, WINDOW_END, 3)

        assert second.success is True
        assert second.action == "already_running"
        assert second.status == "QUEUED"
        assert launched == [first.job_id]
        assert job_store.find_job_by_id(first.job_id).status == BackfillStatus.QUEUED

    def test_orphaned_queued_job_is_relaunched(self, controller, job_store, launched):
        """A QUEUED job left behind by a dead process is run again."""
        orphan = job_store.create_job(WINDOW_START, WINDOW_END, 3)

        result = controller.start(WINDOW_START, WINDOW_END, 3)

        assert result.job_id == orphan.id
        assert result.action == "resumed"
        assert result.status == "QUEUED"
        assert launched == [orphan.id]

        again = controller.start(WINDOW_START, WINDOW_END, 3)
        assert again.action == "already_queued"
        assert launched == [orphan.id]

    def test_resume_after_status_changed_underneath(self, controller, job_store, launcher, monkeypatch):
        """A stale PAUSED read that turned COMPLETE is reported as complete."""
        first = controller.start(WINDOW_START, WINDOW_END, 3)
        job_store.update_job(first.job_id, status=BackfillStatus.PAUSED)
        launcher.finish(first.job_id)
        stale = job_store.find_job_by_window(WINDOW_START, WINDOW_END, 3)
        job_store.update_job(first.job_id, status=BackfillStatus.COMPLETE)
        monkeypatch.setattr(job_store, "find_job_by_window", lambda *args: stale)

        result = controller.start(WINDOW_START, WINDOW_END, 3)

        assert result.action == "already_complete"
        assert job_store.find_job_by_id(first.job_id).status == BackfillStatus.COMPLETE

    def test_different_scope_is_a_different_job(self, controller):
        first = controller.start(WINDOW_START, WINDOW_END, 3)
        second = controller.start(WINDOW_START, WINDOW_END, 2)

        assert first.job_id != second.job_id
        assert second.action == "started"

    def test_invalid_request_rejected(self, controller, launched):
        result = controller.start(WINDOW_END, WINDOW_START, 3)

        assert result.success is False
        assert result.action == "rejected"
        assert "before" in result.message
        assert launched == []

    def test_concurrent_create_returns_existing(self, controller, job_store, monkeypatch, launched):
        """Losing the insert race hands back the winner's job."""
        winner = job_store.create_job(WINDOW_START, WINDOW_END, 3)
        job_store.update_job(winner.id, status=BackfillStatus.RUNNING)
        original = job_store.find_job_by_window
        lookups = []

        def find(*args):
            lookups.append(args)
            # The first lookup misses, as if the other insert had not committed yet.
            return None if len(lookups) == 1 else original(*args)

        monkeypatch.setattr(job_store, "find_job_by_window", find)

        result = controller.start(WINDOW_START, WINDOW_END, 3)

        assert result.job_id == winner.id
        assert result.action == "already_running"
        assert launched == []

    def test_start_never_raises(self, controller, job_store, monkeypatch):
        def broken(*args):
            raise OperationalError("SELECT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(job_store, "find_job_by_window", broken)

        result = controller.start(WINDOW_START, WINDOW_END, 3)

        assert result.success is False
        assert result.action == "error"


class TestPause:
    """Test cooperative pause requests."""

    def test_pause_running_job(self, controller, job_store):
        started = controller.start(WINDOW_START, WINDOW_END, 3)
        job_store.update_job(started.job_id, status=BackfillStatus.RUNNING)

        result = controller.pause(started.job_id)

        assert result.success is True
        assert "after current token" in result.message
        assert job_store.find_job_by_id(started.job_id).status == BackfillStatus.PAUSED

    @pytest.mark.parametrize("status", [BackfillStatus.QUEUED, BackfillStatus.COMPLETE,
                                        BackfillStatus.PAUSED, BackfillStatus.FAILED])
    def test_pause_non_running_job_rejected(self, controller, job_store, status):
        """Pausing anything but RUNNING fails and changes nothing."""
        started = controller.start(WINDOW_START, WINDOW_END, 3)
        job_store.update_job(started.job_id, status=status)

        result = controller.pause(started.job_id)

        assert result.success is False
        assert status.value in result.message
        assert result.status == status.value
        assert job_store.find_job_by_id(started.job_id).status == status

    def test_pause_does_not_overwrite_finished_run(self, controller, job_store, monkeypatch):
        """A run that finalises between the status read and the write stays COMPLETE."""
        started = controller.start(WINDOW_START, WINDOW_END, 3)
        job_store.update_job(started.job_id, status=BackfillStatus.RUNNING)
        original = job_store.find_job_by_id

        def read_then_finish(job_id):
            job = original(job_id)
            job_store.update_job(job_id, status=BackfillStatus.COMPLETE)
            return job

        monkeypatch.setattr(job_store, "find_job_by_id", read_then_finish)
        result = controller.pause(started.job_id)
        monkeypatch.undo()

        assert result.success is False
        assert result.action == "rejected"
        assert result.status == "COMPLETE"
        assert job_store.find_job_by_id(started.job_id).status == BackfillStatus.COMPLETE
        assert controller.start(WINDOW_START, WINDOW_END, 3).action == "already_complete"

    def test_pause_unknown_job(self, controller):
        result = controller.pause("does-not-exist")

        assert result.success is False
        assert result.message == "Job not found"


class TestStatusAndList:
    """Test read-only operations."""

    def test_status_returns_job(self, controller):
        started = controller.start(WINDOW_START, WINDOW_END, 3)

        result = controller.status(started.job_id)

        assert result.success is True
        assert result.job["id"] == started.job_id
        assert result.job["date_range_start"] == "2025-01-01"
        assert result.job["token_scope"] == 3
        assert result.job["errors"] == []

    def test_status_unknown_job(self, controller):
        result = controller.status("nope")

        assert result.success is False
        assert result.job is None

    def test_list_jobs(self, controller):
        controller.start(WINDOW_START, WINDOW_END, 3)
        controller.start(date(2024, 1, 1), date(2024, 6, 30), 100)

        result = controller.list_jobs()

        assert result.success is True
        assert len(result.jobs) == 2
        assert {job["token_scope"] for job in result.jobs} == {3, 100}


class TestBackgroundRuns:
    """Test the default thread launcher and its error boundary."""

    def test_start_runs_in_background(self, job_store, make_engine, three_tokens, three_token_quotes):
        """start returns before the run; wait() joins the worker."""
        gate = threading.Event()

        def hold_first_call(cmc_id):
            gate.wait(timeout=5)

        engine = make_engine(FakeQuoteSource(three_token_quotes, on_call=hold_first_call))
        controller = BackfillController(job_store, engine)

        result = controller.start(WINDOW_START, WINDOW_END, 3)
        assert result.action == "started"
        assert job_store.find_job_by_id(result.job_id).status != BackfillStatus.COMPLETE

        gate.set()
        assert controller.wait(result.job_id, timeout=10) is True
        job = job_store.find_job_by_id(result.job_id)
        assert job.status == BackfillStatus.COMPLETE
        assert job.tokens_processed == 3

    def test_pause_then_resume_end_to_end(self, job_store, make_engine, three_tokens, three_token_quotes):
        """End to end: pause after token 1, then resume processes tokens 2 and 3."""
        holder = {}

        def pause_on_first(cmc_id):
            if cmc_id == 1 and "paused" not in holder:
                holder["paused"] = holder["controller"].pause(holder["job_id"])

        source = FakeQuoteSource(three_token_quotes, on_call=pause_on_first)
        controller = BackfillController(job_store, make_engine(source), launcher=lambda job_id: True)
        holder["controller"] = controller

        started = controller.start(WINDOW_START, WINDOW_END, 3)
        holder["job_id"] = started.job_id
        first = controller.engine.run(started.job_id)

        assert holder["paused"].success is True
        assert first.status == BackfillStatus.PAUSED
        assert first.tokens_processed == 1

        resumed = controller.start(WINDOW_START, WINDOW_END, 3)
        assert resumed.action == "resumed"
        second = controller.engine.run(started.job_id)

        assert source.calls == [1, 2, 3]
        assert second.status == BackfillStatus.COMPLETE
        assert second.tokens_processed == 3

    def test_pause_resume_pause_during_one_run(self, job_store, make_engine, three_tokens, three_token_quotes):
        """A resume that lands while the worker is alive keeps the job pausable."""
        holder = {}

        def control(cmc_id):
            controller = holder["controller"]
            job_id = job_store.find_job_by_window(WINDOW_START, WINDOW_END, 3).id
            if cmc_id == 1:
                holder["first_pause"] = controller.pause(job_id)
                holder["resume"] = controller.start(WINDOW_START, WINDOW_END, 3)
            elif cmc_id == 2:
                holder["status_at_second"] = job_store.find_job_by_id(job_id).status
                holder["second_pause"] = controller.pause(job_id)

        source = FakeQuoteSource(three_token_quotes, on_call=control)
        controller = BackfillController(job_store, make_engine(source))
        holder["controller"] = controller

        started = controller.start(WINDOW_START, WINDOW_END, 3)
        assert controller.wait(started.job_id, timeout=10) is True

        assert holder["first_pause"].success is True
        assert holder["resume"].action == "already_running"
        assert holder["status_at_second"] == BackfillStatus.RUNNING
        assert holder["second_pause"].success is True
        assert source.calls == [1, 2]
        job = job_store.find_job_by_id(started.job_id)
        assert job.status == BackfillStatus.PAUSED
        assert job.tokens_processed == 2

        resumed = controller.start(WINDOW_START, WINDOW_END, 3)
        assert resumed.action == "resumed"
        assert controller.wait(started.job_id, timeout=10) is True
        assert job_store.find_job_by_id(started.job_id).status == BackfillStatus.COMPLETE

    def test_resume_while_stopping_runs_again(self, job_store, make_engine, three_tokens, three_token_quotes,
                                              monkeypatch):
        """A job requeued just as its run returned PAUSED is run again by the same worker."""
        engine = make_engine(FakeQuoteSource(three_token_quotes))
        real_run = engine.run
        runs = []

        def run(job_id):
            runs.append(job_id)
            if len(runs) == 1:
                job_store.update_job(job_id, status=BackfillStatus.QUEUED)
                return RunResult(job_id=job_id, status=BackfillStatus.PAUSED)
            return real_run(job_id)

        monkeypatch.setattr(engine, "run", run)
        controller = BackfillController(job_store, engine)

        result = controller.start(WINDOW_START, WINDOW_END, 3)
        assert controller.wait(result.job_id, timeout=10) is True

        assert len(runs) == 2
        job = job_store.find_job_by_id(result.job_id)
        assert job.status == BackfillStatus.COMPLETE
        assert job.tokens_processed == 3

    def test_engine_crash_is_contained(self, job_store, make_engine, three_tokens, monkeypatch):
        """A store failure mid-run is logged and the job parked as PAUSED."""
        engine = make_engine(FakeQuoteSource())

        def broken(*args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        monkeypatch.setattr(engine.token_store, "list_tracked_tokens", broken)
        controller = BackfillController(job_store, engine)

        result = controller.start(WINDOW_START, WINDOW_END, 3)
        assert result.success is True
        assert controller.wait(result.job_id, timeout=10) is True

        job = job_store.find_job_by_id(result.job_id)
        assert job.status == BackfillStatus.PAUSED
        assert job.errors == []

        resumed = controller.start(WINDOW_START, WINDOW_END, 3)
        assert resumed.action == "resumed"
        controller.wait(result.job_id, timeout=10)

    def test_wait_without_worker(self, controller):
        assert controller.wait("unknown") is True
