"""Tests for the retry wrapper.

Tests cover:
- Presets and the backoff curve
- Retry metadata carried in job payloads
- Retry budget: max_retries + 1 handler invocations, then dead letter
- Recovery after transient failures
- Cancellation of pending retries and shutdown
- Retry chain tracking

The scheduler fixture fires timers immediately and records the delays it
was asked for, so the tests never wait in real time.
"""

import asyncio
import logging

import pytest

from hookrelay.db.models.base import JobStatus
from hookrelay.services.job_queue import InMemoryJobQueue, QueueJob
from hookrelay.services.retry import (
    AGGRESSIVE,
    CONSERVATIVE,
    DEFAULT_RETRY_CONFIG,
    NONE,
    RETRY_METADATA_KEY,
    STANDARD,
    RetryChainStatus,
    RetryConfig,
    RetryManager,
    RetryScheduler,
    RetryTracker,
    calculate_retry_delay,
    get_retry_metadata,
    get_retry_preset,
    with_retry,
)
from tests.factories import create_job

FAST = RetryConfig(max_retries=2, initial_delay_ms=10, max_delay_ms=100, backoff_multiplier=2)
SLOW = RetryConfig(max_retries=3, initial_delay_ms=60_000, max_delay_ms=60_000, backoff_multiplier=1)


class FlakyHandler:
    """Fails a fixed number of times, then succeeds."""

    def __init__(self, failures: int, error: str = "transient failure") -> None:
        self.failures = failures
        self.error = error
        self.jobs: list[QueueJob] = []

    async def __call__(self, job: QueueJob) -> None:
        self.jobs.append(job)
        if len(self.jobs) <= self.failures:
            raise RuntimeError(self.error)

    @property
    def calls(self) -> int:
        return len(self.jobs)


class AlwaysFails(FlakyHandler):
    def __init__(self, error: str = "permanent failure") -> None:
        super().__init__(failures=10_000, error=error)


# =============================================================================
# Configuration
# =============================================================================


class TestRetryPresets:
    """Tests for the preset configurations."""

    @pytest.mark.parametrize(
        ("preset", "expected"),
        [
            (AGGRESSIVE, (5, 500, 30_000, 2)),
            (STANDARD, (3, 1_000, 60_000, 2)),
            (CONSERVATIVE, (2, 5_000, 120_000, 3)),
            (NONE, (0, 0, 0, 1)),
        ],
    )
    def test_preset_values(self, preset, expected):
        assert (
            preset.max_retries,
            preset.initial_delay_ms,
            preset.max_delay_ms,
            preset.backoff_multiplier,
        ) == expected

    def test_default_is_standard(self):
        assert DEFAULT_RETRY_CONFIG is STANDARD

    @pytest.mark.parametrize("name", ["standard", "STANDARD", " Standard "])
    def test_lookup_case_insensitive(self, name):
        assert get_retry_preset(name) is STANDARD

    def test_unknown_preset(self):
        with pytest.raises(KeyError):
            get_retry_preset("reckless")

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_retries": -1, "initial_delay_ms": 0, "max_delay_ms": 0, "backoff_multiplier": 1},
            {"max_retries": 1, "initial_delay_ms": -5, "max_delay_ms": 0, "backoff_multiplier": 1},
            {"max_retries": 1, "initial_delay_ms": 0, "max_delay_ms": 0, "backoff_multiplier": 0.5},
        ],
    )
    def test_invalid_config_rejected(self, kwargs):
        with pytest.raises(ValueError):
            RetryConfig(**kwargs)


class TestCalculateRetryDelay:
    """Tests for the backoff curve."""

    @pytest.mark.parametrize(
        ("retry_count", "expected"),
        [(0, 1_000), (1, 2_000), (2, 4_000), (5, 32_000), (6, 60_000), (20, 60_000)],
    )
    def test_standard_curve(self, retry_count, expected):
        assert calculate_retry_delay(retry_count, STANDARD) == expected

    def test_conservative_multiplier(self):
        assert calculate_retry_delay(1, CONSERVATIVE) == 15_000
        assert calculate_retry_delay(3, CONSERVATIVE) == 120_000

    def test_aggressive_capped(self):
        assert calculate_retry_delay(6, AGGRESSIVE) == 30_000

    def test_none_is_zero(self):
        assert calculate_retry_delay(0, NONE) == 0

    def test_huge_exponent_capped(self):
        config = RetryConfig(max_retries=1, initial_delay_ms=1_000, max_delay_ms=5_000, backoff_multiplier=10.0)
        assert calculate_retry_delay(10_000, config) == 5_000

    @pytest.mark.parametrize(
        "config",
        [
            AGGRESSIVE,
            STANDARD,
            CONSERVATIVE,
            NONE,
            RetryConfig(max_retries=8, initial_delay_ms=250, max_delay_ms=10_000, backoff_multiplier=1.5),
            RetryConfig(max_retries=6, initial_delay_ms=3_000, max_delay_ms=3_000, backoff_multiplier=4),
            RetryConfig(max_retries=12, initial_delay_ms=1, max_delay_ms=999, backoff_multiplier=2.7),
        ],
    )
    def test_delays_never_decrease_or_exceed_cap(self, config):
        delays = [calculate_retry_delay(n, config) for n in range(config.max_retries)]

        assert delays == sorted(delays)
        assert all(0 <= delay <= config.max_delay_ms for delay in delays)

    def test_negative_count_rejected(self):
        with pytest.raises(ValueError):
            calculate_retry_delay(-1, STANDARD)


class TestRetryMetadata:
    """Tests for get_retry_metadata."""

    def test_first_attempt_has_none(self):
        assert get_retry_metadata(create_job(data={"repository": "octo/repo"})) is None

    def test_reads_metadata(self):
        job = create_job(
            data={
                RETRY_METADATA_KEY: {
                    "count": 2,
                    "last_error": "timeout",
                    "previous_job_id": "job-2",
                    "root_job_id": "job-1",
                    "next_retry_at": "2026-10-17T10:00:00+00:00",
                }
            }
        )

        metadata = get_retry_metadata(job)

        assert metadata.count == 2
        assert metadata.last_error == "timeout"
        assert metadata.previous_job_id == "job-2"
        assert metadata.root_job_id == "job-1"

    def test_malformed_metadata_ignored(self):
        assert get_retry_metadata(create_job(data={RETRY_METADATA_KEY: {"count": "many"}})) is None
        assert get_retry_metadata(create_job(data={RETRY_METADATA_KEY: "oops"})) is None


# =============================================================================
# Wrapper behavior on the in-memory queue
# =============================================================================


@pytest.fixture
def manager(queue, scheduler, dead_letters):
    return RetryManager(queue, scheduler=scheduler, dead_letter=dead_letters)


class TestRetryBudget:
    """A handler that always fails runs max_retries + 1 times."""

    @pytest.mark.asyncio
    async def test_standard_budget_then_dead_letter(self, queue, manager, scheduler, sleeps, dead_letters):
        handler = AlwaysFails()
        queue.process("job", manager.wrap(handler, STANDARD))

        first_id = await queue.add("job", {"key": "value"})
        await scheduler.join()

        assert handler.calls == 4
        assert sleeps == [1.0, 2.0, 4.0]
        assert len(dead_letters) == 1
        letter = dead_letters.letters[0]
        assert letter.attempts == 4
        assert letter.error == "permanent failure"
        assert letter.job.id == handler.jobs[-1].id

        chain = manager.tracker.get_chain(first_id)
        assert chain.status is RetryChainStatus.DEAD_LETTERED
        assert chain.job_ids == [j.id for j in handler.jobs]
        assert (await queue.get_stats()).failed == 4

    @pytest.mark.asyncio
    async def test_none_preset_fails_fast(self, queue, manager, scheduler, sleeps, dead_letters):
        handler = AlwaysFails()
        queue.process("job", manager.wrap(handler, NONE))

        await queue.add("job", {})
        await scheduler.join()

        assert handler.calls == 1
        assert sleeps == []
        assert dead_letters.letters[0].attempts == 1

    @pytest.mark.asyncio
    async def test_default_config_used_when_omitted(self, queue, scheduler, dead_letters):
        manager = RetryManager(queue, scheduler=scheduler, dead_letter=dead_letters, default_config=FAST)
        handler = AlwaysFails()
        queue.process("job", manager.wrap(handler))

        await queue.add("job", {})
        await scheduler.join()

        assert handler.calls == FAST.max_retries + 1

    @pytest.mark.asyncio
    async def test_permanent_failure_logged_with_data(self, queue, manager, scheduler, caplog):
        queue.process("job", manager.wrap(AlwaysFails("bad payload"), NONE))

        with caplog.at_level(logging.ERROR, logger="hookrelay.services.retry"):
            await queue.add("job", {"repository": "octo/repo"})

        assert "failed permanently after 0 retries" in caplog.text
        assert '"repository": "octo/repo"' in caplog.text


class TestRetryRecovery:
    """A handler that recovers stops the chain."""

    @pytest.mark.asyncio
    async def test_succeeds_on_third_attempt(self, queue, manager, scheduler, sleeps, dead_letters, caplog):
        handler = FlakyHandler(failures=2)
        queue.process("job", manager.wrap(handler, STANDARD))

        with caplog.at_level(logging.INFO, logger="hookrelay.services.retry"):
            first_id = await queue.add("job", {"key": "value"})
            await scheduler.join()

        assert handler.calls == 3
        assert sleeps == [1.0, 2.0]
        assert len(dead_letters) == 0
        assert manager.tracker.get_chain(first_id).status is RetryChainStatus.COMPLETED
        assert "succeeded after 2 retries" in caplog.text

        # the first attempts stay failed, the last one completed
        statuses = [(await queue.get_job(j.id)).status for j in handler.jobs]
        assert statuses == [JobStatus.FAILED, JobStatus.FAILED, JobStatus.COMPLETED]

    @pytest.mark.asyncio
    async def test_retry_job_carries_metadata(self, queue, manager, scheduler):
        handler = FlakyHandler(failures=2, error="connection reset")
        queue.process("job", manager.wrap(handler, STANDARD))

        first_id = await queue.add("job", {"key": "value"})
        await scheduler.join()

        second, third = handler.jobs[1], handler.jobs[2]
        assert second.id != first_id
        assert second.name == "job"
        assert second.data["key"] == "value"
        assert second.data[RETRY_METADATA_KEY]["count"] == 1
        assert second.data[RETRY_METADATA_KEY]["root_job_id"] == first_id
        assert second.data[RETRY_METADATA_KEY]["previous_job_id"] == first_id
        assert second.data[RETRY_METADATA_KEY]["last_error"] == "connection reset"
        assert second.data[RETRY_METADATA_KEY]["next_retry_at"]

        meta = get_retry_metadata(third)
        assert meta.count == 2
        assert meta.root_job_id == first_id
        assert meta.previous_job_id == second.id
        # metadata is replaced, never nested
        assert RETRY_METADATA_KEY not in third.data[RETRY_METADATA_KEY]

    @pytest.mark.asyncio
    async def test_wrapper_reraises_original_error(self, queue, manager):
        wrapped = manager.wrap(AlwaysFails("original"), NONE)

        with pytest.raises(RuntimeError, match="original"):
            await wrapped(create_job())

    @pytest.mark.asyncio
    async def test_success_passes_through(self, queue, manager, scheduler, sleeps):
        handler = FlakyHandler(failures=0)
        queue.process("job", manager.wrap(handler, STANDARD))

        job_id = await queue.add("job", {})
        await scheduler.join()

        assert handler.calls == 1
        assert sleeps == []
        assert manager.tracker.find_chain(job_id).status is RetryChainStatus.COMPLETED


class TestRetryFailurePaths:
    """Tests for failures around the retry itself."""

    @pytest.mark.asyncio
    async def test_enqueue_failure_dead_letters(self, queue, manager, scheduler, dead_letters):
        queue.process("job", manager.wrap(AlwaysFails(), STANDARD))

        first_id = await queue.add("job", {})
        await queue.close()
        await scheduler.join()

        assert len(dead_letters) == 1
        assert dead_letters.letters[0].error.startswith("Retry enqueue failed")
        assert dead_letters.letters[0].attempts == 1
        assert manager.tracker.get_chain(first_id).status is RetryChainStatus.DEAD_LETTERED

    @pytest.mark.asyncio
    async def test_dead_letter_sink_failure_contained(self, queue, scheduler, caplog):
        class BrokenSink:
            async def dead_letter(self, job, error, attempts):
                raise OSError("disk full")

        manager = RetryManager(queue, scheduler=scheduler, dead_letter=BrokenSink())
        wrapped = manager.wrap(AlwaysFails("handler error"), NONE)

        with caplog.at_level(logging.ERROR, logger="hookrelay.services.retry"):
            with pytest.raises(RuntimeError, match="handler error"):
                await wrapped(create_job())

        assert "Dead-letter sink failed" in caplog.text

    @pytest.mark.asyncio
    async def test_with_retry_logs_dead_letter_by_default(self, queue, caplog):
        handler = with_retry(AlwaysFails(), queue, NONE)

        with caplog.at_level(logging.ERROR, logger="hookrelay.services.retry"):
            with pytest.raises(RuntimeError):
                await handler(create_job())

        assert "DEAD LETTER" in caplog.text


class TestRetryCancellation:
    """Pending retries can be revoked."""

    @pytest.mark.asyncio
    async def test_cancel_pending_retry(self, dead_letters):
        queue = InMemoryJobQueue()
        manager = RetryManager(queue, dead_letter=dead_letters)
        handler = AlwaysFails()
        queue.process("job", manager.wrap(handler, SLOW))

        first_id = await queue.add("job", {})
        assert manager.scheduler.is_scheduled(first_id)

        assert manager.cancel(first_id) is True
        await manager.scheduler.join()

        assert handler.calls == 1
        assert len(dead_letters) == 0
        assert manager.tracker.get_chain(first_id).status is RetryChainStatus.CANCELLED
        assert manager.cancel(first_id) is False

    @pytest.mark.asyncio
    async def test_shutdown_cancels_everything(self):
        queue = InMemoryJobQueue()
        manager = RetryManager(queue)
        handler = AlwaysFails()
        queue.process("job", manager.wrap(handler, SLOW))

        ids = [await queue.add("job", {"n": n}) for n in range(3)]
        assert manager.scheduler.pending_count == 3

        assert await manager.shutdown() == 3
        await manager.scheduler.join()

        assert handler.calls == 3
        assert manager.scheduler.pending_count == 0
        assert manager.pending_failures == {}
        assert all(
            manager.tracker.get_chain(i).status is RetryChainStatus.CANCELLED for i in ids
        )

    @pytest.mark.asyncio
    async def test_shutdown_dead_letters_cancelled_chains(self, dead_letters):
        """Test a job with retry budget left is not lost when the process stops."""
        queue = InMemoryJobQueue()
        manager = RetryManager(queue, dead_letter=dead_letters, default_config=STANDARD)
        queue.process("job", manager.wrap(AlwaysFails("upstream 502")))

        job_id = await queue.add("job", {"n": 1})

        assert await manager.shutdown() == 1

        [letter] = dead_letters.letters
        assert letter.job.id == job_id
        assert letter.attempts == 1
        assert "Retry cancelled at shutdown" in letter.error
        assert "upstream 502" in letter.error
        assert [job.status for job in queue.list_jobs()] == [JobStatus.FAILED]

    @pytest.mark.asyncio
    async def test_individual_cancel_is_not_dead_lettered(self, dead_letters):
        queue = InMemoryJobQueue()
        manager = RetryManager(queue, dead_letter=dead_letters)
        queue.process("job", manager.wrap(AlwaysFails(), SLOW))

        job_id = await queue.add("job", {})
        manager.cancel(job_id)

        assert await manager.shutdown() == 0
        assert len(dead_letters) == 0


# =============================================================================
# Scheduler and tracker
# =============================================================================


class TestRetryScheduler:
    """Tests for RetryScheduler."""

    @pytest.mark.asyncio
    async def test_callback_runs_after_delay(self, scheduler, sleeps):
        fired = []

        async def callback():
            fired.append(True)

        handle = scheduler.schedule("key", 250, callback)
        await scheduler.join()

        assert fired == [True]
        assert sleeps == [0.25]
        assert handle.delay_ms == 250
        assert not scheduler.is_scheduled("key")

    @pytest.mark.asyncio
    async def test_reschedule_replaces_pending(self):
        scheduler = RetryScheduler()
        fired = []

        async def first():
            fired.append("first")

        async def second():
            fired.append("second")

        old = scheduler.schedule("key", 60_000, first)
        scheduler.schedule("key", 0, second)
        await scheduler.join()

        assert fired == ["second"]
        assert old.cancelled

    @pytest.mark.asyncio
    async def test_cancel_unknown_key(self, scheduler):
        assert scheduler.cancel("missing") is False

    @pytest.mark.asyncio
    async def test_callback_error_logged(self, scheduler, caplog):
        async def callback():
            raise RuntimeError("callback broke")

        with caplog.at_level(logging.ERROR, logger="hookrelay.services.retry"):
            scheduler.schedule("key", 0, callback)
            await scheduler.join()

        assert "Scheduled retry callback failed" in caplog.text

    @pytest.mark.asyncio
    async def test_schedule_does_not_block(self):
        scheduler = RetryScheduler()

        async def callback():
            pass

        scheduler.schedule("key", 60_000, callback)
        await asyncio.sleep(0)

        assert scheduler.pending_keys == ["key"]
        assert scheduler.cancel_all() == 1
        await scheduler.join()


class TestRetryTracker:
    """Tests for RetryTracker."""

    def test_chain_follows_attempts(self):
        tracker = RetryTracker()
        tracker.record_attempt("root", "job", "root")
        tracker.mark_retry_scheduled("root", "boom", "2026-10-17T10:00:01+00:00")
        tracker.record_attempt("root", "job", "second")

        chain = tracker.find_chain("second")

        assert chain.root_job_id == "root"
        assert chain.attempts == 2
        assert chain.last_error == "boom"
        assert chain.status is RetryChainStatus.IN_PROGRESS

    def test_retrying_status(self):
        tracker = RetryTracker()
        tracker.record_attempt("root", "job", "root")
        tracker.mark_retry_scheduled("root", "boom", "later")

        chain = tracker.get_chain("root")
        assert chain.status is RetryChainStatus.RETRYING
        assert chain.next_retry_at == "later"

    def test_oldest_chains_evicted(self):
        tracker = RetryTracker(max_chains=2)
        for root in ("a", "b", "c"):
            tracker.record_attempt(root, "job", root)

        assert tracker.get_chain("a") is None
        assert tracker.find_chain("a") is None
        assert tracker.get_chain("c") is not None

    def test_marking_unknown_chain_is_noop(self):
        tracker = RetryTracker()
        tracker.mark_completed("missing")
        assert tracker.get_chain("missing") is None
