"""
Tests for batch connectivity testing and the advisory test lock.
"""
import asyncio

import pytest

from channeldeck.errors import NotFoundError, StorageError, TestLockBusy
from channeldeck.models.channel import ChannelIn, TestResult, TestStatus
from channeldeck.services.locks import TestLock
from channeldeck.services.store import ChannelStore
from channeldeck.services.tester import BatchTestOrchestrator


class StubProber:
    """Answers from a url -> working table, optionally after a delay."""

    def __init__(self, outcomes=None, delay=0.0):
        self.outcomes = outcomes or {}
        self.delay = delay
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def probe(self, url, timeout_ms=None):
        self.calls.append(url)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            working = self.outcomes.get(url, True)
            return TestResult(
                working=working,
                status_code=200 if working else 404,
                response_time_ms=12,
                error_reason=None if working else "http_status",
                message="Stream is accessible" if working else "HTTP 404",
            )
        finally:
            self.in_flight -= 1


class GatedProber(StubProber):
    """Blocks every probe until ``release`` is set."""

    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def probe(self, url, timeout_ms=None):
        self.started.set()
        await self.release.wait()
        return await super().probe(url, timeout_ms)


class FailingUpdateStore(ChannelStore):
    """Store whose status write fails for selected channels."""

    def __init__(self, db_path, fail_for):
        super().__init__(db_path)
        self.fail_for = set(fail_for)

    async def update_status(self, channel_id, result, tested_at=None):
        if channel_id in self.fail_for:
            raise StorageError("Database error: disk I/O error")
        return await super().update_status(channel_id, result, tested_at)


class CrashingStub(StubProber):
    """Raises an unexpected error for selected URLs."""

    def __init__(self, broken):
        super().__init__()
        self.broken = set(broken)

    async def probe(self, url, timeout_ms=None):
        if url in self.broken:
            raise RuntimeError("stream check crashed")
        return await super().probe(url, timeout_ms)


class BrokenLookupStore(ChannelStore):
    """Store whose lookup raises a non-storage error for selected channels."""

    def __init__(self, db_path, fail_for):
        super().__init__(db_path)
        self.fail_for = set(fail_for)

    async def find_by_id(self, channel_id):
        if channel_id in self.fail_for:
            raise ValueError("row could not be decoded")
        return await super().find_by_id(channel_id)


def catalog(count):
    return [
        ChannelIn(channel_id=f"ch{i}", channel_name=f"Channel {i}", channel_url=f"https://example.com/{i}.m3u8")
        for i in range(count)
    ]


def orchestrator_for(store, prober, concurrency=4, **lock_kwargs):
    return BatchTestOrchestrator(
        store, prober=prober, lock=TestLock(store, **lock_kwargs), concurrency=concurrency
    )


class TestBatchRun:
    """Test suite for run_batch / run_single / run_catalog."""

    @pytest.mark.asyncio
    async def test_missing_channel_is_skipped(self, seeded_store):
        orchestrator = orchestrator_for(seeded_store, StubProber())

        summary = await orchestrator.run_batch(["bbc1", "doesNotExist", "itv1"])

        assert summary.tested == 3
        assert summary.working == 2
        assert summary.not_working == 0
        assert summary.cancelled is False
        first, missing, last = summary.results
        assert first.channel_id == "bbc1" and first.result.working is True
        assert missing.not_found is True
        assert missing.result is None
        assert last.channel_id == "itv1" and last.result is not None

    @pytest.mark.asyncio
    async def test_results_are_persisted(self, seeded_store):
        prober = StubProber(outcomes={"https://example.com/itv1.m3u8": False})
        orchestrator = orchestrator_for(seeded_store, prober)

        summary = await orchestrator.run_batch(["bbc1", "itv1"])

        assert summary.working == 1
        assert summary.not_working == 1

        bbc = await seeded_store.find_by_id("bbc1")
        assert bbc.status is TestStatus.WORKING
        assert bbc.is_working is True
        assert bbc.response_time == 12
        assert bbc.last_tested is not None
        assert bbc.is_testing is False

        itv = await seeded_store.find_by_id("itv1")
        assert itv.status is TestStatus.NOT_WORKING
        assert itv.is_working is False

    @pytest.mark.asyncio
    async def test_storage_failure_is_isolated(self, tmp_path):
        store = FailingUpdateStore(str(tmp_path / "flaky.db"), fail_for={"validId2"})
        await store.initialize()
        await store.upsert_channels([
            ChannelIn(channel_id="validId1", channel_name="One", channel_url="https://example.com/1"),
            ChannelIn(channel_id="validId2", channel_name="Two", channel_url="https://example.com/2"),
        ])
        orchestrator = orchestrator_for(store, StubProber(), concurrency=1)

        summary = await orchestrator.run_batch(["validId1", "doesNotExist", "validId2"])

        assert summary.tested == 3
        first, missing, failed = summary.results
        assert first.error is None
        assert first.result.working is True
        assert missing.not_found is True
        assert failed.error.startswith("Failed to save result")
        assert failed.result.working is True

        assert (await store.find_by_id("validId1")).status is TestStatus.WORKING
        unsaved = await store.find_by_id("validId2")
        assert unsaved.status is TestStatus.UNTESTED
        assert unsaved.is_testing is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("concurrency", [1, 4])
    async def test_unexpected_stream_check_error_is_isolated(self, seeded_store, concurrency):
        stub = CrashingStub(broken={"https://example.com/bbc1.m3u8"})
        orchestrator = orchestrator_for(seeded_store, stub, concurrency=concurrency)

        summary = await orchestrator.run_batch(["bbc1", "itv1", "cnn"])

        assert summary.tested == 3
        assert summary.working == 2
        assert summary.not_working == 0
        failed, itv, cnn = summary.results
        assert failed.error == "Test failed: RuntimeError"
        assert failed.result is None
        assert failed.channel_name == "BBC One"
        assert itv.result.working is True
        assert cnn.result.working is True

        unsaved = await seeded_store.find_by_id("bbc1")
        assert unsaved.status is TestStatus.UNTESTED
        assert unsaved.is_testing is False
        assert (await seeded_store.find_by_id("itv1")).status is TestStatus.WORKING
        assert await orchestrator.is_locked() is False

    @pytest.mark.asyncio
    async def test_unexpected_lookup_error_is_isolated(self, tmp_path):
        store = BrokenLookupStore(str(tmp_path / "broken.db"), fail_for={"ch1"})
        await store.initialize()
        await store.upsert_channels(catalog(3))
        orchestrator = orchestrator_for(store, StubProber(), concurrency=2)

        summary = await orchestrator.run_batch(["ch0", "ch1", "ch2"])

        assert summary.tested == 3
        assert summary.working == 2
        first, broken, last = summary.results
        assert broken.error == "Test failed: ValueError"
        assert broken.not_found is False
        assert broken.result is None
        assert first.result.working is True and last.result.working is True
        assert (await store.find_by_id("ch0")).status is TestStatus.WORKING
        assert (await store.find_by_id("ch2")).status is TestStatus.WORKING

    @pytest.mark.asyncio
    async def test_duplicate_ids_tested_once(self, seeded_store):
        prober = StubProber()
        orchestrator = orchestrator_for(seeded_store, prober)

        summary = await orchestrator.run_batch(["bbc1", "bbc1", "itv1"])

        assert summary.tested == 2
        assert len(prober.calls) == 2

    @pytest.mark.asyncio
    async def test_worker_pool_is_bounded(self, store):
        await store.upsert_channels(catalog(10))
        prober = StubProber(delay=0.02)
        orchestrator = orchestrator_for(store, prober, concurrency=3)

        summary = await orchestrator.run_batch([f"ch{i}" for i in range(10)])

        assert summary.tested == 10
        assert 1 <= prober.max_in_flight <= 3

    @pytest.mark.asyncio
    async def test_results_keep_request_order(self, store):
        await store.upsert_channels(catalog(6))
        orchestrator = orchestrator_for(store, StubProber(delay=0.01), concurrency=4)
        ids = ["ch5", "ch0", "ch3", "ch1", "ch4", "ch2"]

        summary = await orchestrator.run_batch(ids)

        assert [item.channel_id for item in summary.results] == ids

    @pytest.mark.asyncio
    async def test_empty_batch(self, store):
        orchestrator = orchestrator_for(store, StubProber())

        summary = await orchestrator.run_batch([])

        assert summary.tested == 0
        assert summary.cancelled is False
        assert await orchestrator.is_locked() is False

    @pytest.mark.asyncio
    async def test_run_catalog_uses_catalog_order(self, seeded_store):
        prober = StubProber()
        orchestrator = orchestrator_for(seeded_store, prober)

        summary = await orchestrator.run_catalog(limit=2)

        assert [item.channel_id for item in summary.results] == ["cnn", "itv1"]

    @pytest.mark.asyncio
    async def test_run_single(self, seeded_store):
        orchestrator = orchestrator_for(seeded_store, StubProber())

        result = await orchestrator.run_single("bbc1")

        assert result.working is True
        assert (await seeded_store.find_by_id("bbc1")).status is TestStatus.WORKING
        assert await orchestrator.is_locked() is False

    @pytest.mark.asyncio
    async def test_run_single_unknown_channel(self, seeded_store):
        orchestrator = orchestrator_for(seeded_store, StubProber())

        with pytest.raises(NotFoundError):
            await orchestrator.run_single("doesNotExist")
        assert await orchestrator.is_locked() is False


class TestMutualExclusion:

    @pytest.mark.asyncio
    async def test_second_run_is_rejected(self, seeded_store):
        prober = GatedProber()
        orchestrator = orchestrator_for(seeded_store, prober)

        running = asyncio.create_task(orchestrator.run_batch(["bbc1", "itv1"]))
        await prober.started.wait()

        assert await orchestrator.is_locked() is True
        with pytest.raises(TestLockBusy):
            await orchestrator.run_batch(["bbc1"])
        with pytest.raises(TestLockBusy):
            await orchestrator.run_single("itv1")

        prober.release.set()
        summary = await running

        assert summary.tested == 2
        assert await orchestrator.is_locked() is False

    @pytest.mark.asyncio
    async def test_concurrent_starts_admit_one(self, seeded_store):
        prober = GatedProber()
        orchestrator = orchestrator_for(seeded_store, prober)

        first = asyncio.create_task(orchestrator.run_batch(["bbc1"]))
        second = asyncio.create_task(orchestrator.run_batch(["itv1"]))
        done, pending = await asyncio.wait({first, second}, return_when=asyncio.FIRST_COMPLETED)

        loser = done.pop()
        assert isinstance(loser.exception(), TestLockBusy)

        prober.release.set()
        winner = pending.pop()
        summary = await winner
        assert summary.tested == 1
        assert len(prober.calls) == 1

    @pytest.mark.asyncio
    async def test_lock_shared_across_orchestrators(self, seeded_store):
        """Two orchestrators on one database see each other's lock."""
        prober = GatedProber()
        first = orchestrator_for(seeded_store, prober)
        second = orchestrator_for(seeded_store, StubProber())

        running = asyncio.create_task(first.run_batch(["bbc1"]))
        await prober.started.wait()

        assert await second.is_locked() is True
        with pytest.raises(TestLockBusy):
            await second.run_batch(["itv1"])

        prober.release.set()
        await running


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_stops_dispatch(self, store):
        await store.upsert_channels(catalog(3))
        prober = GatedProber()
        orchestrator = orchestrator_for(store, prober, concurrency=1)

        running = asyncio.create_task(orchestrator.run_batch(["ch0", "ch1", "ch2"]))
        await prober.started.wait()

        assert orchestrator.cancel() is True
        prober.release.set()
        summary = await running

        assert summary.cancelled is True
        assert summary.tested == 1
        # The in-flight probe still persisted its result
        assert (await store.find_by_id("ch0")).status is TestStatus.WORKING
        assert (await store.find_by_id("ch1")).status is TestStatus.UNTESTED
        assert await orchestrator.is_locked() is False

    @pytest.mark.asyncio
    async def test_cancel_when_idle(self, store):
        assert orchestrator_for(store, StubProber()).cancel() is False

    @pytest.mark.asyncio
    async def test_deadline_stops_dispatch(self, store):
        await store.upsert_channels(catalog(3))
        orchestrator = orchestrator_for(store, StubProber(delay=0.05), concurrency=1)

        summary = await orchestrator.run_batch(["ch0", "ch1", "ch2"], deadline=0.01)

        assert summary.cancelled is True
        assert summary.tested == 1


class TestTestLock:

    @pytest.mark.asyncio
    async def test_exclusive(self, store):
        lock = TestLock(store)

        holder = await lock.acquire()
        with pytest.raises(TestLockBusy):
            await lock.acquire()

        assert await lock.release(holder) is True
        assert await lock.is_locked() is False
        await lock.acquire()

    @pytest.mark.asyncio
    async def test_expired_lock_is_taken_over(self, store):
        lock = TestLock(store, ttl_seconds=0.05)
        await lock.acquire("crashed-worker")

        await asyncio.sleep(0.1)

        assert await lock.is_locked() is False
        holder = await lock.acquire()
        assert holder != "crashed-worker"
        assert await lock.is_locked() is True

    @pytest.mark.asyncio
    async def test_refresh_extends_expiry(self, store):
        lock = TestLock(store, ttl_seconds=0.2)
        holder = await lock.acquire()

        await asyncio.sleep(0.1)
        assert await lock.refresh(holder) is True
        await asyncio.sleep(0.15)

        assert await lock.is_locked() is True

    @pytest.mark.asyncio
    async def test_release_by_other_holder_is_ignored(self, store):
        lock = TestLock(store)
        await lock.acquire("owner")

        assert await lock.release("someone-else") is False
        assert await lock.is_locked() is True

    @pytest.mark.asyncio
    async def test_force_clear(self, store):
        lock = TestLock(store)
        await lock.acquire()

        assert await lock.force_clear() is True
        assert await lock.is_locked() is False
        assert await lock.force_clear() is False

    @pytest.mark.asyncio
    async def test_hold_releases_on_error(self, store):
        lock = TestLock(store)

        with pytest.raises(RuntimeError):
            async with lock.hold():
                raise RuntimeError("boom")

        assert await lock.is_locked() is False
