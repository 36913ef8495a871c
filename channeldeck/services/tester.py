"""
Batch connectivity testing.

Runs the prober over a set of channels with a fixed pool of workers draining
a shared queue, and writes each channel's test fields back in one update.
Every run (batch, single or catalog page) first takes the advisory test lock,
so overlapping runs are rejected instead of racing on the same status fields.
"""
import asyncio
import logging
from typing import Iterable, Optional

from channeldeck.config import get_settings
from channeldeck.errors import NotFoundError, StorageError
from channeldeck.models.channel import BatchItemResult, BatchSummary, Channel, TestResult
from channeldeck.services.locks import TestLock
from channeldeck.services.prober import ChannelProber
from channeldeck.services.store import ChannelStore, get_store, utcnow

logger = logging.getLogger(__name__)


class BatchTestOrchestrator:
    """Probes channels and persists their test metadata."""

    def __init__(
        self,
        store: ChannelStore,
        prober: Optional[ChannelProber] = None,
        lock: Optional[TestLock] = None,
        concurrency: Optional[int] = None,
    ):
        self.store = store
        self.prober = prober or ChannelProber()
        self.lock = lock or TestLock(store)
        self.concurrency = max(1, concurrency or get_settings().test_concurrency)
        self._cancel_event: Optional[asyncio.Event] = None

    async def is_locked(self) -> bool:
        return await self.lock.is_locked()

    def cancel(self) -> bool:
        """Stop dispatching new probes; in-flight probes still finish and persist."""
        if self._cancel_event is None:
            return False
        self._cancel_event.set()
        logger.info("Batch test cancellation requested")
        return True

    async def run_single(self, channel_id: str) -> TestResult:
        """Test one channel. Unknown ids raise; storage failures propagate."""
        async with self.lock.hold():
            channel = await self.store.find_by_id(channel_id)
            if channel is None:
                raise NotFoundError("Channel not found")
            result = await self.prober.probe(channel.channel_url)
            await self.store.update_status(channel.channel_id, result, utcnow())
            logger.info(f"Tested {channel.channel_id}: {result.message}")
            return result

    async def run_batch(self, channel_ids: Iterable[str], deadline: Optional[float] = None) -> BatchSummary:
        """Test a set of channels.

        Args:
            channel_ids: External channel ids; duplicates are tested once
            deadline: Optional overall budget in seconds; once it passes no
                new probes are dispatched

        Returns:
            Summary with one entry per attempted id, in request order
        """
        ids = list(dict.fromkeys(channel_ids))
        async with self.lock.hold() as holder:
            self._cancel_event = asyncio.Event()
            try:
                return await self._run_pool(ids, holder, deadline)
            finally:
                self._cancel_event = None

    async def run_catalog(self, limit: int = 50, skip: int = 0) -> BatchSummary:
        """Test one page of the catalog, in catalog order."""
        channels = await self.store.find(limit=limit, skip=skip)
        return await self.run_batch([channel.channel_id for channel in channels])

    async def _run_pool(self, ids: list[str], holder: str, deadline: Optional[float]) -> BatchSummary:
        logger.info(f"Starting batch test of {len(ids)} channels ({self.concurrency} workers)")
        loop = asyncio.get_running_loop()
        stop_at = loop.time() + deadline if deadline else None
        cancel_event = self._cancel_event

        queue: asyncio.Queue = asyncio.Queue()
        for index, channel_id in enumerate(ids):
            queue.put_nowait((index, channel_id))
        results: list[Optional[BatchItemResult]] = [None] * len(ids)

        async def worker():
            while True:
                if cancel_event.is_set() or (stop_at is not None and loop.time() >= stop_at):
                    return
                try:
                    index, channel_id = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                results[index] = await self._test_item(channel_id)
                try:
                    await self.lock.refresh(holder)
                except StorageError as e:
                    logger.warning(f"Could not refresh test lock: {e.message}")

        workers = [asyncio.create_task(worker()) for _ in range(min(self.concurrency, len(ids)))]
        try:
            await asyncio.gather(*workers)
        finally:
            for task in workers:
                task.cancel()

        items = [item for item in results if item is not None]
        summary = BatchSummary.from_items(items, cancelled=len(items) < len(ids))
        logger.info(
            f"Batch complete: {summary.working}/{summary.tested} working"
            + (" (stopped early)" if summary.cancelled else "")
        )
        return summary

    async def _test_item(self, channel_id: str) -> BatchItemResult:
        """Test one batch entry. Never raises: failures become the entry's error."""
        item = BatchItemResult(channel_id=channel_id)
        channel = None
        try:
            channel = await self.store.find_by_id(channel_id)
            if channel is None:
                item.not_found = True
                item.error = "Channel not found"
                return item
            item.channel_name = channel.channel_name

            await self._mark_testing(channel, True)
            item.result = await self.prober.probe(channel.channel_url)
            await self.store.update_status(channel.channel_id, item.result, utcnow())
        except StorageError as e:
            logger.error(f"Storage failure while testing {channel_id}: {e.message}")
            item.error = f"Failed to save result: {e.message}" if item.result else e.message
        except Exception as e:
            logger.error(f"Unexpected error while testing {channel_id}: {e}", exc_info=True)
            item.error = f"Test failed: {type(e).__name__}"

        if item.error and channel is not None:
            await self._mark_testing(channel, False)
        return item

    async def _mark_testing(self, channel: Channel, testing: bool):
        try:
            await self.store.mark_testing([channel.channel_id], testing)
        except StorageError as e:
            logger.warning(f"Could not update testing flag for {channel.channel_id}: {e.message}")
        except Exception as e:
            logger.warning(f"Could not update testing flag for {channel.channel_id}: {e}", exc_info=True)


# Singleton
_orchestrator: Optional[BatchTestOrchestrator] = None


async def get_orchestrator() -> BatchTestOrchestrator:
    """Get or create the orchestrator singleton."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = BatchTestOrchestrator(await get_store())
    return _orchestrator
