"""Wires monitor, pipeline, store and query engine into one service."""

import asyncio
import logging
from datetime import timedelta
from typing import Callable, Optional

from clipsage.config import Settings
from clipsage.core.cache import ClipCache
from clipsage.core.errors import StoreWriteError
from clipsage.core.intelligence import Intelligence
from clipsage.core.monitor import ClipboardMonitor
from clipsage.core.pipeline import EnrichmentPipeline
from clipsage.core.query import QueryEngine
from clipsage.core.storage import ClipStorage
from clipsage.models.schemas import ClipRecord, RawCapture

logger = logging.getLogger(__name__)


class Engine:
    """Owns the background tasks and the shared store.

    Start order is store, pipeline, monitor; stop order is the reverse, with
    the pipeline draining its queue for ``shutdown_grace`` seconds.
    """

    def __init__(
        self,
        settings: Settings,
        intelligence: Optional[Intelligence] = None,
        storage: Optional[ClipStorage] = None,
        reader: Optional[Callable[[], str]] = None,
    ):
        self.settings = settings
        self.intelligence = intelligence or Intelligence(embedding_dim=settings.embedding_dim)
        self.storage = storage or ClipStorage(str(settings.db_path), settings.embedding_dim)
        self.cache = ClipCache(settings.cache_url)

        self.queue: "asyncio.Queue[RawCapture]" = asyncio.Queue(maxsize=settings.queue_size)
        self.monitor = ClipboardMonitor(
            self.queue,
            reader=reader,
            poll_interval=settings.poll_interval,
            max_content_chars=settings.max_content_chars,
            capture_initial=settings.capture_initial,
        )
        self.pipeline = EnrichmentPipeline(
            self.storage,
            summarizer=self.intelligence.summarizer,
            tagger=self.intelligence.tagger,
            embedder=self.intelligence.embedder,
            summary_timeout=settings.summary_timeout,
            tag_timeout=settings.tag_timeout,
            embed_timeout=settings.embed_timeout,
            dedup_window=settings.dedup_window,
            queue=self.queue,
            on_commit=self._after_commit,
        )
        self.query = QueryEngine(
            self.storage,
            embedder=self.intelligence.embedder,
            cache=self.cache,
            page_size=settings.page_size,
            query_embed_timeout=settings.query_embed_timeout,
            min_similarity=settings.min_similarity,
            cache_ttl=settings.query_cache_ttl,
        )

        self._commits_since_retention = 0
        self._commits_since_compaction = 0
        self._started = False

    @classmethod
    async def create(cls, settings: Settings, reader: Optional[Callable[[], str]] = None) -> "Engine":
        intelligence = await Intelligence.create(settings)
        return cls(settings, intelligence=intelligence, reader=reader)

    async def start(self):
        """Open the store (fatal if corrupt) and start background tasks."""
        if self._started:
            return

        total = await self.storage.count()
        logger.info(f"Clip store ready at {self.storage.db_path} ({total} clips)")

        await self.apply_retention()
        await self.compact()
        await self.pipeline.seed()
        self.pipeline.start()
        self.monitor.start()
        self._started = True

    async def stop(self, grace: Optional[float] = None):
        if not self._started:
            return

        await self.monitor.stop()
        await self.pipeline.drain(self.settings.shutdown_grace if grace is None else grace)
        await self.cache.close()
        self._started = False
        logger.info("Engine stopped")

    async def apply_retention(self) -> int:
        """Apply the configured age and size limits. Returns clips removed."""
        removed = 0
        if self.settings.retention_days is not None:
            removed += await self.storage.prune_older_than(
                timedelta(days=self.settings.retention_days)
            )
        if self.settings.max_clips is not None:
            removed += await self.storage.enforce_max_clips(self.settings.max_clips)
        if removed:
            self.pipeline.invalidate()
        return removed

    async def _after_commit(self, record: ClipRecord):
        self._commits_since_retention += 1
        if self._commits_since_retention >= self.settings.retention_every:
            self._commits_since_retention = 0
            await self.apply_retention()

        self._commits_since_compaction += 1
        if self._commits_since_compaction >= self.settings.compact_every:
            self._commits_since_compaction = 0
            await self.compact()

    async def compact(self):
        """Merge the store's small write fragments; a failure is retried next time."""
        try:
            await self.storage.optimize(
                timedelta(seconds=self.settings.compact_cleanup_after)
            )
        except StoreWriteError as e:
            logger.warning(f"Store compaction failed: {e}")

    async def remove_clip(self, clip_id: str) -> bool:
        removed = await self.storage.remove(clip_id)
        if removed:
            self.pipeline.invalidate()
        return removed

    @property
    def running(self) -> bool:
        return self._started
