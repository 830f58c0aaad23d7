"""Enrichment pipeline: raw capture in, committed ClipRecord out."""

import asyncio
import contextlib
import hashlib
import logging
import uuid
from collections import Counter, deque
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional, Tuple, TypeVar

from clipsage.core.errors import (
    DuplicateCapture,
    DuplicateId,
    EnrichmentError,
    EnrichmentTimeout,
    EnrichmentUnavailable,
    StoreError,
    StoreReadError,
    StoreWriteError,
)
from clipsage.core.intelligence import (
    Embedder,
    Summarizer,
    Tagger,
    heuristic_summary,
    heuristic_tags,
)
from clipsage.core.storage import ClipStorage
from clipsage.models.schemas import ClipRecord, RawCapture, normalize_tags

logger = logging.getLogger(__name__)

T = TypeVar("T")


def normalize_content(content: str) -> str:
    """Unix line endings, no trailing spaces on lines, trimmed."""
    text = content.replace("\r\n", "\n").replace("\r", "\n")
    return "\n".join(line.rstrip() for line in text.split("\n")).strip()


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


async def with_timeout(step: str, call: Awaitable[T], timeout: float) -> T:
    """Await a capability call, mapping every failure to an EnrichmentError."""
    try:
        return await asyncio.wait_for(call, timeout)
    except asyncio.TimeoutError as e:
        raise EnrichmentTimeout(step, f"no result within {timeout}s") from e
    except EnrichmentError:
        raise
    except Exception as e:
        raise EnrichmentUnavailable(step, f"{type(e).__name__}: {e}") from e


class EnrichmentPipeline:
    """Turns raw captures into stored clips, one at a time, in arrival order.

    Summary, tags and embedding are computed concurrently, each under its own
    timeout and each with its own fallback, so a capture always commits within
    the slowest step timeout plus the store write.
    """

    def __init__(
        self,
        storage: ClipStorage,
        summarizer: Optional[Summarizer] = None,
        tagger: Optional[Tagger] = None,
        embedder: Optional[Embedder] = None,
        summary_timeout: float = 5.0,
        tag_timeout: float = 5.0,
        embed_timeout: float = 5.0,
        dedup_window: int = 1,
        queue: Optional["asyncio.Queue[RawCapture]"] = None,
        on_commit: Optional[Callable[[ClipRecord], Awaitable[None]]] = None,
    ):
        if dedup_window < 1:
            raise ValueError("dedup_window must be at least 1")

        self.storage = storage
        self.summarizer = summarizer
        self.tagger = tagger
        self.embedder = embedder
        self.summary_timeout = summary_timeout
        self.tag_timeout = tag_timeout
        self.embed_timeout = embed_timeout
        self.dedup_window = dedup_window
        self.queue = queue
        self.on_commit = on_commit

        self._recent_hashes: deque = deque(maxlen=dedup_window)
        self._last_timestamp: Optional[datetime] = None
        self._seeded = False
        self._task: Optional[asyncio.Task] = None
        self.stats: Counter = Counter()

    # ---------- state ----------

    async def seed(self):
        """Load the dedup window and last timestamp from the store."""
        recent = await self.storage.recent(self.dedup_window)
        self._recent_hashes.clear()
        # Oldest first so the newest hash sits at the right end
        self._recent_hashes.extend(record.content_hash for record in reversed(recent))
        self._last_timestamp = recent[0].timestamp if recent else None
        self._seeded = True

    def invalidate(self):
        """Forget cached store state, e.g. after clips were deleted."""
        self._seeded = False

    def _check_duplicate(self, digest: str):
        if digest in self._recent_hashes:
            raise DuplicateCapture(digest)

    def _next_timestamp(self, captured_at: datetime) -> datetime:
        # Strictly increasing in commit order
        if self._last_timestamp is not None and captured_at <= self._last_timestamp:
            return self._last_timestamp + timedelta(microseconds=1)
        return captured_at

    # ---------- enrichment steps ----------

    def _fallback(self, error: EnrichmentError):
        kind = "timeout" if isinstance(error, EnrichmentTimeout) else "failure"
        self.stats[f"{error.step}_{kind}"] += 1
        logger.warning(f"Enrichment step degraded, using fallback: {error}")

    async def _summarize(self, content: str) -> str:
        if self.summarizer is not None:
            try:
                summary = await with_timeout(
                    "summarize", self.summarizer.summarize(content), self.summary_timeout
                )
                summary = (summary or "").strip()
                if summary:
                    return summary
                self._fallback(EnrichmentError("summarize", "empty summary"))
            except EnrichmentError as e:
                self._fallback(e)

        return heuristic_summary(content)

    async def _tag(self, content: str) -> List[str]:
        if self.tagger is not None:
            try:
                tags = await with_timeout("tag", self.tagger.tag(content), self.tag_timeout)
                return normalize_tags(tags)
            except EnrichmentError as e:
                self._fallback(e)

        try:
            return heuristic_tags(content)
        except Exception:
            logger.exception("Rule-based tagging failed")
            return []

    async def _embed(self, content: str) -> Tuple[Optional[List[float]], str]:
        if self.embedder is None:
            return None, ""

        try:
            vector = await with_timeout("embed", self.embedder.embed(content), self.embed_timeout)
            if len(vector) != self.storage.embedding_dim:
                raise EnrichmentError(
                    "embed",
                    f"got {len(vector)} dimensions, store holds {self.storage.embedding_dim}",
                )
        except EnrichmentError as e:
            self._fallback(e)
            return None, ""

        return [float(x) for x in vector], self.embedder.model_id

    # ---------- processing ----------

    async def process(self, capture: RawCapture) -> Optional[ClipRecord]:
        """Enrich and commit one capture. Returns None when nothing was stored."""
        if not self._seeded:
            try:
                await self.seed()
            except StoreReadError as e:
                logger.warning(f"Cannot load recent clips for deduplication: {e}")

        content = normalize_content(capture.content)
        if not content:
            self.stats["empty"] += 1
            return None

        digest = content_hash(content)
        try:
            self._check_duplicate(digest)
        except DuplicateCapture as e:
            self.stats["duplicates"] += 1
            logger.debug(str(e))
            return None

        summary, tags, (embedding, embedding_model) = await asyncio.gather(
            self._summarize(content),
            self._tag(content),
            self._embed(content),
        )

        record = ClipRecord(
            id=uuid.uuid4().hex,
            content=content,
            content_hash=digest,
            summary=summary,
            tags=tags,
            embedding=embedding,
            embedding_model=embedding_model,
            timestamp=self._next_timestamp(capture.captured_at),
            source=capture.source,
        )

        try:
            try:
                await self.storage.insert(record)
            except DuplicateId:
                logger.warning(f"Clip id {record.id} collided, assigning a new one")
                record.id = uuid.uuid4().hex
                await self.storage.insert(record)
        except StoreError as e:
            self.stats["write_failures"] += 1
            logger.error(f"Capture lost, store write failed: {e}")
            return None

        self._recent_hashes.append(digest)
        self._last_timestamp = record.timestamp
        self.stats["accepted"] += 1
        if embedding is None:
            self.stats["pending_embeddings"] += 1

        logger.debug(f"Committed clip {record.id} ({len(record.tags)} tags)")

        if self.on_commit is not None:
            try:
                await self.on_commit(record)
            except Exception:
                logger.exception("Commit hook failed")
        return record

    async def reembed_pending(self, limit: int = 100) -> int:
        """Embed clips stored without an embedding. Returns how many succeeded."""
        if self.embedder is None:
            return 0

        done = 0
        for record in await self.storage.pending_embeddings(limit):
            embedding, model_id = await self._embed(record.content)
            if embedding is None:
                continue
            try:
                if await self.storage.update_embedding(record.id, embedding, model_id):
                    done += 1
            except StoreWriteError as e:
                logger.error(f"Cannot store embedding for {record.id}: {e}")

        if done:
            logger.info(f"Re-embedded {done} clips")
        return done

    # ---------- worker ----------

    async def run(self):
        """Consume the queue forever, one capture at a time."""
        if self.queue is None:
            raise RuntimeError("Pipeline has no queue to consume")

        while True:
            capture = await self.queue.get()
            try:
                await self.process(capture)
            except Exception:
                # One bad capture must not stop the worker
                logger.exception("Unexpected error while processing capture")
            finally:
                self.queue.task_done()

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="clipsage-pipeline")
        return self._task

    async def drain(self, grace: float):
        """Finish queued captures for up to ``grace`` seconds, then stop."""
        if self.queue is not None and self._task is not None:
            try:
                await asyncio.wait_for(self.queue.join(), grace)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Shutdown grace expired, abandoning {self.queue.qsize()} queued captures"
                )

        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
