"""Tests for the enrichment pipeline."""

import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock, patch

from clipsage.core.errors import (
    EnrichmentTimeout,
    EnrichmentUnavailable,
    StoreWriteError,
)
from clipsage.core.pipeline import (
    EnrichmentPipeline,
    content_hash,
    normalize_content,
    with_timeout,
)
from clipsage.models.schemas import RawCapture


class TestNormalization:
    def test_line_endings_and_trailing_space(self):
        assert normalize_content("  hello  \r\nworld\t\r\n\r\n") == "hello\nworld"

    def test_whitespace_only_normalizes_to_empty(self):
        assert normalize_content(" \n\t\r\n ") == ""

    def test_hash_is_stable(self):
        assert content_hash("abc") == content_hash("abc")
        assert content_hash("abc") != content_hash("abd")


class TestWithTimeout:
    @pytest.mark.asyncio
    async def test_passes_result_through(self):
        async def answer():
            return 42

        assert await with_timeout("step", answer(), 1.0) == 42

    @pytest.mark.asyncio
    async def test_timeout_is_reported_as_timeout(self):
        with pytest.raises(EnrichmentTimeout) as exc_info:
            await with_timeout("summarize", asyncio.sleep(5), 0.05)
        assert exc_info.value.step == "summarize"

    @pytest.mark.asyncio
    async def test_backend_error_is_reported_as_unavailable(self, broken_capability):
        with pytest.raises(EnrichmentUnavailable):
            await with_timeout("embed", broken_capability.embed("x"), 1.0)


class TestEnrichmentPipeline:
    """Capture to committed record, against a real store."""

    @pytest.fixture
    def pipeline(self, storage, concept_embedder):
        return EnrichmentPipeline(storage, embedder=concept_embedder)

    @pytest.mark.asyncio
    async def test_commits_enriched_record(self, pipeline, storage, capture):
        record = await pipeline.process(capture("The quick brown fox"))

        assert record is not None
        assert record.content == "The quick brown fox"
        assert record.summary == "The quick brown fox"
        assert record.embedding == [1.0, 0.0, 0.0, 0.0]
        assert record.embedding_model == "concept@4"
        assert record.source == "clipboard"

        stored = await storage.get(record.id)
        assert stored == record

    @pytest.mark.asyncio
    async def test_content_is_normalized_before_storing(self, pipeline, capture):
        record = await pipeline.process(capture("  def main():  \r\n    pass\r\n"))

        assert record.content == "def main():\n    pass"
        assert "python" in record.tags

    @pytest.mark.asyncio
    async def test_whitespace_capture_is_skipped(self, pipeline, storage, capture):
        assert await pipeline.process(capture("   \n\t ")) is None
        assert pipeline.stats["empty"] == 1
        assert await storage.count() == 0

    @pytest.mark.asyncio
    async def test_consecutive_duplicate_is_dropped(self, pipeline, storage, capture):
        await pipeline.process(capture("x"))
        assert await pipeline.process(capture("x")) is None

        assert await storage.count() == 1
        assert pipeline.stats["duplicates"] == 1

    @pytest.mark.asyncio
    async def test_duplicate_after_normalization(self, pipeline, storage, capture):
        await pipeline.process(capture("hello"))
        await pipeline.process(capture("hello  \r\n"))

        assert await storage.count() == 1

    @pytest.mark.asyncio
    async def test_non_consecutive_repeat_is_kept(self, pipeline, storage, capture):
        for text in ("A", "B", "A"):
            await pipeline.process(capture(text))

        recent = await storage.recent(10)
        assert [r.content for r in recent] == ["A", "B", "A"]

    @pytest.mark.asyncio
    async def test_wider_dedup_window(self, storage, capture):
        pipeline = EnrichmentPipeline(storage, dedup_window=2)
        for text in ("A", "B", "A"):
            await pipeline.process(capture(text))

        assert await storage.count() == 2

    def test_dedup_window_must_be_positive(self, storage):
        with pytest.raises(ValueError):
            EnrichmentPipeline(storage, dedup_window=0)

    @pytest.mark.asyncio
    async def test_dedup_survives_restart(self, storage, capture):
        await EnrichmentPipeline(storage).process(capture("same text"))

        # A fresh pipeline seeds its window from the store
        restarted = EnrichmentPipeline(storage)
        assert await restarted.process(capture("same text")) is None
        assert await storage.count() == 1

    @pytest.mark.asyncio
    async def test_invalidate_reloads_after_removal(self, pipeline, storage, capture):
        first = await pipeline.process(capture("old"))
        second = await pipeline.process(capture("new"))

        await storage.remove(second.id)
        pipeline.invalidate()

        # "new" is no longer the latest clip, so it may be captured again
        assert await pipeline.process(capture("new")) is not None
        assert [r.content for r in await storage.recent(10)] == ["new", "old"]
        assert first.id != second.id

    @pytest.mark.asyncio
    async def test_timestamps_strictly_increase(self, pipeline, storage):
        moment = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        records = [
            await pipeline.process(RawCapture(content=text, captured_at=moment))
            for text in ("one", "two", "three")
        ]
        earlier = await pipeline.process(
            RawCapture(content="four", captured_at=moment - timedelta(hours=1))
        )
        records.append(earlier)

        stamps = [r.timestamp for r in records]
        assert stamps == sorted(stamps)
        assert len(set(stamps)) == 4
        assert [r.content for r in await storage.recent(10)] == ["four", "three", "two", "one"]

    @pytest.mark.asyncio
    async def test_naive_capture_instant_after_aware_one(self, pipeline, storage):
        aware = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        first = await pipeline.process(RawCapture(content="aware", captured_at=aware))
        second = await pipeline.process(
            RawCapture(content="naive", captured_at=datetime(2024, 5, 1, 12, 0, 5))
        )

        assert second.timestamp == aware + timedelta(seconds=5)
        assert second.timestamp > first.timestamp
        assert [r.content for r in await storage.recent(10)] == ["naive", "aware"]

    @pytest.mark.asyncio
    async def test_broken_capabilities_still_commit(self, storage, broken_capability, capture):
        pipeline = EnrichmentPipeline(
            storage,
            summarizer=broken_capability,
            tagger=broken_capability,
            embedder=broken_capability,
        )

        record = await pipeline.process(capture("import os\nprint('hi')"))

        assert record is not None
        assert record.summary == "import os"
        assert record.tags == ["code", "python"]
        assert record.embedding is None
        assert pipeline.stats["summarize_failure"] == 1
        assert pipeline.stats["tag_failure"] == 1
        assert pipeline.stats["embed_failure"] == 1
        assert pipeline.stats["pending_embeddings"] == 1

    @pytest.mark.asyncio
    async def test_slow_capabilities_bounded_by_timeouts(self, storage, slow_capability, capture):
        pipeline = EnrichmentPipeline(
            storage,
            summarizer=slow_capability,
            tagger=slow_capability,
            embedder=slow_capability,
            summary_timeout=0.1,
            tag_timeout=0.1,
            embed_timeout=0.2,
        )
        await storage.count()

        loop = asyncio.get_running_loop()
        start_time = loop.time()
        record = await pipeline.process(capture("Meeting notes for Tuesday"))
        elapsed = loop.time() - start_time

        # Steps run concurrently: slowest timeout plus the store write
        assert elapsed < 1.5, f"Commit took {elapsed:.2f}s"
        assert record.summary == "Meeting notes for Tuesday"
        assert record.embedding is None
        assert pipeline.stats["summarize_timeout"] == 1
        assert pipeline.stats["embed_timeout"] == 1

    @pytest.mark.asyncio
    async def test_model_tags_are_normalized(self, storage, capture):
        tagger = Mock()
        tagger.tag = AsyncMock(return_value=["Python", "python ", "", "Web"])
        pipeline = EnrichmentPipeline(storage, tagger=tagger)

        record = await pipeline.process(capture("some text"))

        assert record.tags == ["python", "web"]

    @pytest.mark.asyncio
    async def test_empty_model_summary_falls_back(self, storage, capture):
        summarizer = Mock()
        summarizer.summarize = AsyncMock(return_value="   ")
        pipeline = EnrichmentPipeline(storage, summarizer=summarizer)

        record = await pipeline.process(capture("Short note. More text follows."))

        assert record.summary == "Short note."
        assert pipeline.stats["summarize_failure"] == 1

    @pytest.mark.asyncio
    async def test_wrong_embedding_size_is_discarded(self, storage, capture):
        embedder = Mock()
        embedder.model_id = "wide@8"
        embedder.embed = AsyncMock(return_value=[0.5] * 8)
        pipeline = EnrichmentPipeline(storage, embedder=embedder)

        record = await pipeline.process(capture("text"))

        assert record is not None
        assert record.embedding is None
        assert pipeline.stats["embed_failure"] == 1

    @pytest.mark.asyncio
    async def test_store_failure_loses_only_that_capture(self, pipeline, storage, capture):
        with patch.object(storage, "insert", AsyncMock(side_effect=StoreWriteError("disk full"))):
            assert await pipeline.process(capture("lost")) is None

        assert pipeline.stats["write_failures"] == 1

        kept = await pipeline.process(capture("kept"))
        assert kept is not None
        assert [r.content for r in await storage.recent(10)] == ["kept"]

    @pytest.mark.asyncio
    async def test_failed_write_does_not_poison_dedup(self, pipeline, storage, capture):
        with patch.object(storage, "insert", AsyncMock(side_effect=StoreWriteError("disk full"))):
            await pipeline.process(capture("retry me"))

        assert await pipeline.process(capture("retry me")) is not None

    @pytest.mark.asyncio
    async def test_id_collision_gets_new_id(self, pipeline, storage, capture):
        first = await pipeline.process(capture("first"))

        ids = [Mock(hex=first.id), Mock(hex="fresh-id")]
        with patch("clipsage.core.pipeline.uuid.uuid4", side_effect=ids):
            second = await pipeline.process(capture("second"))

        assert second.id == "fresh-id"
        assert await storage.count() == 2

    @pytest.mark.asyncio
    async def test_commit_hook_receives_record(self, storage, capture):
        seen = []

        async def on_commit(record):
            seen.append(record.id)

        pipeline = EnrichmentPipeline(storage, on_commit=on_commit)
        record = await pipeline.process(capture("hooked"))

        assert seen == [record.id]

    @pytest.mark.asyncio
    async def test_failing_commit_hook_keeps_record(self, storage, capture):
        pipeline = EnrichmentPipeline(
            storage, on_commit=AsyncMock(side_effect=RuntimeError("boom"))
        )

        record = await pipeline.process(capture("still stored"))

        assert record is not None
        assert await storage.count() == 1

    @pytest.mark.asyncio
    async def test_reembed_pending(
        self, storage, broken_capability, concept_embedder, capture
    ):
        offline = EnrichmentPipeline(storage, embedder=broken_capability)
        record = await offline.process(capture("my dog sleeps"))
        assert record.embedding is None

        online = EnrichmentPipeline(storage, embedder=concept_embedder)
        assert await online.reembed_pending() == 1

        hits = await storage.vector_search([1.0, 0.0, 0.0, 0.0], model="concept@4")
        assert [hit.record.id for hit in hits] == [record.id]
        assert await online.reembed_pending() == 0

    @pytest.mark.asyncio
    async def test_reembed_without_embedder(self, storage):
        assert await EnrichmentPipeline(storage).reembed_pending() == 0


class TestPipelineWorker:
    """Queue consumption and shutdown."""

    @pytest.mark.asyncio
    async def test_worker_commits_in_arrival_order(self, storage, capture):
        queue = asyncio.Queue()
        pipeline = EnrichmentPipeline(storage, queue=queue)
        pipeline.start()

        for text in ("first", "second", "third"):
            await queue.put(capture(text))
        await pipeline.drain(5.0)

        assert [r.content for r in await storage.recent(10)] == ["third", "second", "first"]

    @pytest.mark.asyncio
    async def test_drain_gives_up_after_grace(self, storage, slow_capability, capture):
        queue = asyncio.Queue()
        pipeline = EnrichmentPipeline(
            storage,
            summarizer=slow_capability,
            summary_timeout=5.0,
            queue=queue,
        )
        pipeline.start()
        await queue.put(capture("slow one"))
        await queue.put(capture("slow two"))

        loop = asyncio.get_running_loop()
        start_time = loop.time()
        await pipeline.drain(0.1)

        assert loop.time() - start_time < 2.0
        assert queue.qsize() >= 1

    @pytest.mark.asyncio
    async def test_worker_survives_unexpected_errors(self, storage, capture):
        queue = asyncio.Queue()
        pipeline = EnrichmentPipeline(storage, queue=queue)
        original = pipeline.process
        pipeline.process = AsyncMock(side_effect=[RuntimeError("bug"), None])
        pipeline.start()

        await queue.put(capture("bad"))
        await queue.put(capture("fine"))
        await asyncio.wait_for(queue.join(), 2.0)

        assert pipeline.process.await_count == 2
        pipeline.process = original
        await pipeline.drain(0.1)

    @pytest.mark.asyncio
    async def test_run_requires_queue(self, storage):
        with pytest.raises(RuntimeError):
            await EnrichmentPipeline(storage).run()
