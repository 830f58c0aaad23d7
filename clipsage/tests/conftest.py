"""Shared fixtures: a real LanceDB store in a temp dir and fake capabilities."""

import asyncio
import re
from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from clipsage.config import Settings
from clipsage.core.intelligence import Intelligence
from clipsage.core.storage import ClipStorage
from clipsage.engine import Engine
from clipsage.models.schemas import RawCapture

DIM = 4

# Each concept owns one dimension; text with none of these words lands on MISC
CONCEPTS = {
    "fox": 0,
    "dog": 0,
    "cat": 0,
    "animal": 0,
    "animals": 0,
    "python": 1,
    "def": 1,
    "function": 1,
    "code": 1,
    "invoice": 2,
    "payment": 2,
    "bank": 2,
}
MISC = 3


class ConceptEmbedder:
    """Deterministic embedder with hand-checkable cosine similarities."""

    model_id = "concept@4"

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.calls: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)

        vector = [0.0] * DIM
        for word in re.findall(r"\w+", text.lower()):
            if word in CONCEPTS:
                vector[CONCEPTS[word]] += 1.0
        if not any(vector):
            vector[MISC] = 1.0
        return vector


class SlowCapability:
    """Summarizer, tagger and embedder that never answers in time."""

    model_id = "slow@4"

    def __init__(self, delay: float = 5.0):
        self.delay = delay

    async def summarize(self, content: str) -> str:
        await asyncio.sleep(self.delay)
        return "too late"

    async def tag(self, content: str) -> List[str]:
        await asyncio.sleep(self.delay)
        return ["late"]

    async def embed(self, text: str) -> List[float]:
        await asyncio.sleep(self.delay)
        return [1.0] * DIM


class BrokenCapability:
    """Summarizer, tagger and embedder whose backend is down."""

    model_id = "broken@4"

    async def summarize(self, content: str) -> str:
        raise ConnectionError("model server unreachable")

    async def tag(self, content: str) -> List[str]:
        raise ConnectionError("model server unreachable")

    async def embed(self, text: str) -> List[float]:
        raise ConnectionError("model server unreachable")


@pytest.fixture
def storage(tmp_path):
    """Real LanceDB store with 4-dimensional embeddings."""
    return ClipStorage(str(tmp_path / "lancedb"), embedding_dim=DIM)


@pytest.fixture
def concept_embedder():
    return ConceptEmbedder()


@pytest.fixture
def slow_capability():
    return SlowCapability()


@pytest.fixture
def broken_capability():
    return BrokenCapability()


@pytest.fixture
def capture():
    """Factory for captures with increasing capture instants."""
    start = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    counter = {"n": 0}

    def _make(content: str, source: str = "clipboard") -> RawCapture:
        counter["n"] += 1
        return RawCapture(
            content=content,
            captured_at=start + timedelta(seconds=counter["n"]),
            source=source,
        )

    return _make


@pytest.fixture
def settings(tmp_path):
    return Settings(
        data_dir=tmp_path,
        embedding_model=None,
        embedding_dim=DIM,
        auto_detect=False,
        poll_interval=0.01,
        shutdown_grace=2.0,
    )


@pytest.fixture
def clipboard():
    """Mutable stand-in for the system clipboard."""
    return {"value": ""}


@pytest.fixture
def engine(settings, concept_embedder, clipboard):
    """Engine over a temp store, reading the fake clipboard."""
    intelligence = Intelligence(embedding_dim=DIM)
    intelligence.embedder = concept_embedder
    return Engine(settings, intelligence=intelligence, reader=lambda: clipboard["value"])
