"""Hybrid keyword + semantic query engine."""

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from clipsage.core.cache import ClipCache
from clipsage.core.errors import EnrichmentError
from clipsage.core.intelligence import Embedder
from clipsage.core.pipeline import with_timeout
from clipsage.core.storage import ClipStorage, keyword_score, match_record
from clipsage.models.schemas import ClipRecord

logger = logging.getLogger(__name__)


@dataclass
class _Candidate:
    record: ClipRecord
    keyword_fields: List[str] = field(default_factory=list)
    exact: bool = False
    similarity: Optional[float] = None

    @property
    def keyword(self) -> bool:
        return bool(self.keyword_fields)

    @property
    def semantic(self) -> bool:
        return self.similarity is not None

    def rank_key(self):
        field_score = keyword_score(self.keyword_fields, self.exact)
        return (self.keyword and self.semantic, field_score, self.record.timestamp)


class QueryEngine:
    """Answers search strings with at most ``page_size`` ranked clips.

    Ranking, highest first: hits found by both keyword and vector search,
    then the strength of the keyword match (summary over tags over content,
    whole-query matches over token matches), then recency.
    """

    def __init__(
        self,
        storage: ClipStorage,
        embedder: Optional[Embedder] = None,
        cache: Optional[ClipCache] = None,
        page_size: int = 50,
        query_embed_timeout: float = 0.2,
        min_similarity: float = 0.55,
        cache_ttl: int = 600,
    ):
        self.storage = storage
        self.embedder = embedder
        self.cache = cache
        self.page_size = page_size
        self.query_embed_timeout = query_embed_timeout
        self.min_similarity = min_similarity
        self.cache_ttl = cache_ttl

    async def recent(self) -> List[ClipRecord]:
        return await self.storage.recent(self.page_size)

    async def search(self, query: Optional[str]) -> List[ClipRecord]:
        if not query or not query.strip():
            return await self.recent()

        query = query.strip()
        keyword_hits, query_vector = await asyncio.gather(
            self.storage.search(query, self.page_size),
            self.embed_query(query),
        )

        candidates: Dict[str, _Candidate] = {}
        for hit in keyword_hits:
            candidate = candidates.setdefault(hit.record.id, _Candidate(hit.record))
            candidate.keyword_fields = hit.matched_fields
            candidate.exact = hit.exact

        if query_vector is not None:
            for hit in await self._semantic_hits(query_vector):
                candidate = candidates.get(hit.record.id)
                if candidate is None:
                    # Keyword hits beyond the first page still count as keyword hits
                    candidate = candidates[hit.record.id] = _Candidate(hit.record)
                    match = match_record(query, hit.record)
                    if match is not None:
                        candidate.keyword_fields, candidate.exact = match
                candidate.similarity = hit.similarity

        ranked = sorted(candidates.values(), key=_Candidate.rank_key, reverse=True)
        return [candidate.record for candidate in ranked[: self.page_size]]

    async def semantic_search(self, query: Optional[str]) -> List[ClipRecord]:
        """Vector-only search; empty when the query cannot be embedded."""
        if not query or not query.strip():
            return []

        query_vector = await self.embed_query(query.strip())
        if query_vector is None:
            return []

        hits = await self._semantic_hits(query_vector)
        hits.sort(key=lambda hit: (hit.similarity, hit.record.timestamp), reverse=True)
        return [hit.record for hit in hits]

    async def _semantic_hits(self, query_vector: List[float]):
        hits = await self.storage.vector_search(
            query_vector, self.page_size, model=self.embedder.model_id
        )
        return [
            hit
            for hit in hits
            if hit.similarity is not None and hit.similarity >= self.min_similarity
        ]

    async def embed_query(self, query: str) -> Optional[List[float]]:
        """Query embedding within the query timeout, or None."""
        if self.embedder is None:
            return None

        digest = hashlib.sha256(query.encode("utf-8")).hexdigest()
        cache_key = f"query:{self.embedder.model_id}:{digest}"
        if self.cache is not None:
            cached = await self.cache.get(cache_key)
            if cached:
                return cached

        try:
            vector = await with_timeout(
                "query_embed", self.embedder.embed(query), self.query_embed_timeout
            )
        except EnrichmentError as e:
            logger.debug(f"Keyword-only search, query not embedded: {e}")
            return None

        vector = [float(x) for x in vector]
        if len(vector) != self.storage.embedding_dim:
            logger.warning(
                f"Query embedding has {len(vector)} dimensions, "
                f"store holds {self.storage.embedding_dim}"
            )
            return None

        if self.cache is not None:
            await self.cache.set(cache_key, vector, ttl=self.cache_ttl)
        return vector
