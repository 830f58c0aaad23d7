"""LanceDB storage backend for clips."""

import asyncio
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import lancedb
import pandas as pd
import pyarrow as pa

from clipsage.core.errors import (
    DuplicateId,
    StoreCorruptError,
    StoreReadError,
    StoreWriteError,
)
from clipsage.models.schemas import ClipRecord, SearchResult

logger = logging.getLogger(__name__)

TABLE_PREFIX = "clips_d"

# Best keyword field of a hit; a verbatim match of the whole query adds EXACT_BONUS
FIELD_RANK = {"summary": 3, "tags": 2, "content": 1}
EXACT_BONUS = 3

# Everything except the vector column
COLUMNS = [
    "id",
    "content",
    "content_hash",
    "summary",
    "tags",
    "has_embedding",
    "embedding_model",
    "timestamp",
    "source",
]


def clip_schema(dim: int) -> pa.Schema:
    return pa.schema(
        [
            pa.field("id", pa.string(), nullable=False),
            pa.field("content", pa.string(), nullable=False),
            pa.field("content_hash", pa.string(), nullable=False),
            pa.field("summary", pa.string(), nullable=False),
            pa.field("tags", pa.list_(pa.string())),
            pa.field("embedding", pa.list_(pa.float32(), dim)),
            pa.field("has_embedding", pa.bool_()),
            pa.field("embedding_model", pa.string()),
            pa.field("timestamp", pa.int64(), nullable=False),
            pa.field("source", pa.string()),
        ]
    )


def to_micros(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    delta = moment - datetime(1970, 1, 1, tzinfo=timezone.utc)
    return (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds


def from_micros(value: int) -> datetime:
    return datetime(1970, 1, 1, tzinfo=timezone.utc) + timedelta(microseconds=int(value))


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _table_names(db) -> List[str]:
    # list_tables() answers with a paged response object on current lancedb
    response = db.list_tables()
    return list(getattr(response, "tables", response))


def keyword_score(matched_fields: List[str], exact: bool) -> int:
    """Strength of a keyword hit: best matching field, plus a bonus for the whole query."""
    score = max((FIELD_RANK.get(name, 0) for name in matched_fields), default=0)
    return score + EXACT_BONUS if exact else score


def match_record(query: str, record: ClipRecord) -> Optional[Tuple[List[str], bool]]:
    """Keyword match of a single record, as ``search`` computes it.

    Returns ``(matched_fields, exact)`` or None when some token is missing.
    """
    phrase = " ".join(query.lower().split())
    tokens = phrase.split()
    if not tokens:
        return None

    fields = {
        "summary": record.summary.lower(),
        "tags": " ".join(record.tags).lower(),
        "content": record.content.lower(),
    }
    if not all(any(token in text for text in fields.values()) for token in tokens):
        return None

    exact = [name for name, text in fields.items() if phrase in text]
    if exact:
        return exact, True
    return [name for name, text in fields.items() if any(t in text for t in tokens)], False


class ClipStorage:
    """LanceDB storage backend for clips with keyword and vector search.

    The database lives in a single local directory. One table holds every
    field of a clip; its name carries the embedding dimensionality so a change
    of embedding model migrates rows instead of mixing vector sizes.

    Writes are serialized behind an asyncio lock and land as a single
    ``table.add`` call, so readers only ever see whole records. All blocking
    LanceDB calls run in worker threads.
    """

    def __init__(self, db_path: Optional[str] = None, embedding_dim: int = 768):
        self.db_path = str(db_path or os.path.expanduser("~/.clipsage/lancedb"))
        self.embedding_dim = embedding_dim
        self.schema = clip_schema(embedding_dim)
        self.table_name = f"{TABLE_PREFIX}{embedding_dim}"

        self.db = None
        self.table = None
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()

    async def _ensure_initialized(self):
        """Lazy initialization of LanceDB connection."""
        if self._initialized:
            return

        async with self._init_lock:
            if self._initialized:
                return
            await asyncio.to_thread(self._open)
            self._initialized = True

    def _open(self):
        try:
            os.makedirs(self.db_path, exist_ok=True)
            self.db = lancedb.connect(self.db_path)
            names = _table_names(self.db)
            legacy = [
                name
                for name in names
                if name.startswith(TABLE_PREFIX) and name != self.table_name
            ]

            if self.table_name in names:
                self.table = self.db.open_table(self.table_name)
            else:
                self.table = self._create_table(legacy)

            # A finished migration may leave the previous table behind
            for name in legacy:
                logger.info(f"Dropping superseded clip table {name}")
                self.db.drop_table(name)

        except Exception as e:
            raise StoreCorruptError(f"Cannot open clip store at {self.db_path}: {e}") from e

    def _create_table(self, legacy: List[str]):
        rows: List[Dict[str, Any]] = []
        for name in legacy:
            old = self.db.open_table(name)
            frame = old.to_pandas()
            logger.warning(
                f"Embedding size changed, migrating {len(frame)} clips from {name} "
                f"to {self.table_name}; embeddings will need to be recomputed"
            )
            for row in frame.to_dict("records"):
                rows.append(
                    {
                        "id": row["id"],
                        "content": row["content"],
                        "content_hash": row["content_hash"],
                        "summary": row["summary"],
                        "tags": _as_list(row.get("tags")),
                        "embedding": [0.0] * self.embedding_dim,
                        "has_embedding": False,
                        "embedding_model": "",
                        "timestamp": int(row["timestamp"]),
                        "source": _as_optional_str(row.get("source")),
                    }
                )

        if rows:
            data = pa.Table.from_pylist(rows, schema=self.schema)
            return self.db.create_table(self.table_name, data=data, schema=self.schema)
        return self.db.create_table(self.table_name, schema=self.schema)

    def _record_to_row(self, record: ClipRecord) -> Dict[str, Any]:
        embedding = record.embedding
        if embedding is not None and len(embedding) != self.embedding_dim:
            raise StoreWriteError(
                f"Embedding for {record.id} has {len(embedding)} dimensions, "
                f"store expects {self.embedding_dim}"
            )

        return {
            "id": record.id,
            "content": record.content,
            "content_hash": record.content_hash,
            "summary": record.summary,
            "tags": list(record.tags),
            "embedding": embedding if embedding is not None else [0.0] * self.embedding_dim,
            "has_embedding": embedding is not None,
            "embedding_model": record.embedding_model if embedding is not None else "",
            "timestamp": to_micros(record.timestamp),
            "source": record.source,
        }

    # ---------- writes ----------

    async def insert(self, record: ClipRecord) -> None:
        """Append a record. Raises DuplicateId if the id is taken."""
        await self._ensure_initialized()
        row = self._record_to_row(record)

        async with self._write_lock:
            try:
                existing = await asyncio.to_thread(self._find_rows, record.id)
            except Exception as e:
                raise StoreWriteError(f"Cannot check id {record.id}: {e}") from e
            if existing:
                raise DuplicateId(record.id)

            try:
                data = pa.Table.from_pylist([row], schema=self.schema)
                await asyncio.to_thread(self.table.add, data)
            except Exception as e:
                raise StoreWriteError(f"Cannot store clip {record.id}: {e}") from e

        logger.debug(f"Stored clip {record.id}")

    async def update_embedding(self, clip_id: str, embedding: List[float], model: str) -> bool:
        """Attach an embedding to a clip stored without one."""
        await self._ensure_initialized()

        async with self._write_lock:
            try:
                rows = await asyncio.to_thread(self._find_rows, clip_id)
                if not rows:
                    return False

                record = _row_to_record(rows[0])
                record.embedding = embedding
                record.embedding_model = model
                data = pa.Table.from_pylist([self._record_to_row(record)], schema=self.schema)

                def _upsert():
                    (
                        self.table.merge_insert("id")
                        .when_matched_update_all()
                        .execute(data)
                    )

                await asyncio.to_thread(_upsert)
                return True
            except StoreWriteError:
                raise
            except Exception as e:
                raise StoreWriteError(f"Cannot update embedding of {clip_id}: {e}") from e

    async def remove(self, clip_id: str) -> bool:
        """Remove a clip by ID."""
        await self._ensure_initialized()

        async with self._write_lock:
            try:
                existing = await asyncio.to_thread(self._find_rows, clip_id)
                if not existing:
                    return False

                await asyncio.to_thread(self.table.delete, f"id = {_quote(clip_id)}")
                return True
            except Exception as e:
                raise StoreWriteError(f"Cannot remove clip {clip_id}: {e}") from e

    async def prune_older_than(self, age: timedelta) -> int:
        """Delete clips captured more than ``age`` ago. Returns the count removed."""
        cutoff = to_micros(datetime.now(timezone.utc) - age)
        return await self._delete_where(f"timestamp < {cutoff}")

    async def enforce_max_clips(self, max_clips: int) -> int:
        """Keep only the ``max_clips`` most recent clips."""
        await self._ensure_initialized()
        if max_clips < 0:
            raise ValueError("max_clips must not be negative")

        if max_clips == 0:
            return await self.clear()

        frame = await self._scan()
        if len(frame) <= max_clips:
            return 0

        cutoff = int(frame.nlargest(max_clips, "timestamp")["timestamp"].min())
        return await self._delete_where(f"timestamp < {cutoff}")

    async def clear(self) -> int:
        """Delete every clip."""
        return await self._delete_where("id IS NOT NULL")

    async def _delete_where(self, predicate: str) -> int:
        await self._ensure_initialized()

        async with self._write_lock:
            try:
                count = await asyncio.to_thread(self.table.count_rows, predicate)
                if count:
                    await asyncio.to_thread(self.table.delete, predicate)
                    logger.info(f"Deleted {count} clips ({predicate})")
                return count
            except Exception as e:
                raise StoreWriteError(f"Cannot delete clips ({predicate}): {e}") from e

    async def optimize(self, cleanup_older_than: Optional[timedelta] = None) -> None:
        """Compact the fragments left by single-record writes.

        Every insert adds a fragment and a table version, and reads slow down
        with their number. Versions older than ``cleanup_older_than`` are
        removed as well (LanceDB's own default when None).
        """
        await self._ensure_initialized()

        async with self._write_lock:
            try:
                await asyncio.to_thread(
                    self.table.optimize, cleanup_older_than=cleanup_older_than
                )
            except Exception as e:
                raise StoreWriteError(f"Cannot compact clip store: {e}") from e

        logger.debug(f"Compacted clip table {self.table_name}")

    def version_count(self) -> int:
        return len(self.table.list_versions())

    # ---------- reads ----------

    def _find_rows(self, clip_id: str) -> List[Dict[str, Any]]:
        return (
            self.table.search()
            .where(f"id = {_quote(clip_id)}", prefilter=True)
            .limit(1)
            .to_list()
        )

    async def _scan(self) -> pd.DataFrame:
        """All clips without their vectors."""
        await self._ensure_initialized()

        def _read():
            total = self.table.count_rows()
            if total == 0:
                return pd.DataFrame(columns=COLUMNS)
            return self.table.search().select(COLUMNS).limit(total).to_pandas()

        try:
            return await asyncio.to_thread(_read)
        except Exception as e:
            raise StoreReadError(f"Cannot read clips: {e}") from e

    async def get(self, clip_id: str) -> Optional[ClipRecord]:
        """Get a specific clip by ID."""
        await self._ensure_initialized()

        try:
            rows = await asyncio.to_thread(self._find_rows, clip_id)
        except Exception as e:
            raise StoreReadError(f"Cannot read clip {clip_id}: {e}") from e

        return _row_to_record(rows[0]) if rows else None

    async def recent(self, limit: int = 50) -> List[ClipRecord]:
        """Most recent clips, newest first."""
        frame = await self._scan()
        if len(frame) == 0 or limit <= 0:
            return []

        newest = frame.nlargest(limit, "timestamp")
        return [_row_to_record(row) for row in newest.to_dict("records")]

    async def latest_hashes(self, count: int = 1) -> List[str]:
        """Content hashes of the ``count`` most recent clips, newest first."""
        return [record.content_hash for record in await self.recent(count)]

    async def search(self, text: str, limit: Optional[int] = 50) -> List[SearchResult]:
        """Case-insensitive keyword search over content, summary and tags.

        Every whitespace-separated token of ``text`` must occur in at least one
        field. ``matched_fields`` lists the fields holding the whole query
        (``exact``), or, when no field holds it verbatim, the fields holding
        any token.

        Hits come back strongest first (``keyword_score``, then recency) and
        ``limit`` cuts that order; ``None`` returns every hit.
        """
        phrase = " ".join(text.lower().split())
        tokens = phrase.split()
        if not tokens:
            return []

        frame = await self._scan()
        if len(frame) == 0:
            return []

        fields = {
            "summary": frame["summary"].fillna("").str.lower(),
            "tags": frame["tags"].apply(lambda tags: " ".join(_as_list(tags)).lower()),
            "content": frame["content"].fillna("").str.lower(),
        }

        token_hits = {
            name: [column.str.contains(token, regex=False) for token in tokens]
            for name, column in fields.items()
        }
        exact = {name: column.str.contains(phrase, regex=False) for name, column in fields.items()}
        partial = {name: _any(hits, frame.index) for name, hits in token_hits.items()}

        mask = pd.Series(True, index=frame.index)
        for i in range(len(tokens)):
            mask &= _any([hits[i] for hits in token_hits.values()], frame.index)
        if not mask.any():
            return []

        any_exact = _any(list(exact.values()), frame.index)
        score = pd.Series(0, index=frame.index)
        # Ascending rank so the best matching field wins
        for name in sorted(FIELD_RANK, key=FIELD_RANK.get):
            hit = exact[name].where(any_exact, partial[name])
            score = score.mask(hit, FIELD_RANK[name])
        score = score + any_exact.astype(int) * EXACT_BONUS

        matched = frame[mask].assign(_score=score[mask])
        matched = matched.sort_values(["_score", "timestamp"], ascending=False)
        if limit is not None:
            matched = matched.head(max(limit, 0))

        results = []
        for index, row in zip(matched.index, matched.to_dict("records")):
            found = exact if any_exact[index] else partial
            results.append(
                SearchResult(
                    record=_row_to_record(row),
                    matched_fields=[name for name in fields if found[name][index]],
                    exact=bool(any_exact[index]),
                )
            )
        return results

    async def vector_search(
        self,
        embedding: List[float],
        limit: int = 50,
        model: Optional[str] = None,
    ) -> List[SearchResult]:
        """Cosine nearest neighbours among clips that carry an embedding."""
        await self._ensure_initialized()

        if len(embedding) != self.embedding_dim:
            raise ValueError(
                f"Query embedding has {len(embedding)} dimensions, "
                f"store expects {self.embedding_dim}"
            )

        predicate = "has_embedding = true"
        if model:
            predicate += f" AND embedding_model = {_quote(model)}"

        def _query():
            return (
                self.table.search(embedding, vector_column_name="embedding")
                .distance_type("cosine")
                .where(predicate, prefilter=True)
                .limit(limit)
                .to_list()
            )

        try:
            rows = await asyncio.to_thread(_query)
        except Exception as e:
            raise StoreReadError(f"Vector search failed: {e}") from e

        results = []
        for row in rows:
            # cosine distance -> similarity
            similarity = 1.0 - float(row.get("_distance", 1.0))
            results.append(
                SearchResult(
                    record=_row_to_record(row),
                    matched_fields=["embedding"],
                    similarity=round(similarity, 4),
                )
            )
        return results

    async def pending_embeddings(self, limit: int = 100) -> List[ClipRecord]:
        """Clips stored without an embedding, eligible for re-embedding."""
        await self._ensure_initialized()

        def _query():
            return (
                self.table.search()
                .where("has_embedding = false", prefilter=True)
                .limit(limit)
                .to_list()
            )

        try:
            rows = await asyncio.to_thread(_query)
        except Exception as e:
            raise StoreReadError(f"Cannot list pending embeddings: {e}") from e

        return [_row_to_record(row) for row in rows]

    async def count(self) -> int:
        await self._ensure_initialized()
        try:
            return await asyncio.to_thread(self.table.count_rows)
        except Exception as e:
            raise StoreReadError(f"Cannot count clips: {e}") from e

    async def get_stats(self) -> Dict[str, Any]:
        """Get statistics about stored clips."""
        frame = await self._scan()

        if len(frame) == 0:
            return {
                "total_clips": 0,
                "embedded_clips": 0,
                "pending_embeddings": 0,
                "avg_content_length": 0,
                "top_tags": [],
                "storage_path": self.db_path,
                "embedding_dim": self.embedding_dim,
            }

        embedded = int(frame["has_embedding"].fillna(False).astype(bool).sum())
        avg_length = frame["content"].str.len().mean()

        tag_counts: Dict[str, int] = {}
        for tags in frame["tags"]:
            for tag in _as_list(tags):
                tag_counts[tag] = tag_counts.get(tag, 0) + 1

        top_tags = sorted(tag_counts.items(), key=lambda x: (-x[1], x[0]))[:10]

        return {
            "total_clips": len(frame),
            "embedded_clips": embedded,
            "pending_embeddings": len(frame) - embedded,
            "avg_content_length": round(float(avg_length), 1) if avg_length else 0,
            "top_tags": top_tags,
            "storage_path": self.db_path,
            "embedding_dim": self.embedding_dim,
            "oldest_clip": from_micros(frame["timestamp"].min()).isoformat(),
            "newest_clip": from_micros(frame["timestamp"].max()).isoformat(),
        }


def _any(series: List[pd.Series], index) -> pd.Series:
    result = pd.Series(False, index=index)
    for item in series:
        result |= item
    return result


def _as_list(value) -> List[str]:
    if value is None:
        return []
    if isinstance(value, float) and pd.isna(value):
        return []
    return [str(item) for item in value]


def _as_optional_str(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float) and pd.isna(value):
        return None
    return str(value)


def _row_to_record(row: Dict[str, Any]) -> ClipRecord:
    has_embedding = bool(row.get("has_embedding"))
    embedding = None
    if has_embedding and row.get("embedding") is not None:
        embedding = [float(x) for x in row["embedding"]]

    return ClipRecord(
        id=row["id"],
        content=row["content"],
        content_hash=row["content_hash"],
        summary=row["summary"],
        tags=_as_list(row.get("tags")),
        embedding=embedding,
        embedding_model=(row.get("embedding_model") or "") if has_embedding else "",
        timestamp=from_micros(row["timestamp"]),
        source=_as_optional_str(row.get("source")),
    )
