"""Data models for ClipSage."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator


def normalize_tags(tags: Optional[List[str]]) -> List[str]:
    """Collapse tags into a sorted, lower-cased set without empty entries."""
    if not tags:
        return []
    cleaned = {str(tag).strip().lower() for tag in tags if tag is not None}
    cleaned.discard("")
    return sorted(cleaned)


class RawCapture(BaseModel):
    """A single clipboard transition emitted by the monitor."""

    content: str
    captured_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    source: Optional[str] = None

    @field_validator("captured_at")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        # Naive instants are taken as UTC, the way the store reads them
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class ClipRecord(BaseModel):
    """A committed clipboard item."""

    id: str
    content: str
    content_hash: str
    summary: str
    tags: List[str] = Field(default_factory=list)
    embedding: Optional[List[float]] = None
    embedding_model: str = ""
    timestamp: datetime
    source: Optional[str] = None

    @field_validator("tags", mode="before")
    @classmethod
    def _normalize_tags(cls, value):
        if value is None:
            return []
        return normalize_tags(list(value))

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None

    def to_view(self) -> "ClipView":
        return ClipView(
            id=self.id,
            content=self.content,
            summary=self.summary,
            tags=self.tags,
            timestamp=self.timestamp,
            source=self.source,
        )


class ClipView(BaseModel):
    """Shape handed to the UI collaborator."""

    id: str
    content: str
    summary: str
    tags: List[str]
    timestamp: datetime
    source: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload = self.model_dump(mode="json", exclude_none=True)
        payload["timestamp"] = self.timestamp.isoformat()
        return payload


class SearchResult(BaseModel):
    """Candidate produced by one of the store's indexes."""

    record: ClipRecord
    matched_fields: List[str] = Field(default_factory=list)
    exact: bool = False
    similarity: Optional[float] = None
