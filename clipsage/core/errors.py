"""Error taxonomy for capture, enrichment and storage."""


class ClipSageError(Exception):
    """Base class for all ClipSage errors."""


class ClipboardAccessError(ClipSageError):
    """The OS clipboard could not be read. Retried on the next tick."""


class DuplicateCapture(ClipSageError):
    """A capture repeated the most recently committed content."""

    def __init__(self, content_hash: str):
        super().__init__(f"Duplicate capture {content_hash[:12]}")
        self.content_hash = content_hash


class EnrichmentError(ClipSageError):
    """An enrichment step failed and its fallback was used."""

    def __init__(self, step: str, message: str = ""):
        super().__init__(f"{step}: {message}" if message else step)
        self.step = step


class EnrichmentTimeout(EnrichmentError):
    """An enrichment step did not finish within its timeout."""


class EnrichmentUnavailable(EnrichmentError):
    """No provider is configured or reachable for an enrichment step."""


class StoreError(ClipSageError):
    """Base class for content store failures."""


class DuplicateId(StoreError):
    """A record with the same id is already stored."""

    def __init__(self, clip_id: str):
        super().__init__(f"Clip {clip_id} already exists")
        self.clip_id = clip_id


class StoreWriteError(StoreError):
    """A record could not be written. The capture is lost."""


class StoreReadError(StoreError):
    """A query against the store failed."""


class StoreCorruptError(StoreError):
    """The database could not be opened or migrated. Fatal at start-up."""
