"""Operations exposed to the UI collaborator."""

import logging
from typing import Any, Callable, Dict, List, Optional

from clipsage.core.query import QueryEngine
from clipsage.models.schemas import ClipRecord

logger = logging.getLogger(__name__)

WindowHook = Callable[[], Any]


def _payloads(records: List[ClipRecord]) -> List[Dict[str, Any]]:
    return [record.to_view().to_payload() for record in records]


class CommandSurface:
    """Thin request/response layer over the query engine.

    Read commands return ``{id, content, summary, tags, timestamp, source?}``
    dicts. Store read failures propagate as StoreReadError; everything slower
    is bounded by the query engine's own timeouts.
    """

    def __init__(
        self,
        query: QueryEngine,
        engine=None,
        on_hide: Optional[WindowHook] = None,
        on_show: Optional[WindowHook] = None,
    ):
        self.query = query
        self.engine = engine
        self.on_hide = on_hide
        self.on_show = on_show

    async def get_recent_clips(self) -> List[Dict[str, Any]]:
        return _payloads(await self.query.recent())

    async def search_clips(self, query: str) -> List[Dict[str, Any]]:
        return _payloads(await self.query.search(query))

    async def semantic_search_clips(self, query: str) -> List[Dict[str, Any]]:
        return _payloads(await self.query.semantic_search(query))

    def hide_window(self) -> None:
        """Fire-and-forget; has no effect on stored data."""
        self._fire("hide", self.on_hide)

    def show_window(self) -> None:
        self._fire("show", self.on_show)

    def _fire(self, name: str, hook: Optional[WindowHook]):
        logger.debug(f"Window command: {name}")
        if hook is None:
            return
        try:
            hook()
        except Exception:
            logger.exception(f"Window {name} hook failed")

    async def remove_clip(self, clip_id: str) -> bool:
        """User-initiated purge of a single clip."""
        if self.engine is not None:
            return await self.engine.remove_clip(clip_id)
        return await self.query.storage.remove(clip_id)

    async def clip_stats(self) -> Dict[str, Any]:
        stats = await self.query.storage.get_stats()
        if self.engine is not None:
            stats["pipeline"] = dict(self.engine.pipeline.stats)
            stats["monitor"] = dict(self.engine.monitor.stats)
            stats["capabilities"] = self.engine.intelligence.get_provider_status()
        return stats
