"""Clipboard polling task."""

import asyncio
import contextlib
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

import pyperclip

from clipsage.core.errors import ClipboardAccessError
from clipsage.models.schemas import RawCapture

logger = logging.getLogger(__name__)


@dataclass
class MonitorState:
    """State carried from one poll to the next."""

    last_hash: Optional[str] = None
    primed: bool = False


class ClipboardMonitor:
    """Polls the OS clipboard and queues one RawCapture per content change.

    The monitor is the only producer on the queue. When the queue is full it
    waits instead of dropping the capture.
    """

    def __init__(
        self,
        queue: "asyncio.Queue[RawCapture]",
        reader: Optional[Callable[[], str]] = None,
        poll_interval: float = 0.5,
        max_content_chars: int = 100_000,
        capture_initial: bool = True,
        source: Optional[str] = "clipboard",
    ):
        self.queue = queue
        self.reader = reader or pyperclip.paste
        self.poll_interval = poll_interval
        self.max_content_chars = max_content_chars
        self.capture_initial = capture_initial
        self.source = source

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.stats = {"ticks": 0, "captures": 0, "read_errors": 0}

    def new_state(self) -> MonitorState:
        # Without capture_initial the first read only records what is there
        return MonitorState(primed=self.capture_initial)

    async def read_clipboard(self) -> Optional[str]:
        """Current clipboard text, or None when there is nothing usable."""
        try:
            content = await asyncio.to_thread(self.reader)
        except Exception as e:
            # pyperclip.PyperclipException, OSError and backend-specific errors
            raise ClipboardAccessError(f"{type(e).__name__}: {e}") from e

        if not isinstance(content, str) or not content.strip():
            return None
        return content

    async def poll_once(self, state: MonitorState) -> Optional[RawCapture]:
        """One tick: read, compare with the last seen content, maybe emit."""
        self.stats["ticks"] += 1

        try:
            content = await self.read_clipboard()
        except ClipboardAccessError as e:
            self.stats["read_errors"] += 1
            logger.warning(f"Clipboard read failed, retrying next tick: {e}")
            return None

        if content is None:
            return None

        digest = hashlib.sha256(content.encode("utf-8")).hexdigest()
        if digest == state.last_hash:
            return None
        state.last_hash = digest

        if not state.primed:
            state.primed = True
            logger.debug("Clipboard monitor primed with existing content")
            return None

        capture = RawCapture(
            content=content[: self.max_content_chars],
            captured_at=datetime.now(timezone.utc),
            source=self.source,
        )
        await self.queue.put(capture)
        self.stats["captures"] += 1
        logger.debug(f"Captured {len(capture.content)} chars from clipboard")
        return capture

    async def run(self):
        """Poll until stopped. A failing tick never ends the loop."""
        state = self.new_state()
        self._running = True
        logger.info(f"Clipboard monitor started (every {self.poll_interval}s)")

        while self._running:
            try:
                await self.poll_once(state)
            except Exception:
                logger.exception("Unexpected error in clipboard monitor tick")
            await asyncio.sleep(self.poll_interval)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="clipsage-monitor")
        return self._task

    async def stop(self):
        """Stop polling. A capture waiting for queue space is abandoned."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("Clipboard monitor stopped")

    @property
    def running(self) -> bool:
        return self._running
