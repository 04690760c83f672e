"""
Streaming presenter: reveal an already-complete string a few characters
at a time so the UI reads like token-by-token generation.

Every `tick` seconds the cursor advances by randint(min_chunk, max_chunk)
characters (clamped to what is left) and the prefix is published as an
in-progress update. Reaching the end publishes the full text once as the
final update. A cancelled stream publishes nothing further.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Callable

from circuitchat.cancellation import CancellationRegistry

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[str, bool], None]


class StreamHandle:
    """A running reveal. Cancel it to stop all further updates."""

    __slots__ = ("key", "text", "cursor", "cancelled", "finished", "task")

    def __init__(self, key: str, text: str):
        self.key = key
        self.text = text
        self.cursor = 0
        self.cancelled = False
        self.finished = False
        self.task: asyncio.Task | None = None

    def cancel(self):
        self.cancelled = True

    @property
    def revealed(self) -> str:
        return self.text[:self.cursor]

    @property
    def progress(self) -> float:
        return self.cursor / len(self.text) if self.text else 1.0


class StreamPresenter:
    """Schedules reveals; at most one active stream per key (last writer wins)."""

    def __init__(
        self,
        registry: CancellationRegistry | None = None,
        tick: float = 0.015,
        min_chunk: int = 1,
        max_chunk: int = 3,
        rng: random.Random | None = None,
    ):
        if min_chunk < 1 or max_chunk < min_chunk:
            raise ValueError("chunk sizes must satisfy 1 <= min_chunk <= max_chunk")
        self.registry = registry if registry is not None else CancellationRegistry("streams")
        self.tick = tick
        self.min_chunk = min_chunk
        self.max_chunk = max_chunk
        self._rng = rng or random.Random()

    @classmethod
    def from_config(cls, cfg: dict, registry: CancellationRegistry | None = None) -> "StreamPresenter":
        s = cfg.get("streaming", {})
        return cls(
            registry,
            tick=s.get("tick", 0.015),
            min_chunk=s.get("min_chunk", 1),
            max_chunk=s.get("max_chunk", 3),
        )

    def next_chunk(self, remaining: int) -> int:
        return min(self._rng.randint(self.min_chunk, self.max_chunk), remaining)

    def start(
        self,
        key: str,
        text: str,
        on_update: UpdateCallback,
        scope: str | None = None,
    ) -> StreamHandle:
        """Begin revealing `text`, cancelling any stream already running under `key`."""
        if self.registry.cancel(key):
            logger.debug("Cancelled previous stream for %s", key)

        handle = StreamHandle(key, text)
        self.registry.register(key, handle, scope=scope)
        handle.task = asyncio.get_running_loop().create_task(self._run(handle, on_update))
        return handle

    async def _run(self, handle: StreamHandle, on_update: UpdateCallback):
        text = handle.text
        try:
            while handle.cursor < len(text):
                if handle.cancelled:
                    logger.debug("Stream %s cancelled at %d/%d", handle.key, handle.cursor, len(text))
                    return
                handle.cursor += self.next_chunk(len(text) - handle.cursor)
                on_update(handle.revealed, False)
                await asyncio.sleep(self.tick)

            if handle.cancelled:
                return
            handle.finished = True
            on_update(text, True)
            logger.debug("Stream %s finished (%d chars)", handle.key, len(text))
        finally:
            self.registry.unregister(handle.key, handle)
