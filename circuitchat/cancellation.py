"""
Cancellation primitives.

CancelToken is the cooperative abort signal a polling loop checks before
each request and each sleep. CancellationRegistry maps a key (a message id)
to whatever cancels the work behind it: a token, a stream handle, or a
plain callable. The conversation manager owns one registry for polls and
one for streams; nothing here is module-level state.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Protocol, Union

from circuitchat.errors import AbortError

logger = logging.getLogger(__name__)


class Cancellable(Protocol):
    def cancel(self) -> None: ...


Canceller = Union[Cancellable, Callable[[], None]]


class CancelToken:
    """One-shot cooperative cancellation signal."""

    def __init__(self, reason: str = "Cancelled by user"):
        self.reason = reason
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self):
        self._event.set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise AbortError(self.reason)

    async def wait(self, timeout: float) -> bool:
        """Sleep up to `timeout` seconds; True if cancelled before it elapsed."""
        if self._event.is_set():
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True


class CancellationRegistry:
    """Keyed cancellation handles with an optional scope (a conversation id)."""

    def __init__(self, name: str = "registry"):
        self.name = name
        self._entries: dict[str, tuple[Canceller, str | None]] = {}

    def register(self, key: str, canceller: Canceller, scope: str | None = None):
        """Register a handle. An existing handle under the same key is replaced, not cancelled."""
        self._entries[key] = (canceller, scope)

    def unregister(self, key: str, canceller: Canceller | None = None):
        """
        Drop a handle without cancelling it. With `canceller`, only drop it if
        it is still the registered one (a newer registration wins).
        """
        entry = self._entries.get(key)
        if entry is None:
            return
        if canceller is not None and entry[0] is not canceller:
            return
        del self._entries[key]

    def cancel(self, key: str) -> bool:
        """Cancel and drop one handle. False if nothing was registered."""
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        logger.debug("%s: cancelling %s", self.name, key)
        self._invoke(entry[0])
        return True

    def cancel_all(self, scope: str | None = None) -> list[str]:
        """Cancel every handle, or only those registered under `scope`. Returns the keys."""
        keys = self.keys(scope)
        for key in keys:
            self.cancel(key)
        if keys:
            logger.info("%s: cancelled %d handle(s)", self.name, len(keys))
        return keys

    def keys(self, scope: str | None = None) -> list[str]:
        if scope is None:
            return list(self._entries)
        return [k for k, (_, s) in self._entries.items() if s == scope]

    @staticmethod
    def _invoke(canceller: Canceller):
        cancel = getattr(canceller, "cancel", None)
        if callable(cancel):
            cancel()
        else:
            canceller()

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
