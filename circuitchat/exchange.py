"""
Exchange records: the lifecycle timeline of one query/answer pair.

    idle -> sending -> polling -> streaming -> complete
                          |           |
                          +-----------+----> error | aborted

Each transition is stamped with elapsed milliseconds so a slow exchange
can be broken down by phase. Settled phases are final. The log keeps the
most recent exchanges in memory for inspection; nothing is persisted.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from datetime import datetime, timezone
from enum import Enum

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    POLLING = "polling"
    STREAMING = "streaming"
    COMPLETE = "complete"
    ERROR = "error"
    ABORTED = "aborted"

    @property
    def settled(self) -> bool:
        return self in (Phase.COMPLETE, Phase.ERROR, Phase.ABORTED)


_ORDER = {
    Phase.IDLE: 0,
    Phase.SENDING: 1,
    Phase.POLLING: 2,
    Phase.STREAMING: 3,
    Phase.COMPLETE: 4,
    Phase.ERROR: 4,
    Phase.ABORTED: 4,
}


def exchange_key(conversation_id: str, message_id: str) -> str:
    return f"{conversation_id}_{message_id}"


class Exchange:
    """Timeline for a single query through send, poll and stream."""

    __slots__ = ("conversation_id", "message_id", "phase", "start_time", "events", "error")

    def __init__(self, conversation_id: str = "", message_id: str = ""):
        self.conversation_id = conversation_id
        self.message_id = message_id
        self.phase = Phase.IDLE
        self.start_time: float = time.monotonic()
        self.events: list[dict] = []
        self.error: str | None = None

    @property
    def key(self) -> str:
        return exchange_key(self.conversation_id, self.message_id)

    @property
    def settled(self) -> bool:
        return self.phase.settled

    def advance(self, phase: Phase, **details) -> bool:
        """Move to `phase`. Returns False (and records nothing) for a backward move."""
        if self.phase.settled or _ORDER[phase] <= _ORDER[self.phase]:
            logger.debug("Exchange %s: ignoring %s -> %s", self.key, self.phase.value, phase.value)
            return False
        elapsed = (time.monotonic() - self.start_time) * 1000
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "elapsed_ms": round(elapsed, 2),
            "phase": phase.value,
        }
        if details:
            event["details"] = {k: v for k, v in details.items() if v is not None}
        self.events.append(event)
        self.phase = phase
        if phase == Phase.ERROR:
            self.error = details.get("error")
        return True

    @property
    def total_ms(self) -> float:
        if not self.events:
            return 0.0
        return self.events[-1]["elapsed_ms"]

    def summary(self) -> dict:
        """Milliseconds spent in each phase before the next one began."""
        durations: dict[str, float] = {}
        for prev, cur in zip(self.events, self.events[1:]):
            durations[prev["phase"]] = round(cur["elapsed_ms"] - prev["elapsed_ms"], 2)
        return {
            "phase": self.phase.value,
            "total_ms": round(self.total_ms, 2),
            "phases": durations,
        }

    def render_text(self) -> str:
        lines = [f"EXCHANGE: {self.key}"]
        for event in self.events:
            line = f"  [{event['elapsed_ms']:8.1f}ms] {event['phase']}"
            details = event.get("details", {})
            if details:
                line += "  (" + ", ".join(f"{k}={v}" for k, v in details.items()) + ")"
            lines.append(line)
        return "\n".join(lines)


class ExchangeLog:
    """Most recent exchanges, keyed by `{conversation_id}_{message_id}`."""

    def __init__(self, max_records: int = 200):
        self.max_records = max_records
        self._records: OrderedDict[str, Exchange] = OrderedDict()

    def add(self, exchange: Exchange):
        while len(self._records) >= self.max_records:
            evicted = next(iter(self._records))
            if not self._records[evicted].settled:
                # never drop an exchange that is still in flight
                break
            self._records.popitem(last=False)
        self._records[exchange.key] = exchange

    def get(self, key: str) -> Exchange | None:
        return self._records.get(key)

    def __contains__(self, key: str) -> bool:
        return key in self._records

    def active(self, scope: str | None = None) -> list[Exchange]:
        """Exchanges not yet settled, optionally for one conversation."""
        return [
            ex for ex in self._records.values()
            if not ex.settled and (scope is None or ex.conversation_id == scope)
        ]

    def recent(self, n: int = 10) -> list[Exchange]:
        return list(self._records.values())[-n:]

    @property
    def count(self) -> int:
        return len(self._records)
