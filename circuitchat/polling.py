"""
Polling engine: drive a message job to completion.

Capped exponential backoff without jitter:

    delay(1) = initial_delay
    delay(i+1) = min(delay(i) * multiplier, max_delay)

Terminal outcomes:
  - status complete               -> return the response
  - remote `error` / status error -> RemoteError (no retry)
  - auth or malformed payload     -> re-raised at once
  - transport / HTTP failure      -> retried within the attempt budget
  - budget exhausted              -> PollTimeoutError
  - cancel token set              -> AbortError, checked before every request and sleep
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from circuitchat.api.schemas import MessageStatusResponse
from circuitchat.cancellation import CancelToken
from circuitchat.errors import NetworkError, PollTimeoutError, RemoteError

logger = logging.getLogger(__name__)


class PollingEngine:
    """Repeatedly polls a message's status until the remote job settles."""

    def __init__(
        self,
        client,
        max_attempts: int = 60,
        initial_delay: float = 1.0,
        max_delay: float = 5.0,
        multiplier: float = 1.5,
        sleep: Callable[[float, CancelToken | None], Awaitable[None]] | None = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.client = client
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self._sleep = sleep or self._cancellable_sleep

    @classmethod
    def from_config(cls, client, cfg: dict) -> "PollingEngine":
        p = cfg.get("polling", {})
        return cls(
            client,
            max_attempts=p.get("max_attempts", 60),
            initial_delay=p.get("initial_delay", 1.0),
            max_delay=p.get("max_delay", 5.0),
            multiplier=p.get("multiplier", 1.5),
        )

    def next_delay(self, delay: float) -> float:
        return min(delay * self.multiplier, self.max_delay)

    def backoff_delays(self, n: int) -> list[float]:
        """The first n sleep durations the engine would use."""
        delays = []
        delay = min(self.initial_delay, self.max_delay)
        for _ in range(n):
            delays.append(delay)
            delay = self.next_delay(delay)
        return delays

    @staticmethod
    async def _cancellable_sleep(delay: float, token: CancelToken | None):
        if token is None:
            await asyncio.sleep(delay)
            return
        if await token.wait(delay):
            token.raise_if_cancelled()

    async def poll_until_complete(
        self,
        conversation_id: str,
        message_id: str,
        token: CancelToken | None = None,
    ) -> MessageStatusResponse:
        delay = min(self.initial_delay, self.max_delay)

        for attempt in range(1, self.max_attempts + 1):
            if token is not None:
                token.raise_if_cancelled()

            try:
                status = await self.client.poll_status(conversation_id, message_id)
            except NetworkError as e:
                if attempt >= self.max_attempts:
                    raise
                logger.warning(
                    "Polling attempt %d/%d for %s failed: %s",
                    attempt, self.max_attempts, message_id, e,
                )
            else:
                if token is not None:
                    token.raise_if_cancelled()

                if status.is_complete:
                    logger.info(
                        "Message %s complete after %d attempt(s) (%d chars)",
                        message_id, attempt, len(status.message),
                    )
                    return status

                failure = status.failure
                if failure:
                    logger.warning("Message %s failed remotely: %s", message_id, failure)
                    raise RemoteError(failure)

                logger.debug(
                    "Message %s still %s (attempt %d/%d), next poll in %.2fs",
                    message_id, status.status.value, attempt, self.max_attempts, delay,
                )

            if attempt < self.max_attempts:
                if token is not None:
                    token.raise_if_cancelled()
                await self._sleep(delay, token)
                delay = self.next_delay(delay)

        logger.error("Polling timed out for message %s after %d attempts", message_id, self.max_attempts)
        raise PollTimeoutError("Polling timeout: Message did not complete in time")
