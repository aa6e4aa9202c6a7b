"""In-memory transport for tests and single-process use."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

from ..contracts import EventEnvelope
from .base import BaseTransport


class InMemoryTransport(BaseTransport[Tuple[str, EventEnvelope]]):
    """Simple in-process queue per topic."""

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[Tuple[str, EventEnvelope]]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, message: EventEnvelope) -> None:
        """Publish envelope to in-memory queue."""
        raw = (message.to_json(), message)
        async with self._lock:
            self._queues[topic].append(raw)

    def pending(self, topic: str) -> list[EventEnvelope]:
        """Envelopes published to ``topic`` and not yet consumed."""
        return [envelope for _, envelope in self._queues[topic]]

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, EventEnvelope], EventEnvelope]]:
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break

            async with self._lock:
                raw_message = self._queues[topic].popleft() if self._queues[topic] else None
            if raw_message is not None:
                yield raw_message, raw_message[1]
                continue

            await asyncio.sleep(0.05)

    async def ack(self, raw_message: Tuple[str, EventEnvelope]) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass
