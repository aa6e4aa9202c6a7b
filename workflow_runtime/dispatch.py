"""Publishing of aggregate outboxes to the configured transport."""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from .config import DispatchConfig, HandlerConfig
from .contracts import EventEnvelope
from .domain.events import DomainEvent, EventOutbox
from .errors import EventDispatchError
from .transports import BaseTransport
from .utils.retry import schedule_retry

logger = logging.getLogger(__name__)


class EventDispatcher:
    """Drain an aggregate's outbox onto a transport, one envelope per event.

    Each event is published to the topic named after the event. A publish
    that keeps failing after ``max_publish_attempts`` raises
    :class:`EventDispatchError` and leaves the outbox untouched. The error
    carries the undelivered events because the aggregate that held them is
    usually gone by the time a handler reports the failure.
    """

    def __init__(
        self,
        transport: BaseTransport,
        config: Optional[DispatchConfig] = None,
        backoff: Optional[HandlerConfig] = None,
    ) -> None:
        self._transport = transport
        self._config = config or DispatchConfig()
        self._backoff = backoff or HandlerConfig()

    @property
    def transport(self) -> BaseTransport:
        return self._transport

    async def dispatch(self, aggregate: EventOutbox) -> list[EventEnvelope]:
        envelopes = await self.redeliver(aggregate.get_uncommitted_events())
        aggregate.clear_events()
        return envelopes

    async def redeliver(self, events: Sequence[DomainEvent]) -> list[EventEnvelope]:
        """Publish ``events`` in order.

        On failure the raised :class:`EventDispatchError` carries the events
        that were not published, starting with the one that failed, so they
        can be handed back here once the transport recovers.
        """
        envelopes = []
        for index, event in enumerate(events):
            try:
                envelopes.append(await self._publish(event))
            except EventDispatchError as e:
                e.undelivered = tuple(events[index:])
                raise
        return envelopes

    async def _publish(self, event: DomainEvent) -> EventEnvelope:
        envelope = EventEnvelope(event=event)
        attempts = self._config.max_publish_attempts
        last_error: Optional[Exception] = None
        for attempt in range(attempts):
            try:
                await self._transport.publish(event.name, envelope)
            except Exception as e:  # any broker failure is retried
                last_error = e
                logger.warning(
                    f"Publishing {event.name} for {event.aggregate_id} failed "
                    f"(attempt {attempt + 1}/{attempts}): {e}"
                )
                if attempt + 1 < attempts:
                    await schedule_retry(
                        attempt,
                        self._backoff.retry_base_delay,
                        self._backoff.retry_factor,
                        self._backoff.retry_jitter,
                    )
                continue
            logger.debug(f"Published {event.name} for {event.aggregate_id}")
            return envelope

        logger.error(f"Giving up on {event.name} for {event.aggregate_id}")
        raise EventDispatchError(
            f"Could not publish {event.name} for {event.aggregate_id} "
            f"after {attempts} attempts"
        ) from last_error
