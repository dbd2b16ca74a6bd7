"""Event sinks receiving forwarded advertisement events."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Protocol, Union

from thingshub.models import AdvertisementEvent

logger = logging.getLogger(__name__)

EventCallback = Callable[[AdvertisementEvent], Union[None, Awaitable[None]]]


class EventSink(Protocol):
    def publish(self, event: AdvertisementEvent) -> Union[None, Awaitable[None]]:
        ...


class CallbackSink:
    """Adapts a plain (sync or async) callable to the sink interface."""

    def __init__(self, callback: EventCallback) -> None:
        self._callback = callback

    def publish(self, event: AdvertisementEvent) -> Union[None, Awaitable[None]]:
        return self._callback(event)


class BroadcastSink:
    """Fan events out to any number of subscriber queues.

    Subscribers that fall behind lose the oldest queued events rather than
    stalling the publisher.
    """

    def __init__(self, maxsize: int = 256) -> None:
        self.maxsize = maxsize
        self._subscribers: List[asyncio.Queue[AdvertisementEvent]] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, maxsize: Optional[int] = None) -> "asyncio.Queue[AdvertisementEvent]":
        queue: asyncio.Queue[AdvertisementEvent] = asyncio.Queue(
            maxsize=self.maxsize if maxsize is None else maxsize
        )
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: "asyncio.Queue[AdvertisementEvent]") -> None:
        try:
            self._subscribers.remove(queue)
        except ValueError:
            pass

    def publish(self, event: AdvertisementEvent) -> None:
        for queue in list(self._subscribers):
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:  # pragma: no cover - raced by consumer
                    pass
                logger.debug("Broadcast subscriber lagging; dropped oldest event")
            queue.put_nowait(event)


__all__ = ["BroadcastSink", "CallbackSink", "EventCallback", "EventSink"]
