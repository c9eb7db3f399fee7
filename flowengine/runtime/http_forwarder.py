"""Forward progress events to an HTTP endpoint.

Each event is POSTed as JSON. Delivery is at-most-once: timeouts, connection
errors and non-2xx responses are logged and the event is dropped.
"""

import logging

import httpx

from flowengine.runtime.event_bus import EventBus, ProgressEvent, ProgressEventType

logger = logging.getLogger(__name__)


class HttpEventForwarder:
    def __init__(
        self,
        url: str,
        event_types: list[ProgressEventType] | None = None,
        timeout: float = 10.0,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url
        self.event_types = event_types
        self._client = client or httpx.AsyncClient(timeout=timeout, headers=headers)
        self._owns_client = client is None
        self._subscription_id: str | None = None
        self.delivered = 0
        self.dropped = 0

    def attach(self, bus: EventBus) -> str:
        """Subscribe to ``bus``. Returns the subscription id."""
        self._subscription_id = bus.subscribe(self.forward, event_types=self.event_types)
        return self._subscription_id

    def detach(self, bus: EventBus) -> None:
        if self._subscription_id is not None:
            bus.unsubscribe(self._subscription_id)
            self._subscription_id = None

    async def forward(self, event: ProgressEvent) -> None:
        try:
            resp = await self._client.post(self.url, json=event.to_dict())
            resp.raise_for_status()
        except httpx.TimeoutException:
            self.dropped += 1
            logger.warning(f"Timed out forwarding {event.type} for {event.execution_id} to {self.url}")
        except httpx.HTTPError as e:
            self.dropped += 1
            logger.warning(f"Failed to forward {event.type} for {event.execution_id} to {self.url}: {e}")
        else:
            self.delivered += 1

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
