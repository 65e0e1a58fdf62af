"""Event notification: in-process channel and webhook dispatch.

Transitions publish committed events here; a background task delivers them
to subscribers and to the configured webhook. Delivery is best-effort and
never reaches back into the code that published.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import httpx

from probewatch.liveness.models import EmittedEvent

logger = logging.getLogger(__name__)

Subscriber = Callable[[dict[str, Any]], None]


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.isoformat()


def build_payload(emitted: EmittedEvent) -> dict[str, Any]:
    """Webhook body for one event: the event plus a snapshot of its probe."""
    event = emitted.event
    probe = dict(emitted.probe)
    for key in ("latest_heartbeat_at", "next_heartbeat_at"):
        probe[key] = _iso(probe.get(key))
    return {
        "id": event.id,
        "probe_id": event.probe_id,
        "type": str(event.type),
        "timestamp": _iso(event.timestamp),
        "probe": probe,
    }


def dispatch_webhook(url: str, payload: dict[str, Any], timeout: float = 10.0) -> dict[str, Any]:
    """POST one payload. Return a result dict; errors are logged, not raised."""
    try:
        with httpx.Client(timeout=timeout) as client:
            response = client.post(url, json=payload)
    except Exception as e:
        logger.error("Webhook dispatch error: %s → %s: %s", payload.get("type"), url, e)
        return {"url": url, "status_code": None, "success": False, "error": str(e)}

    if response.is_success:
        logger.info(
            "Webhook delivered: %s → %s (HTTP %d)",
            payload.get("type"),
            url,
            response.status_code,
        )
    else:
        logger.warning(
            "Webhook failed: %s → %s (HTTP %d)",
            payload.get("type"),
            url,
            response.status_code,
        )
    return {"url": url, "status_code": response.status_code, "success": response.is_success}


class EventNotifier:
    """Queues published events and delivers them from a background task."""

    def __init__(
        self,
        webhook_url: str | None = None,
        timeout: float = 10.0,
        max_queue: int = 1000,
    ) -> None:
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.max_queue = max_queue
        self._subscribers: list[Subscriber] = []
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[dict[str, Any] | None] | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    async def start(self) -> None:
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=self.max_queue)
        self._task = asyncio.create_task(self._consume(self._queue), name="event-notifier")
        logger.info("Event notifier started (webhook=%s)", self.webhook_url or "none")

    async def stop(self) -> None:
        """Deliver what is already queued, then stop."""
        if self._task is None or self._queue is None:
            return
        # Let already scheduled _enqueue callbacks run before the sentinel
        await asyncio.sleep(0)
        await self._queue.put(None)
        await self._task
        self._task = None
        self._loop = None
        logger.info("Event notifier stopped")

    def publish(self, emitted: EmittedEvent) -> None:
        """Hand an event to the delivery task. Safe to call from any thread."""
        loop, queue = self._loop, self._queue
        if loop is None or queue is None or not self.running:
            logger.debug("Notifier not running, dropping event %s", emitted.event.id)
            return
        payload = build_payload(emitted)
        try:
            loop.call_soon_threadsafe(self._enqueue, queue, payload)
        except RuntimeError:
            logger.warning("Event loop closed, dropping event %s", emitted.event.id)

    @staticmethod
    def _enqueue(queue: asyncio.Queue[dict[str, Any] | None], payload: dict[str, Any]) -> None:
        try:
            queue.put_nowait(payload)
        except asyncio.QueueFull:
            logger.warning("Notification queue full, dropping event %s", payload["id"])

    async def _consume(self, queue: asyncio.Queue[dict[str, Any] | None]) -> None:
        while True:
            payload = await queue.get()
            if payload is None:
                break
            await self._deliver(payload)

    async def _deliver(self, payload: dict[str, Any]) -> None:
        for callback in self._subscribers:
            try:
                await asyncio.to_thread(callback, payload)
            except Exception:
                logger.exception("Event subscriber failed for event %s", payload["id"])
        if self.webhook_url:
            await asyncio.to_thread(dispatch_webhook, self.webhook_url, payload, self.timeout)
