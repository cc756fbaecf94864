from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Optional, Set

from fastapi import WebSocket

import redis

_log = logging.getLogger("tableside.events")

NEW_ORDER = "newOrder"
ORDER_UPDATED = "orderUpdated"
ORDERS_COMPLETED = "ordersCompleted"
ORDER_DELETED = "orderDeleted"
SUBMIT_GATE_UPDATED = "submitGateUpdated"

EVENT_TYPES = (NEW_ORDER, ORDER_UPDATED, ORDERS_COMPLETED, ORDER_DELETED, SUBMIT_GATE_UPDATED)


def channel_for(restaurant_id: int) -> str:
    return f"tableorder:{int(restaurant_id)}"


def envelope(event: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": event, "ts_ms": int(time.time() * 1000), "payload": payload}


class Notifier:
    """
    Delivery contract for state changes. Every payload carries
    `restaurant_id` so subscribers only see their own restaurant.
    Delivery is best effort; receivers dedupe by entity id.
    """

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError


class EventPublisher(Notifier):
    """
    Pushes JSON envelopes to Redis Pub/Sub on `tableorder:<restaurant_id>`.
    Without Redis it degrades to a structured log line.
    """

    def __init__(self, url: Optional[str] = None, enabled: Optional[bool] = None) -> None:
        self._url = url or os.getenv("EVENTS_REDIS_URL", "redis://localhost:6379/0")
        if enabled is None:
            enabled = os.getenv("EVENTS_ENABLED", "false").lower() == "true"
        self._enabled = bool(enabled)
        self._client = None
        if self._enabled:
            try:
                self._client = redis.from_url(self._url)
            except (redis.RedisError, ValueError) as e:
                _log.warning("events: failed to connect to redis '%s': %s", self._url, e)
                self._enabled = False

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        data = envelope(event, payload)
        if self._enabled and self._client is not None:
            try:
                self._client.publish(channel_for(payload["restaurant_id"]), json.dumps(data, default=str))
                return
            except redis.RedisError as e:
                _log.warning("events: redis publish failed: %s", e)
        _log.info("event", extra={"event": data})


class RestaurantHub(Notifier):
    """
    WebSocket sessions grouped by restaurant. `emit` only enqueues; a
    background task started with `start()` drains the queue, so the
    mutating request never waits on a listener.
    """

    def __init__(self) -> None:
        self._sockets: Dict[int, Set[WebSocket]] = {}
        self._queue: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._task = asyncio.create_task(self._drain_forever())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._loop = None
        self._queue = None

    async def connect(self, restaurant_id: int, ws: WebSocket) -> None:
        await ws.accept()
        self._sockets.setdefault(int(restaurant_id), set()).add(ws)

    def disconnect(self, restaurant_id: int, ws: WebSocket) -> None:
        group = self._sockets.get(int(restaurant_id))
        if group is None:
            return
        group.discard(ws)
        if not group:
            self._sockets.pop(int(restaurant_id), None)

    def listeners(self, restaurant_id: int) -> int:
        return len(self._sockets.get(int(restaurant_id), ()))

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        loop, queue = self._loop, self._queue
        if loop is None or queue is None or loop.is_closed():
            _log.debug("hub not running; dropping %s", event)
            return
        item = (int(payload["restaurant_id"]), envelope(event, payload))
        # Sync endpoints run in a worker thread, so hand over to the loop.
        loop.call_soon_threadsafe(queue.put_nowait, item)

    async def broadcast(self, restaurant_id: int, msg: Dict[str, Any]) -> None:
        text = json.dumps(msg, default=str)
        for ws in list(self._sockets.get(int(restaurant_id), ())):
            try:
                await ws.send_text(text)
            except Exception:
                self.disconnect(restaurant_id, ws)

    async def _drain_forever(self) -> None:
        assert self._queue is not None
        while True:
            restaurant_id, msg = await self._queue.get()
            try:
                await self.broadcast(restaurant_id, msg)
            except Exception:
                _log.exception("hub broadcast failed")


class FanoutNotifier(Notifier):
    def __init__(self, *notifiers: Notifier) -> None:
        self.notifiers: List[Notifier] = list(notifiers)

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        for n in self.notifiers:
            try:
                n.emit(event, payload)
            except Exception as e:
                # Notification must not undo a committed change.
                _log.warning("events: %s emit via %s failed: %s", event, type(n).__name__, e)


class LiveOrderView:
    """
    Receiver-side state for one restaurant's staff screen. Pushed events and
    the periodic poll both land here; everything is keyed by order id, so
    applying the same order twice, in any order of arrival, is harmless.
    """

    def __init__(self, restaurant_id: int) -> None:
        self.restaurant_id = int(restaurant_id)
        self.orders: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        self.submit_disabled: Optional[bool] = None

    def _upsert(self, order: Dict[str, Any]) -> bool:
        oid = str(order["id"])
        known = oid in self.orders
        self.orders[oid] = dict(order)
        return not known

    def apply(self, event: str, payload: Dict[str, Any]) -> None:
        if int(payload.get("restaurant_id", -1)) != self.restaurant_id:
            return
        if event in (NEW_ORDER, ORDER_UPDATED):
            self._upsert(payload["order"])
        elif event == ORDERS_COMPLETED:
            for o in payload.get("orders") or []:
                self._upsert(o)
        elif event == ORDER_DELETED:
            self.orders.pop(str(payload["id"]), None)
        elif event == SUBMIT_GATE_UPDATED:
            self.submit_disabled = bool(payload["submit_disabled"])

    def apply_message(self, msg: Dict[str, Any]) -> None:
        self.apply(str(msg.get("type")), msg.get("payload") or {})

    def reconcile(self, polled: Iterable[Dict[str, Any]]) -> List[str]:
        """
        Add polled orders not seen yet; returns their ids. Known ids are left
        alone since a push may already carry a newer status than the poll.
        """
        added: List[str] = []
        for o in polled:
            if int(o.get("restaurant_id", self.restaurant_id)) != self.restaurant_id:
                continue
            if str(o["id"]) in self.orders:
                continue
            self._upsert(o)
            added.append(str(o["id"]))
        return added

    def by_status(self, status: str) -> List[Dict[str, Any]]:
        return [o for o in self.orders.values() if o.get("status") == status]
