from __future__ import annotations

import json
import logging
import os
import sys
import time
from typing import Any, Callable, Optional

import httpx

import redis

from apps.tableorder.app.events import LiveOrderView, channel_for
from apps.tableorder.app.order_state import LIVE
from tableside_shared import bind_request_id, setup_json_logging


log = logging.getLogger("tableside.feed")


def poll_once(client: httpx.Client, view: LiveOrderView) -> list:
    """
    Reconciling poll: fetch live orders and merge the ones the push channel
    has not delivered. Returns the ids that were new.
    """
    resp = client.get("/orders", params={"status": LIVE})
    resp.raise_for_status()
    added = view.reconcile(resp.json())
    if added:
        log.info("poll found %d order(s) missed by push: %s", len(added), ", ".join(added))
    return added


def handle_message(view: LiveOrderView, msg: Optional[dict]) -> bool:
    if not msg or msg.get("type") != "message":
        return False
    raw = msg.get("data")
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", "replace")
        data = json.loads(raw)
    except (TypeError, ValueError):
        log.warning("received non-JSON event on %s: %r", msg.get("channel"), raw)
        return False
    view.apply_message(data)
    log.info("event", extra={"event": data})
    return True


def run(
    view: LiveOrderView,
    client: httpx.Client,
    pubsub: Any = None,
    interval: float = 10.0,
    clock: Callable[[], float] = time.monotonic,
    max_cycles: Optional[int] = None,
) -> None:
    next_poll = 0.0
    cycles = 0
    while max_cycles is None or cycles < max_cycles:
        cycles += 1
        now = clock()
        if now >= next_poll:
            try:
                poll_once(client, view)
            except httpx.HTTPError as e:
                log.warning("poll failed: %s", e)
            next_poll = now + interval
        if pubsub is not None:
            try:
                msg = pubsub.get_message(timeout=1.0)
            except redis.RedisError as e:
                log.warning("redis subscription lost (%s); continuing on poll only", e)
                _close(pubsub)
                pubsub = None
                continue
            handle_message(view, msg)
        else:
            time.sleep(min(1.0, interval))


def _close(pubsub: Any) -> None:
    try:
        pubsub.close()
    except redis.RedisError as e:
        log.debug("pubsub close failed: %s", e)


def main(argv: Optional[list] = None) -> int:
    """
    Sidecar for one restaurant's staff screen: follows pushed events on Redis
    and runs the reconciling poll against the API.
    """
    setup_json_logging()
    bind_request_id()
    argv = list(sys.argv[1:] if argv is None else argv)
    rid_raw = argv[0] if argv else os.getenv("TABLEORDER_RESTAURANT_ID", "")
    if not rid_raw.isdigit():
        log.error("usage: python -m apps.tableorder.feed_worker <restaurant_id>")
        return 2
    rid = int(rid_raw)
    base_url = os.getenv("TABLEORDER_BASE_URL", "http://localhost:8000")
    interval = float(os.getenv("TABLEORDER_POLL_SECS", "10"))

    pubsub = None
    if os.getenv("EVENTS_ENABLED", "false").lower() == "true":
        url = os.getenv("EVENTS_REDIS_URL", "redis://localhost:6379/0")
        try:
            pubsub = redis.from_url(url).pubsub(ignore_subscribe_messages=True)
            pubsub.subscribe(channel_for(rid))
            log.info("subscribed to %s on %s", channel_for(rid), url)
        except redis.RedisError as e:
            log.warning("redis unavailable (%s); running on poll only", e)
            pubsub = None

    view = LiveOrderView(rid)
    with httpx.Client(base_url=base_url, headers={"X-Restaurant-ID": str(rid)}, timeout=5.0) as client:
        try:
            run(view, client, pubsub=pubsub, interval=interval)
        except KeyboardInterrupt:
            log.info("feed worker interrupted, shutting down")
        finally:
            if pubsub is not None:
                _close(pubsub)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
