from __future__ import annotations

import json
import logging

from fastapi import FastAPI
from fastapi.testclient import TestClient

from tableside_shared import (
    RequestIDMiddleware,
    add_standard_health,
    bind_request_id,
    configure_cors,
    get_request_id,
    parse_origins,
)
from tableside_shared.logging import JsonFormatter


def _app(checks=None, origins=None):
    app = FastAPI(title="health-check", version="9.9")
    app.add_middleware(RequestIDMiddleware)
    configure_cors(app, origins)
    add_standard_health(app, checks=checks)

    @app.get("/rid")
    def rid():
        return {"rid": get_request_id()}

    return app


def test_health_degrades_when_a_check_fails():
    def boom():
        raise RuntimeError("db down")

    client = TestClient(_app(checks={"db": boom, "cache": lambda: False, "disk": lambda: True}))
    body = client.get("/health").json()

    assert body["status"] == "degraded"
    assert body["checks"] == {"db": "error: RuntimeError", "cache": "fail", "disk": "ok"}
    assert body["service"] == "health-check"
    assert body["version"] == "9.9"


def test_request_id_is_bound_for_the_handler_and_truncated():
    client = TestClient(_app())
    long_id = "x" * 100

    r = client.get("/rid", headers={"X-Request-ID": long_id})

    assert r.json()["rid"] == "x" * 64
    assert r.headers["X-Request-ID"] == "x" * 64


def test_wildcard_cors_drops_credentials():
    client = TestClient(_app(origins="*"))
    r = client.get("/health", headers={"Origin": "http://diner.example"})
    assert r.headers["access-control-allow-origin"] == "*"
    assert "access-control-allow-credentials" not in r.headers


def test_listed_origins_allow_credentials():
    client = TestClient(_app(origins="http://staff.example, http://diner.example"))
    r = client.get("/health", headers={"Origin": "http://staff.example"})
    assert r.headers["access-control-allow-origin"] == "http://staff.example"
    assert r.headers["access-control-allow-credentials"] == "true"


def test_json_formatter_carries_event_and_request_id():
    bind_request_id("worker-1")
    record = logging.LogRecord("tableside.events", logging.INFO, __file__, 1, "event", None, None)
    record.event = {"type": "newOrder", "payload": {"restaurant_id": 1}}

    out = json.loads(JsonFormatter().format(record))

    assert out["request_id"] == "worker-1"
    assert out["logger"] == "tableside.events"
    assert out["event"]["type"] == "newOrder"


def test_parse_origins():
    assert parse_origins(None) == (["http://localhost:3000", "http://localhost:3001"], True)
    assert parse_origins("https://a.example/, https://a.example,https://b.example") == (
        ["https://a.example", "https://b.example"],
        True,
    )
    assert parse_origins("https://a.example, *") == (["*"], False)


def test_preflight_allows_only_client_headers():
    client = TestClient(_app(origins="http://staff.example"))
    ok = client.options(
        "/health",
        headers={
            "Origin": "http://staff.example",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "X-Restaurant-ID, Content-Type",
        },
    )
    assert ok.status_code == 200

    blocked = client.options(
        "/health",
        headers={
            "Origin": "http://staff.example",
            "Access-Control-Request-Method": "PATCH",
            "Access-Control-Request-Headers": "X-Debug",
        },
    )
    assert blocked.status_code == 400
