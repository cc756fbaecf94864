from __future__ import annotations

import os
from collections.abc import Callable

from fastapi import FastAPI


def add_standard_health(
    app: FastAPI,
    env_key: str = "ENV",
    checks: dict[str, Callable[[], bool]] | None = None,
):
    """
    Register GET /health. Each entry in `checks` is a zero-arg check; a check
    that returns False or raises marks the service as degraded.
    """
    registered = dict(checks or {})

    @app.get("/health")
    def _health():
        results: dict[str, str] = {}
        for name, check in registered.items():
            try:
                results[name] = "ok" if check() else "fail"
            except Exception as e:
                results[name] = f"error: {type(e).__name__}"
        status = "ok" if all(v == "ok" for v in results.values()) else "degraded"
        return {
            "status": status,
            "env": os.getenv(env_key, "dev"),
            "service": app.title,
            "version": getattr(app, "version", None),
            "checks": results,
        }
