from __future__ import annotations

from collections.abc import Iterable

from fastapi.middleware.cors import CORSMiddleware

# Staff dashboard and diner app dev servers.
DEV_ORIGINS = ("http://localhost:3000", "http://localhost:3001")

# Headers the diner and staff apps send; anything else fails preflight.
CLIENT_HEADERS = ("Content-Type", "X-Restaurant-ID", "X-Request-ID")
METHODS = ("GET", "POST", "PUT", "DELETE")


def parse_origins(allowed: str | None) -> tuple[list[str], bool]:
    """
    Split ALLOWED_ORIGINS and decide on credentials. Returns (origins,
    allow_credentials); a wildcard anywhere collapses to ["*"] without
    credentials.
    """
    origins = [o.strip().rstrip("/") for o in (allowed or "").split(",") if o.strip()]
    if not origins:
        return list(DEV_ORIGINS), True
    if "*" in origins:
        return ["*"], False
    return list(dict.fromkeys(origins)), True


def configure_cors(app, allowed: str | None, extra_headers: Iterable[str] = ()):
    origins, allow_credentials = parse_origins(allowed)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=allow_credentials,
        allow_methods=list(METHODS),
        allow_headers=[*CLIENT_HEADERS, *extra_headers],
        expose_headers=["X-Request-ID"],
    )
