from __future__ import annotations

# Local Expo / web dev servers.
_DEV_ORIGINS = {
    "http://localhost:3000",
    "http://localhost:8081",
    "http://localhost:19006",
}


def build_allowed_origins(*, frontend_urls: str | None, include_dev: bool) -> list[str]:
    allowed: set[str] = set(_DEV_ORIGINS) if include_dev else set()
    for origin in [s.strip() for s in str(frontend_urls or "").split(",") if s.strip()]:
        allowed.add(origin.rstrip("/"))
    return sorted(allowed)
