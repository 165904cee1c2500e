"""Route gating for the embed's ``allowedRoutes`` option."""

from __future__ import annotations

from urllib.parse import urlsplit


def normalize_path(path: str) -> str:
    """Reduce a URL or path to its pathname without a trailing slash."""
    path = urlsplit(path).path if "://" in path else path.split("?")[0].split("#")[0]
    if not path.startswith("/"):
        path = "/" + path
    if len(path) > 1:
        path = path.rstrip("/") or "/"
    return path


def route_matches(path: str, pattern: str) -> bool:
    """Match one ``allowedRoutes`` entry: an exact path or a ``/prefix/*`` wildcard."""
    path = normalize_path(path)
    pattern = pattern.strip()
    if pattern.endswith("/*"):
        prefix = normalize_path(pattern[:-2] or "/")
        if prefix == "/":
            return True
        return path == prefix or path.startswith(prefix + "/")
    return path == normalize_path(pattern)


def route_allowed(path: str, allowed_routes: list[str] | None) -> bool:
    """True when the widget may render on ``path``.  No routes means all routes."""
    if not allowed_routes:
        return True
    return any(route_matches(path, pattern) for pattern in allowed_routes if pattern)
