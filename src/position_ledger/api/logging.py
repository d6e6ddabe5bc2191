"""API-specific logging helpers."""

from __future__ import annotations

from fastapi import Request

from position_ledger.logging_config import get_log_environment, structured_log_extra


def build_request_log_extra(request: Request | None, event: str | None = None, **kwargs):
    """Build a structured ``extra`` payload for HTTP logs.

    Every entry carries a ``request_id`` and an ``event`` along with the route
    metadata of ``request`` when one is given.
    """

    request_id = None
    route_metadata = {}

    if request is not None:
        request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID")
        route_metadata["http_method"] = request.method
        route_metadata["path"] = request.url.path

        route = request.scope.get("route")
        route_name = getattr(route, "name", None) if route is not None else None
        if route_name is not None:
            route_metadata["route_name"] = route_name

    return structured_log_extra(
        env=get_log_environment(),
        request_id=request_id,
        event=kwargs.pop("event", event) or "http_request",
        **route_metadata,
        **kwargs,
    )


__all__ = ["build_request_log_extra"]
