"""HTTP loaders built on httpx for storefront API endpoints."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

import httpx

from querypolicy.runtime import Loader

logger = logging.getLogger(__name__)


def clean_params(params: Optional[Mapping[str, Any]]) -> dict[str, Any]:
    """Drop filter values that are None or empty strings."""
    if not params:
        return {}
    return {k: v for k, v in params.items() if v is not None and v != ""}


def unwrap(body: Any) -> Any:
    """Return the ``data`` member of a ``{"success": ..., "data": ...}`` envelope."""
    if isinstance(body, dict) and "data" in body:
        return body["data"]
    return body


def json_loader(
    client: httpx.AsyncClient,
    path: str,
    params: Optional[Mapping[str, Any]] = None,
) -> Loader:
    """
    Build a loader issuing ``GET path`` and unwrapping the JSON envelope.

    Non-2xx responses raise ``httpx.HTTPStatusError`` so retry decisions
    can read the status from ``error.response.status_code``.

    Example:
        >>> async with httpx.AsyncClient(base_url="https://api.example.com") as client:
        ...     load = json_loader(client, "/drones", {"category": "fpv", "q": ""})
        ...     drones = await engine.fetch(drone_keys.list({"category": "fpv"}), load)
    """
    query = clean_params(params)

    async def load() -> Any:
        logger.debug("GET %s params=%s", path, query)
        response = await client.get(path, params=query)
        response.raise_for_status()
        return unwrap(response.json())

    return load
