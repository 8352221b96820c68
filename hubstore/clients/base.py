"""Shared request helper for collaborator clients.

httpx failures are translated once here: timeouts become deadline errors,
everything else an upstream error naming the collaborator.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from hubstore.exceptions import DeadlineExceededError, UpstreamError

logger = logging.getLogger("hubstore.clients")


def error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict) and isinstance(body.get("message"), str):
        return body["message"]
    return response.text[:200]


async def send(
    client: httpx.AsyncClient, method: str, url: str, service: str, **kwargs: Any
) -> httpx.Response:
    try:
        response = await client.request(method, url, **kwargs)
        response.raise_for_status()
    except httpx.TimeoutException as exc:
        logger.warning("%s request timed out: %s %s", service, method, url)
        raise DeadlineExceededError(f"{service} request timed out") from exc
    except httpx.HTTPStatusError as exc:
        logger.warning(
            "%s returned HTTP %d for %s %s", service, exc.response.status_code, method, url
        )
        raise UpstreamError(
            f"{service} returned HTTP {exc.response.status_code}: {error_message(exc.response)}"
        ) from exc
    except httpx.RequestError as exc:
        logger.warning("%s unreachable: %s", service, type(exc).__name__)
        raise UpstreamError(f"{service} is unreachable: {type(exc).__name__}") from exc
    return response


def json_body(response: httpx.Response, service: str) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise UpstreamError(f"{service} returned invalid JSON") from exc
