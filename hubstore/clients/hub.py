"""Client for the confidential storage hub's HTTP API.

Client errors answered by the hub are re-raised with the same status so
the comparator relays them instead of turning them into 500s.
"""

from __future__ import annotations

from typing import Any

import httpx

from hubstore.clients.base import error_message, json_body
from hubstore.core.models import ComparisonRequest, DocQuery, Profile, RefQuery
from hubstore.exceptions import (
    AuthorizationError,
    BadRequestError,
    DeadlineExceededError,
    HubstoreError,
    NotFoundError,
    UnsupportedTypeError,
    UpstreamError,
)

_RELAYED: dict[int, type[HubstoreError]] = {
    400: BadRequestError,
    403: AuthorizationError,
    404: NotFoundError,
    501: UnsupportedTypeError,
    504: DeadlineExceededError,
}


class HubClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, payload: Any) -> httpx.Response:
        try:
            response = await self._client.post(path, json=payload)
        except httpx.TimeoutException as exc:
            raise DeadlineExceededError("hub request timed out") from exc
        except httpx.RequestError as exc:
            raise UpstreamError(f"hub is unreachable: {type(exc).__name__}") from exc

        if response.is_error:
            error = _RELAYED.get(response.status_code)
            if error is None:
                raise UpstreamError(
                    f"hub returned HTTP {response.status_code}: {error_message(response)}"
                )
            raise error(error_message(response))
        return response

    async def create_profile(self, controller: str) -> Profile:
        response = await self._post("/profiles", {"controller": controller})
        return Profile.model_validate(json_body(response, "hub"))

    async def create_query(self, profile_id: str, query: DocQuery) -> str:
        """Register ``query`` and return its location."""
        response = await self._post(
            f"/profiles/{profile_id}/queries", query.model_dump(by_alias=True)
        )
        location = response.headers.get("Location")
        if not location:
            raise UpstreamError("hub did not return a query location")
        return location

    async def compare(self, request: ComparisonRequest) -> bool:
        response = await self._post("/compare", request.model_dump(by_alias=True, exclude_none=True))
        body = json_body(response, "hub")
        if not isinstance(body, dict) or not isinstance(body.get("result"), bool):
            raise UpstreamError("hub returned a malformed comparison result")
        return body["result"]

    async def extract(self, queries: list[DocQuery | RefQuery]) -> list[Any]:
        response = await self._post(
            "/extract", [q.model_dump(by_alias=True, exclude_none=True) for q in queries]
        )
        body = json_body(response, "hub")
        if not isinstance(body, list):
            raise UpstreamError("hub returned a malformed extraction result")
        return [item.get("document") if isinstance(item, dict) else None for item in body]
