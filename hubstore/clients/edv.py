"""Encrypted data vault (document storage) client."""

from __future__ import annotations

from typing import Any

import httpx

from hubstore.clients.base import json_body, send
from hubstore.exceptions import UpstreamError


class EDVClient:
    def __init__(
        self,
        base_url: str,
        auth: httpx.Auth | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.auth = auth
        self.timeout = timeout
        self.transport = transport

    async def read_document(self, vault_id: str, doc_id: str) -> dict[str, Any]:
        """Fetch the encrypted document ``{"id", "sequence", "jwe"}``."""
        url = f"{self.base_url}/{vault_id}/documents/{doc_id}"
        async with httpx.AsyncClient(
            auth=self.auth, timeout=self.timeout, transport=self.transport
        ) as client:
            response = await send(client, "GET", url, "storage service")
        document = json_body(response, "storage service")
        if not isinstance(document, dict) or "jwe" not in document:
            raise UpstreamError("storage service returned a document without a jwe")
        return document
