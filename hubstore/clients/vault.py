"""Vault server client: document metadata lookups."""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urlsplit

import httpx

from hubstore.clients.base import json_body, send
from hubstore.exceptions import UpstreamError


@dataclass(frozen=True)
class DocumentMetadata:
    doc_id: str
    uri: str
    enc_key_uri: str

    @property
    def edv_base_url(self) -> str:
        """Storage URL with the trailing ``/<vault>/documents/<doc>`` removed."""
        parts = self.uri.rstrip("/").rsplit("/", 3)
        if len(parts) != 4 or parts[2] != "documents":
            raise UpstreamError(f"unexpected document URI [{self.uri}]")
        return parts[0]

    @property
    def vault_id(self) -> str:
        return self.uri.rstrip("/").rsplit("/", 3)[1]

    @property
    def kms_base_url(self) -> str:
        parts = urlsplit(self.enc_key_uri)
        if not parts.scheme or not parts.netloc:
            raise UpstreamError(f"unexpected key URI [{self.enc_key_uri}]")
        return f"{parts.scheme}://{parts.netloc}"


class VaultClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def get_doc_metadata(self, vault_id: str, doc_id: str) -> DocumentMetadata:
        url = f"{self.base_url}/vaults/{vault_id}/docs/{doc_id}/metadata"
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await send(client, "GET", url, "vault server")
        body = json_body(response, "vault server")
        try:
            return DocumentMetadata(
                doc_id=body.get("docID", doc_id), uri=body["uri"], enc_key_uri=body["encKeyURI"]
            )
        except (AttributeError, KeyError, TypeError) as exc:
            raise UpstreamError("vault server returned malformed document metadata") from exc
