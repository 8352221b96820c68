"""Key management service client."""

from __future__ import annotations

import binascii
from urllib.parse import urlsplit

import httpx

from hubstore.clients.base import json_body, send
from hubstore.crypto.did import b64url_decode, b64url_encode
from hubstore.exceptions import UpstreamError


def key_url(base_url: str, kid: str) -> str:
    """Resolve a key ID against the key service URL.

    An absolute key ID is accepted only when it names the same scheme and
    host as ``base_url``.
    """
    base = base_url.rstrip("/")
    key, service = urlsplit(kid), urlsplit(base)
    if not key.scheme and not key.netloc:
        return f"{base}/{kid.lstrip('/')}"
    if (key.scheme, key.netloc.lower()) != (service.scheme, service.netloc.lower()):
        raise UpstreamError(f"key {kid} is not held by the key service at {base}")
    return kid.rstrip("/")


class KMSClient:
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

    async def unwrap(self, kid: str, alg: str, encrypted_key: bytes) -> bytes:
        """Unwrap a content-encryption key with the key named ``kid``."""
        payload = {
            "wrappedKey": {
                "kid": kid,
                "alg": alg,
                "encryptedKey": b64url_encode(encrypted_key),
            }
        }
        async with httpx.AsyncClient(
            auth=self.auth, timeout=self.timeout, transport=self.transport
        ) as client:
            response = await send(
                client, "POST", f"{key_url(self.base_url, kid)}/unwrap", "key service", json=payload
            )
        body = json_body(response, "key service")
        if not isinstance(body, dict) or not isinstance(body.get("key"), str):
            raise UpstreamError("key service returned no key")
        try:
            return b64url_decode(body["key"])
        except (binascii.Error, ValueError) as exc:
            raise UpstreamError("key service returned an undecodable key") from exc
