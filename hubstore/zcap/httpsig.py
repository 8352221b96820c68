"""HTTP capability invocation.

Outgoing requests carry the capability being invoked and the action in a
``Capability-Invocation`` header and are signed with an HTTP message
signature (draft-cavage) keyed by the invoker's DID URL. ``verify_request``
is the receiving side of the same exchange.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import re
from collections.abc import AsyncGenerator, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import format_datetime

import httpx

from hubstore.crypto.did import CAPABILITY_INVOCATION, did_of
from hubstore.crypto.signature import CapabilitySignatureBinding
from hubstore.exceptions import ActionNotPermittedError, InvalidSignatureError
from hubstore.zcap.capability import compress_capability, decompress_capability
from hubstore.zcap.models import Capability

INVOCATION_HEADER = "Capability-Invocation"

GET_HEADERS = ("(request-target)", "date")
POST_HEADERS = ("(request-target)", "date", "digest")

ActionClassifier = Callable[[httpx.Request], str]

_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')


def edv_action(request: httpx.Request) -> str:
    """Document storage: reads are GETs, everything else writes."""
    return "read" if request.method == "GET" else "write"


def kms_action(request: httpx.Request) -> str:
    """Key service: the operation is the last path segment."""
    segment = request.url.path.rstrip("/").rsplit("/", 1)[-1]
    if segment in ("sign", "wrap", "unwrap"):
        return segment
    if segment == "export":
        return "exportKey"
    return "createKey"


def body_digest(body: bytes) -> str:
    return "SHA-256=" + base64.b64encode(hashlib.sha256(body).digest()).decode("ascii")


def signing_string(method: str, target: str, headers: Mapping[str, str], names: tuple[str, ...]) -> bytes:
    lines = []
    for name in names:
        if name == "(request-target)":
            lines.append(f"(request-target): {method.lower()} {target}")
        else:
            value = headers.get(name)
            if value is None:
                raise InvalidSignatureError(f"signed header [{name}] is missing")
            lines.append(f"{name}: {value}")
    return "\n".join(lines).encode()


def invocation_header(capability: Capability | str, action: str) -> str:
    compressed = capability if isinstance(capability, str) else compress_capability(capability)
    return f'zcap capability="{compressed}",action="{action}"'


class CapabilityAuth(httpx.Auth):
    """httpx auth flow that invokes ``capability`` as ``key_id``."""

    requires_request_body = True

    def __init__(
        self,
        capability: Capability | str,
        binding: CapabilitySignatureBinding,
        key_id: str,
        action: ActionClassifier,
    ) -> None:
        self.capability = capability
        self.binding = binding
        self.key_id = key_id
        self.action = action

    async def async_auth_flow(
        self, request: httpx.Request
    ) -> AsyncGenerator[httpx.Request, httpx.Response]:
        body = await request.aread()

        request.headers[INVOCATION_HEADER] = invocation_header(self.capability, self.action(request))
        request.headers["Date"] = format_datetime(datetime.now(timezone.utc), usegmt=True)
        names = GET_HEADERS
        if body:
            request.headers["Digest"] = body_digest(body)
            names = POST_HEADERS

        target = request.url.raw_path.decode("ascii")
        data = signing_string(request.method, target, request.headers, names)
        signature = await self.binding.sign(self.key_id, data, CAPABILITY_INVOCATION)
        handle = await self.binding.key_handle(self.key_id, CAPABILITY_INVOCATION)

        request.headers["Signature"] = (
            f'keyId="{self.key_id}",algorithm="{handle.algorithm}",'
            f'headers="{" ".join(names)}",'
            f'signature="{base64.b64encode(signature).decode("ascii")}"'
        )
        yield request


@dataclass(frozen=True)
class Invocation:
    key_id: str
    capability: Capability
    action: str


async def verify_request(
    method: str,
    target: str,
    headers: Mapping[str, str],
    body: bytes,
    binding: CapabilitySignatureBinding,
) -> Invocation:
    """Check the HTTP signature and return the capability invocation.

    ``target`` is the request path including any query string. The
    capability chain itself is not verified here; pass the result to
    ``verify_capability``.
    """
    headers = httpx.Headers(headers)
    params = dict(_PARAM_RE.findall(headers.get("Signature", "")))
    if "keyId" not in params or "signature" not in params:
        raise InvalidSignatureError("request is not signed")
    names = tuple(params.get("headers", "date").split())

    if body or "digest" in names:
        if headers.get("Digest") != body_digest(body):
            raise InvalidSignatureError("digest does not match the request body")

    try:
        signature = base64.b64decode(params["signature"], validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidSignatureError("undecodable request signature") from exc

    data = signing_string(method, target, headers, names)
    await binding.verify(params["keyId"], data, signature, CAPABILITY_INVOCATION)

    invocation = dict(_PARAM_RE.findall(headers.get(INVOCATION_HEADER, "")))
    if "capability" not in invocation or "action" not in invocation:
        raise ActionNotPermittedError("request carries no capability invocation")
    capability = decompress_capability(invocation["capability"])

    if did_of(capability.delegatee or "") != did_of(params["keyId"]):
        raise ActionNotPermittedError(f"{params['keyId']} may not invoke {capability.id}")

    return Invocation(key_id=params["keyId"], capability=capability, action=invocation["action"])
