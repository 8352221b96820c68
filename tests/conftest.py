"""Shared fixtures for hubstore tests.

``FakeUpstream`` plays the data owner and its collaborators: an encrypted
document store, a key service and a vault server, all behind one
``httpx.MockTransport``. The store and the key service verify the HTTP
signature and the capability chain of every request, as the real services
would.
"""

from __future__ import annotations

import json
import os
import re
from datetime import datetime, timezone
from typing import Any

import httpx
import pytest
import pytest_asyncio
from cryptography.hazmat.primitives.keywrap import aes_key_unwrap
from httpx import ASGITransport, AsyncClient

from hubstore.api.app import create_comparator_app, create_hub_app
from hubstore.comparator.service import ComparatorService
from hubstore.config import ComparatorSettings, Settings
from hubstore.core.identity import create_did_key_identity, register_identity
from hubstore.core.service import HubService
from hubstore.crypto import jwe
from hubstore.crypto.did import KeyDIDResolver, ResolverSet, StaticDIDResolver, b64url_decode, b64url_encode
from hubstore.crypto.keys import LocalKeyManager
from hubstore.crypto.signature import CapabilitySignatureBinding
from hubstore.exceptions import HubstoreError
from hubstore.storage.database import Database
from hubstore.zcap.capability import Signer, compress_capability, mint_capability, verify_capability
from hubstore.zcap.httpsig import verify_request

EDV_URL = "https://edv.example.com/encrypted-data-vaults"
KMS_URL = "https://kms.example.com"
VAULT_URL = "https://vault.example.com"
HUB_URL = "https://hub.example.com"

EDV_VAULT_ID = "z19uMCiPNET4YbcPpBcab5mEE"
KEY_PATH = "/kms/keystores/ks1/keys/k1"

_EDV_DOC = re.compile(r"^/encrypted-data-vaults/([^/]+)/documents/([^/]+)$")
_VAULT_META = re.compile(r"^/vaults/([^/]+)/docs/([^/]+)/metadata$")


class FakeUpstream:
    """Data owner plus its storage, key and vault services."""

    def __init__(self) -> None:
        self.key_manager = LocalKeyManager()
        self.binding = CapabilitySignatureBinding(ResolverSet([KeyDIDResolver()]), self.key_manager)
        self.owner = create_did_key_identity()
        self.owner_keys = register_identity(self.owner, self.key_manager)
        self.kek = os.urandom(32)
        self.documents: dict[tuple[str, str], dict[str, Any]] = {}
        self.capabilities: dict[str, Any] = {}
        self.requests: list[httpx.Request] = []
        self.edv_root = None
        self.kms_root = None
        self.transport = httpx.MockTransport(self.handle)

    @property
    def signer(self) -> Signer:
        return Signer(self.binding, self.owner_keys.delegation)

    async def setup(self) -> None:
        self.edv_root = await mint_capability(
            parent=None,
            invoker=self.owner.did,
            target_id=f"{EDV_URL}/{EDV_VAULT_ID}",
            target_type="urn:edv:vault",
            actions=("read", "write"),
            caveats=(),
            signer=self.signer,
            controller=self.owner.did,
        )
        self.kms_root = await mint_capability(
            parent=None,
            invoker=self.owner.did,
            target_id=f"{KMS_URL}/kms/keystores/ks1",
            target_type="urn:kms:keystore",
            actions=("unwrap", "wrap", "sign"),
            caveats=(),
            signer=self.signer,
            controller=self.owner.did,
        )
        self.capabilities[self.edv_root.id] = self.edv_root
        self.capabilities[self.kms_root.id] = self.kms_root

    async def authorize(self, invoker: str) -> tuple[str, str]:
        """Delegate read and unwrap to ``invoker``; returns compressed (edv, kms)."""
        edv = await mint_capability(
            parent=self.edv_root,
            invoker=invoker,
            target_id=self.edv_root.invocation_target.id,
            target_type=self.edv_root.invocation_target.type,
            actions=("read",),
            caveats=(),
            signer=self.signer,
        )
        kms = await mint_capability(
            parent=self.kms_root,
            invoker=invoker,
            target_id=self.kms_root.invocation_target.id,
            target_type=self.kms_root.invocation_target.type,
            actions=("unwrap",),
            caveats=(),
            signer=self.signer,
        )
        return compress_capability(edv), compress_capability(kms)

    def store(self, doc_id: str, content: dict[str, Any], kid: str = KEY_PATH) -> None:
        plaintext = json.dumps({"id": doc_id, "content": content}).encode()
        self.documents[(EDV_VAULT_ID, doc_id)] = {
            "id": doc_id,
            "sequence": 0,
            "jwe": jwe.encrypt(plaintext, self.kek, kid),
        }

    def doc_query(self, doc_id: str, path: str, tokens: tuple[str, str]) -> dict[str, Any]:
        """Hub DocQuery wire form for a stored document."""
        return {
            "type": "DocQuery",
            "vaultID": EDV_VAULT_ID,
            "docID": doc_id,
            "path": path,
            "upstreamAuth": {
                "edv": {"baseURL": EDV_URL, "zcap": tokens[0]},
                "kms": {"baseURL": KMS_URL, "zcap": tokens[1]},
            },
        }

    async def _fetch(self, capability_id: str):
        return self.capabilities.get(capability_id)

    async def _authorize_request(self, request: httpx.Request) -> str:
        body = await request.aread()
        invocation = await verify_request(
            request.method, request.url.raw_path.decode(), request.headers, body, self.binding
        )
        await verify_capability(
            invocation.capability,
            datetime.now(timezone.utc),
            invocation.action,
            self._fetch,
            self.binding,
            invoker=invocation.key_id,
        )
        return invocation.action

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host, path = request.url.host, request.url.path

        if host == "vault.example.com":
            match = _VAULT_META.match(path)
            if match is None:
                return httpx.Response(404)
            doc_id = match.group(2)
            return httpx.Response(
                200,
                json={
                    "docID": doc_id,
                    "uri": f"{EDV_URL}/{EDV_VAULT_ID}/documents/{doc_id}",
                    "encKeyURI": f"{KMS_URL}{KEY_PATH}",
                },
            )

        try:
            await self._authorize_request(request)
        except HubstoreError as exc:
            return httpx.Response(403, json={"message": exc.message})

        if host == "edv.example.com":
            match = _EDV_DOC.match(path)
            document = self.documents.get(match.groups()) if match else None
            if document is None:
                return httpx.Response(404, json={"message": "document not found"})
            return httpx.Response(200, json=document)

        if host == "kms.example.com" and path == f"{KEY_PATH}/unwrap":
            wrapped = json.loads(request.content)["wrappedKey"]
            key = aes_key_unwrap(self.kek, b64url_decode(wrapped["encryptedKey"]))
            return httpx.Response(200, json={"key": b64url_encode(key)})

        return httpx.Response(404)


class RoutingTransport(httpx.AsyncBaseTransport):
    """Sends requests for some hosts to dedicated transports."""

    def __init__(self, routes: dict[str, httpx.AsyncBaseTransport], default: httpx.AsyncBaseTransport):
        self.routes = routes
        self.default = default

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        transport = self.routes.get(request.url.host, self.default)
        return await transport.handle_async_request(request)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db(tmp_path):
    """Fresh database for each test."""
    database = Database(tmp_path / "test.db")
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def key_manager():
    return LocalKeyManager()


@pytest.fixture
def example_resolver():
    """did:example documents registered by individual tests."""
    return StaticDIDResolver("example")


@pytest.fixture
def binding(key_manager, example_resolver):
    return CapabilitySignatureBinding(ResolverSet([KeyDIDResolver(), example_resolver]), key_manager)


@pytest.fixture
def identity(key_manager):
    """A did:key identity whose key is held by ``key_manager``."""
    ident = create_did_key_identity()
    return ident, register_identity(ident, key_manager)


@pytest_asyncio.fixture
async def upstream():
    fake = FakeUpstream()
    await fake.setup()
    return fake


@pytest.fixture
def hub_settings(tmp_path):
    return Settings(base_url=HUB_URL, db_path=str(tmp_path / "hub.db"), request_timeout=5.0)


@pytest_asyncio.fixture
async def hub_service(db, upstream, hub_settings):
    svc = HubService(hub_settings, db, transport=upstream.transport)
    await svc.start()
    return svc


@pytest_asyncio.fixture
async def hub_client(hub_service):
    """HTTP test client for the hub app."""
    app = create_hub_app(hub_service.settings, hub_service)
    async with AsyncClient(transport=ASGITransport(app=app), base_url=HUB_URL) as ac:
        yield ac


@pytest_asyncio.fixture
async def comparator_service(tmp_path, hub_service, upstream):
    hub_app = create_hub_app(hub_service.settings, hub_service)
    transport = RoutingTransport(
        {"hub.example.com": ASGITransport(app=hub_app)}, default=upstream.transport
    )
    database = Database(tmp_path / "comparator.db")
    await database.connect()
    settings = ComparatorSettings(
        hub_url=HUB_URL,
        vault_url=VAULT_URL,
        db_path=str(tmp_path / "comparator.db"),
        request_timeout=5.0,
    )
    svc = ComparatorService(settings, database, transport=transport)
    await svc.start()
    yield svc
    await svc.close()
    await database.close()


@pytest_asyncio.fixture
async def comparator_client(comparator_service):
    app = create_comparator_app(comparator_service.settings, comparator_service)
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="https://comparator.example.com"
    ) as ac:
        yield ac
