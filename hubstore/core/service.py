"""Confidential storage hub service: profiles, queries, compare and extract."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable
from datetime import datetime, timezone
from typing import Any, TypeVar
from uuid import uuid4

import httpx

from hubstore.clients.edv import EDVClient
from hubstore.clients.kms import KMSClient
from hubstore.config import Settings
from hubstore.core import jsonpath
from hubstore.core.identity import (
    IdentityCreator,
    IdentityKeys,
    create_did_key_identity,
    load_or_create_identity,
    register_identity,
)
from hubstore.core.models import (
    ComparisonRequest,
    DocQuery,
    EqOp,
    Identity,
    Profile,
    Query,
    RefQuery,
    parse_comparison,
    parse_extraction,
    parse_query,
)
from hubstore.crypto import jwe
from hubstore.crypto.did import ResolverSet, default_resolvers
from hubstore.crypto.keys import LocalKeyManager
from hubstore.crypto.signature import CapabilitySignatureBinding
from hubstore.exceptions import (
    ActionNotPermittedError,
    AuthorizationError,
    BadRequestError,
    BrokenCapabilityChainError,
    DeadlineExceededError,
    HubstoreError,
    InternalError,
    NoSuchQueryError,
    NotFoundError,
    SigningError,
    StorageError,
    UnsupportedTypeError,
    UpstreamError,
)
from hubstore.storage.database import Database
from hubstore.zcap.capability import (
    Signer,
    compress_capability,
    decompress_capability,
    mint_capability,
    verify_capability,
)
from hubstore.zcap.httpsig import CapabilityAuth, edv_action, kms_action
from hubstore.zcap.models import PROFILE_TARGET_TYPE, QUERY_TARGET_TYPE

logger = logging.getLogger("hubstore.service")

T = TypeVar("T")


def deep_equal(a: Any, b: Any) -> bool:
    """Structural JSON equality; booleans never equal numbers."""
    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b
    if isinstance(a, dict):
        return (
            isinstance(b, dict)
            and a.keys() == b.keys()
            and all(deep_equal(a[k], b[k]) for k in a)
        )
    if isinstance(a, list):
        return (
            isinstance(b, list) and len(a) == len(b) and all(deep_equal(x, y) for x, y in zip(a, b))
        )
    return a == b


async def with_deadline(coro: Awaitable[T], timeout: float) -> T:
    """Run ``coro`` under ``timeout`` seconds; expiry is a DeadlineExceededError."""
    try:
        async with asyncio.timeout(timeout):
            return await coro
    except TimeoutError as exc:
        raise DeadlineExceededError("operation deadline exceeded") from exc


class HubService:
    """Protocol engine of the confidential storage hub.

    Holds no per-request state; everything that outlives a request is in
    the database. ``start`` must run once before serving requests.
    """

    def __init__(
        self,
        settings: Settings,
        db: Database,
        key_manager: LocalKeyManager | None = None,
        resolvers: ResolverSet | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        identity_creator: IdentityCreator | None = None,
    ) -> None:
        self.settings = settings
        self.db = db
        self.key_manager = key_manager or LocalKeyManager()
        self.resolvers = resolvers or default_resolvers(settings.did_resolver_url, transport)
        self.binding = CapabilitySignatureBinding(self.resolvers, self.key_manager)
        self.transport = transport
        self._identity_creator = identity_creator or self._default_identity
        self._identity: Identity | None = None
        self._keys: IdentityKeys | None = None

    def _default_identity(self) -> Identity:
        seed = self.settings.identity_seed
        return create_did_key_identity(bytes.fromhex(seed) if seed else None)

    async def start(self) -> None:
        self._identity, self._keys = await load_or_create_identity(
            self.db, self.key_manager, self._identity_creator
        )

    @property
    def identity(self) -> Identity:
        if self._identity is None:
            raise RuntimeError("HubService not started. Call start() first.")
        return self._identity

    @property
    def keys(self) -> IdentityKeys:
        if self._keys is None:
            raise RuntimeError("HubService not started. Call start() first.")
        return self._keys

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    async def create_profile(self, controller: str) -> Profile:
        """Create a profile whose root capability is invocable by ``controller``.

        Each profile has its own did:key identity; the root capability is
        self-issued by it and targets the profile.
        """
        if not controller:
            raise BadRequestError("missing controller")

        try:
            identity = create_did_key_identity()
            keys = register_identity(identity, self.key_manager)
        except HubstoreError:
            raise
        except Exception as exc:
            raise InternalError("failed to create identity") from exc

        profile_id = str(uuid4())
        try:
            root = await mint_capability(
                parent=None,
                invoker=controller,
                target_id=profile_id,
                target_type=PROFILE_TARGET_TYPE,
                actions=("reference",),
                caveats=(),
                signer=Signer(self.binding, keys.delegation),
                controller=identity.did,
            )
        except SigningError as exc:
            raise SigningError("failed to create zcap") from exc

        profile = Profile(id=profile_id, controller=controller, zcap=compress_capability(root))

        # Only the public half of the profile identity is persisted.
        try:
            await self.db.put_many(
                [
                    ("profile", profile_id, profile.model_dump()),
                    ("zcap", root.id, root.to_dict()),
                    ("config", f"profile:{profile_id}", identity.model_dump(exclude={"seed"})),
                ]
            )
        except StorageError as exc:
            raise StorageError("failed to store profile") from exc

        logger.info("Created profile %s for %s", profile_id, controller)
        return profile

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def create_query(self, profile_id: str, data: Any) -> str:
        """Register a DocQuery under a profile and return its location."""
        spec = parse_query(data)
        if isinstance(spec, RefQuery):
            raise BadRequestError("query type not allowed")

        jsonpath.compile_path(spec.path)
        decompress_capability(spec.upstream_auth.edv.zcap)
        decompress_capability(spec.upstream_auth.kms.zcap)

        profile = await self.db.get_profile(profile_id)
        if profile is None:
            raise NotFoundError("no such profile")

        query = Query(id=str(uuid4()), profile_id=profile_id, spec=spec)
        await self.db.insert_query(query)

        location = f"{self.settings.base_url}/profiles/{profile_id}/queries/{query.id}"
        logger.info("Created query %s for profile %s", query.id, profile_id)
        return location

    async def create_authorization(self, profile_id: str) -> None:
        """Third-party initiated authorization. Accepted without effect."""
        logger.info("Authorization request for profile %s accepted (no-op)", profile_id)

    # ------------------------------------------------------------------
    # Compare / extract
    # ------------------------------------------------------------------

    async def compare(self, data: Any) -> bool:
        request = parse_comparison(data)
        return await with_deadline(self._compare(request), self.settings.request_timeout)

    async def _compare(self, request: ComparisonRequest) -> bool:
        op = request.op
        if not isinstance(op, EqOp):
            raise UnsupportedTypeError("unsupported operator type")

        values = [await self.resolve(arg) for arg in op.args]
        first = values[0]
        return all(deep_equal(first, other) for other in values[1:])

    async def extract(self, data: Any) -> list[Any]:
        queries = parse_extraction(data)
        return await with_deadline(self._extract(queries), self.settings.request_timeout)

    async def _extract(self, queries: list[DocQuery | RefQuery]) -> list[Any]:
        return [await self.resolve(query) for query in queries]

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve(self, spec: DocQuery | RefQuery) -> Any:
        """Fetch, decrypt and select the content a query names."""
        if isinstance(spec, RefQuery):
            spec = await self._dereference(spec)
        return await self._resolve_doc_query(spec)

    async def _dereference(self, ref: RefQuery) -> DocQuery:
        query = await self.db.get_query(ref.ref)
        if query is None:
            raise NoSuchQueryError()

        if ref.zcap is not None:
            await self._authorize_reference(ref.zcap, query)
        elif self.settings.require_ref_capability:
            raise AuthorizationError(f"reference to query {query.id} presented without a capability")
        return query.spec

    async def _authorize_reference(self, zcap: str, query: Query) -> None:
        capability = decompress_capability(zcap)

        target = capability.invocation_target
        if target.type != QUERY_TARGET_TYPE or not target.id.rstrip("/").endswith(
            f"/queries/{query.id}"
        ):
            raise ActionNotPermittedError(f"{capability.id} does not target query {query.id}")

        chain = await verify_capability(
            capability,
            now=datetime.now(timezone.utc),
            required_action="reference",
            fetch_ancestor=self.db.get_capability,
            binding=self.binding,
            doc_attr_path=query.spec.path,
        )

        root = chain[-1]
        if (
            root.invocation_target.type != PROFILE_TARGET_TYPE
            or root.invocation_target.id != query.profile_id
        ):
            raise BrokenCapabilityChainError(
                f"{capability.id} does not descend from profile {query.profile_id}"
            )

    async def _resolve_doc_query(self, query: DocQuery) -> Any:
        timeout = self.settings.request_timeout
        edv = EDVClient(
            query.upstream_auth.edv.base_url,
            auth=CapabilityAuth(
                query.upstream_auth.edv.zcap, self.binding, self.keys.invocation, edv_action
            ),
            timeout=timeout,
            transport=self.transport,
        )
        kms = KMSClient(
            query.upstream_auth.kms.base_url,
            auth=CapabilityAuth(
                query.upstream_auth.kms.zcap, self.binding, self.keys.invocation, kms_action
            ),
            timeout=timeout,
            transport=self.transport,
        )

        encrypted = await edv.read_document(query.vault_id, query.doc_id)
        plaintext = await jwe.decrypt(encrypted["jwe"], kms.unwrap)

        try:
            document = json.loads(plaintext)
        except ValueError as exc:
            raise UpstreamError(f"document {query.doc_id} is not a structured document") from exc
        if not isinstance(document, dict) or "content" not in document:
            raise UpstreamError(f"document {query.doc_id} has no content")

        return jsonpath.evaluate(document["content"], query.path)
