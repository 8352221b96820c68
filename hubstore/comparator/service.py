"""Cross-service delegation adapter.

Turns vault-scoped requests into hub queries. For authorizations it
registers a query on the hub under its own profile and delegates a
``reference`` capability for that query to the requesting party. For
comparisons and extractions it rewrites caller arguments into hub query
specs and relays the hub's answer.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from hubstore.clients.hub import HubClient
from hubstore.clients.vault import VaultClient
from hubstore.comparator.models import (
    AdapterDocQuery,
    AuthorizationRequest,
    AuthorizationResponse,
    AuthorizedQuery,
    AuthTokens,
    ComparatorConfig,
    parse_adapter_comparison,
    parse_adapter_extraction,
)
from hubstore.config import ComparatorSettings
from hubstore.core.identity import IdentityKeys, create_did_key_identity, register_identity
from hubstore.core.models import (
    ComparisonRequest,
    DocQuery,
    EqOp,
    Identity,
    Profile,
    RefQuery,
    UpstreamAuth,
    UpstreamAuthorization,
)
from hubstore.core.service import with_deadline
from hubstore.crypto.did import ResolverSet, default_resolvers
from hubstore.crypto.keys import LocalKeyManager
from hubstore.crypto.signature import CapabilitySignatureBinding
from hubstore.exceptions import BadRequestError, InternalError, SigningError, StorageError
from hubstore.storage.database import Database
from hubstore.zcap.capability import (
    Signer,
    compress_capability,
    decompress_capability,
    mint_capability,
)
from hubstore.zcap.models import QUERY_TARGET_TYPE, Capability, DocAttrPathCaveat, ExpiryCaveat

logger = logging.getLogger("hubstore.comparator")

CONFIG_KEY = "comparator"


class ComparatorService:
    def __init__(
        self,
        settings: ComparatorSettings,
        db: Database,
        key_manager: LocalKeyManager | None = None,
        resolvers: ResolverSet | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        hub: HubClient | None = None,
        vault: VaultClient | None = None,
    ) -> None:
        self.settings = settings
        self.db = db
        self.key_manager = key_manager or LocalKeyManager()
        self.resolvers = resolvers or default_resolvers(settings.did_resolver_url, transport)
        self.binding = CapabilitySignatureBinding(self.resolvers, self.key_manager)
        self.hub = hub or HubClient(
            settings.hub_url, timeout=settings.request_timeout, transport=transport
        )
        self.vault = vault or VaultClient(
            settings.vault_url, timeout=settings.request_timeout, transport=transport
        )
        self._identity: Identity | None = None
        self._keys: IdentityKeys | None = None
        self._profile: Profile | None = None
        self._root: Capability | None = None

    async def start(self) -> None:
        """Load the adapter identity and hub profile, creating both on first start."""
        try:
            stored = await self.db.get_config(CONFIG_KEY)
        except StorageError as exc:
            raise InternalError("failed to load identity") from exc

        if stored is not None:
            identity = Identity.model_validate(stored["identity"])
            profile = Profile.model_validate(stored["profile"])
        else:
            seed = self.settings.identity_seed
            identity = create_did_key_identity(bytes.fromhex(seed) if seed else None)
            profile = await self.hub.create_profile(identity.did)
            try:
                await self.db.put_config(
                    CONFIG_KEY, {"identity": identity.model_dump(), "profile": profile.model_dump()}
                )
            except StorageError as exc:
                raise InternalError("failed to store profile") from exc
            logger.info("Created hub profile %s for %s", profile.id, identity.did)

        self._keys = register_identity(identity, self.key_manager)
        self._identity = identity
        self._profile = profile
        self._root = decompress_capability(profile.zcap)

    async def close(self) -> None:
        await self.hub.close()

    def _require_started(self) -> None:
        if self._identity is None or self._profile is None:
            raise RuntimeError("ComparatorService not started. Call start() first.")

    def get_config(self) -> ComparatorConfig:
        self._require_started()
        return ComparatorConfig(did=self._identity.did, profile_id=self._profile.id)

    # ------------------------------------------------------------------
    # Authorizations
    # ------------------------------------------------------------------

    async def handle_authorization(self, request: AuthorizationRequest) -> AuthorizationResponse:
        self._require_started()
        return await with_deadline(self._authorize(request), self.settings.request_timeout)

    async def _authorize(self, request: AuthorizationRequest) -> AuthorizationResponse:
        scope = request.scope
        query = await self._doc_query(
            scope.vault_id, scope.doc_id, scope.doc_attr_path, scope.auth_tokens
        )
        location = await self.hub.create_query(self._profile.id, query)

        caveats = [ExpiryCaveat(duration=c.duration) for c in scope.caveats]
        caveats.append(DocAttrPathCaveat(path=scope.doc_attr_path))
        try:
            child = await mint_capability(
                parent=self._root,
                invoker=request.requesting_party,
                target_id=location,
                target_type=QUERY_TARGET_TYPE,
                actions=("reference",),
                caveats=caveats,
                signer=Signer(self.binding, self._keys.delegation),
            )
        except SigningError as exc:
            raise SigningError("failed to create zcap") from exc

        logger.info(
            "Delegated query %s to %s", location.rsplit("/", 1)[-1], request.requesting_party
        )
        return AuthorizationResponse(
            requesting_party=request.requesting_party, auth_token=compress_capability(child)
        )

    # ------------------------------------------------------------------
    # Compare / extract
    # ------------------------------------------------------------------

    async def handle_comparison(self, data: Any) -> bool:
        self._require_started()
        args = parse_adapter_comparison(data)
        return await with_deadline(self._compare(args), self.settings.request_timeout)

    async def _compare(self, args: list[AdapterDocQuery | AuthorizedQuery]) -> bool:
        queries = [await self._to_hub_query(arg) for arg in args]
        return await self.hub.compare(ComparisonRequest(op=EqOp(args=queries)))

    async def handle_extraction(self, data: Any) -> list[Any]:
        self._require_started()
        args = parse_adapter_extraction(data)
        return await with_deadline(self._extract(args), self.settings.request_timeout)

    async def _extract(self, args: list[AdapterDocQuery | AuthorizedQuery]) -> list[Any]:
        queries = [await self._to_hub_query(arg) for arg in args]
        return await self.hub.extract(queries)

    async def _to_hub_query(self, arg: AdapterDocQuery | AuthorizedQuery) -> DocQuery | RefQuery:
        if isinstance(arg, AuthorizedQuery):
            capability = decompress_capability(arg.auth_token)
            target = capability.invocation_target.id
            if "/queries/" not in target:
                raise BadRequestError("authToken does not target a query")
            return RefQuery(ref=target.split("/queries/")[-1].strip("/"), zcap=arg.auth_token)
        return await self._doc_query(arg.vault_id, arg.doc_id, arg.doc_attr_path, arg.auth_tokens)

    async def _doc_query(
        self, vault_id: str, doc_id: str, path: str, tokens: AuthTokens
    ) -> DocQuery:
        """Point a query at the document's real storage and key service locations."""
        metadata = await self.vault.get_doc_metadata(vault_id, doc_id)
        return DocQuery(
            vault_id=metadata.vault_id,
            doc_id=metadata.uri.rstrip("/").rsplit("/", 1)[-1],
            path=path,
            upstream_auth=UpstreamAuth(
                edv=UpstreamAuthorization(base_url=metadata.edv_base_url, zcap=tokens.edv),
                kms=UpstreamAuthorization(base_url=metadata.kms_base_url, zcap=tokens.kms),
            ),
        )
