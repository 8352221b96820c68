"""Service identities: creation, validation and persistence.

An identity is a DID document plus, for did:key identities, the Ed25519
seed the local key manager signs with. Identities are stored in the
``config`` store and loaded once at startup.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from hubstore.core.models import Identity
from hubstore.crypto.did import (
    AUTHENTICATION,
    CAPABILITY_DELEGATION,
    CAPABILITY_INVOCATION,
    DIDDocument,
    Ed25519DIDKey,
)
from hubstore.crypto.keys import LocalKeyManager
from hubstore.exceptions import HubstoreError, InternalError, StorageError
from hubstore.storage.database import Database

logger = logging.getLogger("hubstore.identity")

IdentityCreator = Callable[[], Identity]


@dataclass(frozen=True)
class IdentityKeys:
    """DID URLs of the identity's verification methods, one per purpose."""

    authentication: str
    delegation: str
    invocation: str


def create_did_key_identity(seed: bytes | None = None) -> Identity:
    key = Ed25519DIDKey.from_seed(seed) if seed is not None else Ed25519DIDKey()
    return Identity(did=key.did, document=key.resolve(), seed=key.seed.hex())


def identity_key_ids(identity: Identity) -> IdentityKeys:
    """Pick the first verification method of each required relationship."""
    try:
        document = DIDDocument.from_dict(identity.document)
    except HubstoreError as exc:
        raise InternalError(f"invalid identity document: {exc.message}") from exc

    methods = {
        rel: document.verification_methods(rel)
        for rel in (AUTHENTICATION, CAPABILITY_DELEGATION, CAPABILITY_INVOCATION)
    }
    if not all(methods.values()):
        raise InternalError("missing some verification methods")

    ids = {rel: vms[0].id for rel, vms in methods.items()}
    if not all("#" in vm_id for vm_id in ids.values()):
        raise InternalError("failed to determine identity keyIDs")

    return IdentityKeys(
        authentication=ids[AUTHENTICATION],
        delegation=ids[CAPABILITY_DELEGATION],
        invocation=ids[CAPABILITY_INVOCATION],
    )


def register_identity(identity: Identity, key_manager: LocalKeyManager) -> IdentityKeys:
    keys = identity_key_ids(identity)
    if identity.seed:
        key_manager.import_ed25519_seed(bytes.fromhex(identity.seed))
    return keys


async def load_or_create_identity(
    db: Database,
    key_manager: LocalKeyManager,
    creator: IdentityCreator,
    config_key: str = "identity",
) -> tuple[Identity, IdentityKeys]:
    """Load the service identity, creating and persisting it on first start."""
    try:
        stored = await db.get_config(config_key)
    except StorageError as exc:
        raise InternalError("failed to load identity") from exc

    if stored is not None:
        identity = Identity.model_validate(stored)
        logger.info("Loaded identity %s", identity.did)
    else:
        identity = creator()
        identity_key_ids(identity)
        try:
            await db.put_config(config_key, identity.model_dump())
        except StorageError as exc:
            raise InternalError("failed to store identity") from exc
        logger.info("Created identity %s", identity.did)

    return identity, register_identity(identity, key_manager)
