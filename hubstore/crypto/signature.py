"""Capability signature binding.

Binds DID resolution, key-type mapping and the key manager into
"sign these bytes as this DID URL" and "verify these bytes were signed by
this DID URL". Resolution happens on every call.
"""

from __future__ import annotations

import logging

from hubstore.crypto.did import (
    CAPABILITY_DELEGATION,
    ResolverSet,
    VerificationMethod,
    parse_did_url,
)
from hubstore.crypto.keys import KeyHandle, LocalKeyManager, key_type_for
from hubstore.exceptions import HubstoreError, NoSuchVerificationMethodError, SigningError

logger = logging.getLogger("hubstore.signature")


class CapabilitySignatureBinding:
    def __init__(self, resolvers: ResolverSet, key_manager: LocalKeyManager) -> None:
        self.resolvers = resolvers
        self.key_manager = key_manager

    async def resolve_verification_method(
        self, did_url: str, relationship: str = CAPABILITY_DELEGATION
    ) -> VerificationMethod:
        """Find the verification method a DID URL names within a relationship.

        Raises:
            MalformedDIDURLError: no fragment.
            UnsupportedDIDMethodError: no resolver for the DID method.
            NoSuchVerificationMethodError: not listed under ``relationship``.
        """
        did, fragment = parse_did_url(did_url)
        document = await self.resolvers.resolve(str(did))
        for vm in document.verification_methods(relationship):
            if fragment == vm.id or did_url == vm.id or fragment == vm.fragment:
                return vm
        raise NoSuchVerificationMethodError(
            f"{did_url} is not a {relationship} verification method of {did}"
        )

    async def key_handle(self, did_url: str, relationship: str = CAPABILITY_DELEGATION) -> KeyHandle:
        vm = await self.resolve_verification_method(did_url, relationship)
        return self.key_manager.public_key_to_handle(vm.value, key_type_for(vm))

    async def sign(
        self, did_url: str, data: bytes, relationship: str = CAPABILITY_DELEGATION
    ) -> bytes:
        handle = await self.key_handle(did_url, relationship)
        try:
            return self.key_manager.sign(handle, data)
        except SigningError:
            raise
        except HubstoreError as exc:
            raise SigningError(f"failed to sign as {did_url}: {exc.message}") from exc
        except Exception as exc:
            raise SigningError(f"failed to sign as {did_url}") from exc

    async def verify(
        self,
        did_url: str,
        data: bytes,
        signature: bytes,
        relationship: str = CAPABILITY_DELEGATION,
    ) -> None:
        """Raise InvalidSignatureError unless ``signature`` verifies."""
        handle = await self.key_handle(did_url, relationship)
        self.key_manager.verify(handle, data, signature)
