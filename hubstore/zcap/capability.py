"""Minting, chain verification and wire encoding of capabilities."""

from __future__ import annotations

import base64
import binascii
import gzip
import json
import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any

from hubstore.crypto.did import b64url_decode, b64url_encode, did_of
from hubstore.crypto.signature import CapabilitySignatureBinding
from hubstore.exceptions import (
    ActionNotPermittedError,
    BrokenCapabilityChainError,
    HubstoreError,
    InvalidSignatureError,
    MalformedCapabilityEncodingError,
    NotFoundError,
    SigningError,
)
from hubstore.zcap.models import (
    PROOF_PURPOSE,
    Capability,
    CaveatContext,
    Caveat,
    InvocationTarget,
    Proof,
    format_time,
)

logger = logging.getLogger("hubstore.zcap")

ED25519_PROOF = "Ed25519Signature2018"
JWS_PROOF = "JsonWebSignature2020"

FetchAncestor = Callable[[str], Awaitable[Capability | None]]


@dataclass(frozen=True)
class Signer:
    """Signs capabilities as ``verification_method`` (a DID URL)."""

    binding: CapabilitySignatureBinding
    verification_method: str


def canonical_json(value: Any) -> bytes:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode()


def signing_input(capability: Capability, proof: Proof) -> bytes:
    return canonical_json(
        {
            "capability": capability.to_dict(include_proof=False),
            "proof": proof.to_dict(include_value=False),
        }
    )


# ---------------------------------------------------------------------------
# Mint
# ---------------------------------------------------------------------------


async def mint_capability(
    parent: Capability | None,
    invoker: str | None,
    target_id: str,
    target_type: str,
    actions: Iterable[str],
    caveats: Iterable[Caveat],
    signer: Signer,
    controller: str | None = None,
    now: datetime | None = None,
) -> Capability:
    """Build and sign a capability delegated from ``parent`` (root if None).

    Raises:
        SigningError: resolving the signer's key or signing failed.
    """
    chain = (*parent.capability_chain, parent.id) if parent is not None else ()
    capability = Capability(
        id=f"urn:uuid:{uuid.uuid4()}",
        invocation_target=InvocationTarget(id=target_id, type=target_type),
        allowed_action=tuple(actions),
        controller=controller,
        invoker=invoker,
        parent=parent.id if parent is not None else None,
        caveats=tuple(caveats),
        capability_chain=chain,
    )

    try:
        handle = await signer.binding.key_handle(signer.verification_method)
        proof = Proof(
            type=JWS_PROOF if handle.key_type.is_ecdsa else ED25519_PROOF,
            created=format_time(now or datetime.now(timezone.utc)),
            verification_method=signer.verification_method,
        )
        signature = await signer.binding.sign(
            signer.verification_method, signing_input(capability, proof)
        )
    except SigningError:
        raise
    except HubstoreError as exc:
        raise SigningError(f"failed to create zcap: {exc.message}") from exc

    logger.debug("Minted %s (parent=%s)", capability.id, capability.parent)
    return replace(capability, proof=replace(proof, proof_value=b64url_encode(signature)))


# ---------------------------------------------------------------------------
# Verify
# ---------------------------------------------------------------------------


async def _verify_proof(capability: Capability, binding: CapabilitySignatureBinding) -> None:
    proof = capability.proof
    if proof is None or not proof.proof_value:
        raise InvalidSignatureError(f"capability {capability.id} is not signed")
    if proof.proof_purpose != PROOF_PURPOSE:
        raise InvalidSignatureError(f"capability {capability.id} has proof purpose {proof.proof_purpose}")
    try:
        signature = b64url_decode(proof.proof_value)
    except (binascii.Error, ValueError) as exc:
        raise InvalidSignatureError(f"capability {capability.id} has an undecodable proof") from exc
    await binding.verify(proof.verification_method, signing_input(capability, proof), signature)


def _signer_did(capability: Capability) -> str:
    assert capability.proof is not None
    return did_of(capability.proof.verification_method)


async def verify_capability(
    capability: Capability,
    now: datetime,
    required_action: str,
    fetch_ancestor: FetchAncestor,
    binding: CapabilitySignatureBinding,
    invoker: str | None = None,
    doc_attr_path: str | None = None,
) -> list[Capability]:
    """Verify ``capability`` and its delegation chain up to the root.

    Each link is checked in order: proof signature, caveats against ``now``,
    the required action (presented capability only), then continuity with
    and delegation from its parent. ``now`` is never sampled here.

    Returns the verified chain, presented capability first and root last.
    """
    context = CaveatContext(now=now, doc_attr_path=doc_attr_path)

    if invoker is not None and did_of(capability.delegatee or "") != did_of(invoker):
        raise ActionNotPermittedError(f"{invoker} is not the invoker of {capability.id}")

    verified: list[Capability] = []
    current = capability
    while True:
        await _verify_proof(current, binding)

        for caveat in current.caveats:
            caveat.check(current, context)

        if current is capability and required_action not in current.allowed_action:
            raise ActionNotPermittedError(
                f"action [{required_action}] not allowed by {capability.id}"
            )

        verified.append(current)

        if current.is_root:
            if current.capability_chain:
                raise BrokenCapabilityChainError(f"root {current.id} carries a capability chain")
            if current.controller is not None and did_of(current.controller) != _signer_did(current):
                raise BrokenCapabilityChainError(f"root {current.id} is not self-issued")
            logger.debug("Verified chain of %d for %s", len(verified), capability.id)
            return verified

        if not current.capability_chain or current.capability_chain[-1] != current.parent:
            raise BrokenCapabilityChainError(
                f"{current.id}: parent {current.parent} does not end its capability chain"
            )

        try:
            parent = await fetch_ancestor(current.parent)
        except NotFoundError:
            parent = None
        if parent is None or parent.id != current.parent:
            raise BrokenCapabilityChainError(f"{current.id}: parent {current.parent} not found")
        if parent.capability_chain != current.capability_chain[:-1]:
            raise BrokenCapabilityChainError(f"{parent.id}: chain does not match its child")
        if parent.delegatee is None or did_of(parent.delegatee) != _signer_did(current):
            raise BrokenCapabilityChainError(
                f"{current.id} was not signed by the delegatee of {parent.id}"
            )

        current = parent


# ---------------------------------------------------------------------------
# Wire encoding
# ---------------------------------------------------------------------------


def compress_capability(capability: Capability) -> str:
    """base64url(gzip(canonical JSON))."""
    return b64url_encode(gzip.compress(canonical_json(capability.to_dict())))


def decompress_capability(encoded: str) -> Capability:
    """Inverse of ``compress_capability``.

    Raises:
        MalformedCapabilityEncodingError: bad base64url, gzip or JSON.
    """
    if not isinstance(encoded, str) or not encoded:
        raise MalformedCapabilityEncodingError("empty capability")
    try:
        raw = gzip.decompress(base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4)))
        data = json.loads(raw)
    except (binascii.Error, OSError, EOFError, ValueError) as exc:
        raise MalformedCapabilityEncodingError("failed to decompress capability") from exc
    return Capability.from_dict(data)
