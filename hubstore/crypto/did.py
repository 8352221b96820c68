"""DIDs, DID documents and pluggable DID resolution.

DID Method: did:key:z6Mk<base58-encoded-multicodec-public-key> for the
service identities, plus resolvers for pre-registered documents and for an
HTTP universal resolver. Resolvers are tried in order by DID method.
"""

from __future__ import annotations

import base64
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx
from nacl.signing import SigningKey, VerifyKey

from hubstore.exceptions import DIDError, MalformedDIDURLError, UnsupportedDIDMethodError

logger = logging.getLogger("hubstore.did")

# Verification relationships
AUTHENTICATION = "authentication"
ASSERTION_METHOD = "assertionMethod"
CAPABILITY_DELEGATION = "capabilityDelegation"
CAPABILITY_INVOCATION = "capabilityInvocation"

RELATIONSHIPS = (AUTHENTICATION, ASSERTION_METHOD, CAPABILITY_DELEGATION, CAPABILITY_INVOCATION)

DID_CONTEXT = "https://www.w3.org/ns/did/v1"

# Base58 alphabet (Bitcoin variant)
_B58_ALPHABET = b"123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"


def base58_encode(data: bytes) -> str:
    """Encode bytes to base58 (Bitcoin alphabet)."""
    n_leading = 0
    for byte in data:
        if byte == 0:
            n_leading += 1
        else:
            break

    num = int.from_bytes(data, "big")

    result = bytearray()
    while num > 0:
        num, remainder = divmod(num, 58)
        result.append(_B58_ALPHABET[remainder])
    result.reverse()

    # Prepend '1' for each leading zero byte
    return ("1" * n_leading) + result.decode("ascii")


def base58_decode(s: str) -> bytes:
    """Decode base58 string to bytes."""
    n_leading = 0
    for ch in s:
        if ch == "1":
            n_leading += 1
        else:
            break

    num = 0
    for ch in s:
        idx = _B58_ALPHABET.find(ch.encode("ascii"))
        if idx < 0:
            raise ValueError(f"invalid base58 character: {ch!r}")
        num = num * 58 + idx

    if num == 0:
        result = b""
    else:
        result = num.to_bytes((num.bit_length() + 7) // 8, "big")

    return b"\x00" * n_leading + result


def b64url_decode(data: str) -> bytes:
    """Decode unpadded base64url."""
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def b64url_encode(data: bytes) -> str:
    """Encode to unpadded base64url."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


# Ed25519-pub multicodec prefix: 0xed01
_ED25519_MULTICODEC_PREFIX = b"\xed\x01"


# ---------------------------------------------------------------------------
# DID / DID URL parsing
# ---------------------------------------------------------------------------

_DID_RE = re.compile(r"^did:([a-z0-9]+):([A-Za-z0-9._:%-]+)$")


@dataclass(frozen=True)
class DID:
    method: str
    method_specific_id: str

    def __str__(self) -> str:
        return f"did:{self.method}:{self.method_specific_id}"


def parse_did(value: str) -> DID:
    match = _DID_RE.match(value)
    if match is None:
        raise MalformedDIDURLError(f"not a DID: {value}")
    return DID(method=match.group(1), method_specific_id=match.group(2))


def parse_did_url(did_url: str) -> tuple[DID, str]:
    """Split a DID URL into its DID and fragment.

    Raises:
        MalformedDIDURLError: the URL has no fragment or an invalid DID.
    """
    parts = did_url.split("#")
    if len(parts) != 2 or not parts[1]:
        raise MalformedDIDURLError(f"not a DID URL: {did_url}")
    return parse_did(parts[0]), parts[1]


def did_of(value: str) -> str:
    """Strip the fragment from a DID or DID URL."""
    return value.split("#", 1)[0]


# ---------------------------------------------------------------------------
# DID documents
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VerificationMethod:
    """A public key with its declared type, as found in a DID document."""

    id: str
    type: str
    controller: str
    value: bytes
    jwk: dict[str, Any] | None = None

    @property
    def fragment(self) -> str:
        return self.id.split("#", 1)[1] if "#" in self.id else ""

    @classmethod
    def from_dict(cls, data: dict[str, Any], doc_id: str = "") -> VerificationMethod:
        vm_id = data.get("id", "")
        if vm_id.startswith("#"):
            vm_id = doc_id + vm_id
        jwk = data.get("publicKeyJwk")
        if "publicKeyBase58" in data:
            value = base58_decode(data["publicKeyBase58"])
        elif "publicKeyMultibase" in data:
            encoded = data["publicKeyMultibase"]
            if not encoded.startswith("z"):
                raise DIDError(f"unsupported multibase encoding in {vm_id}")
            value = base58_decode(encoded[1:])
            if len(value) == 34 and value.startswith(_ED25519_MULTICODEC_PREFIX):
                value = value[2:]
        elif jwk is not None:
            value = _jwk_public_bytes(jwk)
        else:
            raise DIDError(f"verification method {vm_id} has no public key material")
        return cls(
            id=vm_id,
            type=data.get("type", ""),
            controller=data.get("controller", doc_id),
            value=value,
            jwk=jwk,
        )


def _jwk_public_bytes(jwk: dict[str, Any]) -> bytes:
    """Raw public key bytes: x for OKP, uncompressed point for EC."""
    try:
        if jwk.get("kty") == "OKP":
            return b64url_decode(jwk["x"])
        if jwk.get("kty") == "EC":
            return b"\x04" + b64url_decode(jwk["x"]) + b64url_decode(jwk["y"])
    except (KeyError, ValueError) as exc:
        raise DIDError("malformed publicKeyJwk") from exc
    raise DIDError(f"unsupported JWK key type: {jwk.get('kty')}")


@dataclass
class DIDDocument:
    """Parsed DID document: verification methods grouped by relationship."""

    id: str
    verification_method: list[VerificationMethod] = field(default_factory=list)
    relationships: dict[str, list[VerificationMethod]] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)

    def verification_methods(self, relationship: str) -> list[VerificationMethod]:
        return list(self.relationships.get(relationship, []))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DIDDocument:
        doc_id = data.get("id")
        if not isinstance(doc_id, str) or not doc_id:
            raise DIDError("DID document has no id")

        methods = [
            VerificationMethod.from_dict(vm, doc_id) for vm in data.get("verificationMethod", [])
        ]
        by_id = {vm.id: vm for vm in methods}

        relationships: dict[str, list[VerificationMethod]] = {}
        for rel in RELATIONSHIPS:
            entries: list[VerificationMethod] = []
            for entry in data.get(rel, []):
                if isinstance(entry, str):
                    ref = doc_id + entry if entry.startswith("#") else entry
                    if ref not in by_id:
                        raise DIDError(f"{rel} references unknown verification method {entry}")
                    entries.append(by_id[ref])
                elif isinstance(entry, dict):
                    entries.append(VerificationMethod.from_dict(entry, doc_id))
                else:
                    raise DIDError(f"malformed {rel} entry in {doc_id}")
            if entries:
                relationships[rel] = entries

        return cls(id=doc_id, verification_method=methods, relationships=relationships, raw=data)


# ---------------------------------------------------------------------------
# did:key
# ---------------------------------------------------------------------------


def did_key_from_public_key(public_key: bytes) -> str:
    """Return the did:key identifier for a raw Ed25519 public key."""
    return f"did:key:z{base58_encode(_ED25519_MULTICODEC_PREFIX + public_key)}"


def did_key_document(did: str) -> dict[str, Any]:
    """Expand an Ed25519 did:key into its DID document."""
    parsed = parse_did(did)
    if parsed.method != "key" or not parsed.method_specific_id.startswith("z"):
        raise DIDError(f"not an Ed25519 did:key: {did}")
    try:
        raw = base58_decode(parsed.method_specific_id[1:])
    except ValueError as exc:
        raise DIDError(f"malformed did:key: {did}") from exc
    if not raw.startswith(_ED25519_MULTICODEC_PREFIX) or len(raw) != 34:
        raise DIDError(f"unsupported did:key multicodec: {did}")

    fingerprint = parsed.method_specific_id
    vm_id = f"{did}#{fingerprint}"
    return {
        "@context": [DID_CONTEXT],
        "id": did,
        "verificationMethod": [
            {
                "id": vm_id,
                "type": "Ed25519VerificationKey2018",
                "controller": did,
                "publicKeyBase58": base58_encode(raw[2:]),
            },
        ],
        AUTHENTICATION: [vm_id],
        ASSERTION_METHOD: [vm_id],
        CAPABILITY_DELEGATION: [vm_id],
        CAPABILITY_INVOCATION: [vm_id],
    }


class Ed25519DIDKey:
    """A did:key identifier backed by an Ed25519 keypair.

    Generates or accepts an Ed25519 signing key and derives the DID from the
    public key using the did:key multicodec method (z6Mk prefix). The key
    itself is handed to a key manager; this class only shapes the identity.
    """

    def __init__(self, signing_key: SigningKey | None = None) -> None:
        self._signing_key = signing_key or SigningKey.generate()
        self._verify_key: VerifyKey = self._signing_key.verify_key

    @classmethod
    def from_seed(cls, seed: bytes) -> Ed25519DIDKey:
        """Create a deterministic key from a 32-byte seed."""
        return cls(signing_key=SigningKey(seed))

    @property
    def did(self) -> str:
        return did_key_from_public_key(bytes(self._verify_key))

    @property
    def key_id(self) -> str:
        """DID URL of the single verification method."""
        did = self.did
        return f"{did}#{did.split(':')[-1]}"

    @property
    def seed(self) -> bytes:
        return bytes(self._signing_key)

    def resolve(self) -> dict[str, Any]:
        """Resolve DID to a W3C DID Document."""
        return did_key_document(self.did)

    def export_public(self) -> bytes:
        """Export the raw 32-byte Ed25519 verify (public) key."""
        return bytes(self._verify_key)


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


@runtime_checkable
class DIDResolver(Protocol):
    """One resolver per DID method."""

    def accept(self, method: str) -> bool: ...

    async def resolve(self, did: str) -> DIDDocument: ...


class KeyDIDResolver:
    """Resolves did:key locally without I/O."""

    def accept(self, method: str) -> bool:
        return method == "key"

    async def resolve(self, did: str) -> DIDDocument:
        return DIDDocument.from_dict(did_key_document(did))


class StaticDIDResolver:
    """Serves pre-registered DID documents for one method."""

    def __init__(self, method: str, documents: dict[str, dict[str, Any]] | None = None) -> None:
        self.method = method
        self._documents: dict[str, dict[str, Any]] = dict(documents or {})

    def accept(self, method: str) -> bool:
        return method == self.method

    def register(self, document: dict[str, Any]) -> None:
        self._documents[document["id"]] = document

    async def resolve(self, did: str) -> DIDDocument:
        document = self._documents.get(did)
        if document is None:
            raise DIDError(f"failed to resolve [{did}]: not found")
        return DIDDocument.from_dict(document)


class HTTPDIDResolver:
    """Resolves through a universal resolver: GET <url>/1.0/identifiers/<did>."""

    def __init__(
        self,
        base_url: str,
        methods: frozenset[str] | None = None,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.methods = methods
        self.timeout = timeout
        self._transport = transport

    def accept(self, method: str) -> bool:
        return self.methods is None or method in self.methods

    async def resolve(self, did: str) -> DIDDocument:
        url = f"{self.base_url}/1.0/identifiers/{did}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(url, headers={"Accept": "application/json"})
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise DIDError(
                f"failed to resolve [{did}]: HTTP {exc.response.status_code}"
            ) from exc
        except (httpx.RequestError, ValueError) as exc:
            raise DIDError(f"failed to resolve [{did}]: {exc}") from exc

        document = payload.get("didDocument", payload) if isinstance(payload, dict) else None
        if not isinstance(document, dict):
            raise DIDError(f"failed to resolve [{did}]: no DID document in response")
        return DIDDocument.from_dict(document)


class ResolverSet:
    """Small ordered set of resolvers, selected by DID method."""

    def __init__(self, resolvers: list[DIDResolver] | None = None) -> None:
        self.resolvers: list[DIDResolver] = list(resolvers or [])

    def add(self, resolver: DIDResolver) -> None:
        self.resolvers.append(resolver)

    def select(self, method: str) -> DIDResolver:
        for resolver in self.resolvers:
            if resolver.accept(method):
                return resolver
        raise UnsupportedDIDMethodError(f"no resolver configured for method [{method}]")

    async def resolve(self, did: str) -> DIDDocument:
        parsed = parse_did(did)
        document = await self.select(parsed.method).resolve(str(parsed))
        logger.debug("Resolved %s (%d verification methods)", did, len(document.verification_method))
        return document


def default_resolvers(
    did_resolver_url: str | None = None, transport: httpx.AsyncBaseTransport | None = None
) -> ResolverSet:
    """did:key first, then the universal resolver for everything else."""
    resolvers = ResolverSet([KeyDIDResolver()])
    if did_resolver_url:
        resolvers.add(HTTPDIDResolver(did_resolver_url, transport=transport))
    return resolvers
