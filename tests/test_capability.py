"""Tests for minting, chain verification and wire encoding of capabilities."""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from hubstore.core.identity import create_did_key_identity, register_identity
from hubstore.crypto.keys import KeyType, public_jwk
from hubstore.exceptions import (
    ActionNotPermittedError,
    AuthorizationError,
    BrokenCapabilityChainError,
    CapabilityExpiredError,
    InvalidSignatureError,
    MalformedCapabilityEncodingError,
    SigningError,
    UnsupportedCaveatError,
)
from hubstore.zcap.capability import (
    Signer,
    canonical_json,
    compress_capability,
    decompress_capability,
    mint_capability,
    verify_capability,
)
from hubstore.zcap.models import Capability, DocAttrPathCaveat, ExpiryCaveat, UnknownCaveat

ISSUED = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
LATER = ISSUED + timedelta(minutes=1)


class Store:
    def __init__(self, *caps: Capability) -> None:
        self.caps = {c.id: c for c in caps}

    async def fetch(self, capability_id: str):
        return self.caps.get(capability_id)


@pytest.fixture
def alice(identity, binding):
    ident, keys = identity
    return ident.did, Signer(binding, keys.delegation)


@pytest.fixture
def bob(key_manager, binding):
    ident = create_did_key_identity()
    keys = register_identity(ident, key_manager)
    return ident.did, Signer(binding, keys.delegation)


async def _root(did, signer, actions=("read", "reference"), caveats=()):
    return await mint_capability(
        parent=None,
        invoker=did,
        target_id="urn:uuid:target",
        target_type="urn:test:resource",
        actions=actions,
        caveats=caveats,
        signer=signer,
        controller=did,
        now=ISSUED,
    )


async def _delegate(parent, invoker, signer, actions=("reference",), caveats=()):
    return await mint_capability(
        parent=parent,
        invoker=invoker,
        target_id=parent.invocation_target.id,
        target_type=parent.invocation_target.type,
        actions=actions,
        caveats=caveats,
        signer=signer,
        now=ISSUED,
    )


class TestMint:
    async def test_root_has_no_chain(self, alice):
        did, signer = alice
        root = await _root(did, signer)
        assert root.is_root
        assert root.capability_chain == ()
        assert root.id.startswith("urn:uuid:")
        assert root.proof.type == "Ed25519Signature2018"
        assert root.proof.verification_method == signer.verification_method
        assert root.proof.proof_purpose == "capabilityDelegation"

    async def test_chain_extends_parent_chain(self, alice, bob):
        alice_did, alice_signer = alice
        bob_did, bob_signer = bob
        root = await _root(alice_did, alice_signer)
        child = await _delegate(root, bob_did, alice_signer)
        grandchild = await _delegate(child, "did:example:carol", bob_signer)
        assert child.parent == root.id
        assert child.capability_chain == (root.id,)
        assert grandchild.capability_chain == (root.id, child.id)

    async def test_ecdsa_signer_uses_json_web_signature(self, binding, key_manager, example_resolver):
        handle = key_manager.create(KeyType.ECDSA_P256)
        example_resolver.register(
            {
                "id": "did:example:ec",
                "verificationMethod": [
                    {
                        "id": "did:example:ec#k",
                        "type": "JsonWebKey2020",
                        "controller": "did:example:ec",
                        "publicKeyJwk": public_jwk(handle.key_type, handle.public_key),
                    }
                ],
                "capabilityDelegation": ["#k"],
            }
        )
        root = await _root("did:example:ec", Signer(binding, "did:example:ec#k"))
        assert root.proof.type == "JsonWebSignature2020"
        await verify_capability(root, LATER, "read", Store().fetch, binding)

    async def test_signing_failure(self, binding):
        with pytest.raises(SigningError):
            await _root("did:example:ghost", Signer(binding, "did:example:ghost#k"))


class TestVerify:
    async def test_root_verifies(self, alice, binding):
        did, signer = alice
        root = await _root(did, signer)
        chain = await verify_capability(root, LATER, "read", Store().fetch, binding)
        assert chain == [root]

    async def test_delegation_chain_verifies(self, alice, bob, binding):
        alice_did, alice_signer = alice
        bob_did, bob_signer = bob
        root = await _root(alice_did, alice_signer)
        child = await _delegate(root, bob_did, alice_signer)
        grandchild = await _delegate(child, "did:example:carol", bob_signer)

        chain = await verify_capability(
            grandchild, LATER, "reference", Store(root, child).fetch, binding
        )
        assert [c.id for c in chain] == [grandchild.id, child.id, root.id]

    async def test_action_checked_on_presented_capability_only(self, alice, binding):
        did, signer = alice
        root = await _root(did, signer, actions=("read",))
        child = await _delegate(root, "did:example:bob", signer, actions=("reference",))
        await verify_capability(child, LATER, "reference", Store(root).fetch, binding)
        with pytest.raises(ActionNotPermittedError):
            await verify_capability(child, LATER, "read", Store(root).fetch, binding)

    async def test_invoker_must_match(self, alice, binding):
        did, signer = alice
        root = await _root(did, signer)
        child = await _delegate(root, "did:example:bob", signer)
        await verify_capability(
            child, LATER, "reference", Store(root).fetch, binding, invoker="did:example:bob#key"
        )
        with pytest.raises(ActionNotPermittedError):
            await verify_capability(
                child, LATER, "reference", Store(root).fetch, binding, invoker="did:example:eve"
            )

    async def test_missing_ancestor(self, alice, binding):
        did, signer = alice
        root = await _root(did, signer)
        child = await _delegate(root, "did:example:bob", signer)
        with pytest.raises(BrokenCapabilityChainError):
            await verify_capability(child, LATER, "reference", Store().fetch, binding)

    async def test_delegation_by_non_delegatee(self, alice, bob, binding):
        alice_did, alice_signer = alice
        _, bob_signer = bob
        root = await _root(alice_did, alice_signer)
        # bob was never delegated anything by alice's root
        child = await _delegate(root, "did:example:carol", bob_signer)
        with pytest.raises(BrokenCapabilityChainError):
            await verify_capability(child, LATER, "reference", Store(root).fetch, binding)

    async def test_parent_not_last_in_chain(self, alice, binding):
        did, signer = alice
        root = await _root(did, signer)
        child = await _delegate(root, "did:example:bob", signer)
        broken = replace(child, capability_chain=("urn:uuid:other",))
        with pytest.raises((BrokenCapabilityChainError, InvalidSignatureError)):
            await verify_capability(broken, LATER, "reference", Store(root).fetch, binding)


class TestCaveats:
    async def test_zero_duration_expires_immediately(self, alice, binding):
        did, signer = alice
        root = await _root(did, signer, caveats=(ExpiryCaveat(duration=0),))
        with pytest.raises(CapabilityExpiredError):
            await verify_capability(
                root, ISSUED + timedelta(microseconds=1), "read", Store().fetch, binding
            )

    async def test_expiry_window(self, alice, binding):
        did, signer = alice
        root = await _root(did, signer, caveats=(ExpiryCaveat(duration=60),))
        await verify_capability(root, ISSUED + timedelta(seconds=59), "read", Store().fetch, binding)
        with pytest.raises(CapabilityExpiredError):
            await verify_capability(
                root, ISSUED + timedelta(seconds=60), "read", Store().fetch, binding
            )

    async def test_expired_ancestor(self, alice, binding):
        did, signer = alice
        root = await _root(did, signer, caveats=(ExpiryCaveat(duration=10),))
        child = await _delegate(root, "did:example:bob", signer, caveats=(ExpiryCaveat(duration=3600),))
        with pytest.raises(CapabilityExpiredError):
            await verify_capability(child, LATER, "reference", Store(root).fetch, binding)

    async def test_doc_attr_path(self, alice, binding):
        did, signer = alice
        root = await _root(did, signer, caveats=(DocAttrPathCaveat(path="$.a"),))
        await verify_capability(root, LATER, "read", Store().fetch, binding, doc_attr_path="$.a")
        with pytest.raises(AuthorizationError):
            await verify_capability(root, LATER, "read", Store().fetch, binding, doc_attr_path="$.b")

    async def test_unknown_caveat_fails_closed(self, alice, binding):
        did, signer = alice
        caveat = UnknownCaveat(raw={"type": "geofence", "region": "eu"})
        root = await _root(did, signer, caveats=(caveat,))
        with pytest.raises(UnsupportedCaveatError):
            await verify_capability(root, LATER, "read", Store().fetch, binding)

    async def test_unknown_caveat_survives_encoding(self, alice):
        did, signer = alice
        caveat = UnknownCaveat(raw={"type": "geofence", "region": "eu"})
        root = await _root(did, signer, caveats=(caveat,))
        decoded = decompress_capability(compress_capability(root))
        assert decoded.caveats == (caveat,)


class TestTampering:
    async def test_modified_field(self, alice, binding):
        did, signer = alice
        root = await _root(did, signer, actions=("read",))
        forged = replace(root, allowed_action=("read", "write"))
        with pytest.raises(InvalidSignatureError):
            await verify_capability(forged, LATER, "write", Store().fetch, binding)

    async def test_modified_signature_in_compressed_form(self, alice, binding):
        did, signer = alice
        root = await _root(did, signer)
        decoded = decompress_capability(compress_capability(root))
        value = decoded.proof.proof_value
        flipped = ("B" if value[0] == "A" else "A") + value[1:]
        tampered = compress_capability(replace(decoded, proof=replace(decoded.proof, proof_value=flipped)))

        with pytest.raises(InvalidSignatureError):
            await verify_capability(
                decompress_capability(tampered), LATER, "read", Store().fetch, binding
            )

    async def test_unsigned(self, alice, binding):
        did, signer = alice
        root = await _root(did, signer)
        with pytest.raises(InvalidSignatureError):
            await verify_capability(replace(root, proof=None), LATER, "read", Store().fetch, binding)


class TestEncoding:
    async def test_round_trip(self, alice):
        did, signer = alice
        root = await _root(did, signer, caveats=(ExpiryCaveat(duration=30),))
        decoded = decompress_capability(compress_capability(root))
        assert decoded == root
        assert canonical_json(decoded.to_dict()) == canonical_json(root.to_dict())

    def test_document_shape(self):
        cap = Capability.from_dict(
            {
                "@context": "https://w3id.org/security/v2",
                "id": "urn:uuid:1",
                "invoker": "did:example:a",
                "parentCapability": "urn:uuid:0",
                "allowedAction": "read",
                "invocationTarget": "https://example.com/doc",
                "capabilityChain": ["urn:uuid:0"],
            }
        )
        assert cap.allowed_action == ("read",)
        assert cap.invocation_target.id == "https://example.com/doc"
        assert cap.parent == "urn:uuid:0"
        assert cap.to_dict()["allowedAction"] == ["read"]

    @pytest.mark.parametrize("value", ["", "not base64 at all!", "aGVsbG8", "H4sIAAAAAAAA"])
    def test_malformed_encoding(self, value):
        with pytest.raises(MalformedCapabilityEncodingError):
            decompress_capability(value)

    def test_malformed_document(self):
        import base64
        import gzip

        encoded = base64.urlsafe_b64encode(gzip.compress(b'{"id": 5}')).decode()
        with pytest.raises(MalformedCapabilityEncodingError):
            decompress_capability(encoded)
