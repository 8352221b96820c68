"""Key types, key IDs and the local key manager.

The key manager hands out opaque ``KeyHandle`` objects addressed by a key
ID derived from the public key (RFC 7638 JWK thumbprint), so the same key
resolved from a DID document always maps to the same handle. Ed25519 is
backed by PyNaCl; the ECDSA curves by ``cryptography`` with signatures in
IEEE P1363 (r || s) form.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from hubstore.crypto.did import VerificationMethod, b64url_encode
from hubstore.exceptions import (
    InvalidSignatureError,
    NotFoundError,
    SigningError,
    UnsupportedKeyTypeError,
)

logger = logging.getLogger("hubstore.keys")


class KeyType(str, Enum):
    ED25519 = "ED25519"
    ECDSA_P256 = "ECDSAP256TypeIEEEP1363"
    ECDSA_P384 = "ECDSAP384TypeIEEEP1363"
    ECDSA_P521 = "ECDSAP521TypeIEEEP1363"

    @property
    def is_ecdsa(self) -> bool:
        return self is not KeyType.ED25519


_CURVES: dict[KeyType, tuple[str, ec.EllipticCurve, hashes.HashAlgorithm]] = {
    KeyType.ECDSA_P256: ("P-256", ec.SECP256R1(), hashes.SHA256()),
    KeyType.ECDSA_P384: ("P-384", ec.SECP384R1(), hashes.SHA384()),
    KeyType.ECDSA_P521: ("P-521", ec.SECP521R1(), hashes.SHA512()),
}

_JWK_CURVES = {
    "P-256": KeyType.ECDSA_P256,
    "P-384": KeyType.ECDSA_P384,
    "P-521": KeyType.ECDSA_P521,
    "Ed25519": KeyType.ED25519,
}

# Name used in the HTTP signature ``algorithm`` parameter
SIGNATURE_ALGORITHMS = {
    KeyType.ED25519: "ed25519",
    KeyType.ECDSA_P256: "ecdsa-p256-sha256",
    KeyType.ECDSA_P384: "ecdsa-p384-sha384",
    KeyType.ECDSA_P521: "ecdsa-p521-sha512",
}


def key_type_for(vm: VerificationMethod) -> KeyType:
    """Map a verification method's declared type/curve to a key type.

    Raises:
        UnsupportedKeyTypeError: unrecognized type or curve.
    """
    if vm.type in ("Ed25519VerificationKey2018", "Ed25519VerificationKey2020"):
        return KeyType.ED25519
    if vm.type == "JsonWebKey2020":
        crv = (vm.jwk or {}).get("crv")
        if crv in _JWK_CURVES:
            return _JWK_CURVES[crv]
        raise UnsupportedKeyTypeError(f"JsonWebKey2020 curve [{crv}] is not supported")
    raise UnsupportedKeyTypeError(f"verification method type [{vm.type}] is not supported")


def public_jwk(key_type: KeyType, public_key: bytes) -> dict[str, str]:
    """Public JWK members required for the thumbprint, in canonical form."""
    if key_type is KeyType.ED25519:
        return {"crv": "Ed25519", "kty": "OKP", "x": b64url_encode(public_key)}
    crv, curve, _ = _CURVES[key_type]
    try:
        point = ec.EllipticCurvePublicKey.from_encoded_point(curve, public_key)
    except ValueError as exc:
        raise UnsupportedKeyTypeError(f"invalid {crv} public key") from exc
    numbers = point.public_numbers()
    size = (curve.key_size + 7) // 8
    return {
        "crv": crv,
        "kty": "EC",
        "x": b64url_encode(numbers.x.to_bytes(size, "big")),
        "y": b64url_encode(numbers.y.to_bytes(size, "big")),
    }


def create_kid(key_type: KeyType, public_key: bytes) -> str:
    """RFC 7638 thumbprint of the public key, base64url encoded."""
    canonical = json.dumps(public_jwk(key_type, public_key), sort_keys=True, separators=(",", ":"))
    return b64url_encode(hashlib.sha256(canonical.encode()).digest())


@dataclass(frozen=True)
class KeyHandle:
    """Opaque reference to a key held (or only known publicly) by a key manager."""

    kid: str
    key_type: KeyType
    public_key: bytes

    @property
    def algorithm(self) -> str:
        return SIGNATURE_ALGORITHMS[self.key_type]


class LocalKeyManager:
    """In-process key manager.

    Private keys never leave the manager; callers work with handles.
    """

    def __init__(self) -> None:
        self._private: dict[str, Any] = {}
        self._handles: dict[str, KeyHandle] = {}

    # --- key creation / import ---

    def create(self, key_type: KeyType = KeyType.ED25519) -> KeyHandle:
        if key_type is KeyType.ED25519:
            return self.import_ed25519_seed(bytes(SigningKey.generate()))
        _, curve, _ = _CURVES[key_type]
        return self.import_ec_private_key(ec.generate_private_key(curve))

    def import_ed25519_seed(self, seed: bytes) -> KeyHandle:
        signing_key = SigningKey(seed)
        handle = self.public_key_to_handle(bytes(signing_key.verify_key), KeyType.ED25519)
        self._private[handle.kid] = signing_key
        return handle

    def import_ec_private_key(self, private_key: ec.EllipticCurvePrivateKey) -> KeyHandle:
        key_type = next(
            (kt for kt, (_, curve, _) in _CURVES.items() if curve.name == private_key.curve.name),
            None,
        )
        if key_type is None:
            raise UnsupportedKeyTypeError(f"curve [{private_key.curve.name}] is not supported")
        public = private_key.public_key().public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)
        handle = self.public_key_to_handle(public, key_type)
        self._private[handle.kid] = private_key
        return handle

    def public_key_to_handle(self, public_key: bytes, key_type: KeyType) -> KeyHandle:
        """Handle for verification with a public key (e.g. from a DID document)."""
        if key_type is KeyType.ED25519 and len(public_key) != 32:
            raise UnsupportedKeyTypeError("Ed25519 public keys must be 32 bytes")
        kid = create_kid(key_type, public_key)
        handle = self._handles.get(kid)
        if handle is None:
            handle = KeyHandle(kid=kid, key_type=key_type, public_key=public_key)
            self._handles[kid] = handle
        return handle

    def get(self, kid: str) -> KeyHandle:
        try:
            return self._handles[kid]
        except KeyError:
            raise NotFoundError(f"no such key [{kid}]") from None

    def has_private_key(self, kid: str) -> bool:
        return kid in self._private

    def export_public_key(self, kid: str) -> bytes:
        return self.get(kid).public_key

    # --- sign / verify ---

    def sign(self, handle: KeyHandle, data: bytes) -> bytes:
        private = self._private.get(handle.kid)
        if private is None:
            raise SigningError(f"no private key for [{handle.kid}]")

        if handle.key_type is KeyType.ED25519:
            return private.sign(data).signature

        _, curve, digest = _CURVES[handle.key_type]
        r, s = decode_dss_signature(private.sign(data, ec.ECDSA(digest)))
        size = (curve.key_size + 7) // 8
        return r.to_bytes(size, "big") + s.to_bytes(size, "big")

    def verify(self, handle: KeyHandle, data: bytes, signature: bytes) -> None:
        """Raise InvalidSignatureError unless ``signature`` is valid over ``data``."""
        if handle.key_type is KeyType.ED25519:
            try:
                VerifyKey(handle.public_key).verify(data, signature)
            except (BadSignatureError, ValueError) as exc:
                raise InvalidSignatureError("ed25519 signature verification failed") from exc
            return

        _, curve, digest = _CURVES[handle.key_type]
        size = (curve.key_size + 7) // 8
        if len(signature) != 2 * size:
            raise InvalidSignatureError("ecdsa signature has the wrong length")
        r = int.from_bytes(signature[:size], "big")
        s = int.from_bytes(signature[size:], "big")
        try:
            public = ec.EllipticCurvePublicKey.from_encoded_point(curve, handle.public_key)
            public.verify(encode_dss_signature(r, s), data, ec.ECDSA(digest))
        except (InvalidSignature, ValueError) as exc:
            raise InvalidSignatureError("ecdsa signature verification failed") from exc
