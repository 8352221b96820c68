"""JWE JSON serialization for encrypted documents.

Documents are AES-GCM encrypted under a random content-encryption key
(CEK). The CEK is wrapped for a single recipient by the key service, so
decryption takes an ``unwrap`` callback instead of a key.
"""

from __future__ import annotations

import json
import os
from collections.abc import Awaitable, Callable
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.keywrap import aes_key_wrap

from hubstore.crypto.did import b64url_decode, b64url_encode
from hubstore.exceptions import UpstreamError

# enc -> CEK length in bytes
CONTENT_ENCRYPTION = {"A128GCM": 16, "A192GCM": 24, "A256GCM": 32}

Unwrap = Callable[[str, str, bytes], Awaitable[bytes]]


def encrypt(
    plaintext: bytes, kek: bytes, kid: str, enc: str = "A256GCM", alg: str = "A256KW"
) -> dict[str, Any]:
    """Encrypt for one recipient whose KEK is known locally (AES key wrap)."""
    cek = os.urandom(CONTENT_ENCRYPTION[enc])
    protected = b64url_encode(json.dumps({"enc": enc}, separators=(",", ":")).encode())
    iv = os.urandom(12)
    sealed = AESGCM(cek).encrypt(iv, plaintext, protected.encode("ascii"))
    return {
        "protected": protected,
        "recipients": [
            {
                "header": {"alg": alg, "kid": kid},
                "encrypted_key": b64url_encode(aes_key_wrap(kek, cek)),
            }
        ],
        "iv": b64url_encode(iv),
        "ciphertext": b64url_encode(sealed[:-16]),
        "tag": b64url_encode(sealed[-16:]),
    }


def parse(jwe: dict[str, Any] | str) -> dict[str, Any]:
    if isinstance(jwe, str):
        try:
            jwe = json.loads(jwe)
        except ValueError as exc:
            raise UpstreamError("encrypted document is not valid JSON") from exc
    if not isinstance(jwe, dict):
        raise UpstreamError("encrypted document is not a JWE object")
    return jwe


async def decrypt(jwe: dict[str, Any] | str, unwrap: Unwrap) -> bytes:
    """Unwrap the CEK through ``unwrap(kid, alg, encrypted_key)`` and decrypt.

    Raises:
        UpstreamError: malformed JWE, unsupported ``enc`` or failed decryption.
    """
    jwe = parse(jwe)
    try:
        protected_b64 = jwe["protected"]
        header = json.loads(b64url_decode(protected_b64))
        recipient = jwe["recipients"][0]
        kid = recipient["header"]["kid"]
        alg = recipient["header"].get("alg", "")
        encrypted_key = b64url_decode(recipient["encrypted_key"])
        iv = b64url_decode(jwe["iv"])
        ciphertext = b64url_decode(jwe["ciphertext"])
        tag = b64url_decode(jwe["tag"])
    except (KeyError, IndexError, TypeError, ValueError) as exc:
        raise UpstreamError("malformed encrypted document") from exc

    enc = header.get("enc")
    if enc not in CONTENT_ENCRYPTION:
        raise UpstreamError(f"unsupported content encryption [{enc}]")

    cek = await unwrap(kid, alg, encrypted_key)
    if len(cek) != CONTENT_ENCRYPTION[enc]:
        raise UpstreamError("unwrapped key has the wrong length")

    try:
        return AESGCM(cek).decrypt(iv, ciphertext + tag, protected_b64.encode("ascii"))
    except InvalidTag as exc:
        raise UpstreamError("failed to decrypt document") from exc
