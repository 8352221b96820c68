"""Custom exception hierarchy for hubstore.

Provides structured error types that the centralized error handler
translates into consistent JSON responses. Authorization failures share a
single public message; their specific cause only reaches the audit log.
"""

from __future__ import annotations


class HubstoreError(Exception):
    """Base exception for all hubstore errors."""

    status_code: int = 500
    error_type: str = "internal_error"

    def __init__(self, message: str = "An internal error occurred") -> None:
        self.message = message
        super().__init__(message)


# ---------------------------------------------------------------------------
# Client errors
# ---------------------------------------------------------------------------


class BadRequestError(HubstoreError):
    """Malformed input or a disallowed query type."""

    status_code = 400
    error_type = "bad_request"


class NoSuchQueryError(BadRequestError):
    """A RefQuery names a query that was never registered."""

    error_type = "no_such_query"

    def __init__(self, message: str = "no such query") -> None:
        super().__init__(message)


class MalformedCapabilityEncodingError(BadRequestError):
    """A compressed capability could not be decoded."""

    error_type = "malformed_capability"


class MalformedPathError(BadRequestError):
    """A document path expression has invalid syntax."""

    error_type = "malformed_path"


class PathNotFoundError(BadRequestError):
    """A document path expression selects nothing in the decrypted content."""

    error_type = "path_not_found"


class NotFoundError(HubstoreError):
    """Requested resource was not found."""

    status_code = 404
    error_type = "not_found"


class UnsupportedTypeError(HubstoreError):
    """A tagged union carries a discriminant this service does not implement."""

    status_code = 501
    error_type = "not_implemented"


# ---------------------------------------------------------------------------
# Authorization errors (4xx, generic public message)
# ---------------------------------------------------------------------------


class AuthorizationError(HubstoreError):
    """Capability verification failed."""

    status_code = 403
    error_type = "unauthorized"
    public_message = "not authorized"


class InvalidSignatureError(AuthorizationError):
    """A capability proof does not verify against its verification method."""


class CapabilityExpiredError(AuthorizationError):
    """An expiry caveat on a capability in the chain has lapsed."""


class ActionNotPermittedError(AuthorizationError):
    """The presented capability does not allow the requested action."""


class BrokenCapabilityChainError(AuthorizationError):
    """The delegation chain is discontinuous or does not reach a root."""


class UnsupportedCaveatError(AuthorizationError):
    """A caveat kind this verifier does not know how to evaluate."""


# ---------------------------------------------------------------------------
# DID / key compatibility errors
# ---------------------------------------------------------------------------


class DIDError(HubstoreError):
    """DID resolution or key mapping failure."""

    status_code = 400
    error_type = "did_error"


class MalformedDIDURLError(DIDError):
    """A DID URL has no fragment or an invalid DID."""


class UnsupportedDIDMethodError(DIDError):
    """No configured resolver accepts the DID method."""


class NoSuchVerificationMethodError(DIDError):
    """The DID document has no matching verification method."""


class UnsupportedKeyTypeError(DIDError):
    """A verification method type/curve has no signature algorithm mapping."""


# ---------------------------------------------------------------------------
# Server-side failures
# ---------------------------------------------------------------------------


class InternalError(HubstoreError):
    """Storage, crypto backend or collaborator failure."""


class SigningError(InternalError):
    """The key manager could not produce a signature."""

    error_type = "signing_failed"


class StorageError(InternalError):
    """Database or storage layer failure."""

    error_type = "storage_error"


class UpstreamError(InternalError):
    """An upstream collaborator (vault, storage, key service, hub) failed."""

    error_type = "upstream_error"


class DeadlineExceededError(HubstoreError):
    """The operation ran past its deadline."""

    status_code = 504
    error_type = "deadline_exceeded"
