"""Authorization capability (ZCAP) object model.

A capability document round-trips through ``to_dict``/``from_dict``; the
dict form is both the signing input (minus ``proofValue``) and the wire
format. Caveats are a tagged union on ``type``; kinds this module does not
know survive re-encoding as ``UnknownCaveat`` and fail verification.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, ClassVar

from hubstore.exceptions import (
    AuthorizationError,
    CapabilityExpiredError,
    MalformedCapabilityEncodingError,
    UnsupportedCaveatError,
)

SECURITY_CONTEXT = "https://w3id.org/security/v2"

PROFILE_TARGET_TYPE = "urn:confidentialstoragehub:profile"
QUERY_TARGET_TYPE = "urn:confidentialstoragehub:query"

PROOF_PURPOSE = "capabilityDelegation"


def format_time(dt: datetime) -> str:
    """RFC 3339 with microseconds, UTC, ``Z`` suffix."""
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_time(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ---------------------------------------------------------------------------
# Caveats
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CaveatContext:
    """Request-side facts caveats are checked against."""

    now: datetime
    doc_attr_path: str | None = None


@dataclass(frozen=True)
class ExpiryCaveat:
    """Valid while ``now < issuedAt + duration`` (seconds)."""

    duration: int
    type: ClassVar[str] = "expiry"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "duration": self.duration}

    def check(self, capability: Capability, context: CaveatContext) -> None:
        expires = capability.issued_at + timedelta(seconds=self.duration)
        if not context.now < expires:
            raise CapabilityExpiredError(
                f"capability {capability.id} expired at {format_time(expires)}"
            )


@dataclass(frozen=True)
class DocAttrPathCaveat:
    """Restricts a query capability to one document attribute path."""

    path: str
    type: ClassVar[str] = "docAttrPath"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "path": self.path}

    def check(self, capability: Capability, context: CaveatContext) -> None:
        if context.doc_attr_path is None or context.doc_attr_path != self.path:
            raise AuthorizationError(
                f"capability {capability.id} is restricted to path [{self.path}]"
            )


@dataclass(frozen=True)
class UnknownCaveat:
    raw: dict[str, Any]

    @property
    def type(self) -> str:
        return str(self.raw.get("type"))

    def to_dict(self) -> dict[str, Any]:
        return dict(self.raw)

    def check(self, capability: Capability, context: CaveatContext) -> None:
        raise UnsupportedCaveatError(f"capability {capability.id} has unsupported caveat [{self.type}]")


Caveat = ExpiryCaveat | DocAttrPathCaveat | UnknownCaveat


def parse_caveat(data: Any) -> Caveat:
    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise MalformedCapabilityEncodingError("caveat must be an object with a type")
    kind = data["type"]
    if kind == ExpiryCaveat.type:
        duration = data.get("duration")
        if isinstance(duration, bool) or not isinstance(duration, int) or duration < 0:
            raise MalformedCapabilityEncodingError("expiry caveat needs a non-negative integer duration")
        return ExpiryCaveat(duration=duration)
    if kind == DocAttrPathCaveat.type:
        path = data.get("path")
        if not isinstance(path, str):
            raise MalformedCapabilityEncodingError("docAttrPath caveat needs a path")
        return DocAttrPathCaveat(path=path)
    return UnknownCaveat(raw=dict(data))


# ---------------------------------------------------------------------------
# Capability
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InvocationTarget:
    id: str
    type: str

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "type": self.type}


@dataclass(frozen=True)
class Proof:
    type: str
    created: str
    verification_method: str
    proof_purpose: str = PROOF_PURPOSE
    proof_value: str = ""

    def to_dict(self, include_value: bool = True) -> dict[str, Any]:
        data = {
            "type": self.type,
            "created": self.created,
            "verificationMethod": self.verification_method,
            "proofPurpose": self.proof_purpose,
        }
        if include_value:
            data["proofValue"] = self.proof_value
        return data

    @classmethod
    def from_dict(cls, data: Any) -> Proof:
        if not isinstance(data, dict):
            raise MalformedCapabilityEncodingError("proof must be an object")
        try:
            proof = cls(
                type=data["type"],
                created=data["created"],
                verification_method=data["verificationMethod"],
                proof_purpose=data.get("proofPurpose", PROOF_PURPOSE),
                proof_value=data.get("proofValue", ""),
            )
            parse_time(proof.created)
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedCapabilityEncodingError(f"malformed proof: {exc}") from exc
        return proof


@dataclass(frozen=True)
class Capability:
    """A delegable authorization token."""

    id: str
    invocation_target: InvocationTarget
    allowed_action: tuple[str, ...] = ()
    controller: str | None = None
    invoker: str | None = None
    parent: str | None = None
    caveats: tuple[Caveat, ...] = ()
    capability_chain: tuple[str, ...] = ()
    proof: Proof | None = None
    context: Any = field(default=SECURITY_CONTEXT)

    @property
    def is_root(self) -> bool:
        return self.parent is None

    @property
    def delegatee(self) -> str | None:
        """Who may invoke or further delegate this capability."""
        return self.invoker or self.controller

    @property
    def issued_at(self) -> datetime:
        if self.proof is None:
            raise MalformedCapabilityEncodingError(f"capability {self.id} has no proof")
        return parse_time(self.proof.created)

    def to_dict(self, include_proof: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {"@context": self.context, "id": self.id}
        if self.controller is not None:
            data["controller"] = self.controller
        if self.invoker is not None:
            data["invoker"] = self.invoker
        if self.parent is not None:
            data["parentCapability"] = self.parent
        data["allowedAction"] = list(self.allowed_action)
        data["invocationTarget"] = self.invocation_target.to_dict()
        if self.caveats:
            data["caveats"] = [c.to_dict() for c in self.caveats]
        if self.capability_chain:
            data["capabilityChain"] = list(self.capability_chain)
        if include_proof and self.proof is not None:
            data["proof"] = self.proof.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Any) -> Capability:
        if not isinstance(data, dict):
            raise MalformedCapabilityEncodingError("capability must be a JSON object")
        try:
            target = data["invocationTarget"]
            if isinstance(target, str):
                target = {"id": target, "type": ""}
            actions = data.get("allowedAction", [])
            if isinstance(actions, str):
                actions = [actions]
            cap = cls(
                id=data["id"],
                invocation_target=InvocationTarget(id=target["id"], type=target.get("type", "")),
                allowed_action=tuple(actions),
                controller=data.get("controller"),
                invoker=data.get("invoker"),
                parent=data.get("parentCapability"),
                caveats=tuple(parse_caveat(c) for c in data.get("caveats", [])),
                capability_chain=tuple(data.get("capabilityChain", [])),
                proof=Proof.from_dict(data["proof"]) if "proof" in data else None,
                context=data.get("@context", SECURITY_CONTEXT),
            )
        except (KeyError, TypeError, AttributeError) as exc:
            raise MalformedCapabilityEncodingError(f"malformed capability: {exc}") from exc
        if not isinstance(cap.id, str) or not all(isinstance(a, str) for a in cap.allowed_action):
            raise MalformedCapabilityEncodingError("malformed capability")
        return cap
