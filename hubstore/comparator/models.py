"""Wire models of the comparator (cross-service delegation adapter)."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from hubstore.exceptions import BadRequestError, UnsupportedTypeError


class AuthTokens(BaseModel):
    """Compressed capabilities for the storage service and key service."""

    edv: str = Field(min_length=1)
    kms: str = Field(min_length=1)


class CaveatSpec(BaseModel):
    type: Literal["expiry"] = "expiry"
    duration: int = Field(ge=0, description="Seconds the delegated capability stays valid")


class Scope(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    vault_id: str = Field(alias="vaultID", min_length=1)
    doc_id: str = Field(alias="docID", min_length=1)
    doc_attr_path: str = Field(default="", alias="docAttrPath")
    auth_tokens: AuthTokens = Field(alias="authTokens")
    caveats: list[CaveatSpec] = Field(default_factory=list)


class AuthorizationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    requesting_party: str = Field(alias="requestingParty", min_length=1)
    scope: Scope


class AuthorizationResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    requesting_party: str = Field(alias="requestingParty")
    auth_token: str = Field(alias="authToken")


class ComparatorConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    did: str
    profile_id: str = Field(alias="profileID")


class AdapterDocQuery(BaseModel):
    """A document named by vault coordinates plus caller-held tokens."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["DocQuery"] = "DocQuery"
    vault_id: str = Field(alias="vaultID", min_length=1)
    doc_id: str = Field(alias="docID", min_length=1)
    doc_attr_path: str = Field(default="", alias="docAttrPath")
    auth_tokens: AuthTokens = Field(alias="authTokens")


class AuthorizedQuery(BaseModel):
    """A query capability issued by some comparator's ``/authorizations``."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["AuthorizedQuery"] = "AuthorizedQuery"
    auth_token: str = Field(alias="authToken", min_length=1)


AdapterQuery = Annotated[AdapterDocQuery | AuthorizedQuery, Field(discriminator="type")]

_QUERY_TYPES: dict[str, type[BaseModel]] = {
    "DocQuery": AdapterDocQuery,
    "AuthorizedQuery": AuthorizedQuery,
}


def parse_adapter_query(data: Any) -> AdapterDocQuery | AuthorizedQuery:
    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise BadRequestError("bad request: query must be an object with a type")
    model = _QUERY_TYPES.get(data["type"])
    if model is None:
        raise UnsupportedTypeError("unsupported query type")
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise BadRequestError(f"bad request: invalid {data['type']}") from exc


def parse_adapter_comparison(data: Any) -> list[AdapterDocQuery | AuthorizedQuery]:
    """Validate ``{"op": {"type": "EqOp", "args": [...]}}`` and return the args."""
    if not isinstance(data, dict) or not isinstance(data.get("op"), dict):
        raise BadRequestError("bad request: missing op")
    op = data["op"]
    if not isinstance(op.get("type"), str):
        raise BadRequestError("bad request: operator has no type")
    if op["type"] != "EqOp":
        raise UnsupportedTypeError("unsupported operator type")
    args = op.get("args")
    if not isinstance(args, list) or len(args) < 2:
        raise BadRequestError("bad request: EqOp needs at least two args")
    return [parse_adapter_query(arg) for arg in args]


def parse_adapter_extraction(data: Any) -> list[AdapterDocQuery | AuthorizedQuery]:
    if not isinstance(data, list):
        raise BadRequestError("bad request: expected a list of queries")
    return [parse_adapter_query(item) for item in data]
