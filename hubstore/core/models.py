"""Domain models for the confidential storage hub.

- Profile: a service identity and its self-issued root capability
- Query: a persisted DocQuery owned by a profile
- DocQuery / RefQuery: query specs, tagged by ``type``
- EqOp / ComparisonRequest: comparison operators over query specs

Tagged unions are dispatched by hand in ``parse_query`` and
``parse_comparison`` so an unknown discriminant is a 501 rather than a
validation failure.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from hubstore.exceptions import BadRequestError, UnsupportedTypeError

# ---------------------------------------------------------------------------
# Query specs
# ---------------------------------------------------------------------------


class UpstreamAuthorization(BaseModel):
    """Base URL of a collaborator plus the compressed capability to invoke it."""

    model_config = ConfigDict(populate_by_name=True)

    base_url: str = Field(alias="baseURL", min_length=1)
    zcap: str = Field(min_length=1)


class UpstreamAuth(BaseModel):
    edv: UpstreamAuthorization
    kms: UpstreamAuthorization


class DocQuery(BaseModel):
    """Names an encrypted document directly, with upstream credentials."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["DocQuery"] = "DocQuery"
    vault_id: str = Field(alias="vaultID", min_length=1)
    doc_id: str = Field(alias="docID", min_length=1)
    path: str = Field(default="", description="Path expression into the document content")
    upstream_auth: UpstreamAuth = Field(alias="upstreamAuth")


class RefQuery(BaseModel):
    """References a registered query by the last segment of its location."""

    type: Literal["RefQuery"] = "RefQuery"
    ref: str = Field(min_length=1)
    zcap: str | None = Field(default=None, description="Compressed capability for the query")


QuerySpec = Annotated[DocQuery | RefQuery, Field(discriminator="type")]

_QUERY_TYPES: dict[str, type[BaseModel]] = {"DocQuery": DocQuery, "RefQuery": RefQuery}


def parse_query(data: Any) -> DocQuery | RefQuery:
    """Decode a query spec.

    Raises:
        BadRequestError: not an object, no ``type``, or invalid shape.
        UnsupportedTypeError: unknown ``type``.
    """
    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise BadRequestError("bad request: query must be an object with a type")
    model = _QUERY_TYPES.get(data["type"])
    if model is None:
        raise UnsupportedTypeError("unsupported query type")
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise BadRequestError(f"bad request: invalid {data['type']}") from exc


# ---------------------------------------------------------------------------
# Operators
# ---------------------------------------------------------------------------


class EqOp(BaseModel):
    """True iff every argument resolves to deeply equal content."""

    type: Literal["EqOp"] = "EqOp"
    args: list[QuerySpec] = Field(min_length=2)


Operator = EqOp


class ComparisonRequest(BaseModel):
    op: Operator


class ComparisonResult(BaseModel):
    result: bool


def parse_comparison(data: Any) -> ComparisonRequest:
    if not isinstance(data, dict) or not isinstance(data.get("op"), dict):
        raise BadRequestError("bad request: missing op")
    op = data["op"]
    kind = op.get("type")
    if not isinstance(kind, str):
        raise BadRequestError("bad request: operator has no type")
    if kind != "EqOp":
        raise UnsupportedTypeError("unsupported operator type")

    args = op.get("args")
    if not isinstance(args, list) or len(args) < 2:
        raise BadRequestError("bad request: EqOp needs at least two args")
    return ComparisonRequest(op=EqOp(args=[parse_query(arg) for arg in args]))


def parse_extraction(data: Any) -> list[DocQuery | RefQuery]:
    if not isinstance(data, list):
        raise BadRequestError("bad request: expected a list of queries")
    return [parse_query(item) for item in data]


# ---------------------------------------------------------------------------
# Persisted entities
# ---------------------------------------------------------------------------


class Profile(BaseModel):
    id: str
    controller: str
    zcap: str = Field(description="Compressed root capability")


class Query(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    profile_id: str = Field(alias="profileID")
    spec: DocQuery


class Identity(BaseModel):
    """A service's own DID. ``seed`` is absent when keys live elsewhere."""

    did: str
    document: dict[str, Any]
    seed: str | None = None


class ExtractedDocument(BaseModel):
    document: Any
