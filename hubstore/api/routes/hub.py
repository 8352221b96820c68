"""Confidential storage hub routes."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from hubstore.core.models import ComparisonResult, ExtractedDocument, Profile
from hubstore.core.service import HubService
from hubstore.exceptions import BadRequestError

router = APIRouter(tags=["hub"])


class CreateProfileRequest(BaseModel):
    controller: str = ""


def _service(request: Request) -> HubService:
    return request.app.state.service


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as exc:
        raise BadRequestError("bad request: body is not valid JSON") from exc


@router.get("/identity")
async def get_identity(request: Request) -> dict[str, str]:
    """DID the hub invokes upstream capabilities as."""
    return {"did": _service(request).identity.did}


@router.post("/profiles", status_code=status.HTTP_201_CREATED, response_model=Profile)
async def create_profile(req: CreateProfileRequest, request: Request) -> Profile:
    return await _service(request).create_profile(req.controller)


@router.post("/profiles/{profile_id}/queries", status_code=status.HTTP_201_CREATED)
async def create_query(profile_id: str, request: Request) -> JSONResponse:
    location = await _service(request).create_query(profile_id, await _json_body(request))
    return JSONResponse(
        status_code=status.HTTP_201_CREATED,
        content={"location": location},
        headers={"Location": location},
    )


@router.post("/profiles/{profile_id}/authorizations", status_code=status.HTTP_201_CREATED)
async def create_authorization(profile_id: str, request: Request) -> Response:
    await _service(request).create_authorization(profile_id)
    return Response(status_code=status.HTTP_201_CREATED)


@router.post("/compare", response_model=ComparisonResult)
async def compare(request: Request) -> ComparisonResult:
    result = await _service(request).compare(await _json_body(request))
    return ComparisonResult(result=result)


@router.post("/extract", response_model=list[ExtractedDocument])
async def extract(request: Request) -> list[ExtractedDocument]:
    documents = await _service(request).extract(await _json_body(request))
    return [ExtractedDocument(document=doc) for doc in documents]
