"""Comparator (delegation adapter) routes."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

from hubstore.comparator.models import AuthorizationRequest
from hubstore.comparator.service import ComparatorService
from hubstore.core.models import ComparisonResult, ExtractedDocument
from hubstore.exceptions import BadRequestError

router = APIRouter(tags=["comparator"])


def _service(request: Request) -> ComparatorService:
    return request.app.state.service


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as exc:
        raise BadRequestError("bad request: body is not valid JSON") from exc


@router.get("/config")
async def get_config(request: Request) -> dict[str, str]:
    return _service(request).get_config().model_dump(by_alias=True)


@router.post("/authorizations")
async def create_authorization(req: AuthorizationRequest, request: Request) -> dict[str, str]:
    response = await _service(request).handle_authorization(req)
    return response.model_dump(by_alias=True)


@router.post("/compare", response_model=ComparisonResult)
async def compare(request: Request) -> ComparisonResult:
    result = await _service(request).handle_comparison(await _json_body(request))
    return ComparisonResult(result=result)


@router.post("/extract", response_model=list[ExtractedDocument])
async def extract(request: Request) -> list[ExtractedDocument]:
    documents = await _service(request).handle_extraction(await _json_body(request))
    return [ExtractedDocument(document=doc) for doc in documents]
