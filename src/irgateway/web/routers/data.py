"""Read-only passthrough of upstream /data endpoints."""

from typing import Annotated

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

from irgateway.errors import ValidationError
from irgateway.web.deps import ApiKeyDep, AppDep
from irgateway.web.openapi import ErrorResponse

router = APIRouter(tags=["data"], dependencies=[ApiKeyDep])

SubsessionIdQuery = Annotated[str | None, Query(description="Subsession to look up")]

UPSTREAM_ERRORS = {
    401: {"model": ErrorResponse, "description": "Missing or invalid API key"},
    502: {"model": ErrorResponse, "description": "Upstream login or request failed"},
}


def parse_subsession_id(subsession_id: str | None) -> int:
    if not subsession_id:
        raise ValidationError("subsession_id required")
    if not (subsession_id.isascii() and subsession_id.isdigit()):
        raise ValidationError("subsession_id must be a positive integer")
    return int(subsession_id)


@router.get(
    "/data/doc",
    summary="Get upstream API documentation",
    description="Returns the upstream documentation index unchanged.",
    operation_id="getDoc",
    responses={200: {"description": "Upstream documentation"}, **UPSTREAM_ERRORS},
)
async def get_doc(app: AppDep) -> JSONResponse:
    return JSONResponse(await app.get_doc())


@router.get(
    "/data/results/get",
    summary="Get subsession results",
    description="Returns the results of a subsession, with the upstream's pointer response already followed.",
    operation_id="getResults",
    responses={
        200: {"description": "Subsession results"},
        400: {"model": ErrorResponse, "description": "Missing or invalid subsession_id"},
        **UPSTREAM_ERRORS,
    },
)
async def get_results(app: AppDep, subsession_id: SubsessionIdQuery = None) -> JSONResponse:
    return JSONResponse(await app.get_results(parse_subsession_id(subsession_id)))


@router.get(
    "/data/results/lapchart",
    summary="Get subsession lap chart",
    description="Returns the lap chart of a subsession, with the upstream's pointer response already followed.",
    operation_id="getLapChart",
    responses={
        200: {"description": "Lap chart data"},
        400: {"model": ErrorResponse, "description": "Missing or invalid subsession_id"},
        **UPSTREAM_ERRORS,
    },
)
async def get_lapchart(app: AppDep, subsession_id: SubsessionIdQuery = None) -> JSONResponse:
    return JSONResponse(await app.get_lapchart(parse_subsession_id(subsession_id)))
