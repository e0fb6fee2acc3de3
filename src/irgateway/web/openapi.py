from typing import Any

from fastapi import FastAPI
from fastapi.openapi.utils import get_openapi
from pydantic import BaseModel, Field


def set_custom_openapi(app: FastAPI) -> None:
    def custom_openapi() -> dict[str, Any]:
        if app.openapi_schema:
            return app.openapi_schema

        openapi_schema = get_openapi(
            title="iRacing Data Gateway",
            version="0.1.0",
            summary="Authenticated read-only access to the iRacing members data API",
            routes=app.routes,
        )

        openapi_schema.setdefault("components", {})["securitySchemes"] = {
            "ApiKeyHeader": {
                "type": "apiKey",
                "in": "header",
                "name": "x-api-key",
                "description": "Gateway API key",
            },
            "BearerAuth": {
                "type": "http",
                "scheme": "bearer",
                "description": "Gateway API key sent as a bearer token",
            },
        }

        # Apply security globally (will be overridden for public endpoints)
        openapi_schema["security"] = [
            {"ApiKeyHeader": []},
            {"BearerAuth": []},
        ]

        public_endpoints = {
            ("GET", "/health"),
        }

        for path, path_item in openapi_schema["paths"].items():
            for method, operation in path_item.items():
                if (method.upper(), path) in public_endpoints:
                    operation["security"] = []

        app.openapi_schema = openapi_schema
        return app.openapi_schema

    app.openapi = custom_openapi  # type: ignore[method-assign]


class ErrorResponse(BaseModel):
    """Standard error response format."""

    message: str = Field(..., description="Human-readable error message")
    type: str = Field(..., description="Machine-readable error type")
    upstream_status: int | None = Field(None, description="Status returned by the upstream, for upstream errors")
    stage: str | None = Field(None, description="'index' or 'link': which upstream request failed")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"message": "Authentication failed", "type": "authentication_error"},
                {"message": "subsession_id required", "type": "validation_error"},
                {
                    "message": "follow https://example.com/blob/777 -> 404",
                    "type": "upstream_request_error",
                    "upstream_status": 404,
                    "stage": "link",
                },
            ]
        }
    }
