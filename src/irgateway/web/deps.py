from typing import Annotated, cast

from fastapi import Depends, Request
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

from irgateway.app import App
from irgateway.errors import AuthenticationError

# Security schemes
bearer_scheme = HTTPBearer(auto_error=False)
api_key_scheme = APIKeyHeader(name="x-api-key", auto_error=False)


async def get_app(request: Request) -> App:
    return cast(App, request.app.state.app)


async def require_api_key(
    app: Annotated[App, Depends(get_app)],
    api_key: Annotated[str | None, Depends(api_key_scheme)] = None,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)] = None,
) -> None:
    """Accept the gateway key from the x-api-key header or an Authorization Bearer header."""

    if api_key and app.is_api_key_valid(api_key):
        return

    if credentials and credentials.scheme.lower() == "bearer" and app.is_api_key_valid(credentials.credentials):
        return

    raise AuthenticationError


# Type aliases for dependencies
AppDep = Annotated[App, Depends(get_app)]
ApiKeyDep = Depends(require_api_key)
