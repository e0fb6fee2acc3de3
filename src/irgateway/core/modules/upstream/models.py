"""Upstream session models."""

from enum import StrEnum

from pydantic import BaseModel


class SessionState(StrEnum):
    """Lifecycle of the gateway's login session with the upstream."""

    UNAUTHENTICATED = "unauthenticated"
    LOGGING_IN = "logging_in"
    AUTHENTICATED = "authenticated"


class LoginRequest(BaseModel):
    """Body of the upstream login POST."""

    email: str
    password: str
