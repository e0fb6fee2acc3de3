from abc import ABC
from enum import StrEnum


class UserError(ABC, Exception):
    """Base class for caller-facing errors.

    All errors that inherit from UserError will have their messages
    displayed to the caller. These errors should not contain any
    sensitive information.
    """


class AuthenticationError(UserError):
    """Raised when an inbound caller presents a missing or wrong API key."""

    def __init__(self, message: str = "Authentication failed") -> None:
        super().__init__(message)


class ValidationError(UserError):
    """Raised when caller input fails validation."""


class FetchStage(StrEnum):
    """Which half of the two-stage fetch an upstream failure came from."""

    INDEX = "index"  # The requested URL itself
    LINK = "link"  # The URL named by a pointer response


class UpstreamError(Exception):
    """Base class for failures talking to the upstream data API.

    Carries the upstream status code (None for transport failures) and a
    truncated body excerpt. Never carries login credentials.
    """

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        body_excerpt: str = "",
        stage: FetchStage | None = None,
        url: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.body_excerpt = body_excerpt
        self.stage = stage
        self.url = url


class UpstreamAuthError(UpstreamError):
    """Raised when the upstream login endpoint rejects the configured account."""


class SessionRejectedError(UpstreamError):
    """Raised when login succeeds but the verifying probe is refused with 401.

    The account is valid but the upstream blocks the session (rate limiting,
    legacy read-only access not enabled, interactive challenge). Never retried.
    """


class UpstreamRequestError(UpstreamError):
    """Raised when a data fetch fails with a non-auth status or a transport error."""


class UpstreamAuthExpiredError(UpstreamRequestError):
    """Raised when a data fetch is still unauthorized after the one forced re-login."""
