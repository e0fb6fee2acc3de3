"""Upstream session cookies and the bearer token derived from them."""

from collections.abc import Mapping
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from http.cookiejar import CookieJar, DefaultCookiePolicy

import httpx
import structlog

logger = structlog.get_logger(__name__)

TOKEN_COOKIE_PREFIX = "authtoken"


def parse_set_cookie(header: str) -> tuple[str, str | None] | None:
    """Parse a Set-Cookie header into (name, value).

    Value is None when the cookie is being deleted: Max-Age <= 0, or, when
    Max-Age is absent, an Expires date that has already passed. Returns None
    for headers without a usable name=value pair.
    """
    pair, _, attributes = header.partition(";")
    name, sep, value = pair.partition("=")
    name = name.strip()
    if not sep or not name:
        return None

    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] == '"':  # noqa: PLR2004
        value = value[1:-1]

    max_age: int | None = None
    expires: datetime | None = None
    for attribute in attributes.split(";"):
        key, _, attr_value = attribute.partition("=")
        key = key.strip().lower()
        attr_value = attr_value.strip()
        if key == "max-age" and attr_value.removeprefix("-").isdigit():
            max_age = int(attr_value)
        elif key == "expires":
            expires = _parse_expires(attr_value)

    # Max-Age takes precedence over Expires
    if max_age is not None:
        expired = max_age <= 0
    else:
        expired = expires is not None and expires <= datetime.now(UTC)
    return (name, None) if expired else (name, value)


def _parse_expires(value: str) -> datetime | None:
    try:
        expires = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if expires.tzinfo is None:
        expires = expires.replace(tzinfo=UTC)
    return expires


def detached_cookie_jar() -> CookieJar:
    """Cookie jar that stores nothing, for the shared upstream httpx client.

    Upstream cookies live only in CredentialStore, so requests running
    concurrently on one client never pick up each other's cookies.
    """
    return CookieJar(policy=DefaultCookiePolicy(allowed_domains=[]))


class CredentialStore:
    """Cookie map for the single configured upstream origin.

    Writers always replace the whole map, so readers never see a half-applied
    login. Performs no network I/O.
    """

    def __init__(self, user_agent: str) -> None:
        self._user_agent = user_agent
        self._cookies: dict[str, str] = {}

    @property
    def cookies(self) -> dict[str, str]:
        """Snapshot of the stored cookies."""
        return dict(self._cookies)

    def extract_token(self) -> str | None:
        """Value of the first non-empty cookie named authtoken* (case-insensitive), if any."""
        for name, value in self._cookies.items():
            if value and name.lower().startswith(TOKEN_COOKIE_PREFIX):
                return value
        return None

    def build_headers(self, extra: Mapping[str, str] | None = None, *, authenticated: bool = True) -> dict[str, str]:
        """Headers for an upstream request; `extra` wins on key collision.

        With authenticated=False the authorization and cookie headers are left out.
        """
        headers = {"accept": "application/json", "user-agent": self._user_agent}

        if authenticated:
            cookies = self._cookies
            token = self.extract_token()
            if token is not None:
                headers["authorization"] = f"Bearer {token}"
            if cookies:
                headers["cookie"] = "; ".join(f"{name}={value}" for name, value in cookies.items())

        if extra:
            headers.update({key.lower(): value for key, value in extra.items()})
        return headers

    def update(self, cookies: Mapping[str, str | None]) -> None:
        """Merge cookies into the store; a None value removes the cookie."""
        merged = dict(self._cookies)
        for name, value in cookies.items():
            if value is None:
                merged.pop(name, None)
            else:
                merged[name] = value
        self._cookies = merged

    def absorb(self, response: httpx.Response) -> list[str]:
        """Store every Set-Cookie of the response and its redirect chain.

        Returns the names of cookies that were set or removed.
        """
        updates: dict[str, str | None] = {}
        for hop in [*response.history, response]:
            for header in hop.headers.get_list("set-cookie"):
                parsed = parse_set_cookie(header)
                if parsed is None:
                    logger.debug("upstream_cookie_skipped", status=hop.status_code)
                    continue
                name, value = parsed
                updates[name] = value

        if updates:
            self.update(updates)
        return list(updates)

    def clear(self) -> None:
        """Discard all stored cookies."""
        self._cookies = {}
