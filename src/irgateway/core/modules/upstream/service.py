import asyncio
import time
from collections.abc import Callable, Mapping
from typing import Any

import httpx
import structlog

from irgateway.config import Config
from irgateway.core.core import Service
from irgateway.core.modules.credentials.store import CredentialStore
from irgateway.core.modules.upstream.models import LoginRequest, SessionState
from irgateway.errors import (
    FetchStage,
    SessionRejectedError,
    UpstreamAuthError,
    UpstreamAuthExpiredError,
    UpstreamError,
    UpstreamRequestError,
)
from irgateway.utils import display_url, excerpt

logger = structlog.get_logger(__name__)

LOGIN_PATH = "/auth"
PROBE_PATH = "/data/doc"

QueryParams = Mapping[str, str | int]


class UpstreamService(Service):
    """Login session with the upstream data API and the two-stage fetch protocol.

    The session is established lazily on first use, renewed when it is older
    than the configured TTL, and renewed at most once per fetch when the
    upstream answers 401. Concurrent callers share a single in-flight login.
    """

    def __init__(self, config: Config, http: httpx.AsyncClient, clock: Callable[[], float] = time.monotonic) -> None:
        super().__init__(config, http)
        self.store = CredentialStore(config.user_agent)
        self._clock = clock
        self._base_url = httpx.URL(config.upstream_base_url)
        self._last_login_at: float | None = None
        self._login_task: asyncio.Task[None] | None = None
        # Bumped on every successful login; lets concurrent 401s share one re-login
        self._generation = 0

    async def on_start(self) -> None:
        logger.info("upstream_service_started", base_url=display_url(self._base_url))

    async def on_stop(self) -> None:
        self._clear_session()
        logger.debug("upstream_service_stopped")

    @property
    def last_login_at(self) -> float | None:
        return self._last_login_at

    @property
    def state(self) -> SessionState:
        if self._login_task is not None and not self._login_task.done():
            return SessionState.LOGGING_IN
        if self.is_session_fresh():
            return SessionState.AUTHENTICATED
        return SessionState.UNAUTHENTICATED

    def is_session_fresh(self) -> bool:
        """Whether the last successful login is still inside the TTL window."""
        if self._last_login_at is None:
            return False
        return self._clock() - self._last_login_at < self.config.login_ttl

    async def ensure_session(self, force: bool = False) -> None:
        """Make sure an authenticated session exists, logging in if needed.

        Args:
            force: Discard the current cookies and log in again even if the
                session is still inside the TTL window.

        Raises:
            UpstreamAuthError: The login request failed or was rejected.
            SessionRejectedError: Login succeeded but the probe request got 401.
        """
        if not force and self.is_session_fresh():
            return

        # No await between checking and publishing the task, so only one login starts
        task = self._login_task
        if task is None or task.done():
            task = asyncio.create_task(self._login(force))
            self._login_task = task
        else:
            logger.debug("upstream_login_joined", force=force)

        # Shielded so a cancelled caller does not abort the login other callers wait on
        await asyncio.shield(task)

    async def fetch_json(self, url: str, params: QueryParams | None = None) -> Any:
        """GET an upstream path or URL and return its decoded JSON.

        Pointer responses ({"link": ...}) are followed and the linked body is
        returned instead. Bodies that are not valid JSON decode to {}.

        Raises:
            UpstreamAuthError: Login failed while establishing the session.
            SessionRejectedError: Login succeeded but the upstream refused the session.
            UpstreamAuthExpiredError: Still unauthorized after one forced re-login.
            UpstreamRequestError: Any other non-success status or transport failure.
        """
        await self.ensure_session()

        body = await self._fetch_stage(self._resolve(url, params), FetchStage.INDEX)
        if isinstance(body, dict) and body.get("link"):
            link = self._resolve(str(body["link"]))
            logger.debug("upstream_link_followed", url=display_url(link))
            return await self._fetch_stage(link, FetchStage.LINK)
        return body

    async def _login(self, force: bool) -> None:
        if force:
            self._clear_session()
        self._last_login_at = None

        logger.info("upstream_login_started", force=force)
        payload = LoginRequest(
            email=self.config.upstream_email,
            password=self.config.upstream_password.get_secret_value(),
        )
        response = await self._send(
            "POST",
            self._resolve(LOGIN_PATH),
            error=UpstreamAuthError,
            headers=self.store.build_headers({"content-type": "application/json"}),
            json=payload.model_dump(),
        )
        self.store.absorb(response)
        if not response.is_success:
            logger.warning("upstream_login_failed", status=response.status_code)
            raise UpstreamAuthError(
                f"Upstream login failed with status {response.status_code}",
                status=response.status_code,
                body_excerpt=self._excerpt(response),
            )

        probe = await self._send(
            "GET",
            self._resolve(PROBE_PATH),
            error=UpstreamAuthError,
            headers=self.store.build_headers(),
        )
        self.store.absorb(probe)
        if probe.status_code == httpx.codes.UNAUTHORIZED:
            logger.warning("upstream_session_rejected", has_token=self.store.extract_token() is not None)
            raise SessionRejectedError(
                "Upstream accepted the login but rejected the session",
                status=probe.status_code,
                body_excerpt=self._excerpt(probe),
            )
        if not probe.is_success:
            logger.warning("upstream_login_probe_failed", status=probe.status_code)
            raise UpstreamAuthError(
                f"Upstream login probe failed with status {probe.status_code}",
                status=probe.status_code,
                body_excerpt=self._excerpt(probe),
            )

        self._last_login_at = self._clock()
        self._generation += 1
        logger.info("upstream_login_succeeded", has_token=self.store.extract_token() is not None)

    async def _fetch_stage(self, url: httpx.URL, stage: FetchStage) -> Any:
        """One GET with at most one forced re-login and retry on 401."""
        generation = self._generation
        response = await self._get(url, stage)

        if response.status_code == httpx.codes.UNAUTHORIZED:
            logger.info("upstream_fetch_unauthorized", url=display_url(url), stage=stage)
            await self._renew_session(generation)
            response = await self._get(url, stage)
            if response.status_code == httpx.codes.UNAUTHORIZED:
                raise UpstreamAuthExpiredError(
                    f"{self._describe(url, stage)} -> 401 after re-login",
                    status=response.status_code,
                    body_excerpt=self._excerpt(response),
                    stage=stage,
                    url=display_url(url),
                )

        if not response.is_success:
            logger.warning("upstream_fetch_failed", url=display_url(url), stage=stage, status=response.status_code)
            raise UpstreamRequestError(
                f"{self._describe(url, stage)} -> {response.status_code}",
                status=response.status_code,
                body_excerpt=self._excerpt(response),
                stage=stage,
                url=display_url(url),
            )

        try:
            return response.json()
        except ValueError:
            logger.debug("upstream_body_not_json", url=display_url(url), stage=stage)
            return {}

    async def _renew_session(self, generation: int) -> None:
        if generation != self._generation and self.is_session_fresh():
            # Someone else logged in after our request went out; retry with their session
            return
        await self.ensure_session(force=True)

    async def _get(self, url: httpx.URL, stage: FetchStage) -> httpx.Response:
        headers = self.store.build_headers(authenticated=self._is_upstream(url))
        return await self._send("GET", url, error=UpstreamRequestError, stage=stage, headers=headers)

    async def _send(
        self,
        method: str,
        url: httpx.URL,
        *,
        error: type[UpstreamError],
        stage: FetchStage | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Issue a request, turning transport failures into `error`."""
        try:
            return await self.http.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("upstream_timeout", method=method, url=display_url(url), stage=stage)
            raise error(f"{method} {display_url(url)} timed out", stage=stage, url=display_url(url)) from e
        except httpx.HTTPError as e:
            logger.warning("upstream_transport_error", method=method, url=display_url(url), stage=stage, error=type(e).__name__)
            raise error(f"{method} {display_url(url)} failed: {type(e).__name__}", stage=stage, url=display_url(url)) from e

    def _clear_session(self) -> None:
        self.store.clear()
        self._last_login_at = None

    def _resolve(self, url: str, params: QueryParams | None = None) -> httpx.URL:
        resolved = self._base_url.join(url)
        if params:
            resolved = resolved.copy_merge_params(dict(params))
        return resolved

    def _is_upstream(self, url: httpx.URL) -> bool:
        return (url.scheme, url.host, url.port) == (self._base_url.scheme, self._base_url.host, self._base_url.port)

    def _excerpt(self, response: httpx.Response) -> str:
        text = response.text
        for secret in (self.config.upstream_email, self.config.upstream_password.get_secret_value()):
            if secret:
                text = text.replace(secret, "***")
        return excerpt(text)

    @staticmethod
    def _describe(url: httpx.URL, stage: FetchStage) -> str:
        verb = "follow" if stage == FetchStage.LINK else "GET"
        return f"{verb} {display_url(url)}"
