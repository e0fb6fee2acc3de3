"""Shared pytest fixtures."""

from collections.abc import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from fakes import BASE_URL, EMAIL, PASSWORD, FakeClock, FakeUpstream

from irgateway.config import Config
from irgateway.core.modules.credentials.store import detached_cookie_jar
from irgateway.core.modules.upstream.service import UpstreamService


@pytest.fixture
def config():
    """Gateway configuration pointing at the fake upstream."""
    return Config(
        api_key="test-api-key",
        upstream_base_url=BASE_URL,
        upstream_email=EMAIL,
        upstream_password=PASSWORD,
        login_ttl_ms=1_500_000,
        request_timeout=5.0,
    )


@pytest.fixture
def fake_upstream():
    return FakeUpstream()


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def service(config, fake_upstream, clock) -> AsyncGenerator[UpstreamService]:
    """Upstream service wired to the fake upstream."""
    transport = httpx.MockTransport(fake_upstream.handler)
    async with httpx.AsyncClient(transport=transport, follow_redirects=True, cookies=detached_cookie_jar()) as http:
        yield UpstreamService(config, http, clock=clock)
