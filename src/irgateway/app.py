import secrets
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import httpx

from irgateway.config import Config
from irgateway.core.core import Core
from irgateway.core.modules.upstream.models import SessionState
from irgateway.core.modules.upstream.service import QueryParams


class App:
    """Facade for all gateway operations used by the web layer."""

    def __init__(self, config: Config, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._core = Core(config, transport)

    @asynccontextmanager
    async def lifespan(self) -> AsyncGenerator[None]:
        """Application lifespan management - delegates to Core."""
        async with self._core.lifespan():
            yield

    def is_api_key_valid(self, api_key: str) -> bool:
        """Check an inbound caller's key against the configured one."""
        return secrets.compare_digest(api_key.encode(), self._core.config.api_key.encode())

    def get_session_state(self) -> SessionState:
        return self._core.services.upstream.state

    async def fetch_json(self, path: str, params: QueryParams | None = None) -> Any:
        """Fetch upstream JSON, following pointer responses."""
        return await self._core.services.upstream.fetch_json(path, params)

    async def get_doc(self) -> Any:
        """Upstream API documentation index."""
        return await self.fetch_json("/data/doc")

    async def get_results(self, subsession_id: int) -> Any:
        """Results of one subsession."""
        return await self.fetch_json("/data/results/get", {"subsession_id": subsession_id})

    async def get_lapchart(self, subsession_id: int) -> Any:
        """Lap chart of one subsession."""
        return await self.fetch_json("/data/results/lapchart", {"subsession_id": subsession_id})
