from __future__ import annotations

import importlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, cast

import httpx

from irgateway.config import Config
from irgateway.core.modules.credentials.store import detached_cookie_jar

if TYPE_CHECKING:
    from irgateway.core.modules.upstream.service import UpstreamService


class Service:
    """Base class for services sharing the upstream HTTP client."""

    def __init__(self, config: Config, http: httpx.AsyncClient) -> None:
        self.config = config
        self.http = http

    async def on_start(self) -> None:
        """Initialize service on application startup."""

    async def on_stop(self) -> None:
        """Cleanup service on application shutdown."""


class Services:
    """Service registry that automatically discovers and initializes services."""

    upstream: UpstreamService

    def __init__(self, config: Config, http: httpx.AsyncClient) -> None:
        """Initialize all services automatically using service configuration."""
        self._services: list[Service] = []

        # Service configuration: (attribute_name, module_path, class_name)
        service_configs = [
            ("upstream", "irgateway.core.modules.upstream.service", "UpstreamService"),
        ]

        for attr_name, module_path, class_name in service_configs:
            module = importlib.import_module(module_path)
            service_class = cast(type[Service], getattr(module, class_name))
            service_instance = service_class(config, http)
            setattr(self, attr_name, service_instance)
            self._services.append(service_instance)

    async def start_all(self) -> None:
        """Start all services that have startup logic."""
        for service in self._services:
            await service.on_start()

    async def stop_all(self) -> None:
        """Stop all services that have cleanup logic."""
        for service in self._services:
            await service.on_stop()


class Core:
    """Container providing config, the upstream HTTP client, and all service instances."""

    config: Config
    http: httpx.AsyncClient
    services: Services

    def __init__(self, config: Config, transport: httpx.AsyncBaseTransport | None = None) -> None:
        """Initialize core with config and one pooled HTTP client for the upstream.

        `transport` replaces the network transport (tests pass an httpx.MockTransport).
        """
        self.config = config
        self.http = httpx.AsyncClient(
            timeout=config.request_timeout,
            follow_redirects=True,
            cookies=detached_cookie_jar(),
            transport=transport,
        )
        self.services = Services(config, self.http)

    @asynccontextmanager
    async def lifespan(self) -> AsyncGenerator[None]:
        """Manage application lifecycle - startup and shutdown."""
        await self.on_start()
        try:
            yield
        finally:
            await self.on_stop()

    async def on_start(self) -> None:
        """Start all services on application startup."""
        await self.services.start_all()

    async def on_stop(self) -> None:
        """Stop services and close the HTTP client on shutdown."""
        await self.services.stop_all()
        await self.http.aclose()
