"""HTTP liveness probe for freshly started instances."""

from __future__ import annotations

import logging

import httpx

from dockyard.core.contracts import ContainerInstance
from dockyard.models.project import Project

logger = logging.getLogger(__name__)


class HttpHealthProbe:
    """Probe ``GET http://<host>:<port><path>``; any status below 400 is healthy."""

    def __init__(
        self,
        *,
        host: str = "127.0.0.1",
        path: str = "/health",
        timeout_seconds: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._host = host
        self._path = path if path.startswith("/") else f"/{path}"
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    def url_for(self, project: Project, instance: ContainerInstance) -> str:
        return f"http://{self._host}:{project.port}{self._path}"

    async def probe(self, project: Project, instance: ContainerInstance) -> bool:
        url = self.url_for(project, instance)
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout_seconds, transport=self._transport
            ) as client:
                response = await client.get(url)
        except httpx.HTTPError as exc:
            logger.debug(f"Health probe {url} failed: {exc}")
            return False
        if response.status_code < 400:
            return True
        logger.debug(f"Health probe {url} returned http {response.status_code}")
        return False
