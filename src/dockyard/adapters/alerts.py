"""Operator alerting for failures that need a human."""

from __future__ import annotations

import logging

import httpx

logger = logging.getLogger(__name__)


class LoggingAlerter:
    """Raise alerts as CRITICAL log records."""

    async def alert(self, project_id: str, seq: int, message: str) -> None:
        logger.critical(f"ALERT project {project_id} attempt {seq}: {message}")


class WebhookAlerter:
    """Post alerts as JSON to an operator webhook, and log them."""

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._timeout_seconds = timeout_seconds
        self._transport = transport
        self._fallback = LoggingAlerter()

    async def alert(self, project_id: str, seq: int, message: str) -> None:
        await self._fallback.alert(project_id, seq, message)
        async with httpx.AsyncClient(
            timeout=self._timeout_seconds, transport=self._transport
        ) as client:
            response = await client.post(
                self._url,
                json={"project_id": project_id, "attempt": seq, "message": message},
            )
        response.raise_for_status()
