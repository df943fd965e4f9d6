"""Inbound webhook event model."""

from __future__ import annotations

import json
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

PUSH_EVENT_TYPES = frozenset({"push", "manual"})


class WebhookProvider(str, Enum):
    SOURCE_CONTROL = "source_control"
    BUILD_SYSTEM = "build_system"


class WebhookEvent(BaseModel):
    """Transient inbound event, consumed synchronously and never stored."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    provider: WebhookProvider
    event_type: str
    project_id: str
    raw_payload: bytes = b""
    signature: str | None = None

    def payload(self) -> dict[str, Any]:
        """Decode the raw body; an unreadable body decodes to an empty mapping."""
        if not self.raw_payload:
            return {}
        try:
            decoded = json.loads(self.raw_payload)
        except ValueError:
            return {}
        return decoded if isinstance(decoded, dict) else {}

    def branch(self) -> str | None:
        ref = self.payload().get("ref")
        if not isinstance(ref, str):
            return None
        return ref.removeprefix("refs/heads/")
