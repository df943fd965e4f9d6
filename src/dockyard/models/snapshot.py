"""Rollback snapshot model."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field


class Snapshot(BaseModel):
    """A retained, restorable copy of a previously deployed good state.

    ``version`` is a UTC timestamp label (``YYYYMMDDTHHMMSSffffffZ``); lexical
    order of labels is chronological order.
    """

    project_id: str
    version: str
    artifact: str
    location: Path
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
