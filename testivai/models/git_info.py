"""Git and pull-request context consumed by the report and the ledger."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict

from testivai.models.base import CamelModel

UNKNOWN = "unknown"


class GitInfo(CamelModel):
    """Resolved once per run. Any field may be 'unknown'."""

    model_config = ConfigDict(frozen=True)

    branch: str = UNKNOWN
    sha: str = UNKNOWN
    short_sha: str = UNKNOWN
    author: str = UNKNOWN
    email: str = UNKNOWN
    timestamp: str = UNKNOWN
    message: str = UNKNOWN


class PRInfo(BaseModel):
    number: Optional[int] = None
    url: Optional[str] = None
    title: Optional[str] = None
    source: Optional[str] = None  # e.g. "github-actions"
    commit_url: Optional[str] = None
