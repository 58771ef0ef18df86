"""Commit-keyed approval history (history.json) and revert plans."""

from __future__ import annotations

from pydantic import Field

from testivai.models.approvals import Decision
from testivai.models.base import CamelModel

DEFAULT_MAX_HISTORY = 5


class HistorySummary(CamelModel):
    total_tests: int = 0
    accepted: int = 0
    rejected: int = 0
    pending: int = 0

    @classmethod
    def from_approvals(cls, approvals: dict[str, Decision]) -> "HistorySummary":
        total = len(approvals)
        accepted = sum(1 for d in approvals.values() if d.action == "accept")
        rejected = sum(1 for d in approvals.values() if d.action == "reject")
        return cls(
            total_tests=total,
            accepted=accepted,
            rejected=rejected,
            pending=total - accepted - rejected,
        )


class HistoryEntry(CamelModel):
    short_sha: str
    full_sha: str
    author: str
    email: str
    date: str
    message: str
    branch: str
    approval_timestamp: str
    approvals: dict[str, Decision] = Field(default_factory=dict)
    summary: HistorySummary = Field(default_factory=HistorySummary)


class HistoryLedger(CamelModel):
    """Newest first, unique by short_sha, at most max_history entries."""

    max_history: int = Field(default=DEFAULT_MAX_HISTORY, ge=1)
    commits: list[HistoryEntry] = Field(default_factory=list)

    def find(self, short_sha: str) -> HistoryEntry | None:
        for entry in self.commits:
            if entry.short_sha == short_sha:
                return entry
        return None


class RevertTarget(CamelModel):
    name: str
    source_path: str
    baseline_path: str


class RevertPlan(CamelModel):
    short_sha: str
    branch: str
    targets: list[RevertTarget] = Field(default_factory=list)


class RevertOutcome(CamelModel):
    short_sha: str
    restored: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed
