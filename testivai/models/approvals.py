"""Approval decisions and the name-keyed approvals snapshot (approvals.json)."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field

from testivai.models.git_info import UNKNOWN

DecisionAction = Literal["accept", "reject"]


class Decision(BaseModel):
    action: DecisionAction
    timestamp: str


class ApprovalsMeta(BaseModel):
    author: str = UNKNOWN
    timestamp: str = ""
    source: Optional[str] = None
    pr_url: Optional[str] = None
    commit_sha: Optional[str] = None
    commit_url: Optional[str] = None


class ApprovalsSnapshot(BaseModel):
    """Current state of the world, keyed by test name rather than by commit."""

    approved: list[str] = Field(default_factory=list)
    rejected: list[str] = Field(default_factory=list)
    new: list[str] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)
    meta: ApprovalsMeta = Field(default_factory=ApprovalsMeta)

    def apply(self, decisions: dict[str, Decision]) -> None:
        """Move accepted names into approved and rejected names into rejected."""
        for name, decision in decisions.items():
            if decision.action == "accept":
                self._move(name, into=self.approved, out_of=self.rejected)
            else:
                self._move(name, into=self.rejected, out_of=self.approved)

    def clear(self, name: str) -> bool:
        """Forget any decision recorded for ``name``. Returns True if one existed."""
        had_decision = name in self.approved or name in self.rejected
        self.approved = [n for n in self.approved if n != name]
        self.rejected = [n for n in self.rejected if n != name]
        return had_decision

    @staticmethod
    def _move(name: str, into: list[str], out_of: list[str]) -> None:
        while name in out_of:
            out_of.remove(name)
        if name not in into:
            into.append(name)

    def to_json_dict(self) -> dict:
        data = self.model_dump(mode="json")
        data["meta"] = self.meta.model_dump(mode="json", exclude_none=True)
        return data
