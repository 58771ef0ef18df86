"""Decision ledger: bounded, commit-keyed history of approval decisions.

history.json keeps the last ``max_history`` commits that recorded a decision,
newest first and unique by short SHA. approvals.json is the name-keyed view of
the same decisions that the next report run reads. Both are written through
JsonDocumentStore, each under its own lock.

Every accepted image is also copied to ``<report_dir>/history/<short sha>/``
so a revert restores exactly what was approved, whatever was captured since.
The copies are removed when their commit drops out of the ledger.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from testivai.baseline.manager import BaselineManager, accepted_path_for, baseline_path_for
from testivai.errors import CommitNotInHistoryError, LedgerCorruptedError, PersistenceError
from testivai.models.approvals import ApprovalsSnapshot, Decision
from testivai.models.config import Framework, VisualRegressionConfig
from testivai.models.git_info import GitInfo, PRInfo
from testivai.models.history import (
    DEFAULT_MAX_HISTORY,
    HistoryEntry,
    HistoryLedger,
    HistorySummary,
    RevertOutcome,
    RevertPlan,
    RevertTarget,
)
from testivai.storage.filesystem import LocalFileSystem
from testivai.storage.json_store import JsonDocumentStore

logger = logging.getLogger(__name__)


def _now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


class DecisionLedger:
    """Records approval decisions per commit and resolves reverts."""

    def __init__(
        self,
        history_store: JsonDocumentStore,
        approvals_store: JsonDocumentStore,
        max_history: int = DEFAULT_MAX_HISTORY,
        baseline_dir: str | Path = ".testivai/visual-regression/baseline",
        report_dir: str | Path = ".testivai/visual-regression/reports",
        framework: Framework | str = Framework.PLAYWRIGHT,
        filesystem: LocalFileSystem | None = None,
    ):
        if max_history < 1:
            raise ValueError(f"max_history must be at least 1, got {max_history}")
        self.history_store = history_store
        self.approvals_store = approvals_store
        self.max_history = max_history
        self.baseline_dir = Path(baseline_dir)
        self.report_dir = Path(report_dir)
        self.framework = framework
        self.fs = filesystem or LocalFileSystem()

    @classmethod
    def from_config(cls, config: VisualRegressionConfig) -> "DecisionLedger":
        return cls(
            history_store=JsonDocumentStore(config.history_path, lock_timeout=config.lock_timeout_seconds),
            approvals_store=JsonDocumentStore(config.approvals_path, lock_timeout=config.lock_timeout_seconds),
            max_history=config.max_history,
            baseline_dir=config.baseline_dir,
            report_dir=config.report_dir,
            framework=config.framework,
        )

    def accepted_path(self, short_sha: str, name: str) -> Path:
        return accepted_path_for(self.report_dir, short_sha, self.framework, name)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def load(self) -> HistoryLedger:
        """Current ledger. A missing file is an empty ledger."""
        return self._parse_history(self.history_store.read())

    def load_approvals(self) -> ApprovalsSnapshot:
        """Current approvals snapshot. A missing file is an empty snapshot."""
        return self._parse_approvals(self.approvals_store.read())

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def upsert(
        self,
        decisions: dict[str, Decision],
        git_info: GitInfo,
        source: Optional[str] = None,
        pr_info: Optional[PRInfo] = None,
        images: Optional[dict[str, str | Path]] = None,
    ) -> HistoryLedger:
        """Record ``decisions`` against the commit described by ``git_info``.

        If the commit is already in the ledger its decisions are merged (other
        names are kept) and it moves to the front. The ledger is then cut down
        to its persisted ``maxHistory`` (``max_history`` for a new ledger) and
        the approvals snapshot is updated.

        ``images`` maps accepted names to the image that was approved; each is
        archived under the commit before the ledger is written.
        """
        approval_timestamp = _now()
        for name, image in (images or {}).items():
            decision = decisions.get(name)
            if decision is not None and decision.action == "accept":
                self._archive(git_info.short_sha, name, image)

        result: dict[str, HistoryLedger] = {}
        dropped: list[str] = []

        def merge(current: Optional[dict]) -> dict:
            ledger = self._parse_history(current)
            existing = ledger.find(git_info.short_sha)
            merged: dict[str, Decision] = dict(existing.approvals) if existing else {}
            merged.update(decisions)

            entry = HistoryEntry(
                short_sha=git_info.short_sha,
                full_sha=git_info.sha,
                author=git_info.author,
                email=git_info.email,
                date=git_info.timestamp,
                message=git_info.message,
                branch=git_info.branch,
                approval_timestamp=approval_timestamp,
                approvals=merged,
                summary=HistorySummary.from_approvals(merged),
            )
            commits = [entry] + [c for c in ledger.commits if c.short_sha != git_info.short_sha]
            ledger.commits = commits[: ledger.max_history]
            dropped[:] = [c.short_sha for c in commits[ledger.max_history:]]
            result["ledger"] = ledger
            return ledger.to_json_dict()

        self.history_store.mutate(merge)
        logger.info(
            "Recorded %d decision(s) for commit %s on %s",
            len(decisions), git_info.short_sha, git_info.branch,
        )

        def update_snapshot(current: Optional[dict]) -> dict:
            snapshot = self._parse_approvals(current)
            snapshot.apply(decisions)
            meta = snapshot.meta
            meta.author = git_info.author
            meta.timestamp = approval_timestamp
            meta.source = source or (pr_info.source if pr_info else None) or meta.source
            meta.commit_sha = git_info.sha
            if pr_info is not None:
                meta.pr_url = pr_info.url or meta.pr_url
                meta.commit_url = pr_info.commit_url or meta.commit_url
            return snapshot.to_json_dict()

        self.approvals_store.mutate(update_snapshot)
        for short_sha in dropped:
            self._prune(short_sha)
        return result["ledger"]

    def clear_decision(self, name: str) -> bool:
        """Forget the current decision for ``name``. Returns True if one existed."""
        cleared: dict[str, bool] = {}

        def clear(current: Optional[dict]) -> dict:
            snapshot = self._parse_approvals(current)
            cleared["value"] = snapshot.clear(name)
            snapshot.meta.timestamp = _now()
            return snapshot.to_json_dict()

        self.approvals_store.mutate(clear)
        if cleared["value"]:
            logger.info("Cleared decision for %s", name)
        else:
            logger.info("No decision recorded for %s", name)
        return cleared["value"]

    # ------------------------------------------------------------------
    # Revert
    # ------------------------------------------------------------------

    def revert(self, short_sha: str) -> RevertPlan:
        """Resolve which baselines must be restored to undo commit ``short_sha``.

        Only accepted decisions produce a target; the image archived when the
        decision was recorded is copied back over the baseline.
        """
        ledger = self.load()
        entry = ledger.find(short_sha)
        if entry is None:
            raise CommitNotInHistoryError(short_sha)

        targets = [
            RevertTarget(
                name=name,
                source_path=str(self.accepted_path(entry.short_sha, name)),
                baseline_path=str(baseline_path_for(self.baseline_dir, self.framework, name)),
            )
            for name, decision in entry.approvals.items()
            if decision.action == "accept"
        ]
        logger.debug("Revert plan for %s: %d target(s)", short_sha, len(targets))
        return RevertPlan(short_sha=entry.short_sha, branch=entry.branch, targets=targets)

    def apply_revert(self, plan: RevertPlan, baseline_manager: BaselineManager) -> RevertOutcome:
        outcome = RevertOutcome(short_sha=plan.short_sha)
        for target in plan.targets:
            if baseline_manager.update_baseline(target.source_path, target.baseline_path):
                outcome.restored.append(target.name)
            else:
                outcome.failed.append(target.name)
        logger.info(
            "Reverted %s: %d restored, %d failed",
            plan.short_sha, len(outcome.restored), len(outcome.failed),
        )
        return outcome

    # ------------------------------------------------------------------
    # Accepted images
    # ------------------------------------------------------------------

    def _archive(self, short_sha: str, name: str, image: str | Path) -> None:
        target = self.accepted_path(short_sha, name)
        if not self.fs.exists(image):
            logger.warning("Accepted image for %s not found at %s; %s cannot be reverted", name, image, short_sha)
            return
        try:
            self.fs.makedirs(target.parent)
            self.fs.copy(image, target)
        except OSError as e:
            raise PersistenceError(f"Failed to archive accepted image {image}: {e}") from e
        logger.debug("Archived %s for %s at %s", name, short_sha, target)

    def _prune(self, short_sha: str) -> None:
        archive = self.report_dir / "history" / short_sha
        if not self.fs.exists(archive):
            return
        try:
            self.fs.remove_tree(archive)
        except OSError as e:
            logger.warning("Could not remove accepted images of %s: %s", short_sha, e)
            return
        logger.debug("Removed accepted images of %s", short_sha)

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def _parse_history(self, data: Optional[dict]) -> HistoryLedger:
        if data is None:
            return HistoryLedger(max_history=self.max_history)
        try:
            return HistoryLedger.model_validate(data)
        except ValidationError as e:
            raise LedgerCorruptedError(str(self.history_store.path), str(e)) from e

    def _parse_approvals(self, data: Optional[dict]) -> ApprovalsSnapshot:
        if data is None:
            return ApprovalsSnapshot()
        try:
            return ApprovalsSnapshot.model_validate(data)
        except ValidationError as e:
            raise LedgerCorruptedError(str(self.approvals_store.path), str(e)) from e
