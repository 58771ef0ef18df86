"""Visual regression runner: coordinates compare, report and decision stages."""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Optional

from testivai.baseline.manager import (
    BaselineManager,
    baseline_path_for,
    compare_path_for,
    diff_path_for,
    is_main_branch,
    sanitize_branch_name,
)
from testivai.compare.diff_engine import ComparisonJob, DiffEngine
from testivai.git.provider import GitProvider, SubprocessGitProvider, pr_info_from_env
from testivai.history.ledger import DecisionLedger
from testivai.models.approvals import Decision, DecisionAction
from testivai.models.comparison import ComparisonResult
from testivai.models.config import VisualRegressionConfig
from testivai.models.git_info import GitInfo, PRInfo
from testivai.models.history import HistoryLedger, RevertOutcome
from testivai.models.report import CompareReport
from testivai.reporter.json_report import generate_json_report, seed_state_files
from testivai.reporter.synthesizer import synthesize

logger = logging.getLogger(__name__)


class VisualRegressionRunner:
    """Runs one compare pass for the current branch and records decisions."""

    def __init__(
        self,
        config: VisualRegressionConfig,
        git_provider: GitProvider | None = None,
        baseline_manager: BaselineManager | None = None,
        diff_engine: DiffEngine | None = None,
        pr_info: PRInfo | None = None,
    ):
        self.config = config
        self.git_provider = git_provider or SubprocessGitProvider()
        self.baseline_manager = baseline_manager or BaselineManager()
        self.diff_engine = diff_engine or DiffEngine(config.engine, include_aa=config.include_aa)
        self.pr_info = pr_info if pr_info is not None else pr_info_from_env()
        self.ledger = DecisionLedger.from_config(config)
        self._git_info: GitInfo | None = None

    @property
    def git_info(self) -> GitInfo:
        """Collected once, on first use."""
        if self._git_info is None:
            self._git_info = self.git_provider.get_git_info()
        return self._git_info

    # ------------------------------------------------------------------
    # Compare
    # ------------------------------------------------------------------

    def run_compare(self) -> CompareReport:
        """Compare every capture of the current branch and write the report.

        Runs its own event loop. From async code, such as an async Playwright
        test, await run_compare_async instead.
        """
        return asyncio.run(self.run_compare_async())

    async def run_compare_async(self) -> CompareReport:
        """Async form of run_compare for callers already inside an event loop."""
        start = time.time()
        git_info = self.git_info
        branch = git_info.branch
        logger.info("=== Visual comparison for branch %s (%s) ===", branch, git_info.short_sha)

        captures = self._find_captures(branch)
        logger.info("Found %d capture(s) in %s", len(captures), self._branch_compare_dir(branch))

        results: list[ComparisonResult] = []
        jobs: list[ComparisonJob] = []
        for name, compare_path in captures.items():
            baseline_path = baseline_path_for(self.config.baseline_dir, self.config.framework, name)
            if not baseline_path.exists():
                results.append(self._bootstrap(name, compare_path, baseline_path))
                continue
            jobs.append(ComparisonJob(
                name=name,
                baseline_path=baseline_path,
                compare_path=compare_path,
                diff_path=diff_path_for(self.config.report_dir, branch, self.config.framework, name),
            ))

        compared = await self.diff_engine.compare_batch(jobs, self.config.diff_threshold, self.config.max_workers)
        if self.config.update_baselines:
            self._promote_changed(compared)
        results.extend(compared)
        results.extend(self._deleted_results(branch, captures))
        results.sort(key=lambda r: r.name)

        approvals = self.ledger.load_approvals()
        report = synthesize(
            results,
            git_info,
            approvals=approvals,
            pr_info=self.pr_info,
            framework=self.config.framework.value,
        )
        generate_json_report(report, Path(self.config.report_dir))
        seed_state_files(
            self.ledger.approvals_store, self.ledger.history_store, report, self.config.max_history,
        )

        logger.info(
            "=== Comparison complete: %d total, %d passed, %d changed in %.1fs ===",
            report.metadata.total_tests, report.metadata.passed_tests,
            report.metadata.changed_tests, time.time() - start,
        )
        return report

    def _branch_compare_dir(self, branch: str) -> Path:
        return Path(self.config.compare_dir) / sanitize_branch_name(branch) / self.config.framework.value

    def _find_captures(self, branch: str) -> dict[str, Path]:
        compare_dir = self._branch_compare_dir(branch)
        if not compare_dir.is_dir():
            logger.warning("No captures for branch %s: %s does not exist", branch, compare_dir)
            return {}
        return {p.stem: p for p in sorted(compare_dir.glob("*.png"))}

    def _bootstrap(self, name: str, compare_path: Path, baseline_path: Path) -> ComparisonResult:
        logger.info("Creating new baseline: %s", name)
        if not self.baseline_manager.update_baseline(compare_path, baseline_path):
            logger.warning("Could not create baseline for %s", name)
        return ComparisonResult(
            name=name,
            baseline_path=str(baseline_path),
            compare_path=str(compare_path),
            diff_path=None,
            passed=True,
            diff_percentage=0.0,
            threshold=self.config.diff_threshold,
            baseline_existed=False,
        )

    def _promote_changed(self, results: list[ComparisonResult]) -> None:
        for result in results:
            if not result.passed and not result.error:
                logger.info("Updating baseline for %s", result.name)
                self.baseline_manager.update_baseline(result.compare_path, result.baseline_path)

    def _deleted_results(self, branch: str, captures: dict[str, Path]) -> list[ComparisonResult]:
        """Baselines with no capture this run. Skipped when nothing was captured.

        Nothing was compared, so the result passes with no difference; the
        report marks it deleted from ``current_captured``.
        """
        if not captures:
            return []
        baseline_dir = Path(self.config.baseline_dir) / self.config.framework.value
        deleted = []
        for baseline_path in sorted(baseline_dir.glob("*.png")):
            name = baseline_path.stem
            if name in captures:
                continue
            deleted.append(ComparisonResult(
                name=name,
                baseline_path=str(baseline_path),
                compare_path=str(compare_path_for(self.config.compare_dir, branch, self.config.framework, name)),
                diff_path=None,
                passed=True,
                diff_percentage=0.0,
                threshold=self.config.diff_threshold,
                current_captured=False,
            ))
        if deleted:
            logger.info("%d baseline(s) have no capture on %s", len(deleted), branch)
        return deleted

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def decide(self, names: list[str], action: DecisionAction) -> HistoryLedger:
        """Record the same decision for every name against the current commit."""
        if not names:
            raise ValueError("At least one test name is required")
        timestamp = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
        decisions = {name: Decision(action=action, timestamp=timestamp) for name in names}
        ledger = self.ledger.upsert(
            decisions,
            self.git_info,
            source=self.pr_info.source if self.pr_info else "cli",
            pr_info=self.pr_info,
            images=self._accepted_images(names) if action == "accept" else None,
        )
        if action == "accept":
            self._promote_accepted(names)
        return ledger

    def _accepted_images(self, names: list[str]) -> dict[str, Path]:
        """The image each name is accepted as: the branch capture, or the baseline on main."""
        branch = self.git_info.branch
        main = is_main_branch(branch, self.config.default_branch)
        images = {}
        for name in names:
            if main:
                images[name] = baseline_path_for(self.config.baseline_dir, self.config.framework, name)
            else:
                images[name] = compare_path_for(self.config.compare_dir, branch, self.config.framework, name)
        return images

    def _promote_accepted(self, names: list[str]) -> None:
        """Accepting a change on a feature branch makes its capture the baseline."""
        branch = self.git_info.branch
        if is_main_branch(branch, self.config.default_branch):
            return
        for name in names:
            source = compare_path_for(self.config.compare_dir, branch, self.config.framework, name)
            target = baseline_path_for(self.config.baseline_dir, self.config.framework, name)
            if source.exists():
                self.baseline_manager.update_baseline(source, target)

    def undo(self, name: str) -> bool:
        return self.ledger.clear_decision(name)

    def history(self) -> HistoryLedger:
        return self.ledger.load()

    def revert(self, short_sha: str) -> RevertOutcome:
        plan = self.ledger.revert(short_sha)
        return self.ledger.apply_revert(plan, self.baseline_manager)

    def load_report(self) -> Optional[CompareReport]:
        path = self.config.report_path
        if not path.exists():
            return None
        return CompareReport.model_validate_json(path.read_text())
