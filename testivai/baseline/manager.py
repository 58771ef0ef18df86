"""Baseline manager: branch-aware routing of screenshots to baseline or compare storage.

Layout on disk::

    <baseline_dir>/<framework>/<name>.png                      (branch-independent)
    <compare_dir>/<sanitized branch>/<framework>/<name>.png    (per branch)
    <report_dir>/diffs/<sanitized branch>/<framework>/<name>.png
    <report_dir>/history/<short sha>/<framework>/<name>.png      (accepted images)
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from testivai.models.comparison import BaselineDecision
from testivai.models.config import Framework
from testivai.storage.filesystem import LocalFileSystem

logger = logging.getLogger(__name__)

ALWAYS_MAIN_BRANCH = "master"

# Path separators, dots, shell/Windows reserved characters and whitespace
_UNSAFE_BRANCH_CHARS = re.compile(r'[/\\.:*?"<>|#\s]')


def sanitize_branch_name(branch: str) -> str:
    """Map a branch name to a single filesystem-safe path segment."""
    return _UNSAFE_BRANCH_CHARS.sub("-", branch)


def is_main_branch(branch: str, default_branch: str = "main") -> bool:
    """The configured default branch and 'master' are always ground truth."""
    return branch == default_branch or branch == ALWAYS_MAIN_BRANCH


def _framework_segment(framework: Framework | str) -> str:
    return framework.value if isinstance(framework, Framework) else str(framework)


def baseline_path_for(baseline_dir: str | Path, framework: Framework | str, name: str) -> Path:
    return Path(baseline_dir) / _framework_segment(framework) / f"{name}.png"


def compare_path_for(
    compare_dir: str | Path, branch: str, framework: Framework | str, name: str
) -> Path:
    return Path(compare_dir) / sanitize_branch_name(branch) / _framework_segment(framework) / f"{name}.png"


def diff_path_for(
    report_dir: str | Path, branch: str, framework: Framework | str, name: str
) -> Path:
    return (
        Path(report_dir) / "diffs" / sanitize_branch_name(branch)
        / _framework_segment(framework) / f"{name}.png"
    )


def accepted_path_for(
    report_dir: str | Path, short_sha: str, framework: Framework | str, name: str
) -> Path:
    """Copy of the image accepted for ``name`` in commit ``short_sha``."""
    return Path(report_dir) / "history" / short_sha / _framework_segment(framework) / f"{name}.png"


class BaselineManager:
    """Decides baseline-write vs. compare mode and promotes captures to baselines."""

    def __init__(self, filesystem: LocalFileSystem | None = None):
        self.fs = filesystem or LocalFileSystem()

    def manage_baseline(
        self,
        baseline_dir: str | Path,
        compare_dir: str | Path,
        framework: Framework | str,
        name: str,
        current_branch: str,
        default_branch: str = "main",
    ) -> BaselineDecision:
        """Decide where a capture named ``name`` on ``current_branch`` should go.

        On the default branch (or master) captures always overwrite the
        baseline. On any other branch a capture bootstraps the baseline when
        none exists yet, and is otherwise stored for comparison.
        """
        main = is_main_branch(current_branch, default_branch)
        baseline_path = baseline_path_for(baseline_dir, framework, name)
        compare_path = compare_path_for(compare_dir, current_branch, framework, name)

        if main:
            should_use_baseline = True
        else:
            try:
                should_use_baseline = not self.fs.exists(baseline_path)
            except OSError as e:
                # Unreadable baseline location falls back to bootstrap mode
                logger.warning("Could not check baseline %s: %s. Assuming missing.", baseline_path, e)
                should_use_baseline = True

        logger.debug(
            "Baseline decision for %s on %s: %s",
            name, current_branch, "baseline" if should_use_baseline else "compare",
        )
        return BaselineDecision(
            should_use_baseline=should_use_baseline,
            baseline_path=str(baseline_path),
            compare_path=str(compare_path),
            is_main_branch=main,
        )

    def update_baseline(self, compare_path: str | Path, baseline_path: str | Path) -> bool:
        """Copy the compare capture over the baseline. Returns False on any failure."""
        try:
            if not self.fs.exists(compare_path):
                logger.error("Comparison screenshot not found: %s", compare_path)
                return False
            self.fs.makedirs(Path(baseline_path).parent)
            self.fs.copy(compare_path, baseline_path)
        except OSError as e:
            logger.error("Error updating baseline %s: %s", baseline_path, e)
            return False
        logger.info("Updated baseline %s", baseline_path)
        return True
