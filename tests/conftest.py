"""Pytest configuration and shared fixtures."""

from pathlib import Path
from typing import Callable

import pytest
from PIL import Image

from testivai.models.approvals import ApprovalsSnapshot
from testivai.models.comparison import ComparisonResult
from testivai.models.config import VisualRegressionConfig
from testivai.models.git_info import GitInfo
from testivai.storage.json_store import JsonDocumentStore


# ============================================================================
# Image Fixtures
# ============================================================================


def write_png(
    path: Path,
    size: tuple[int, int] = (10, 10),
    color: tuple[int, int, int, int] = (255, 255, 255, 255),
    changed: list[tuple[int, int]] | None = None,
    changed_color: tuple[int, int, int, int] = (0, 0, 0, 255),
) -> Path:
    """Write a solid-colour PNG, optionally with some pixels painted differently."""
    path.parent.mkdir(parents=True, exist_ok=True)
    img = Image.new("RGBA", size, color)
    for xy in changed or []:
        img.putpixel(xy, changed_color)
    img.save(path, "PNG")
    return path


@pytest.fixture
def make_png() -> Callable[..., Path]:
    """Factory for PNG files on disk."""
    return write_png


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def vr_config(tmp_path: Path) -> VisualRegressionConfig:
    """Config with all storage under tmp_path."""
    root = tmp_path / ".testivai" / "visual-regression"
    return VisualRegressionConfig(
        baseline_dir=str(root / "baseline"),
        compare_dir=str(root / "compare"),
        report_dir=str(root / "reports"),
        lock_timeout_seconds=1.0,
    )


@pytest.fixture
def git_info() -> GitInfo:
    return GitInfo(
        branch="feature/login",
        sha="abc1234def5678abc1234def5678abc1234def56",
        short_sha="abc1234",
        author="Dana Dev",
        email="dana@example.com",
        timestamp="2025-01-01T12:00:00+00:00",
        message="Tweak login button",
    )


@pytest.fixture
def main_git_info() -> GitInfo:
    return GitInfo(
        branch="main",
        sha="0123456789abcdef0123456789abcdef01234567",
        short_sha="0123456",
        author="Dana Dev",
        email="dana@example.com",
        timestamp="2025-01-02T12:00:00+00:00",
        message="Merge feature/login",
    )


class FakeGitProvider:
    def __init__(self, info: GitInfo):
        self.info = info
        self.calls = 0

    def get_git_info(self) -> GitInfo:
        self.calls += 1
        return self.info


@pytest.fixture
def fake_git(git_info: GitInfo) -> FakeGitProvider:
    return FakeGitProvider(git_info)


# ============================================================================
# Storage Fixtures
# ============================================================================


@pytest.fixture
def history_store(tmp_path: Path) -> JsonDocumentStore:
    return JsonDocumentStore(tmp_path / "reports" / "history.json", lock_timeout=0.5, poll_interval=0.01)


@pytest.fixture
def approvals_store(tmp_path: Path) -> JsonDocumentStore:
    return JsonDocumentStore(tmp_path / "reports" / "approvals.json", lock_timeout=0.5, poll_interval=0.01)


# ============================================================================
# Result Fixtures
# ============================================================================


def make_result(name: str, passed: bool = True, diff_percentage: float = 0.0, **kwargs) -> ComparisonResult:
    """Build a ComparisonResult with sensible defaults."""
    defaults = dict(
        name=name,
        baseline_path=f"baseline/playwright/{name}.png",
        compare_path=f"compare/feature-x/playwright/{name}.png",
        diff_path=f"reports/diffs/feature-x/playwright/{name}.png",
        passed=passed,
        diff_percentage=diff_percentage,
        threshold=0.1,
    )
    defaults.update(kwargs)
    return ComparisonResult(**defaults)


@pytest.fixture
def approvals() -> ApprovalsSnapshot:
    return ApprovalsSnapshot(approved=["home"], rejected=["login"])
