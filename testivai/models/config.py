"""Configuration models for testivai."""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

CONFIG_FILENAME = "testivai.config.json"


class Framework(str, Enum):
    """Screenshot-producing test frameworks. Used as a path segment."""

    PLAYWRIGHT = "playwright"
    CYPRESS = "cypress"
    PUPPETEER = "puppeteer"
    SELENIUM = "selenium"


class Engine(str, Enum):
    """Per-pixel comparison rule used by the diff engine."""

    PIXELMATCH = "pixelmatch"  # YIQ perceptual distance
    CHANNEL = "channel"  # max absolute channel delta


class VisualRegressionConfig(BaseModel):
    framework: Framework = Framework.PLAYWRIGHT

    # Storage
    baseline_dir: str = ".testivai/visual-regression/baseline"
    compare_dir: str = ".testivai/visual-regression/compare"
    report_dir: str = ".testivai/visual-regression/reports"

    # Comparison
    diff_threshold: float = 0.1
    engine: Engine = Engine.PIXELMATCH
    include_aa: bool = False  # count anti-aliased pixels as differences
    update_baselines: bool = False
    max_workers: int = Field(default=4, ge=1)

    # Branching
    default_branch: str = "main"

    # Approval history
    max_history: int = Field(default=5, ge=1)
    lock_timeout_seconds: float = Field(default=10.0, gt=0)

    @field_validator("diff_threshold")
    @classmethod
    def check_threshold(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"diff_threshold must be between 0 and 1, got {v}")
        return v

    @field_validator("default_branch")
    @classmethod
    def check_default_branch(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("default_branch must not be empty")
        return v.strip()

    @property
    def history_path(self) -> Path:
        return Path(self.report_dir) / "history.json"

    @property
    def approvals_path(self) -> Path:
        return Path(self.report_dir) / "approvals.json"

    @property
    def report_path(self) -> Path:
        return Path(self.report_dir) / "compare-report.json"

    @classmethod
    def load(cls, path: str | Path = CONFIG_FILENAME) -> "VisualRegressionConfig":
        """Load config from a JSON file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            data = json.load(f)
        return cls(**data)

    @classmethod
    def load_or_default(cls, path: str | Path = CONFIG_FILENAME) -> "VisualRegressionConfig":
        """Load config if the file exists, otherwise fall back to defaults."""
        path = Path(path)
        if path.exists():
            return cls.load(path)
        return cls()

    def save(self, path: str | Path = CONFIG_FILENAME) -> None:
        """Save config to a JSON file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2)
