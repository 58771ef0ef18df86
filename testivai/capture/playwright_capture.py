"""Capture adapters: route a screenshot to baseline or compare storage."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from playwright.async_api import Page

from testivai.baseline.manager import BaselineManager
from testivai.models.comparison import BaselineDecision
from testivai.models.config import VisualRegressionConfig

logger = logging.getLogger(__name__)


@dataclass
class CapturedScreenshot:
    name: str
    path: Path
    decision: BaselineDecision

    @property
    def is_baseline(self) -> bool:
        return self.decision.should_use_baseline


class ScreenshotCapture:
    """Framework-neutral capture: the caller supplies a writer for the PNG."""

    def __init__(
        self,
        config: VisualRegressionConfig,
        branch: str,
        baseline_manager: BaselineManager | None = None,
    ):
        self.config = config
        self.branch = branch
        self.baseline_manager = baseline_manager or BaselineManager()

    def route(self, name: str) -> tuple[Path, BaselineDecision]:
        decision = self.baseline_manager.manage_baseline(
            self.config.baseline_dir,
            self.config.compare_dir,
            self.config.framework,
            name,
            self.branch,
            self.config.default_branch,
        )
        target = decision.baseline_path if decision.should_use_baseline else decision.compare_path
        path = Path(target)
        path.parent.mkdir(parents=True, exist_ok=True)
        return path, decision

    def capture(self, name: str, writer: Callable[[Path], None]) -> CapturedScreenshot:
        """Call ``writer(path)`` with the path this capture belongs at."""
        path, decision = self.route(name)
        writer(path)
        logger.info("Captured %s -> %s", name, path)
        return CapturedScreenshot(name=name, path=path, decision=decision)


class PlaywrightCapture(ScreenshotCapture):
    """Takes stable screenshots from an async Playwright page."""

    def __init__(
        self,
        page: Page,
        config: VisualRegressionConfig,
        branch: str,
        baseline_manager: BaselineManager | None = None,
    ):
        super().__init__(config, branch, baseline_manager)
        self.page = page

    async def screenshot(
        self,
        name: str,
        selector: Optional[str] = None,
        full_page: bool = False,
    ) -> CapturedScreenshot:
        """Capture the page, or a single element when ``selector`` is given."""
        path, decision = self.route(name)
        options = {
            "path": str(path),
            "type": "png",
            "animations": "disabled",
            "caret": "hide",
        }
        if selector:
            await self.page.locator(selector).screenshot(**options)
        else:
            await self.page.screenshot(full_page=full_page, **options)

        logger.info("Captured %s -> %s", name, path)
        return CapturedScreenshot(name=name, path=path, decision=decision)
