"""Git and pull-request metadata for a run.

Each field is read with its own ``git`` invocation. A field whose command
fails becomes ``"unknown"`` and the rest are still collected; git problems
never stop a report from being produced.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
from pathlib import Path
from typing import Mapping, Optional, Protocol

from testivai.errors import GitMetadataError
from testivai.models.git_info import UNKNOWN, GitInfo, PRInfo

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 5

_PR_REF = re.compile(r"^refs/pull/(\d+)/")


class GitProvider(Protocol):
    def get_git_info(self) -> GitInfo: ...


class SubprocessGitProvider:
    """Reads metadata for HEAD by running the ``git`` executable."""

    def __init__(self, working_dir: str | Path | None = None, timeout: float = GIT_TIMEOUT_SECONDS):
        self.working_dir = Path(working_dir) if working_dir else None
        self.timeout = timeout

    def get_git_info(self) -> GitInfo:
        info = GitInfo(
            branch=self._field("branch", "rev-parse", "--abbrev-ref", "HEAD"),
            sha=self._field("sha", "rev-parse", "HEAD"),
            short_sha=self._field("short_sha", "rev-parse", "--short", "HEAD"),
            author=self._field("author", "log", "-1", "--pretty=format:%an"),
            email=self._field("email", "log", "-1", "--pretty=format:%ae"),
            timestamp=self._field("timestamp", "log", "-1", "--pretty=format:%aI"),
            message=self._field("message", "log", "-1", "--pretty=format:%s"),
        )
        logger.debug("Git info: branch=%s sha=%s", info.branch, info.short_sha)
        return info

    def _field(self, field: str, *args: str) -> str:
        try:
            return self._run(*args)
        except GitMetadataError as e:
            logger.warning("Could not read git %s: %s", field, e.message)
            return UNKNOWN

    def _run(self, *args: str) -> str:
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=self.working_dir,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=True,
            )
        except FileNotFoundError as e:
            raise GitMetadataError("git executable not found") from e
        except subprocess.TimeoutExpired as e:
            raise GitMetadataError(f"git {' '.join(args)} timed out") from e
        except subprocess.CalledProcessError as e:
            raise GitMetadataError(
                f"git {' '.join(args)} exited with {e.returncode}: {(e.stderr or '').strip()}"
            ) from e
        output = result.stdout.strip()
        if not output:
            raise GitMetadataError(f"git {' '.join(args)} returned no output")
        return output


def pr_info_from_env(environ: Optional[Mapping[str, str]] = None) -> Optional[PRInfo]:
    """Pull-request context from GitHub Actions variables, or None outside a PR build."""
    env = os.environ if environ is None else environ
    match = _PR_REF.match(env.get("GITHUB_REF", ""))
    if not match:
        return None

    number = int(match.group(1))
    server = env.get("GITHUB_SERVER_URL", "https://github.com").rstrip("/")
    repository = env.get("GITHUB_REPOSITORY")
    sha = env.get("GITHUB_SHA")

    url = f"{server}/{repository}/pull/{number}" if repository else None
    commit_url = f"{server}/{repository}/commit/{sha}" if repository and sha else None
    return PRInfo(
        number=number,
        url=url,
        title=env.get("GITHUB_PR_TITLE"),
        source="github-actions",
        commit_url=commit_url,
    )
