"""Exception hierarchy for the visual regression core.

Every error carries the component that raised it and an optional recovery
hint, so callers (the CLI in particular) can print an actionable message
instead of a bare traceback. Each family also subclasses the closest
built-in exception so ``except FileNotFoundError`` / ``except ValueError``
style handling keeps working.
"""

from __future__ import annotations


class VisualRegressionError(Exception):
    """Base exception for all testivai errors."""

    def __init__(self, message: str, component: str = "", recovery_hint: str = ""):
        self.message = message
        self.component = component
        self.recovery_hint = recovery_hint
        super().__init__(message)

    def __str__(self) -> str:
        msg = self.message
        if self.component:
            msg = f"[{self.component}] {msg}"
        if self.recovery_hint:
            msg += f"\nRecovery: {self.recovery_hint}"
        return msg


# --- NotFound ---------------------------------------------------------------


class NotFoundError(VisualRegressionError):
    """A required artifact does not exist."""


class ImageNotFoundError(NotFoundError, FileNotFoundError):
    """A baseline or comparison image is missing."""

    def __init__(self, role: str, path: str):
        self.role = role
        self.path = path
        super().__init__(
            f"{role.capitalize()} image not found: {path}",
            component="DiffEngine",
            recovery_hint="Capture the screenshot again or check the configured directories.",
        )


class CommitNotInHistoryError(NotFoundError, LookupError):
    """A revert target is not present in the history ledger."""

    def __init__(self, short_sha: str):
        self.short_sha = short_sha
        super().__init__(
            f"Commit {short_sha} is not in the approval history",
            component="DecisionLedger",
            recovery_hint="Run 'testivai history' to list the commits that can be reverted.",
        )


# --- InvalidInput -------------------------------------------------------------


class InvalidInputError(VisualRegressionError, ValueError):
    """Input data is malformed or inconsistent."""


class DimensionMismatchError(InvalidInputError):
    """Baseline and comparison images have different sizes."""

    def __init__(self, baseline_size: tuple[int, int], compare_size: tuple[int, int]):
        self.baseline_size = baseline_size
        self.compare_size = compare_size
        super().__init__(
            f"Image size mismatch: baseline={baseline_size[0]}x{baseline_size[1]}, "
            f"current={compare_size[0]}x{compare_size[1]}",
            component="DiffEngine",
            recovery_hint="Capture both screenshots with the same viewport, or accept the new size.",
        )


class LedgerCorruptedError(InvalidInputError):
    """A persisted JSON document exists but cannot be parsed."""

    def __init__(self, path: str, reason: str):
        self.path = path
        super().__init__(
            f"Cannot parse {path}: {reason}",
            component="Storage",
            recovery_hint="Fix or restore the file by hand; it is never reset automatically.",
        )


# --- IOFailure ----------------------------------------------------------------


class PersistenceError(VisualRegressionError, OSError):
    """A write, copy or rename failed."""

    def __init__(self, message: str, recovery_hint: str = ""):
        super().__init__(
            message,
            component="Storage",
            recovery_hint=recovery_hint or "Check disk space and write permissions for the report directory.",
        )


class LockTimeoutError(PersistenceError):
    """The exclusive lock on a document could not be acquired in time."""

    def __init__(self, lock_path: str, timeout: float):
        self.lock_path = lock_path
        self.timeout = timeout
        super().__init__(
            f"Timed out after {timeout:.1f}s waiting for lock {lock_path}",
            recovery_hint="Another worker may still be writing. If no process is running, delete the lock file.",
        )


# --- ExternalToolFailure ------------------------------------------------------


class GitMetadataError(VisualRegressionError):
    """A git command failed. Degraded to 'unknown' by the provider."""

    def __init__(self, message: str):
        super().__init__(message, component="Git")
