"""Filesystem access used by the baseline manager and the decision ledger.

Injected rather than imported directly so tests (and alternative stores) can
replace it.
"""

from __future__ import annotations

import shutil
from pathlib import Path


class LocalFileSystem:
    """Thin wrapper over pathlib/shutil for the local disk."""

    def exists(self, path: str | Path) -> bool:
        return Path(path).exists()

    def makedirs(self, path: str | Path) -> None:
        Path(path).mkdir(parents=True, exist_ok=True)

    def copy(self, source: str | Path, destination: str | Path) -> None:
        shutil.copy2(source, destination)

    def remove_tree(self, path: str | Path) -> None:
        shutil.rmtree(path)
