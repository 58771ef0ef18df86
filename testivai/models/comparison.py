"""Per-capture data: baseline routing decisions and diff outcomes."""

from __future__ import annotations

from typing import Optional

from pydantic import Field

from testivai.models.base import CamelModel


class BaselineDecision(CamelModel):
    """Computed fresh for every capture, never persisted."""

    should_use_baseline: bool
    baseline_path: str
    compare_path: str
    is_main_branch: bool


class ComparisonResult(CamelModel):
    """Outcome of comparing one capture with its baseline.

    ``passed`` is ``diff_percentage <= threshold`` for every result except one
    carrying ``error``, which is never passed. Whether a test is new, deleted
    or failed is read from ``baseline_existed``, ``current_captured`` and
    ``error``, never from ``passed``.
    """

    name: str
    baseline_path: str
    compare_path: str
    diff_path: Optional[str] = None
    passed: bool
    diff_percentage: float = Field(default=0.0, ge=0.0, le=1.0)
    threshold: float = Field(ge=0.0, le=1.0)
    # Baseline dimensions, when the engine decoded the images
    width: Optional[int] = None
    height: Optional[int] = None
    # Set when the comparison could not be carried out
    error: Optional[str] = None
    baseline_existed: bool = True
    current_captured: bool = True
