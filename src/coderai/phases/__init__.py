"""Shared phase enumerations."""

from __future__ import annotations

from enum import Enum


class PhaseName(str, Enum):
    """Enumeration of the recorded run steps."""

    PLAN = "plan"
    CODE = "code"
    REVIEW = "review"
    APPLY = "apply"
    ROLLBACK = "rollback"


__all__ = ["PhaseName"]
