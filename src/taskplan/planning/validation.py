"""Shared result type and helpers for structural validation of planner output."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass(slots=True)
class ValidationReport:
    """Outcome of a structural validation pass."""

    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "errors": list(self.errors), "warnings": list(self.warnings)}


class PlanValidationError(ValueError):
    """Raised when planner output cannot be turned into a typed plan."""

    def __init__(self, errors: List[str]) -> None:
        message = "; ".join(errors) if errors else "Plan failed validation"
        super().__init__(message)
        self.errors = list(errors)


def is_non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def is_confidence(value: Any) -> bool:
    # bool is an int subclass; reject it explicitly.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return 0 <= value <= 1


__all__ = ["PlanValidationError", "ValidationReport", "is_confidence", "is_non_empty_str"]
