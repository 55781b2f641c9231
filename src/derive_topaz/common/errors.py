"""
Error taxonomy for derive_topaz.

Every failure of the core is an InvalidInput; the subclasses only add context
attributes so callers can report where a trace went wrong.
"""

from __future__ import annotations

from typing import Optional, Tuple

Cell = Tuple[int, int]


class InvalidInput(ValueError):
    """Malformed or inconsistent input data."""


class InvalidPointer(InvalidInput):
    def __init__(self, message: str, cell: Optional[Cell] = None, value: float | None = None) -> None:
        super().__init__(message)
        self.cell = cell
        self.value = value


class LoopDetected(InvalidInput):
    def __init__(self, message: str, cell: Cell, steps: int) -> None:
        super().__init__(message)
        self.cell = cell
        self.steps = steps


class StepLimitExceeded(InvalidInput):
    def __init__(self, message: str, cell: Cell, steps: int) -> None:
        super().__init__(message)
        self.cell = cell
        self.steps = steps
