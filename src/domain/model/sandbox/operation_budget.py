"""Wall-clock budget shared by every sub-step of a top-level operation."""

import time
from collections.abc import Callable

from src.domain.model.sandbox.exceptions import OperationTimeoutError


class OperationBudget:
    """
    Deadline for a composite operation such as "ensure sandbox ready".

    Sub-steps call ``check()`` at their boundaries and use ``cap()`` to clamp
    their own internal timeouts, so no sub-step can silently outlive the
    caller's budget.

    Attributes:
        operation: Name reported in OperationTimeoutError
        total_seconds: Total budget
    """

    def __init__(
        self,
        operation: str,
        total_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if total_seconds <= 0:
            raise ValueError(f"total_seconds must be positive, got {total_seconds}")
        self.operation = operation
        self.total_seconds = total_seconds
        self._clock = clock
        self._started_at = clock()

    @property
    def elapsed(self) -> float:
        return self._clock() - self._started_at

    @property
    def remaining(self) -> float:
        return max(0.0, self.total_seconds - self.elapsed)

    @property
    def expired(self) -> bool:
        return self.remaining <= 0

    def check(self, step: str | None = None) -> None:
        """Raise OperationTimeoutError if the budget is spent.

        Args:
            step: Optional sub-step name appended to the operation name
        """
        if self.expired:
            name = f"{self.operation}:{step}" if step else self.operation
            raise OperationTimeoutError(name, self.total_seconds, self.elapsed)

    def cap(self, seconds: float) -> float:
        """Clamp a sub-step timeout to what is left of the budget."""
        return max(0.0, min(seconds, self.remaining))
