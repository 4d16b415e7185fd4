"""Result type for best-effort pipeline steps.

Embedding, extraction and persistence steps that must never break the
request path return a ``StepResult`` instead of raising. ``optional_step``
runs an awaitable and turns any exception into a logged ``StepResult``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Generic, TypeVar

from knowledge_engine.errors import BudgetExceededError

if TYPE_CHECKING:
    from collections.abc import Awaitable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class StepResult(Generic[T]):
    """Outcome of a best-effort step: a value, or the error that stopped it."""

    value: T | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def skipped(self) -> bool:
        """True when the step was denied by the budget gate rather than failing."""
        return isinstance(self.error, BudgetExceededError)

    def unwrap_or(self, default: T) -> T:
        if self.error is not None or self.value is None:
            return default
        return self.value


async def optional_step(name: str, awaitable: Awaitable[T]) -> StepResult[T]:
    """Await *awaitable*, logging and capturing any exception.

    Budget denials are logged at INFO (they are expected); everything
    else is logged with a traceback.
    """
    try:
        return StepResult(value=await awaitable)
    except BudgetExceededError as exc:
        logger.info("Step %s skipped: %s", name, exc)
        return StepResult(error=exc)
    except Exception as exc:
        logger.exception("Step %s failed (non-fatal)", name)
        return StepResult(error=exc)
