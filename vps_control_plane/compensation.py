"""
Compensation Stack
==================

Undo log for the provisioning saga. Each completed step that created
something external pushes a token; on failure the stack is unwound in
strict reverse order.

Unwinding is best effort: a failing compensation is logged and collected,
and the remaining compensations still run.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List

logger = logging.getLogger(__name__)


@dataclass
class CompletedStep:
    """A finished forward step plus the coroutine factory that undoes it."""
    name: str
    detail: str
    compensate: Callable[[], Awaitable[None]]


class CompensationStack:
    """LIFO of completed steps for one provisioning attempt."""

    def __init__(self):
        self._steps: List[CompletedStep] = []

    def __len__(self) -> int:
        return len(self._steps)

    @property
    def step_names(self) -> List[str]:
        return [step.name for step in self._steps]

    def push(self, name: str, detail: str, compensate: Callable[[], Awaitable[None]]) -> None:
        self._steps.append(CompletedStep(name=name, detail=detail, compensate=compensate))

    async def unwind(self, service_id: str = "") -> List[str]:
        """
        Run every compensation, newest first.

        Returns:
            One "step: error" string per compensation that failed
        """
        errors: List[str] = []

        while self._steps:
            step = self._steps.pop()
            log_extra = {"service_id": service_id, "step": step.name}
            try:
                await step.compensate()
                logger.info(f"Compensated {step.name} ({step.detail})", extra=log_extra)
            except Exception as e:
                logger.error(
                    f"Compensation for {step.name} ({step.detail}) failed: {e}",
                    extra=log_extra,
                    exc_info=True,
                )
                errors.append(f"{step.name}: {e}")

        return errors
