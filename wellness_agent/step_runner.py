from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Generic, List, Optional, TypeVar

logger = logging.getLogger("wellness.steps")

T = TypeVar("T")


@dataclass(frozen=True)
class Step(Generic[T]):
    """One pipeline stage: takes the turn value and returns the next one."""
    name: str
    fn: Callable[[T], T]
    skip_if: Optional[Callable[[T], bool]] = None
    always_run: bool = False


class StepRunner(Generic[T]):
    """Ordered step runner threading an immutable value through each stage."""

    def __init__(self, steps: List[Step[T]]) -> None:
        """Purpose: Initialize the runner with an ordered list of steps.
        Inputs/Outputs: Input is a list of Step; no return value.
        Side Effects / State: Stores the step list for later execution.
        Dependencies: None beyond Step definitions.
        Failure Modes: None; assumes valid callables in steps.
        If Removed: The turn pipeline has nothing to execute its stages.
        Testing Notes: Provide a minimal step list and ensure order is preserved.
        """
        # Store the pipeline steps for deterministic execution.
        self._steps = list(steps)

    @property
    def step_names(self) -> List[str]:
        return [step.name for step in self._steps]

    def run(self, value: T) -> T:
        """Purpose: Execute steps in order with optional skip/always-run rules.
        Inputs/Outputs: Input is the initial turn value; output is the value returned by the
            last executed step.
        Side Effects / State: None of its own; each step returns a new value instead of
            mutating the one it received.
        Dependencies: Step.fn and Step.skip_if semantics.
        Failure Modes: Exceptions in step functions propagate to the caller.
        If Removed: The pipeline cannot run, breaking request handling.
        Testing Notes: Verify skip_if and always_run logic with simple steps.
        """
        # Iterate steps and honor always_run/skip_if guards.
        for step in self._steps:
            if not step.always_run and step.skip_if and step.skip_if(value):
                logger.debug("step=%s status=skipped", step.name)
                continue
            started = time.perf_counter()
            value = step.fn(value)
            logger.debug("step=%s status=done elapsed_ms=%.1f", step.name, (time.perf_counter() - started) * 1000)
        return value
