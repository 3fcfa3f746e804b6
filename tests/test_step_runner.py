from __future__ import annotations

import pytest

from wellness_agent.step_runner import Step, StepRunner


def test_steps_run_in_order_and_honor_guards():
    runner = StepRunner(
        [
            Step("double", lambda value: value * 2),
            Step("never", lambda value: value + 100, skip_if=lambda value: value > 0),
            Step("always", lambda value: value + 1, skip_if=lambda value: True, always_run=True),
        ]
    )
    assert runner.step_names == ["double", "never", "always"]
    assert runner.run(3) == 7


def test_step_errors_propagate():
    def boom(value):
        raise RuntimeError("step failed")

    with pytest.raises(RuntimeError):
        StepRunner([Step("boom", boom)]).run(1)
