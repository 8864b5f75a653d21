# core/story_engine/stepper.py
"""
Bounded Stepper - Runs one step of a story under a wall-clock budget.

The budget covers the whole step, not each line: every continue_async() call
only gets what is left of it. The interpreter checks the clock itself
(cooperative), so this cannot interrupt a runtime that never checks.
"""

import logging
import time
from typing import Callable

from .interpreter import ErrorType, Story
from .story_types import StepData

logger = logging.getLogger(__name__)


def run_story_step(story: Story, budget_ms: float, clock: Callable[[], float] = time.monotonic) -> StepData:
    """
    Advance the story until it needs a choice, ends, fails or runs out of time.

    Returns complete=False (no choices, no errors) when the budget ran out.
    A fatal error stops the step at once; the lines so far are returned with it.
    """
    lines = []
    warnings = []
    errors = []

    def on_error(message: str, error_type: ErrorType):
        if error_type == ErrorType.ERROR:
            errors.append(message)
        else:
            warnings.append(message)

    story.on_error = on_error
    deadline = clock() + budget_ms / 1000.0

    while story.can_continue:
        remaining_ms = (deadline - clock()) * 1000.0
        if remaining_ms <= 0:
            return StepData(lines=lines, warnings=warnings, complete=False)

        line = story.continue_async(remaining_ms)
        if not story.async_continue_complete:
            return StepData(lines=lines, warnings=warnings, complete=False)
        if line is not None:
            lines.append(line)

        if errors:
            return StepData(lines=lines, warnings=warnings, errors=errors)

    if errors:
        return StepData(lines=lines, warnings=warnings, errors=errors)

    choices = story.current_choices
    return StepData(lines=lines, choices=choices, warnings=warnings, is_end=not choices)
