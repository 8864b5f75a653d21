# core/story_engine/story_types.py
"""
Shared data types for running stories: step results, characters, metadata
and the error taxonomy returned by session operations.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


@dataclass
class StoryLine:
    text: str
    tags: list[str] = field(default_factory=list)


@dataclass
class Choice:
    index: int
    text: str
    tags: list[str] = field(default_factory=list)


@dataclass
class StoryMetadata:
    title: str = ""
    author: str = ""
    teaser: str = ""


@dataclass(frozen=True)
class StoryCharacter:
    """A speaker declared in the global tags of a story."""
    id: str
    name: str
    image_url: Optional[str] = None
    colour: Optional[str] = None


@dataclass(frozen=True)
class LineSpeech:
    text: str
    character: StoryCharacter
    image_size: str = "small"


@dataclass
class StepData:
    """
    Raw output of one bounded step.

    complete=False with no errors means the time budget ran out before the
    interpreter reached the next choice point.
    """
    lines: list[StoryLine] = field(default_factory=list)
    choices: list[Choice] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    is_end: bool = False
    complete: bool = True


@dataclass
class StoryStep(StepData):
    """Step data enriched with everything the packer needs to render it."""
    story_record: Any = None
    characters: dict[str, StoryCharacter] = field(default_factory=dict)
    default_button_style: str = ""
    suggestions: list = field(default_factory=list)
    variables_state: dict = field(default_factory=dict)

    @classmethod
    def from_step_data(cls, step_data: StepData, **extra) -> "StoryStep":
        return cls(
            lines=step_data.lines,
            choices=step_data.choices,
            warnings=step_data.warnings,
            errors=step_data.errors,
            is_end=step_data.is_end,
            complete=step_data.complete,
            **extra
        )


@dataclass
class StoryProbe:
    step_data: StepData
    metadata: StoryMetadata


class StoryErrorType(str, Enum):
    STORY_NOT_FOUND = "StoryNotFound"
    ALREADY_PLAYING_DIFFERENT_STORY = "AlreadyPlayingDifferentStory"
    STORY_NOT_STARTABLE = "StoryNotStartable"
    STORY_NOT_CONTINUEABLE = "StoryNotContinueable"
    TEMPORARY_PROBLEM = "TemporaryProblem"
    INVALID_CHOICE = "InvalidChoice"
    COULD_NOT_SAVE_STATE = "CouldNotSaveState"
    TIME_BUDGET_EXCEEDED = "TimeBudgetExceeded"


class StoryEngineError(Exception):
    """Raised inside the engine to abort an operation with a tagged outcome."""

    def __init__(self, story_error_type: StoryErrorType, message: str = "", step: Optional[StoryStep] = None):
        super().__init__(message or story_error_type.value)
        self.story_error_type = story_error_type
        self.step = step


@dataclass
class StoryOutcome:
    """
    Result of a session operation.

    error is None on success. For COULD_NOT_SAVE_STATE the step is still set,
    since the story advanced in memory even though it was not persisted.
    """
    step: Optional[StoryStep] = None
    error: Optional[StoryErrorType] = None

    @property
    def ok(self) -> bool:
        return self.error is None
