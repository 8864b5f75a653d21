# core/story_engine/__init__.py
"""
Story Engine - Runs branching stories for chat users.

Provides:
- StoryEngine: per-user story sessions with SQLite persistence
- run_story_step: one step of a story under a time budget
- pack: turns a step into size-limited chat messages
- Story: the interpreter for JSON story scripts
"""

from .engine import StoryEngine
from .interpreter import Story, StoryParseError
from .packer import PackLimits, pack
from .stepper import run_story_step
from .story_types import StoryEngineError, StoryErrorType, StoryOutcome, StoryStep

__all__ = ['StoryEngine', 'Story', 'StoryParseError', 'PackLimits', 'pack', 'run_story_step',
           'StoryEngineError', 'StoryErrorType', 'StoryOutcome', 'StoryStep']
