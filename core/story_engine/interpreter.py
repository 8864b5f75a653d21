# core/story_engine/interpreter.py
"""
Story Interpreter - Runtime for branching JSON story scripts.

A script is a JSON object:
    {
        "global_tags": ["title: The Cave", "character: doc, Doctor"],
        "variables": {"torch": false, "gold": 0},
        "start": "intro",
        "knots": {
            "intro": [
                {"text": "You stand at a fork.", "tags": ["pause"]},
                {"set": {"gold": "+5"}},
                {"choice": "Go left", "goto": "left", "if": "torch"},
                {"choice": "Go right", "goto": "right"}
            ],
            "left": [{"text": "It is dark."}, {"goto": "END"}]
        }
    }

Execution is cooperative: continue_async() checks the clock between
instructions and hands control back once its budget is used up, leaving the
pointer where it stopped so the next call resumes from there.
"""

import copy
import json
import logging
import re
import time
from enum import Enum
from typing import Any, Callable, Optional

from .conditions import match_conditions, parse_conditions, parse_value
from .story_types import Choice, StoryLine

logger = logging.getLogger(__name__)

END_TARGETS = ("END", "DONE")
ITEM_KINDS = ("text", "set", "choice", "goto", "error")
STATE_VERSION = 1

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


class ErrorType(Enum):
    WARNING = "warning"
    ERROR = "error"


class StoryParseError(ValueError):
    """Story content is not a valid script."""


class StoryStateError(ValueError):
    """A saved state snapshot does not fit the story it is loaded into."""


class StoryRuntimeError(RuntimeError):
    """Runtime error raised when no error handler is registered."""


class InvalidChoiceError(ValueError):
    """The requested choice index is not currently available."""


def _validate_content(data: Any) -> dict:
    if not isinstance(data, dict):
        raise StoryParseError("Story must be a JSON object")

    knots = data.get("knots")
    if not isinstance(knots, dict) or not knots:
        raise StoryParseError("Story needs a non-empty 'knots' object")

    global_tags = data.get("global_tags", [])
    if not isinstance(global_tags, list) or not all(isinstance(t, str) for t in global_tags):
        raise StoryParseError("'global_tags' must be a list of strings")

    variables = data.get("variables", {})
    if not isinstance(variables, dict):
        raise StoryParseError("'variables' must be an object")

    start = data.get("start", next(iter(knots)))
    if start not in knots:
        raise StoryParseError(f"Start knot '{start}' does not exist")

    for knot_name, items in knots.items():
        if not isinstance(items, list):
            raise StoryParseError(f"Knot '{knot_name}' must be a list of items")
        for i, item in enumerate(items):
            where = f"knot '{knot_name}', item {i + 1}"
            if not isinstance(item, dict):
                raise StoryParseError(f"Item must be an object ({where})")
            kinds = [k for k in ITEM_KINDS if k in item]
            if len(kinds) != 1 and kinds != ["choice", "goto"]:
                raise StoryParseError(f"Item must have exactly one of {', '.join(ITEM_KINDS)} ({where})")
            if "choice" in item and "goto" not in item:
                raise StoryParseError(f"Choice needs a 'goto' target ({where})")
            target = item.get("goto")
            if target is not None and target not in END_TARGETS and target not in knots:
                raise StoryParseError(f"Divert target '{target}' does not exist ({where})")
            if "tags" in item and not (isinstance(item["tags"], list) and all(isinstance(t, str) for t in item["tags"])):
                raise StoryParseError(f"'tags' must be a list of strings ({where})")
            if "set" in item and not isinstance(item["set"], dict):
                raise StoryParseError(f"'set' must be an object ({where})")
            if "if" in item and not isinstance(item["if"], str):
                raise StoryParseError(f"'if' must be a condition string ({where})")

    return {"knots": knots, "global_tags": global_tags, "variables": variables, "start": start}


class StoryState:
    """Serializable position of a running story."""

    def __init__(self, story: "Story"):
        self._story = story
        self.reset()

    def reset(self):
        self.knot: Optional[str] = self._story.start_knot
        self.pointer = 0
        self.variables = copy.deepcopy(self._story.initial_variables)
        self.pending_choices: list[dict] = []
        self.chosen: list[str] = []
        self.current_text = ""
        self.current_tags: list[str] = []
        self.errors: list[str] = []

    def to_json(self) -> str:
        return json.dumps({
            "version": STATE_VERSION,
            "knot": self.knot,
            "pointer": self.pointer,
            "variables": self.variables,
            "pending_choices": self.pending_choices,
            "chosen": self.chosen,
            "current_text": self.current_text,
            "current_tags": self.current_tags,
            "errors": self.errors,
        })

    def load_json(self, state_json: str):
        """Restore a snapshot. Raises StoryStateError without touching current state on failure."""
        try:
            data = json.loads(state_json)
        except (TypeError, ValueError) as e:
            raise StoryStateError(f"State is not valid JSON: {e}") from e

        if not isinstance(data, dict) or data.get("version") != STATE_VERSION:
            raise StoryStateError("Unsupported state format")

        knot = data.get("knot")
        pointer = data.get("pointer")
        if knot is not None and knot not in self._story.knots:
            raise StoryStateError(f"State refers to unknown knot '{knot}'")
        if not isinstance(pointer, int) or pointer < 0:
            raise StoryStateError("State has an invalid pointer")
        if knot is not None and pointer > len(self._story.knots[knot]):
            raise StoryStateError(f"State pointer is outside of knot '{knot}'")

        pending = data.get("pending_choices", [])
        if not isinstance(pending, list):
            raise StoryStateError("State has invalid pending choices")
        for choice in pending:
            if not isinstance(choice, dict) or not isinstance(choice.get("text"), str):
                raise StoryStateError("State has invalid pending choices")
            target = choice.get("goto")
            if not isinstance(target, str) or (target not in END_TARGETS and target not in self._story.knots):
                raise StoryStateError(f"State choice refers to unknown knot '{target}'")
            if not _is_string_list(choice.get("tags", [])):
                raise StoryStateError("State choice has invalid tags")
            if choice.get("once") and not isinstance(choice.get("id"), str):
                raise StoryStateError("State choice offered once has no id")

        variables = data.get("variables", {})
        if not isinstance(variables, dict):
            raise StoryStateError("State has invalid variables")

        chosen = data.get("chosen", [])
        current_text = data.get("current_text", "")
        current_tags = data.get("current_tags", [])
        errors = data.get("errors", [])
        if not _is_string_list(chosen):
            raise StoryStateError("State has invalid chosen list")
        if not isinstance(current_text, str) or not _is_string_list(current_tags):
            raise StoryStateError("State has invalid current line")
        if not _is_string_list(errors):
            raise StoryStateError("State has invalid errors")

        self.knot = knot
        self.pointer = pointer
        self.variables = variables
        self.pending_choices = pending
        self.chosen = list(chosen)
        self.current_text = current_text
        self.current_tags = list(current_tags)
        self.errors = list(errors)


def _is_string_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(v, str) for v in value)


class Story:
    """One loaded story script with its running state."""

    def __init__(self, content, clock: Callable[[], float] = time.monotonic):
        if isinstance(content, bytes):
            try:
                content = content.decode("utf-8")
            except UnicodeDecodeError as e:
                raise StoryParseError(f"Story is not valid UTF-8: {e}") from e
        try:
            data = json.loads(content)
        except (TypeError, ValueError) as e:
            raise StoryParseError(f"Story is not valid JSON: {e}") from e

        parsed = _validate_content(data)
        self.knots: dict[str, list[dict]] = parsed["knots"]
        self.global_tags: list[str] = parsed["global_tags"]
        self.initial_variables: dict = parsed["variables"]
        self.start_knot: str = parsed["start"]

        self._clock = clock
        self.on_error: Optional[Callable[[str, ErrorType], None]] = None
        self.async_continue_complete = True
        self.state = StoryState(self)

    # ==================== STATUS ====================

    @property
    def has_error(self) -> bool:
        return bool(self.state.errors)

    @property
    def is_waiting_for_choice(self) -> bool:
        state = self.state
        return (state.knot is not None and state.pointer >= len(self.knots[state.knot])
                and bool(state.pending_choices))

    @property
    def can_continue(self) -> bool:
        return self.state.knot is not None and not self.has_error and not self.is_waiting_for_choice

    @property
    def current_text(self) -> str:
        return self.state.current_text

    @property
    def current_tags(self) -> list[str]:
        return list(self.state.current_tags)

    @property
    def current_choices(self) -> list[Choice]:
        if not self.is_waiting_for_choice or self.has_error:
            return []
        return [
            Choice(index=i, text=c["text"], tags=list(c.get("tags", [])))
            for i, c in enumerate(self.state.pending_choices)
        ]

    @property
    def variables_state(self) -> dict:
        return dict(self.state.variables)

    def set_variable(self, name: str, value: Any):
        """Assign a declared variable. Raises KeyError for undeclared names."""
        if name not in self.state.variables:
            raise KeyError(f"Variable '{name}' is not declared")
        self.state.variables[name] = value

    def reset_state(self):
        self.state.reset()

    # ==================== RUNNING ====================

    def choose_choice_index(self, index: int):
        if not self.is_waiting_for_choice or self.has_error:
            raise InvalidChoiceError("Story is not waiting for a choice")
        if not isinstance(index, int) or index < 0 or index >= len(self.state.pending_choices):
            raise InvalidChoiceError(f"Choice index {index} is out of range")

        choice = self.state.pending_choices[index]
        if choice.get("once"):
            self.state.chosen.append(choice["id"])
        self.state.pending_choices = []
        self._divert(choice["goto"])

    def continue_async(self, millisecs_limit: float) -> Optional[StoryLine]:
        """
        Run until the next line of text, a choice point or the end of the story.

        Returns the produced line, or None if execution stopped without one.
        Sets async_continue_complete to False if the time limit ran out first.
        """
        deadline = self._clock() + millisecs_limit / 1000.0
        self.async_continue_complete = True

        while self.can_continue:
            if self._clock() >= deadline:
                self.async_continue_complete = False
                return None
            line = self._execute_next()
            if line is not None:
                return line
        return None

    # ==================== INSTRUCTIONS ====================

    def _execute_next(self) -> Optional[StoryLine]:
        state = self.state
        items = self.knots[state.knot]

        if state.pointer >= len(items):
            if not state.pending_choices:
                self._warning(f"Story ran out of content in knot '{state.knot}' without a divert to END")
                state.knot = None
            return None

        item = items[state.pointer]
        state.pointer += 1

        if "if" in item and not self._check(item["if"]):
            return None

        if "text" in item:
            text = self._interpolate(str(item["text"]))
            tags = list(item.get("tags", []))
            state.current_text = text
            state.current_tags = tags
            return StoryLine(text=text, tags=tags)

        if "set" in item:
            for name, value in item["set"].items():
                self._assign(name, value)
            return None

        if "choice" in item:
            choice_id = f"{state.knot}#{state.pointer - 1}"
            if item.get("once") and choice_id in state.chosen:
                return None
            state.pending_choices.append({
                "id": choice_id,
                "text": self._interpolate(str(item["choice"])),
                "tags": list(item.get("tags", [])),
                "goto": item["goto"],
                "once": bool(item.get("once")),
            })
            return None

        if "goto" in item:
            if state.pending_choices:
                # A divert after gathering choices would discard them
                self._error(f"Divert to '{item['goto']}' after choices in knot '{state.knot}'")
                return None
            self._divert(item["goto"])
            return None

        if "error" in item:
            self._error(str(item["error"]))
        return None

    def _divert(self, target: str):
        if target in END_TARGETS:
            self.state.knot = None
        else:
            self.state.knot = target
        self.state.pointer = 0

    def _lookup(self, name: str) -> Any:
        if name not in self.state.variables:
            self._warning(f"Variable '{name}' is not declared")
            return None
        return self.state.variables[name]

    def _check(self, condition: str) -> bool:
        return match_conditions(parse_conditions(condition), self._lookup)

    def _assign(self, name: str, value: Any):
        if isinstance(value, str) and len(value) > 1 and value[0] in "+-":
            delta = parse_value(value[1:])
            if isinstance(delta, (int, float)) and not isinstance(delta, bool):
                current = self._lookup(name)
                if not isinstance(current, (int, float)) or isinstance(current, bool):
                    current = 0
                value = current + delta if value[0] == "+" else current - delta
        self.state.variables[name] = value

    def _interpolate(self, text: str) -> str:
        def replace(match):
            value = self._lookup(match.group(1))
            return "" if value is None else str(value)
        return _PLACEHOLDER.sub(replace, text)

    # ==================== ERROR SINK ====================

    def _warning(self, message: str):
        if self.on_error:
            self.on_error(message, ErrorType.WARNING)
        else:
            logger.warning(f"Story warning: {message}")

    def _error(self, message: str):
        self.state.errors.append(message)
        self.state.knot = None
        self.state.pending_choices = []
        if self.on_error:
            self.on_error(message, ErrorType.ERROR)
        else:
            raise StoryRuntimeError(message)
