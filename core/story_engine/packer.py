# core/story_engine/packer.py
"""
Output Packer - Turns one story step into chat messages.

pack() is pure: it only reads the step and the limits, and the same input
always gives the same messages. Lines are combined into as few messages as
the size limits allow, with these exceptions:
- a change of speaker (or of speaker image size) starts a new message
- a "pause" tag starts a new message and puts a PauseMarker before it
- a "standalone" tag or a URL puts the line into a message of its own
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Optional, Union

from .extractor import (
    has_tag, parse_choice_button_style, parse_choice_input_variable, parse_line_speech,
)
from .story_types import Choice, StoryCharacter, StoryStep
from .text_utils import chunk, contains_url, split_text_at_whitespace, trim_text

logger = logging.getLogger(__name__)

BUTTON_STYLES = ("primary", "secondary", "success", "danger")
DEFAULT_BUTTON_STYLE = "secondary"
LEGACY_STYLE_PREFIX = "style-"

END_TEXT = "The End. Thank you for playing!"
PLAY_AGAIN_LABEL = "Play again"
SUGGESTION_TEXT = "If you enjoyed this story, you might like this one too:"
START_LABEL = "Start"
TOO_MANY_CHOICES_TEXT = "This story offers more choices than can be shown here. Only the first {choice_limit} are available."


@dataclass(frozen=True)
class PackLimits:
    message_limit: int = 2000
    embed_limit: int = 4096
    button_label_limit: int = 80
    buttons_per_row: int = 5
    max_rows: int = 5

    @property
    def choice_limit(self) -> int:
        return self.buttons_per_row * self.max_rows


@dataclass
class Button:
    label: str
    style: str = DEFAULT_BUTTON_STYLE
    action: str = "choice"  # choice, input, start
    choice_index: Optional[int] = None
    variable: Optional[str] = None
    story_id: Optional[str] = None


@dataclass
class ActionRow:
    buttons: list[Button] = field(default_factory=list)


@dataclass
class TextMessage:
    content: str
    rows: list[ActionRow] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"type": "text", **asdict(self)}


@dataclass
class EmbedMessage:
    """Rich message. Lines spoken by a character carry the character in author_name or title."""
    description: str
    author_name: Optional[str] = None
    icon_url: Optional[str] = None
    title: Optional[str] = None
    thumbnail_url: Optional[str] = None
    image_url: Optional[str] = None
    colour: Optional[str] = None
    footer: Optional[str] = None
    rows: list[ActionRow] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"type": "embed", **asdict(self)}


@dataclass(frozen=True)
class PauseMarker:
    def to_dict(self) -> dict:
        return {"type": "pause"}


Message = Union[TextMessage, EmbedMessage, PauseMarker]


def pack(step: StoryStep, characters: Optional[dict[str, StoryCharacter]] = None,
         limits: PackLimits = PackLimits()) -> list[Message]:
    """
    Build the messages for one step.

    Args:
        step: Lines, choices and end state of the step
        characters: Speaker registry, defaults to the one carried by the step
        limits: Chat platform size limits
    """
    if characters is None:
        characters = getattr(step, "characters", None) or {}

    messages: list[Message] = []
    if step.lines:
        _append_text_messages(messages, step.lines, characters, limits)
    if step.choices:
        _append_choice_buttons(messages, step.choices, getattr(step, "default_button_style", ""), limits)
    if step.is_end:
        record = getattr(step, "story_record", None)
        _append_end_message(messages, record.id if record else None)
        for suggestion in getattr(step, "suggestions", None) or []:
            _append_suggestion(messages, suggestion)
    return messages


# ==================== LINES ====================

def _character_message(text: str, character: Optional[StoryCharacter], image_size: str) -> Message:
    if character is None:
        return TextMessage(content=text)

    message = EmbedMessage(description=text, colour=character.colour)
    if character.image_url and image_size == "medium":
        message.title = character.name
        message.thumbnail_url = character.image_url
    elif character.image_url and image_size == "large":
        message.title = character.name
        message.image_url = character.image_url
    else:
        message.author_name = character.name
        message.icon_url = character.image_url
    return message


def _append_text_messages(messages: list, lines, characters, limits: PackLimits):
    text = ""
    previous_character = None
    previous_image_size = "small"
    previous_standalone = False

    def flush():
        nonlocal text
        # Chat platforms reject empty messages
        if text.strip():
            messages.append(_character_message(text, previous_character, previous_image_size))
        text = ""

    for line in lines:
        line_text = line.text
        character = None
        image_size = "small"
        limit = limits.message_limit

        speech = parse_line_speech(line, characters)
        if speech:
            line_text = speech.text
            character = speech.character
            image_size = speech.image_size
            limit = limits.embed_limit

        if character != previous_character or image_size != previous_image_size:
            flush()

        if has_tag(line.tags, "pause"):
            flush()
            messages.append(PauseMarker())

        if previous_standalone:
            flush()
            previous_standalone = False

        # URLs get their own message so embedded previews show up where the author put them
        if contains_url(line_text) or has_tag(line.tags, "standalone"):
            flush()
            previous_standalone = True

        previous_character = character
        previous_image_size = image_size

        if len(line_text) > limit:
            flush()
            parts = split_text_at_whitespace(line_text, limit)
            for part in parts[:-1]:
                if part.strip():
                    messages.append(_character_message(part, character, image_size))
            text = parts[-1] if parts else ""
        elif len(text + "\n" + line_text) > limit:
            flush()
            text = line_text
        else:
            if text and not text.endswith("\n"):
                text += "\n"
            text += line_text

    flush()


# ==================== CHOICES ====================

def _map_button_style(style: str, default: str) -> str:
    return style if style in BUTTON_STYLES else default


def _choice_text_and_style(choice: Choice, default_style: str) -> tuple[str, str]:
    text = choice.text
    style = parse_choice_button_style(choice)
    if style:
        return text, _map_button_style(style, default_style)

    # Legacy syntax: "style-primary: choice text"
    separator = text.find(":")
    if text.lower().startswith(LEGACY_STYLE_PREFIX) and separator > 0:
        style = text[len(LEGACY_STYLE_PREFIX):separator].strip().lower()
        return text[separator + 1:].lstrip(), _map_button_style(style, default_style)
    return text, default_style


def _append_choice_buttons(messages: list, choices: list[Choice], default_button_style: str, limits: PackLimits):
    default_style = _map_button_style(default_button_style, DEFAULT_BUTTON_STYLE)
    parsed = [(choice,) + _choice_text_and_style(choice, default_style) for choice in choices]

    carrier = messages[-1] if messages and not isinstance(messages[-1], PauseMarker) else None
    numbered = carrier is None or any(len(text) > limits.button_label_limit for _, text, _ in parsed)

    if numbered:
        # Full choice texts go into the message, buttons get the numbers
        listing = "\n".join(f"{choice.index + 1}. {text}" for choice, text, _ in parsed)
        parts = [part for part in split_text_at_whitespace(listing, limits.message_limit) if part.strip()]
        for part in parts[:-1]:
            messages.append(TextMessage(content=part))
        carrier = TextMessage(content=parts[-1] if parts else "")
        messages.append(carrier)

    buttons = []
    for choice, text, style in parsed:
        label = trim_text(f"{choice.index + 1}. {text}" if numbered else text, limits.button_label_limit)
        variable = parse_choice_input_variable(choice)
        buttons.append(Button(
            label=label,
            style=style,
            action="input" if variable else "choice",
            choice_index=choice.index,
            variable=variable,
        ))

    rows = [ActionRow(buttons=row) for row in chunk(buttons, limits.buttons_per_row)]
    carrier.rows = rows[:limits.max_rows]
    if len(rows) > limits.max_rows:
        # The owner gets a report from the engine, the player gets this note
        messages.append(TextMessage(content=TOO_MANY_CHOICES_TEXT.format(choice_limit=limits.choice_limit)))


# ==================== END ====================

def _append_end_message(messages: list, story_id: Optional[str]):
    messages.append(EmbedMessage(
        description=END_TEXT,
        rows=[ActionRow(buttons=[Button(label=PLAY_AGAIN_LABEL, action="start", story_id=story_id)])]
    ))


def _append_suggestion(messages: list, suggestion):
    story = suggestion.suggested_story
    description = suggestion.message or SUGGESTION_TEXT
    if story.teaser:
        description += "\n\n" + story.teaser
    messages.append(EmbedMessage(
        description=description,
        title=story.title or None,
        footer=f"by {story.author}" if story.author else None,
        rows=[ActionRow(buttons=[Button(label=START_LABEL, action="start", story_id=story.id)])]
    ))
