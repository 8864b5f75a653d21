# core/story_engine/extractor.py
"""
Parses story information from tags: metadata, characters (the speaker
registry), speech attribution of lines, and button styles and actions of
choices.
"""

import logging
import re
from typing import Optional

from .story_types import Choice, LineSpeech, StoryCharacter, StoryLine, StoryMetadata

logger = logging.getLogger(__name__)

# character: id, name[, url][, colour]   e.g. "character: vader, Darth Vader, 000000"
CHARACTER_TAG = re.compile(
    r"^character:\s*([^,]+?)\s*,\s*([^,]+?)(?:\s*,\s*(?P<url>http[^\s,]+))?(?:\s*,\s*(?P<colour>#?[0-9a-fA-F]{6}))?\s*$",
    re.IGNORECASE
)
# Legacy syntax: character: name [url] [colour], names with spaces in double quotes
CHARACTER_TAG_LEGACY = re.compile(
    r'^character:\s*(?:([^\s"]+)|"([^"]+)")(?:\s+(?P<url>http\S+))?(?:\s+(?P<colour>#?[0-9a-fA-F]{6}))?\s*$',
    re.IGNORECASE
)
TITLE_TAG = re.compile(r"^title:(.+)$", re.IGNORECASE)
AUTHOR_TAG = re.compile(r"^author:(.+)$", re.IGNORECASE)
TEASER_TAG = re.compile(r"^teaser:(.+)$", re.IGNORECASE)
DEFAULT_BUTTON_STYLE_TAG = re.compile(r"^default-button-style:\s*(primary|secondary|success|danger)\s*$", re.IGNORECASE)
BUTTON_STYLE_TAG = re.compile(r"^button-style:\s*(primary|secondary|success|danger)\s*$", re.IGNORECASE)
SPEECH_TAG = re.compile(r"^speech:\s*([^,]+?)(?:\s*,\s*(?P<size>small|medium|large))?\s*$", re.IGNORECASE)
INPUT_ACTION_TAG = re.compile(r"^input:\s*text\s*,\s*(?P<variable>\w+)\s*$")

IMAGE_SIZES = ("small", "medium", "large")


def _normalise_colour(colour: Optional[str]) -> Optional[str]:
    if not colour:
        return None
    return colour if colour.startswith("#") else "#" + colour


def parse_characters(global_tags: list[str]) -> dict[str, StoryCharacter]:
    """
    Build the speaker registry of a story from its global tags.

    Done once per content load; the result maps character ids to characters.
    """
    characters = {}
    for tag in global_tags or []:
        match = CHARACTER_TAG.match(tag)
        if match:
            character_id = match.group(1).strip()
            name = match.group(2).strip()
        else:
            match = CHARACTER_TAG_LEGACY.match(tag)
            if not match:
                continue
            name = (match.group(1) or match.group(2)).strip()
            character_id = name
        characters[character_id] = StoryCharacter(
            id=character_id,
            name=name,
            image_url=match.group("url"),
            colour=_normalise_colour(match.group("colour"))
        )
    return characters


def parse_line_speech(line: StoryLine, characters: dict[str, StoryCharacter]) -> Optional[LineSpeech]:
    """Attribute a line to a character via a speech tag or a "Speaker: text" prefix."""
    text = line.text
    character = None
    image_size = "small"

    for tag in line.tags or []:
        match = SPEECH_TAG.match(tag)
        if match:
            character = characters.get(match.group(1).strip())
            if character and match.group("size"):
                image_size = match.group("size").lower()

    if not character:
        separator = text.find(":")
        if separator > 0:
            character = characters.get(text[:separator].strip())
            if character:
                text = text[separator + 1:].strip()

    if character:
        return LineSpeech(text=text, character=character, image_size=image_size)
    return None


def parse_default_button_style(global_tags: list[str]) -> str:
    for tag in global_tags or []:
        match = DEFAULT_BUTTON_STYLE_TAG.match(tag)
        if match:
            return match.group(1).lower()
    return ""


def parse_choice_button_style(choice: Choice) -> str:
    for tag in choice.tags or []:
        match = BUTTON_STYLE_TAG.match(tag)
        if match:
            return match.group(1).lower()
    return ""


def parse_choice_input_variable(choice: Choice) -> Optional[str]:
    """Name of the variable an input choice asks the player to fill, if any."""
    for tag in choice.tags or []:
        match = INPUT_ACTION_TAG.match(tag)
        if match:
            variable = match.group("variable")
            if not variable.isdigit():
                return variable
    return None


def parse_metadata(global_tags: list[str]) -> StoryMetadata:
    metadata = StoryMetadata()
    for tag in global_tags or []:
        match = TITLE_TAG.match(tag)
        if match:
            metadata.title = match.group(1).strip()
            continue
        match = AUTHOR_TAG.match(tag)
        if match:
            metadata.author = match.group(1).strip()
            continue
        match = TEASER_TAG.match(tag)
        if match:
            metadata.teaser = match.group(1).strip()
    return metadata


def has_tag(tags: list[str], name: str) -> bool:
    return any(tag.strip().lower() == name for tag in tags or [])
