# core/story_engine/text_utils.py
"""Text helpers for fitting story output into size-limited chat messages."""

ELLIPSIS = "…"


def chunk(items: list, chunk_size: int) -> list[list]:
    if chunk_size <= 0:
        return []
    return [items[i:i + chunk_size] for i in range(0, len(items), chunk_size)]


def trim_text(text: str, max_length: int) -> str:
    """Shorten text to max_length characters, marking the cut with an ellipsis."""
    if max_length < 1:
        return ""
    if len(text) <= max_length:
        return text
    return text[:max_length - 1] + ELLIPSIS


def _find_break(text: str, max_length: int) -> int:
    # The break character itself is dropped, so it may sit right after the limit.
    window = text[:max_length + 1]
    pos = window.rfind("\n")
    if pos >= 0:
        return pos
    for i in range(len(window) - 1, -1, -1):
        if window[i].isspace():
            return i
    return -1


def split_text_at_whitespace(text: str, max_length: int) -> list[str]:
    """
    Break text into parts of at most max_length characters.

    Prefers to break at line breaks, then at other whitespace, and cuts hard
    inside a word only if a part contains no whitespace at all. The whitespace
    a part is broken at is dropped, as is leading whitespace of later parts.
    """
    if max_length < 1:
        return []

    parts = []
    rest = text
    while len(rest) > max_length:
        pos = _find_break(rest, max_length)
        if pos < 0:
            parts.append(rest[:max_length])
            rest = rest[max_length:]
        else:
            if pos > 0:
                parts.append(rest[:pos])
            rest = rest[pos + 1:]
        if parts:
            rest = rest.lstrip()
    if rest:
        parts.append(rest)
    return parts


def contains_url(text: str) -> bool:
    return "http://" in text or "https://" in text
