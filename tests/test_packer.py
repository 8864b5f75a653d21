"""
Output Packer Tests - Story steps to chat messages.

Covers grouping of lines, size limits, pauses, standalone lines, speakers,
choice buttons, the end of a story and suggestions.

Run with: pytest tests/test_packer.py -v
"""
import copy

import pytest


def _step(lines=(), choices=(), **kwargs):
    from core.story_engine.story_types import Choice, StoryLine, StoryStep
    line_objects = [l if isinstance(l, StoryLine) else StoryLine(l) for l in lines]
    choice_objects = [c if isinstance(c, Choice) else Choice(i, c) for i, c in enumerate(choices)]
    return StoryStep(lines=line_objects, choices=choice_objects, **kwargs)


def _line(text, *tags):
    from core.story_engine.story_types import StoryLine
    return StoryLine(text, list(tags))


def _doctor(image_url="https://img.example/doc.png"):
    from core.story_engine.story_types import StoryCharacter
    return {"doc": StoryCharacter(id="doc", name="Doctor", image_url=image_url, colour="#112233")}


def _buttons(message):
    return [button for row in message.rows for button in row.buttons]


# =============================================================================
# Lines
# =============================================================================

class TestLineGrouping:
    """Lines share a message until something forces a new one."""

    def test_lines_are_joined(self):
        from core.story_engine.packer import TextMessage, pack
        messages = pack(_step(["One", "Two", "Three"]))
        assert messages == [TextMessage(content="One\nTwo\nThree")]

    def test_pause_starts_new_message_with_marker(self):
        from core.story_engine.packer import PauseMarker, TextMessage, pack
        messages = pack(_step(["One", _line("Two", "pause"), "Three"]))
        assert messages == [TextMessage("One"), PauseMarker(), TextMessage("Two\nThree")]

    def test_pause_on_first_line(self):
        from core.story_engine.packer import PauseMarker, pack
        messages = pack(_step([_line("One", "pause")]))
        assert isinstance(messages[0], PauseMarker)
        assert messages[1].content == "One"

    def test_standalone_line_gets_own_message(self):
        from core.story_engine.packer import pack
        messages = pack(_step(["A", _line("B", "standalone"), "C"]))
        assert [m.content for m in messages] == ["A", "B", "C"]

    def test_url_line_gets_own_message(self):
        from core.story_engine.packer import pack
        messages = pack(_step(["Look:", "https://img.example/map.png", "Nice map."]))
        assert [m.content for m in messages] == ["Look:", "https://img.example/map.png", "Nice map."]

    def test_empty_lines_produce_no_empty_message(self):
        from core.story_engine.packer import pack
        assert pack(_step([""])) == []


class TestSizeLimits:
    """Messages never exceed the platform limits."""

    def _limits(self):
        from core.story_engine.packer import PackLimits
        return PackLimits(message_limit=20, embed_limit=30)

    def test_joined_text_at_limit(self):
        from core.story_engine.packer import pack
        messages = pack(_step(["a" * 10, "b" * 9]), limits=self._limits())
        assert [m.content for m in messages] == ["a" * 10 + "\n" + "b" * 9]

    def test_joined_text_over_limit(self):
        from core.story_engine.packer import pack
        messages = pack(_step(["a" * 10, "b" * 10]), limits=self._limits())
        assert [m.content for m in messages] == ["a" * 10, "b" * 10]

    @pytest.mark.parametrize("length", [19, 20])
    def test_single_line_up_to_limit(self, length):
        from core.story_engine.packer import pack
        messages = pack(_step(["x" * length]), limits=self._limits())
        assert [m.content for m in messages] == ["x" * length]

    def test_single_line_over_limit_is_split(self):
        from core.story_engine.packer import pack
        messages = pack(_step(["x" * 21]), limits=self._limits())
        assert [m.content for m in messages] == ["x" * 20, "x"]

    def test_long_line_split_at_whitespace(self):
        from core.story_engine.packer import pack
        text = "the quick brown fox jumps over the lazy dog"
        messages = pack(_step([text]), limits=self._limits())
        assert all(len(m.content) <= 20 for m in messages)
        assert " ".join(m.content for m in messages) == text

    def test_rest_of_split_line_joins_next_line(self):
        from core.story_engine.packer import pack
        messages = pack(_step(["x" * 25, "end"]), limits=self._limits())
        assert [m.content for m in messages] == ["x" * 20, "xxxxx\nend"]

    def test_speech_uses_embed_limit(self):
        from core.story_engine.packer import pack
        messages = pack(_step(["doc: " + "y" * 30]), characters=_doctor(), limits=self._limits())
        assert [m.description for m in messages] == ["y" * 30]

    @pytest.mark.parametrize("length, expected", [
        (29, ["y" * 29]),
        (30, ["y" * 30]),
        (31, ["y" * 30, "y"]),
    ])
    def test_speech_around_embed_limit(self, length, expected):
        from core.story_engine.packer import EmbedMessage, pack
        messages = pack(_step(["doc: " + "y" * length]), characters=_doctor(), limits=self._limits())
        assert all(isinstance(m, EmbedMessage) for m in messages)
        assert all(len(m.description) <= 30 for m in messages)
        assert [m.description for m in messages] == expected

    @pytest.mark.parametrize("second, expected_count", [(14, 1), (15, 2)])
    def test_joined_speech_around_embed_limit(self, second, expected_count):
        from core.story_engine.packer import pack
        lines = ["doc: " + "a" * 15, "doc: " + "b" * second]
        messages = pack(_step(lines), characters=_doctor(), limits=self._limits())
        assert len(messages) == expected_count
        assert all(len(m.description) <= 30 for m in messages)
        assert "\n".join(m.description for m in messages) == "a" * 15 + "\n" + "b" * second


class TestSpeakers:
    """Lines of characters become embeds."""

    def test_speaker_change_splits_messages(self):
        from core.story_engine.packer import EmbedMessage, TextMessage, pack
        messages = pack(_step(["Narration", "doc: Hi", "doc: How are you?", "Back to narration"]),
                        characters=_doctor())
        assert isinstance(messages[0], TextMessage)
        assert isinstance(messages[1], EmbedMessage)
        assert messages[1].description == "Hi\nHow are you?"
        assert messages[1].author_name == "Doctor"
        assert messages[1].icon_url == "https://img.example/doc.png"
        assert messages[1].colour == "#112233"
        assert messages[2].content == "Back to narration"

    def test_image_sizes(self):
        from core.story_engine.packer import pack
        messages = pack(_step([
            _line("Medium", "speech: doc, medium"),
            _line("Large", "speech: doc, large"),
        ]), characters=_doctor())
        medium, large = messages
        assert (medium.title, medium.thumbnail_url, medium.author_name) == (
            "Doctor", "https://img.example/doc.png", None)
        assert (large.title, large.image_url) == ("Doctor", "https://img.example/doc.png")

    def test_size_without_image_falls_back_to_author(self):
        from core.story_engine.packer import pack
        messages = pack(_step([_line("Hi", "speech: doc, large")]), characters=_doctor(image_url=None))
        assert messages[0].author_name == "Doctor"
        assert messages[0].image_url is None

    def test_characters_default_to_step(self):
        from core.story_engine.packer import EmbedMessage, pack
        messages = pack(_step(["doc: Hi"], characters=_doctor()))
        assert isinstance(messages[0], EmbedMessage)


# =============================================================================
# Choices
# =============================================================================

class TestChoices:
    """Buttons on the last message."""

    def test_buttons_on_last_message(self):
        from core.story_engine.packer import pack
        messages = pack(_step(["Where to?"], ["Left", "Right"]))
        assert len(messages) == 1
        buttons = _buttons(messages[0])
        assert [(b.label, b.choice_index, b.action) for b in buttons] == [("Left", 0, "choice"), ("Right", 1, "choice")]
        assert all(b.style == "secondary" for b in buttons)

    def test_rows_of_five(self):
        from core.story_engine.packer import pack
        messages = pack(_step(["Pick"], [f"C{i}" for i in range(12)]))
        assert [len(row.buttons) for row in messages[0].rows] == [5, 5, 2]

    def test_overflow_is_cut_with_notice(self):
        from core.story_engine.packer import TOO_MANY_CHOICES_TEXT, pack
        messages = pack(_step(["Pick"], [f"C{i}" for i in range(27)]))
        assert len(messages[0].rows) == 5
        assert len(_buttons(messages[0])) == 25
        assert messages[-1].content == TOO_MANY_CHOICES_TEXT.format(choice_limit=25)

    def test_exactly_limit_has_no_notice(self):
        from core.story_engine.packer import pack
        messages = pack(_step(["Pick"], [f"C{i}" for i in range(25)]))
        assert len(messages) == 1
        assert len(_buttons(messages[0])) == 25

    def test_label_at_limit_is_kept(self):
        from core.story_engine.packer import pack
        messages = pack(_step(["Pick"], ["z" * 80]))
        assert _buttons(messages[0])[0].label == "z" * 80

    def test_long_label_switches_to_numbered_listing(self):
        from core.story_engine.packer import pack
        long_text = "z" * 81
        messages = pack(_step(["Pick"], [long_text, "Short"]))
        assert messages[0].content == "Pick"
        assert messages[0].rows == []
        assert messages[1].content == f"1. {long_text}\n2. Short"
        labels = [b.label for b in _buttons(messages[1])]
        assert len(labels[0]) == 80
        assert labels[0].endswith("…")
        assert labels[1] == "2. Short"

    def test_choices_without_lines_are_listed(self):
        from core.story_engine.packer import pack
        messages = pack(_step([], ["Left", "Right"]))
        assert messages[0].content == "1. Left\n2. Right"
        assert [b.label for b in _buttons(messages[0])] == ["1. Left", "2. Right"]

    def test_choices_after_pause_are_listed(self):
        from core.story_engine.packer import PauseMarker, pack
        messages = pack(_step([_line("", "pause")], ["Go"]))
        assert isinstance(messages[0], PauseMarker)
        assert messages[1].content == "1. Go"
        assert [b.label for b in _buttons(messages[1])] == ["1. Go"]

    def test_button_styles(self):
        from core.story_engine.packer import pack
        from core.story_engine.story_types import Choice
        step = _step(["Fight?"], [
            Choice(0, "Attack", ["button-style: danger"]),
            Choice(1, "style-primary: Talk"),
            Choice(2, "style-rainbow: Dance"),
            Choice(3, "Flee"),
        ], default_button_style="success")
        buttons = _buttons(pack(step)[0])
        assert [(b.label, b.style) for b in buttons] == [
            ("Attack", "danger"), ("Talk", "primary"), ("Dance", "success"), ("Flee", "success"),
        ]

    def test_input_choice(self):
        from core.story_engine.packer import pack
        from core.story_engine.story_types import Choice
        step = _step(["Who are you?"], [Choice(0, "Tell your name", ["input: text, name"])])
        button = _buttons(pack(step)[0])[0]
        assert button.action == "input"
        assert button.variable == "name"
        assert button.choice_index == 0


# =============================================================================
# End
# =============================================================================

class TestEnd:

    def _record(self, **kwargs):
        from core.storage import StoryRecord
        return StoryRecord(id=kwargs.pop("id", "story-1"), owner_id="owner-1", **kwargs)

    def test_play_again(self):
        from core.story_engine.packer import END_TEXT, PLAY_AGAIN_LABEL, pack
        messages = pack(_step(["Bye."], is_end=True, story_record=self._record()))
        assert messages[0].content == "Bye."
        end = messages[1]
        assert end.description == END_TEXT
        button = _buttons(end)[0]
        assert (button.label, button.action, button.story_id) == (PLAY_AGAIN_LABEL, "start", "story-1")

    def test_suggestions(self):
        from core.storage import SuggestionData
        from core.story_engine.packer import START_LABEL, SUGGESTION_TEXT, pack
        suggested = self._record(id="story-2", title="The Sequel", author="Tess", teaser="More caves.")
        step = _step(["Bye."], is_end=True, story_record=self._record(), suggestions=[
            SuggestionData(suggested_story=suggested),
            SuggestionData(suggested_story=self._record(id="story-3"), message="Also good"),
        ])
        messages = pack(step)
        first, second = messages[2], messages[3]
        assert first.description == SUGGESTION_TEXT + "\n\nMore caves."
        assert first.title == "The Sequel"
        assert first.footer == "by Tess"
        assert (_buttons(first)[0].label, _buttons(first)[0].story_id) == (START_LABEL, "story-2")
        assert second.description == "Also good"
        assert second.title is None
        assert second.footer is None


# =============================================================================
# Purity & serialization
# =============================================================================

class TestPurity:

    def test_same_input_same_output(self):
        from core.story_engine.packer import pack
        step = _step(["One", _line("Two", "pause"), "doc: Three"], ["A", "B"], characters=_doctor())
        before = copy.deepcopy(step)
        assert pack(step) == pack(step)
        assert step == before

    def test_to_dict(self):
        from core.story_engine.packer import PauseMarker, pack
        messages = pack(_step(["Hi"], ["Go"]))
        data = messages[0].to_dict()
        assert data["type"] == "text"
        assert data["content"] == "Hi"
        assert data["rows"][0]["buttons"][0]["label"] == "Go"
        assert PauseMarker().to_dict() == {"type": "pause"}
