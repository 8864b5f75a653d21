"""Shared pytest fixtures for Storybot tests."""
import sys
import json
from pathlib import Path

# Add project root to path BEFORE any other imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import pytest


class RecordingDispatcher:
    """Stands in for NotificationDispatcher: records instead of delivering."""

    def __init__(self):
        self.sent = []

    def dispatch(self, recipient_id, notification):
        self.sent.append((recipient_id, notification))
        return True

    def of_type(self, notification_type):
        return [(r, n) for r, n in self.sent if n.get("type") == notification_type]


@pytest.fixture
def fork_content():
    """Two lines, then the choices Left and Right."""
    return json.dumps({
        "global_tags": ["title: The Fork", "author: Tess", "teaser: Pick a tunnel.", "character: doc, Doctor"],
        "variables": {"visits": 0, "name": ""},
        "knots": {
            "start": [
                {"text": "You wake up in a cave."},
                {"text": "Two tunnels lead away."},
                {"choice": "Left", "goto": "left"},
                {"choice": "Right", "goto": "right"}
            ],
            "left": [
                {"text": "The left tunnel is dark."},
                {"goto": "END"}
            ],
            "right": [
                {"set": {"visits": "+1"}},
                {"text": "Daylight. You have been here {visits} times."},
                {"choice": "Go back", "goto": "start"},
                {"choice": "Leave", "goto": "END"}
            ]
        }
    })


@pytest.fixture
def loop_content():
    """Diverts back and forth forever without producing output."""
    return json.dumps({
        "global_tags": ["title: Forever"],
        "knots": {
            "a": [{"goto": "b"}],
            "b": [{"goto": "a"}]
        }
    })


@pytest.fixture
def database(tmp_path):
    from core.storage import Database
    return Database(tmp_path / "storybot.db")


@pytest.fixture
def story_store(database):
    from core.storage import StoryStore
    return StoryStore(database)


@pytest.fixture
def content_store(tmp_path, story_store):
    from core.storage import ContentStore
    return ContentStore(tmp_path / "stories", story_store)


@pytest.fixture
def session_store(database):
    from core.storage import SessionStore
    return SessionStore(database)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def make_story(story_store, content_store):
    """Create a stored story from content. Returns its id."""
    def _make(content, owner_id="owner-1", title="Test Story"):
        story_id = story_store.add_story(owner_id, title)
        content_store.write_story_content(story_id, content)
        return story_id
    return _make


@pytest.fixture
def make_engine(story_store, content_store, session_store, dispatcher):
    """Build a StoryEngine on the temporary stores, optionally with a fake stepper."""
    def _make(**kwargs):
        from core.story_engine import StoryEngine
        return StoryEngine(story_store, content_store, session_store, dispatcher, **kwargs)
    return _make


@pytest.fixture
def engine(make_engine):
    return make_engine()
