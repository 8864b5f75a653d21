# core/storage/database.py
"""SQLite connection handling and schema for the story tables."""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS story (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    title TEXT,
    author TEXT NOT NULL DEFAULT '',
    teaser TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'Draft',
    last_changed_timestamp INTEGER NOT NULL,
    reported_ink_error INTEGER NOT NULL DEFAULT 0,
    reported_ink_warning INTEGER NOT NULL DEFAULT 0,
    reported_maximum_choice_number_exceeded INTEGER NOT NULL DEFAULT 0,
    reported_potential_loop_detected INTEGER NOT NULL DEFAULT 0,
    time_budget_exceeded_count INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS story_play (
    user_id TEXT PRIMARY KEY,
    story_id TEXT NOT NULL REFERENCES story(id) ON DELETE CASCADE,
    state_json TEXT
);

CREATE INDEX IF NOT EXISTS idx_story_play_story ON story_play(story_id);

CREATE TABLE IF NOT EXISTS story_suggestion (
    source_story_id TEXT NOT NULL REFERENCES story(id) ON DELETE CASCADE,
    target_story_id TEXT NOT NULL REFERENCES story(id) ON DELETE CASCADE,
    message TEXT,
    PRIMARY KEY (source_story_id, target_story_id)
);
"""


class Database:
    """Opens short-lived connections to one SQLite file and owns its schema."""

    def __init__(self, db_path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection with WAL mode."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Connection scoped to one transaction: commit on success, rollback on error."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self):
        with self.connection() as conn:
            conn.executescript(SCHEMA)
        logger.debug(f"Story database ready at {self.db_path}")
