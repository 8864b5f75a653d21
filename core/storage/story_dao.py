# core/storage/story_dao.py
"""
Data access for stories, their script files and the current plays of users.

All methods let database and file system errors propagate; the story engine
decides which of them are temporary and which are fatal.
"""

import logging
import re
import sqlite3
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from .database import Database

logger = logging.getLogger(__name__)

_STORY_COLUMNS = (
    "s.id, s.owner_id, s.title, s.author, s.teaser, s.status, s.last_changed_timestamp, "
    "s.reported_ink_error, s.reported_ink_warning, s.reported_maximum_choice_number_exceeded, "
    "s.reported_potential_loop_detected, s.time_budget_exceeded_count"
)
_NOW = "CAST(strftime('%s', 'now') AS INTEGER)"
_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]+$")


class StoryStatus(str, Enum):
    DRAFT = "Draft"
    TESTING = "Testing"
    PUBLISHED = "Published"
    UNLISTED = "Unlisted"
    TO_BE_DELETED = "ToBeDeleted"


class OwnerReportType(str, Enum):
    INK_ERROR = "InkError"
    INK_WARNING = "InkWarning"
    MAXIMUM_CHOICE_NUMBER_EXCEEDED = "MaximumChoiceNumberExceeded"
    POTENTIAL_LOOP_DETECTED = "PotentialLoopDetected"


_REPORT_COLUMNS = {
    OwnerReportType.INK_ERROR: "reported_ink_error",
    OwnerReportType.INK_WARNING: "reported_ink_warning",
    OwnerReportType.MAXIMUM_CHOICE_NUMBER_EXCEEDED: "reported_maximum_choice_number_exceeded",
    OwnerReportType.POTENTIAL_LOOP_DETECTED: "reported_potential_loop_detected",
}


class StoryContentNotFound(FileNotFoundError):
    """No script file exists for a story."""


@dataclass
class StoryRecord:
    id: str
    owner_id: str
    title: Optional[str] = None
    author: str = ""
    teaser: str = ""
    status: str = StoryStatus.DRAFT.value
    last_changed_timestamp: int = 0
    reported_ink_error: bool = False
    reported_ink_warning: bool = False
    reported_maximum_choice_number_exceeded: bool = False
    reported_potential_loop_detected: bool = False
    time_budget_exceeded_count: int = 0

    @classmethod
    def from_row(cls, row) -> "StoryRecord":
        return cls(
            id=row["id"],
            owner_id=row["owner_id"],
            title=row["title"],
            author=row["author"],
            teaser=row["teaser"],
            status=row["status"],
            last_changed_timestamp=row["last_changed_timestamp"],
            reported_ink_error=bool(row["reported_ink_error"]),
            reported_ink_warning=bool(row["reported_ink_warning"]),
            reported_maximum_choice_number_exceeded=bool(row["reported_maximum_choice_number_exceeded"]),
            reported_potential_loop_detected=bool(row["reported_potential_loop_detected"]),
            time_budget_exceeded_count=row["time_budget_exceeded_count"],
        )

    def has_issue_been_reported(self, report_type: OwnerReportType) -> bool:
        return getattr(self, _REPORT_COLUMNS[report_type])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "title": self.title,
            "author": self.author,
            "teaser": self.teaser,
            "status": self.status,
        }


@dataclass
class StoryPlay:
    story_record: StoryRecord
    state_json: Optional[str] = None


@dataclass
class SuggestionData:
    suggested_story: StoryRecord
    message: Optional[str] = None


class StoryStore:
    """Story records with their issue flags, loop counter and suggestions."""

    def __init__(self, db: Database):
        self._db = db

    def add_story(self, owner_id: str, title: Optional[str] = None, author: str = "", teaser: str = "",
                  status: StoryStatus = StoryStatus.DRAFT) -> str:
        for _ in range(10):
            story_id = str(uuid.uuid4())
            try:
                with self._db.connection() as conn:
                    conn.execute(
                        "INSERT INTO story(id, owner_id, title, author, teaser, status, last_changed_timestamp) "
                        f"VALUES(?, ?, ?, ?, ?, ?, {_NOW})",
                        (story_id, owner_id, title or None, author, teaser, StoryStatus(status).value)
                    )
                return story_id
            except sqlite3.IntegrityError:
                logger.warning(f"Story id collision for {story_id}, retrying")
        raise RuntimeError("Too many attempts to generate unique id for story, aborting creation.")

    def get_story(self, story_id: str) -> Optional[StoryRecord]:
        with self._db.connection() as conn:
            row = conn.execute(f"SELECT {_STORY_COLUMNS} FROM story s WHERE s.id = ?", (story_id,)).fetchone()
        return StoryRecord.from_row(row) if row else None

    def get_stories(self, owner_id: Optional[str] = None) -> list[StoryRecord]:
        query = f"SELECT {_STORY_COLUMNS} FROM story s WHERE s.status != ?"
        params: list = [StoryStatus.TO_BE_DELETED.value]
        if owner_id is not None:
            query += " AND s.owner_id = ?"
            params.append(owner_id)
        with self._db.connection() as conn:
            rows = conn.execute(query + " ORDER BY s.title", params).fetchall()
        return [StoryRecord.from_row(row) for row in rows]

    def change_story_metadata(self, story_id: str, title: Optional[str], author: str = "", teaser: str = "") -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute(
                f"UPDATE story SET title = ?, author = ?, teaser = ?, last_changed_timestamp = {_NOW} WHERE id = ?",
                (title or None, author, teaser, story_id)
            )
        return cursor.rowcount > 0

    def set_story_status(self, story_id: str, status: StoryStatus,
                         previous_expected_status: Optional[StoryStatus] = None) -> bool:
        """Change the status, optionally only if the story is still in previous_expected_status."""
        query = f"UPDATE story SET status = ?, last_changed_timestamp = {_NOW} WHERE id = ?"
        params = [StoryStatus(status).value, story_id]
        if previous_expected_status is not None:
            query += " AND status = ?"
            params.append(StoryStatus(previous_expected_status).value)
        with self._db.connection() as conn:
            cursor = conn.execute(query, params)
        return cursor.rowcount > 0

    def delete_story(self, story_id: str) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute("DELETE FROM story WHERE id = ?", (story_id,))
        return cursor.rowcount > 0

    # ==================== ISSUE FLAGS ====================

    def mark_issue_as_reported(self, story_id: str, report_type: OwnerReportType) -> bool:
        """
        Claim the report flag of an issue class.

        Returns True only for the call that flipped the flag, so exactly one
        caller gets to send the notification.
        """
        column = _REPORT_COLUMNS[OwnerReportType(report_type)]
        with self._db.connection() as conn:
            cursor = conn.execute(
                f"UPDATE story SET {column} = 1, last_changed_timestamp = {_NOW} WHERE id = ? AND {column} = 0",
                (story_id,)
            )
        return cursor.rowcount > 0

    def increase_time_budget_exceeded_counter(self, story_id: str) -> int:
        """Increment the loop counter and return its new value (0 if the story is gone)."""
        with self._db.connection() as conn:
            conn.execute(
                "UPDATE story SET time_budget_exceeded_count = time_budget_exceeded_count + 1, "
                f"last_changed_timestamp = {_NOW} WHERE id = ?",
                (story_id,)
            )
            row = conn.execute("SELECT time_budget_exceeded_count FROM story WHERE id = ?", (story_id,)).fetchone()
        return row[0] if row else 0

    def clear_warning_flags_and_counters(self, story_id: str) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute(
                "UPDATE story SET reported_ink_error = 0, reported_ink_warning = 0, "
                "reported_maximum_choice_number_exceeded = 0, reported_potential_loop_detected = 0, "
                f"time_budget_exceeded_count = 0, last_changed_timestamp = {_NOW} WHERE id = ?",
                (story_id,)
            )
        return cursor.rowcount > 0

    # ==================== SUGGESTIONS ====================

    def add_or_edit_story_suggestion(self, source_story_id: str, target_story_id: str, message: Optional[str] = None):
        if not self.get_story(source_story_id) or not self.get_story(target_story_id):
            raise ValueError("Both stories must exist to link them.")
        with self._db.connection() as conn:
            conn.execute(
                "INSERT INTO story_suggestion(source_story_id, target_story_id, message) VALUES(?, ?, ?) "
                "ON CONFLICT(source_story_id, target_story_id) DO UPDATE SET message = excluded.message",
                (source_story_id, target_story_id, message)
            )

    def get_story_suggestions(self, story_id: str) -> list[SuggestionData]:
        with self._db.connection() as conn:
            rows = conn.execute(
                f"SELECT {_STORY_COLUMNS}, g.message FROM story s "
                "JOIN story_suggestion g ON s.id = g.target_story_id WHERE g.source_story_id = ? ORDER BY s.title",
                (story_id,)
            ).fetchall()
        return [SuggestionData(suggested_story=StoryRecord.from_row(row), message=row["message"]) for row in rows]

    def delete_story_suggestion(self, source_story_id: str, target_story_id: str) -> int:
        with self._db.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM story_suggestion WHERE source_story_id = ? AND target_story_id = ?",
                (source_story_id, target_story_id)
            )
        return cursor.rowcount


class ContentStore:
    """Story scripts stored as one file per story."""

    def __init__(self, files_dir, story_store: StoryStore):
        self.files_dir = Path(files_dir)
        self.files_dir.mkdir(parents=True, exist_ok=True)
        self._story_store = story_store

    def _get_story_file_path(self, story_id: str) -> Path:
        if not _SAFE_ID.match(story_id or ""):
            raise StoryContentNotFound(f"Invalid story id: {story_id!r}")
        return self.files_dir / f"{story_id}.json"

    def load_story_content(self, story_id: str) -> str:
        path = self._get_story_file_path(story_id)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise StoryContentNotFound(f"No content for story {story_id}") from e

    def write_story_content(self, story_id: str, content: str):
        self._get_story_file_path(story_id).write_text(content, encoding="utf-8")

    def replace_story_content(self, story_id: str, content: str):
        """Replace the script wholesale; resets all issue flags and the loop counter."""
        self.write_story_content(story_id, content)
        self._story_store.clear_warning_flags_and_counters(story_id)

    def delete_story_content(self, story_id: str):
        try:
            self._get_story_file_path(story_id).unlink()
        except FileNotFoundError:
            logger.debug(f"No content file to delete for story {story_id}")


class SessionStore:
    """The one current story play per user, with its saved interpreter state."""

    def __init__(self, db: Database):
        self._db = db

    def get_current_story_play(self, user_id: str) -> Optional[StoryPlay]:
        with self._db.connection() as conn:
            row = conn.execute(
                f"SELECT {_STORY_COLUMNS}, p.state_json FROM story s "
                "JOIN story_play p ON s.id = p.story_id WHERE p.user_id = ?",
                (user_id,)
            ).fetchone()
        if row:
            return StoryPlay(story_record=StoryRecord.from_row(row), state_json=row["state_json"])
        return None

    def has_current_story_play(self, user_id: str) -> bool:
        with self._db.connection() as conn:
            row = conn.execute("SELECT story_id FROM story_play WHERE user_id = ?", (user_id,)).fetchone()
        return row is not None

    def save_current_story_play(self, user_id: str, story_id: str):
        with self._db.connection() as conn:
            conn.execute("INSERT INTO story_play(user_id, story_id) VALUES(?, ?)", (user_id, story_id))

    def clear_current_story_play(self, user_id: str) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute("DELETE FROM story_play WHERE user_id = ?", (user_id,))
        return cursor.rowcount > 0

    def save_story_play_state(self, user_id: str, state_json: str):
        with self._db.connection() as conn:
            conn.execute("UPDATE story_play SET state_json = ? WHERE user_id = ?", (state_json, user_id))

    def reset_story_play_state(self, user_id: str):
        with self._db.connection() as conn:
            conn.execute("UPDATE story_play SET state_json = NULL WHERE user_id = ?", (user_id,))

    def get_current_players(self, story_id: str) -> list[str]:
        with self._db.connection() as conn:
            rows = conn.execute("SELECT user_id FROM story_play WHERE story_id = ?", (story_id,)).fetchall()
        return [row["user_id"] for row in rows]
