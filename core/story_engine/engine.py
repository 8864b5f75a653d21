# core/story_engine/engine.py
"""
Story Engine - Runs stories for users, one current story play per user.

Loads story content and saved state, advances the story by one bounded step,
saves the new state and reports problems with the story to its owner. Does
not concern itself with how a step is shown to the user (see packer.py).

Session operations return a StoryOutcome. StoryEngineError is only used
internally to abort an operation and never escapes start/continue/restart/
get_state. Callers must serialize operations for the same user.
"""

import logging
import sqlite3
from typing import Callable, Optional

from core.storage import OwnerReportType, StoryContentNotFound, StoryRecord, StoryStatus
from .extractor import parse_characters, parse_default_button_style, parse_metadata
from .interpreter import InvalidChoiceError, Story, StoryParseError, StoryStateError
from .issues import IssueDetector, MAX_LAST_LINES_TO_REPORT, POTENTIAL_LOOP_THRESHOLD
from .stepper import run_story_step
from .story_types import (
    StepData, StoryEngineError, StoryErrorType, StoryLine, StoryOutcome, StoryProbe, StoryStep,
)

logger = logging.getLogger(__name__)

# Time one step of a story may take before it is interrupted.
# Too large and other requests lag behind, too small and busy servers interrupt stories that don't loop.
TIME_BUDGET_IN_MS = 300

# Storage and file system errors that may go away on their own
TRANSIENT_ERRORS = (OSError, sqlite3.Error)


class StoryEngine:
    """Per-user story sessions on top of the content, session and story stores."""

    def __init__(self, story_store, content_store, session_store, dispatcher,
                 time_budget_ms: float = TIME_BUDGET_IN_MS,
                 loop_threshold: int = POTENTIAL_LOOP_THRESHOLD,
                 max_last_lines: int = MAX_LAST_LINES_TO_REPORT,
                 choice_limit: int = 25,
                 report_part_limit: int = 4096,
                 stepper: Callable[[Story, float], StepData] = run_story_step):
        self.story_store = story_store
        self.content_store = content_store
        self.session_store = session_store
        self.dispatcher = dispatcher
        self.time_budget_ms = time_budget_ms
        self.stepper = stepper
        self.issues = IssueDetector(story_store, dispatcher, loop_threshold, max_last_lines,
                                    choice_limit, report_part_limit)
        logger.info(f"StoryEngine ready (budget={time_budget_ms}ms, loop threshold={loop_threshold})")

    # ==================== SESSION OPERATIONS ====================

    def start(self, user_id: str, story_id: str) -> StoryOutcome:
        return self._run(self._start, user_id, story_id)

    def continue_story(self, user_id: str, choice_index: int, variable_bindings=()) -> StoryOutcome:
        """
        Apply a choice and advance the story.

        Args:
            choice_index: Index of one of the choices offered by the last step
            variable_bindings: (name, value) pairs set before the choice, e.g. text typed into an input choice
        """
        return self._run(self._continue, user_id, choice_index, variable_bindings)

    def restart(self, user_id: str) -> StoryOutcome:
        return self._run(self._restart, user_id)

    def get_state(self, user_id: str) -> StoryOutcome:
        return self._run(self._get_state, user_id)

    def stop(self, user_id: str) -> bool:
        """End the current story play of a user. Returns whether there was one."""
        stopped = self.session_store.clear_current_story_play(user_id)
        if stopped:
            logger.info(f"User {user_id} stopped their story")
        return stopped

    def _run(self, operation, *args) -> StoryOutcome:
        try:
            return StoryOutcome(step=operation(*args))
        except StoryEngineError as e:
            logger.debug(f"{operation.__name__.lstrip('_')} for user {args[0]}: {e.story_error_type.value}")
            return StoryOutcome(step=e.step, error=e.story_error_type)

    def _start(self, user_id: str, story_id: str) -> StoryStep:
        try:
            if self.session_store.has_current_story_play(user_id):
                raise StoryEngineError(StoryErrorType.ALREADY_PLAYING_DIFFERENT_STORY)
            record = self.story_store.get_story(story_id)
        except sqlite3.Error as e:
            logger.error(f"Failed to look up story {story_id} for user {user_id}: {e}")
            raise StoryEngineError(StoryErrorType.STORY_NOT_STARTABLE)

        if record is None or record.status == StoryStatus.TO_BE_DELETED.value:
            raise StoryEngineError(StoryErrorType.STORY_NOT_FOUND)

        # Looping stories stay blocked until their content is replaced, to spare the CPU
        if record.reported_potential_loop_detected:
            raise StoryEngineError(StoryErrorType.STORY_NOT_STARTABLE)

        try:
            story = self._load_story(record.id)
        except StoryContentNotFound:
            raise StoryEngineError(StoryErrorType.STORY_NOT_FOUND)
        except StoryParseError as e:
            # Normally rejected on upload, but content can predate a stricter interpreter
            self.issues.report(record, OwnerReportType.INK_ERROR, str(e))
            raise StoryEngineError(StoryErrorType.STORY_NOT_STARTABLE)
        except TRANSIENT_ERRORS as e:
            logger.error(f"Failed to load story {story_id}: {e}")
            raise StoryEngineError(StoryErrorType.STORY_NOT_STARTABLE)

        try:
            self.session_store.save_current_story_play(user_id, story_id)
        except sqlite3.IntegrityError:
            raise StoryEngineError(StoryErrorType.ALREADY_PLAYING_DIFFERENT_STORY)
        except sqlite3.Error as e:
            logger.error(f"Failed to save current story for user {user_id}: {e}")
            raise StoryEngineError(StoryErrorType.STORY_NOT_STARTABLE)

        logger.info(f"User {user_id} started story {story_id}")
        # On TIME_BUDGET_EXCEEDED the play stays, the user can retry with restart
        return self._story_step(user_id, story, record)

    def _continue(self, user_id: str, choice_index: int, variable_bindings) -> StoryStep:
        story, record, _ = self._load_current_story(user_id)
        try:
            for name, value in variable_bindings:
                story.set_variable(name, value)
            story.choose_choice_index(choice_index)
        except (InvalidChoiceError, KeyError) as e:
            # Not aborting the story, the user probably clicked an old button
            logger.debug(f"Invalid choice {choice_index} by user {user_id}: {e}")
            raise StoryEngineError(StoryErrorType.INVALID_CHOICE)
        return self._story_step(user_id, story, record)

    def _restart(self, user_id: str) -> StoryStep:
        try:
            self.session_store.reset_story_play_state(user_id)
        except sqlite3.Error as e:
            logger.error(f"Failed to reset story play state for user {user_id}: {e}")
            raise StoryEngineError(StoryErrorType.COULD_NOT_SAVE_STATE)
        story, record, _ = self._load_current_story(user_id)
        logger.info(f"User {user_id} restarted story {record.id}")
        return self._story_step(user_id, story, record)

    def _get_state(self, user_id: str) -> StoryStep:
        story, record, restored = self._load_current_story(user_id)
        if not restored:
            # No step has completed since start or restart, nothing to show yet
            raise StoryEngineError(StoryErrorType.TIME_BUDGET_EXCEEDED)
        if story.has_error:
            # Already reported when the error happened
            raise StoryEngineError(StoryErrorType.STORY_NOT_CONTINUEABLE)
        step_data = StepData(
            lines=[StoryLine(text=story.current_text, tags=story.current_tags)],
            choices=story.current_choices,
        )
        return self._enhance(step_data, story, record)

    # ==================== LOADING ====================

    def _load_story(self, story_id: str) -> Story:
        return Story(self.content_store.load_story_content(story_id))

    def _load_current_story(self, user_id: str) -> tuple[Story, StoryRecord, bool]:
        """
        Rebuild the interpreter of the current play of a user.

        Returns the story, its record and whether a saved snapshot was restored.
        Content or state the interpreter rejects ends the play. Storage errors
        leave it alone since they might be temporary.
        """
        try:
            play = self.session_store.get_current_story_play(user_id)
            if play is None:
                raise StoryEngineError(StoryErrorType.STORY_NOT_FOUND)
            story = self._load_story(play.story_record.id)
            if play.state_json is not None:
                story.state.load_json(play.state_json)
        except (StoryParseError, StoryStateError) as e:
            logger.warning(f"Story play of user {user_id} cannot be restored, ending it: {e}")
            self._clear_play(user_id)
            raise StoryEngineError(StoryErrorType.STORY_NOT_CONTINUEABLE)
        except TRANSIENT_ERRORS as e:
            logger.error(f"Failed to load current story for user {user_id}: {e}")
            raise StoryEngineError(StoryErrorType.TEMPORARY_PROBLEM)
        return story, play.story_record, play.state_json is not None

    # ==================== STEPPING ====================

    def _story_step(self, user_id: str, story: Story, record: StoryRecord) -> StoryStep:
        step_data = None
        failed = False
        try:
            step_data = self.stepper(story, self.time_budget_ms)
        except Exception as e:
            logger.error(f"Unexpected error while running step of story {record.id}: {e}", exc_info=True)
            failed = True

        if step_data is not None and not step_data.complete and not step_data.errors:
            if self.issues.register_incomplete_step(record, step_data.lines):
                # Handled like a story error: the play ends
                failed = True
            else:
                raise StoryEngineError(StoryErrorType.TIME_BUDGET_EXCEEDED)

        if failed or step_data.errors:
            if step_data is not None and step_data.errors:
                self.issues.report(record, OwnerReportType.INK_ERROR, "\n".join(step_data.errors), step_data.lines)
            self._clear_play(user_id)
            raise StoryEngineError(StoryErrorType.STORY_NOT_CONTINUEABLE)

        self.issues.check_step(record, step_data)

        step = self._enhance(step_data, story, record)
        try:
            self.session_store.save_story_play_state(user_id, story.state.to_json())
        except sqlite3.Error as e:
            logger.error(f"Failed to save story play state for user {user_id}: {e}")
            raise StoryEngineError(StoryErrorType.COULD_NOT_SAVE_STATE, step=step)

        if not step.choices:
            step.is_end = True
            self._clear_play(user_id)
            step.suggestions = self._fetch_suggestions(record.id)
            logger.info(f"User {user_id} finished story {record.id}")
        return step

    def _enhance(self, step_data: StepData, story: Story, record: StoryRecord) -> StoryStep:
        return StoryStep.from_step_data(
            step_data,
            story_record=record,
            characters=parse_characters(story.global_tags),
            default_button_style=parse_default_button_style(story.global_tags),
            variables_state=story.variables_state,
        )

    def _clear_play(self, user_id: str):
        try:
            self.session_store.clear_current_story_play(user_id)
        except sqlite3.Error as e:
            logger.error(f"Story play could not be cleared for user {user_id}: {e}")

    def _fetch_suggestions(self, story_id: str) -> list:
        try:
            return self.story_store.get_story_suggestions(story_id)
        except sqlite3.Error as e:
            logger.error(f"Failed to fetch suggestions for story {story_id}, ignoring: {e}")
            return []

    # ==================== CONTENT ====================

    def probe(self, content) -> StoryProbe:
        """
        Run the first step of story content without touching any stored state.

        Raises StoryParseError for invalid content and StoryEngineError(TIME_BUDGET_EXCEEDED)
        if the first step does not finish in time.
        """
        story = Story(content)
        step_data = self.stepper(story, self.time_budget_ms)
        if not step_data.complete and not step_data.errors:
            raise StoryEngineError(StoryErrorType.TIME_BUDGET_EXCEEDED)
        return StoryProbe(step_data=step_data, metadata=parse_metadata(story.global_tags))

    def create_story(self, owner_id: str, content) -> tuple[str, StoryProbe]:
        """Probe content and store it as a new draft story. Returns (story_id, probe)."""
        story_probe = self.probe(content)
        metadata = story_probe.metadata
        story_id = self.story_store.add_story(owner_id, metadata.title, metadata.author, metadata.teaser)
        self.content_store.write_story_content(story_id, _as_text(content))
        logger.info(f"Owner {owner_id} created story {story_id} ('{metadata.title}')")
        return story_id, story_probe

    def replace_story_content(self, story_id: str, content) -> StoryProbe:
        """
        Probe and store new content for an existing story.

        Resets the issue flags and the loop counter, then stops all current
        plays of the story (their saved state belongs to the old content) and
        informs the players.
        """
        record = self.story_store.get_story(story_id)
        if record is None:
            raise StoryEngineError(StoryErrorType.STORY_NOT_FOUND)

        story_probe = self.probe(content)
        metadata = story_probe.metadata
        self.content_store.replace_story_content(story_id, _as_text(content))
        self.story_store.change_story_metadata(story_id, metadata.title, metadata.author, metadata.teaser)
        logger.info(f"Replaced content of story {story_id}")

        record = self.story_store.get_story(story_id) or record
        self.stop_story_plays_and_inform_players(record)
        return story_probe

    # ==================== LIFECYCLE ====================

    def set_story_status(self, story_id: str, status, previous_expected_status=None) -> StoryRecord:
        """
        Change the status of a story, e.g. to publish it or to undo a deletion.

        With previous_expected_status the change only happens if the story is
        currently in that status. Moving a story to ToBeDeleted stops its plays.
        Raises StoryEngineError(STORY_NOT_FOUND) if nothing was changed.
        """
        status = StoryStatus(status)
        if status == StoryStatus.TO_BE_DELETED:
            record = self._get_existing_story(story_id)
            if previous_expected_status is not None and record.status != StoryStatus(previous_expected_status).value:
                raise StoryEngineError(StoryErrorType.STORY_NOT_FOUND)
            self._mark_story_for_deletion(record)
            return self.story_store.get_story(story_id) or record

        if not self.story_store.set_story_status(story_id, status, previous_expected_status):
            raise StoryEngineError(StoryErrorType.STORY_NOT_FOUND)
        logger.info(f"Story {story_id} is now {status.value}")
        return self.story_store.get_story(story_id)

    def delete_story(self, story_id: str) -> bool:
        """
        Delete a story, its content and its plays.

        Published stories are only marked for deletion so the owner can undo it
        by setting the previous status again. Returns True if the story is gone
        and False if it was marked.
        """
        record = self._get_existing_story(story_id)
        if record.status == StoryStatus.PUBLISHED.value:
            self._mark_story_for_deletion(record)
            return False

        self.stop_story_plays_and_inform_players(record, removed=True)
        self.story_store.delete_story(story_id)
        self.content_store.delete_story_content(story_id)
        logger.info(f"Deleted story {story_id}")
        return True

    def _get_existing_story(self, story_id: str) -> StoryRecord:
        record = self.story_store.get_story(story_id)
        if record is None:
            raise StoryEngineError(StoryErrorType.STORY_NOT_FOUND)
        return record

    def _mark_story_for_deletion(self, record: StoryRecord):
        self.story_store.set_story_status(record.id, StoryStatus.TO_BE_DELETED)
        self.stop_story_plays_and_inform_players(record, removed=True)
        logger.info(f"Story {record.id} marked for deletion")

    def stop_story_plays_and_inform_players(self, record: StoryRecord, removed: bool = False) -> int:
        """
        Stop every current play of a story. Returns the number of plays stopped.

        Players of a story that was updated rather than removed get a button to
        start it again.
        """
        try:
            players = self.session_store.get_current_players(record.id)
        except sqlite3.Error as e:
            logger.error(f"Failed to look up current players of story {record.id}: {e}")
            return 0

        stopped = 0
        for user_id in players:
            try:
                if not self.session_store.clear_current_story_play(user_id):
                    continue
            except sqlite3.Error as e:
                logger.error(f"Failed to stop story play of user {user_id} for story {record.id}: {e}")
                continue
            stopped += 1
            title = record.title or record.id
            if removed:
                description = f"The story \"{title}\" was removed and your current play of it was stopped."
                buttons = []
            else:
                description = (f"The story \"{title}\" was updated and your current play of it was stopped. "
                               "You can start it again to play the new version.")
                buttons = [{"label": "Start again", "style": "success", "action": "start", "story_id": record.id}]
            self.dispatcher.dispatch(user_id, {
                "type": "story_stopped",
                "story_id": record.id,
                "description": description,
                "buttons": buttons,
            })
        if stopped:
            logger.info(f"Stopped {stopped} play(s) of story {record.id}")
        return stopped


def _as_text(content) -> str:
    return content.decode("utf-8") if isinstance(content, bytes) else content
