# core/story_engine/issues.py
"""
Issue Detector - Classifies step outcomes and reports story problems to owners.

Each issue class is reported at most once per story. The report flag is
claimed in the database before the notification is queued, so two users
hitting the same broken story at the same time produce one report. Flags and
the loop counter only reset when the story content is replaced.
"""

import logging
import sqlite3
from typing import Optional

from core.storage import OwnerReportType, StoryRecord
from .story_types import StepData, StoryLine
from .text_utils import split_text_at_whitespace

logger = logging.getLogger(__name__)

POTENTIAL_LOOP_THRESHOLD = 10
MAX_LAST_LINES_TO_REPORT = 5
REPORT_COLOUR = "#FEE75C"

_REPORT_TYPE_TEXTS = {
    OwnerReportType.INK_ERROR: "The story ran into an error and was stopped for the player:",
    OwnerReportType.INK_WARNING: "The story produced a warning. Players can still continue:",
    OwnerReportType.MAXIMUM_CHOICE_NUMBER_EXCEEDED: (
        "The story offered more choices than can be shown (at most {choice_limit}). "
        "Only the first {choice_limit} were offered:"
    ),
    OwnerReportType.POTENTIAL_LOOP_DETECTED: (
        "The story took too long to calculate its next step too often, it probably contains a loop. "
        "It cannot be started until its content is replaced."
    ),
}


def quote(text: str) -> str:
    return "> " + text


def build_owner_report(record: StoryRecord, report_type: OwnerReportType, details: str = "",
                       last_lines: Optional[list[StoryLine]] = None,
                       max_last_lines: int = MAX_LAST_LINES_TO_REPORT,
                       choice_limit: int = 25, part_limit: int = 4096) -> list[str]:
    """
    Build the text of an owner report, split into parts of at most part_limit characters.

    Args:
        record: The story the report is about
        report_type: Issue class
        details: Verbatim diagnostic text, every line gets quoted
        last_lines: Lines of the failing step, only the last max_last_lines are included
    """
    title = record.title or record.id
    message = f"There is a problem with your story \"{title}\" (id {record.id})."
    message += "\n" + _REPORT_TYPE_TEXTS[report_type].format(choice_limit=choice_limit)
    if details:
        message += "\n" + "\n".join(quote(line) for line in details.split("\n"))
    if last_lines and max_last_lines > 0:
        message += "\nThe last lines before the problem occurred:\n"
        message += "\n".join(quote(line.text) for line in last_lines[-max_last_lines:])
    message += "\nYou will not be notified about this kind of problem again until you replace the story content."
    return split_text_at_whitespace(message, part_limit)


class IssueDetector:
    """Tracks runaway steps and sends de-duplicated owner reports."""

    def __init__(self, story_store, dispatcher, loop_threshold: int = POTENTIAL_LOOP_THRESHOLD,
                 max_last_lines: int = MAX_LAST_LINES_TO_REPORT, choice_limit: int = 25,
                 report_part_limit: int = 4096):
        self.story_store = story_store
        self.dispatcher = dispatcher
        self.loop_threshold = loop_threshold
        self.max_last_lines = max_last_lines
        self.choice_limit = choice_limit
        self.report_part_limit = report_part_limit

    def register_incomplete_step(self, record: StoryRecord, lines: list[StoryLine]) -> bool:
        """
        Count a step that ran out of time. Returns True if the story is now considered looping.

        Storage errors are logged and count as "no loop detected".
        """
        try:
            count = self.story_store.increase_time_budget_exceeded_counter(record.id)
        except sqlite3.Error as e:
            logger.error(f"Failed to count exceeded time budget for story {record.id}: {e}")
            return False

        logger.info(f"Story {record.id} exceeded its time budget ({count}/{self.loop_threshold})")
        if count > self.loop_threshold:
            self.report(record, OwnerReportType.POTENTIAL_LOOP_DETECTED, "", lines)
            return True
        return False

    def check_step(self, record: StoryRecord, step_data: StepData):
        """Report warnings first, then choice overflow. Only for steps without fatal errors."""
        if step_data.errors or not step_data.complete:
            return
        if step_data.warnings:
            self.report(record, OwnerReportType.INK_WARNING, "\n".join(step_data.warnings), step_data.lines)
        if len(step_data.choices) > self.choice_limit:
            # Listing the choices helps the owner find the spot in the story
            details = "\n".join(choice.text for choice in step_data.choices)
            self.report(record, OwnerReportType.MAXIMUM_CHOICE_NUMBER_EXCEEDED, details, step_data.lines)

    def report(self, record: StoryRecord, report_type: OwnerReportType, details: str = "",
               lines: Optional[list[StoryLine]] = None) -> bool:
        """
        Queue an owner report unless this issue class was already reported for the story.

        Returns True if a report was queued. Never raises for storage or delivery problems.
        """
        if record.has_issue_been_reported(report_type):
            return False
        try:
            claimed = self.story_store.mark_issue_as_reported(record.id, report_type)
        except sqlite3.Error as e:
            logger.error(f"Failed to mark {report_type.value} as reported for story {record.id}: {e}")
            return False
        if not claimed:
            logger.debug(f"{report_type.value} for story {record.id} was already reported")
            return False

        parts = build_owner_report(record, report_type, details, lines, self.max_last_lines,
                                   self.choice_limit, self.report_part_limit)
        for i, part in enumerate(parts):
            self.dispatcher.dispatch(record.owner_id, {
                "type": "owner_report",
                "report_type": report_type.value,
                "story_id": record.id,
                "part": i + 1,
                "parts": len(parts),
                "description": part,
                "colour": REPORT_COLOUR,
            })
        logger.info(f"Reported {report_type.value} for story {record.id} to owner {record.owner_id}")
        return True
