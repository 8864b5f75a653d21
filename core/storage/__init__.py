# core/storage/__init__.py
"""
Storage - SQLite records and story files backing the story engine.

Provides:
- Database: connection handling and schema
- StoryStore: story records, issue flags, loop counter, suggestions
- ContentStore: story script files
- SessionStore: current story plays per user
"""

from .database import Database
from .story_dao import (
    StoryStore, ContentStore, SessionStore,
    StoryRecord, StoryPlay, SuggestionData,
    OwnerReportType, StoryStatus, StoryContentNotFound,
)

__all__ = ['Database', 'StoryStore', 'ContentStore', 'SessionStore',
           'StoryRecord', 'StoryPlay', 'SuggestionData',
           'OwnerReportType', 'StoryStatus', 'StoryContentNotFound']
