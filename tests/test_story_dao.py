"""
Storage Tests - Story records, issue flags, script files and story plays.

Run with: pytest tests/test_story_dao.py -v
"""
import pytest


# =============================================================================
# Story records
# =============================================================================

class TestStoryRecords:
    """Creating, reading and listing stories."""

    def test_add_and_get(self, story_store):
        story_id = story_store.add_story("owner-1", "Cave", author="Tess", teaser="Dark.")
        record = story_store.get_story(story_id)
        assert record.owner_id == "owner-1"
        assert record.title == "Cave"
        assert record.author == "Tess"
        assert record.status == "Draft"
        assert record.time_budget_exceeded_count == 0
        assert record.reported_ink_error is False

    def test_missing_story_is_none(self, story_store):
        assert story_store.get_story("nope") is None

    def test_empty_title_is_stored_as_null(self, story_store):
        story_id = story_store.add_story("owner-1", "")
        assert story_store.get_story(story_id).title is None

    def test_get_stories_filters_owner_and_deleted(self, story_store):
        from core.storage import StoryStatus
        a = story_store.add_story("owner-1", "A")
        b = story_store.add_story("owner-2", "B")
        c = story_store.add_story("owner-1", "C")
        story_store.set_story_status(c, StoryStatus.TO_BE_DELETED)
        assert [r.id for r in story_store.get_stories()] == [a, b]
        assert [r.id for r in story_store.get_stories("owner-1")] == [a]

    def test_change_metadata(self, story_store):
        story_id = story_store.add_story("owner-1", "Old")
        assert story_store.change_story_metadata(story_id, "New", "Ann", "Tease")
        record = story_store.get_story(story_id)
        assert (record.title, record.author, record.teaser) == ("New", "Ann", "Tease")
        assert story_store.change_story_metadata("nope", "X") is False

    def test_conditional_status_change(self, story_store):
        from core.storage import StoryStatus
        story_id = story_store.add_story("owner-1", "A")
        assert story_store.set_story_status(story_id, StoryStatus.TESTING, StoryStatus.DRAFT)
        assert story_store.set_story_status(story_id, StoryStatus.PUBLISHED, StoryStatus.DRAFT) is False
        assert story_store.get_story(story_id).status == "Testing"
        assert story_store.set_story_status(story_id, StoryStatus.PUBLISHED)
        assert story_store.get_story(story_id).status == "Published"
        assert story_store.set_story_status("nope", StoryStatus.PUBLISHED) is False

    def test_delete_story_cascades_to_plays(self, story_store, session_store):
        story_id = story_store.add_story("owner-1", "A")
        session_store.save_current_story_play("user-1", story_id)
        assert story_store.delete_story(story_id)
        assert session_store.has_current_story_play("user-1") is False

    def test_to_dict(self, story_store):
        story_id = story_store.add_story("owner-1", "A")
        data = story_store.get_story(story_id).to_dict()
        assert data["id"] == story_id
        assert data["status"] == "Draft"


# =============================================================================
# Issue flags and loop counter
# =============================================================================

class TestIssueFlags:
    """Report-once flags and the time budget counter."""

    def test_mark_issue_claims_once(self, story_store):
        from core.storage import OwnerReportType
        story_id = story_store.add_story("owner-1", "A")
        assert story_store.mark_issue_as_reported(story_id, OwnerReportType.INK_ERROR) is True
        assert story_store.mark_issue_as_reported(story_id, OwnerReportType.INK_ERROR) is False
        assert story_store.mark_issue_as_reported(story_id, OwnerReportType.INK_WARNING) is True

    def test_record_reflects_flag(self, story_store):
        from core.storage import OwnerReportType
        story_id = story_store.add_story("owner-1", "A")
        story_store.mark_issue_as_reported(story_id, OwnerReportType.POTENTIAL_LOOP_DETECTED)
        record = story_store.get_story(story_id)
        assert record.has_issue_been_reported(OwnerReportType.POTENTIAL_LOOP_DETECTED)
        assert not record.has_issue_been_reported(OwnerReportType.INK_ERROR)

    def test_counter_returns_new_value(self, story_store):
        story_id = story_store.add_story("owner-1", "A")
        assert story_store.increase_time_budget_exceeded_counter(story_id) == 1
        assert story_store.increase_time_budget_exceeded_counter(story_id) == 2
        assert story_store.increase_time_budget_exceeded_counter("nope") == 0

    def test_clear_flags_and_counter(self, story_store):
        from core.storage import OwnerReportType
        story_id = story_store.add_story("owner-1", "A")
        for report_type in OwnerReportType:
            story_store.mark_issue_as_reported(story_id, report_type)
        story_store.increase_time_budget_exceeded_counter(story_id)
        story_store.clear_warning_flags_and_counters(story_id)
        record = story_store.get_story(story_id)
        assert not any(record.has_issue_been_reported(t) for t in OwnerReportType)
        assert record.time_budget_exceeded_count == 0


# =============================================================================
# Suggestions
# =============================================================================

class TestSuggestions:

    def test_add_edit_and_delete(self, story_store):
        a = story_store.add_story("owner-1", "A")
        b = story_store.add_story("owner-1", "B", author="Ann", teaser="More.")
        story_store.add_or_edit_story_suggestion(a, b, "Try this")
        story_store.add_or_edit_story_suggestion(a, b, "Try this one")
        suggestions = story_store.get_story_suggestions(a)
        assert len(suggestions) == 1
        assert suggestions[0].suggested_story.id == b
        assert suggestions[0].message == "Try this one"
        assert story_store.delete_story_suggestion(a, b) == 1
        assert story_store.get_story_suggestions(a) == []
        assert story_store.delete_story_suggestion(a, b) == 0

    def test_suggestion_needs_both_stories(self, story_store):
        a = story_store.add_story("owner-1", "A")
        with pytest.raises(ValueError):
            story_store.add_or_edit_story_suggestion(a, "nope")


# =============================================================================
# Script files
# =============================================================================

class TestContentStore:

    def test_write_and_load(self, story_store, content_store):
        story_id = story_store.add_story("owner-1", "A")
        content_store.write_story_content(story_id, '{"knots": {}}')
        assert content_store.load_story_content(story_id) == '{"knots": {}}'

    def test_missing_content(self, content_store):
        from core.storage import StoryContentNotFound
        with pytest.raises(StoryContentNotFound):
            content_store.load_story_content("abc")

    def test_unsafe_id_is_rejected(self, content_store):
        from core.storage import StoryContentNotFound
        with pytest.raises(StoryContentNotFound):
            content_store.load_story_content("../secrets")

    def test_replace_resets_flags(self, story_store, content_store):
        from core.storage import OwnerReportType
        story_id = story_store.add_story("owner-1", "A")
        content_store.write_story_content(story_id, "old")
        story_store.mark_issue_as_reported(story_id, OwnerReportType.INK_WARNING)
        story_store.increase_time_budget_exceeded_counter(story_id)
        content_store.replace_story_content(story_id, "new")
        record = story_store.get_story(story_id)
        assert content_store.load_story_content(story_id) == "new"
        assert not record.reported_ink_warning
        assert record.time_budget_exceeded_count == 0

    def test_delete_is_idempotent(self, story_store, content_store):
        from core.storage import StoryContentNotFound
        story_id = story_store.add_story("owner-1", "A")
        content_store.write_story_content(story_id, "x")
        content_store.delete_story_content(story_id)
        content_store.delete_story_content(story_id)
        with pytest.raises(StoryContentNotFound):
            content_store.load_story_content(story_id)


# =============================================================================
# Story plays
# =============================================================================

class TestSessionStore:
    """One current play per user."""

    def test_save_and_get(self, story_store, session_store):
        story_id = story_store.add_story("owner-1", "A")
        session_store.save_current_story_play("user-1", story_id)
        play = session_store.get_current_story_play("user-1")
        assert play.story_record.id == story_id
        assert play.state_json is None
        assert session_store.has_current_story_play("user-1")

    def test_second_play_for_user_is_rejected(self, story_store, session_store):
        import sqlite3
        a = story_store.add_story("owner-1", "A")
        b = story_store.add_story("owner-1", "B")
        session_store.save_current_story_play("user-1", a)
        with pytest.raises(sqlite3.IntegrityError):
            session_store.save_current_story_play("user-1", b)
        assert session_store.get_current_story_play("user-1").story_record.id == a

    def test_state_save_and_reset(self, story_store, session_store):
        story_id = story_store.add_story("owner-1", "A")
        session_store.save_current_story_play("user-1", story_id)
        session_store.save_story_play_state("user-1", '{"knot": "a"}')
        assert session_store.get_current_story_play("user-1").state_json == '{"knot": "a"}'
        session_store.reset_story_play_state("user-1")
        assert session_store.get_current_story_play("user-1").state_json is None

    def test_clear_play(self, story_store, session_store):
        story_id = story_store.add_story("owner-1", "A")
        session_store.save_current_story_play("user-1", story_id)
        assert session_store.clear_current_story_play("user-1") is True
        assert session_store.clear_current_story_play("user-1") is False
        assert session_store.get_current_story_play("user-1") is None

    def test_current_players(self, story_store, session_store):
        a = story_store.add_story("owner-1", "A")
        b = story_store.add_story("owner-1", "B")
        session_store.save_current_story_play("user-1", a)
        session_store.save_current_story_play("user-2", a)
        session_store.save_current_story_play("user-3", b)
        assert sorted(session_store.get_current_players(a)) == ["user-1", "user-2"]
        assert session_store.get_current_players(b) == ["user-3"]
        assert session_store.get_current_players("nope") == []
