"""Tests for the moderation ledger and auto-archive policy."""

import sqlite3
from contextlib import closing
from datetime import timedelta

import pytest
from chatmend.models import (
    Chat,
    ConversationState,
    ModerationAction,
    ViolationType,
)
from chatmend.moderation import InMemory, ModerationLedger, NoModeration, SQLite


@pytest.fixture(params=["memory", "sqlite"])
def ledger(request, temp_dir, clock):
    kwargs = {"auto_archive_threshold": 3, "auto_archive_window": timedelta(days=7), "clock": clock}
    if request.param == "memory":
        return InMemory(**kwargs)
    return SQLite(str(temp_dir / "moderation.db"), **kwargs)


@pytest.fixture
def chat():
    return Chat(id="chat_1", user_id="user_1", organization_id="org_1")


def block(ledger, chat, user_id="user_1", violation=ViolationType.HARASSMENT):
    return ledger.record(
        chat,
        user_id=user_id,
        organization_id="org_1",
        violation_type=violation,
        action_taken=ModerationAction.BLOCKED,
    )


class TestModerators:
    def test_ledger_is_abstract(self):
        with pytest.raises(TypeError):
            ModerationLedger()

    def test_no_moderation_never_flags(self, chat):
        assert NoModeration().check("anything at all", chat) is None


class TestRecord:
    def test_record_appends_entry(self, ledger, chat, clock):
        entry = ledger.record(
            chat,
            user_id="user_1",
            organization_id="org_1",
            violation_type=ViolationType.PROMPT_INJECTION,
            action_taken=ModerationAction.WARNED,
            message_id="m1",
            details="ignore previous instructions",
        )
        assert entry.detected_at == clock()
        assert ledger.entries(chat_id="chat_1") == [entry]

    def test_entries_filters(self, ledger, chat):
        block(ledger, chat)
        ledger.record(chat, "user_2", "org_1", ViolationType.OTHER, ModerationAction.LOGGED)
        assert len(ledger.entries(user_id="user_2")) == 1
        assert len(ledger.entries(action_taken=ModerationAction.BLOCKED)) == 1
        assert ledger.entries(organization_id="org_2") == []


class TestAutoArchive:
    def test_below_threshold(self, ledger, chat):
        block(ledger, chat)
        block(ledger, chat)
        assert ledger.check_auto_archive(chat, "org_1") is False
        assert chat.conversation_state == ConversationState.STABLE

    def test_archives_exactly_once_at_threshold(self, ledger, chat):
        """Test that `threshold` blocked entries archive the chat once."""
        for _ in range(3):
            block(ledger, chat)

        assert ledger.check_auto_archive(chat, "org_1") is True
        assert chat.conversation_state == ConversationState.ARCHIVED
        archived = ledger.entries(chat_id="chat_1", action_taken=ModerationAction.ARCHIVED)
        assert len(archived) == 1
        assert archived[0].violation_type == ViolationType.OTHER
        assert "3 violations" in archived[0].details

        assert ledger.check_auto_archive(chat, "org_1") is False
        assert len(ledger.entries(chat_id="chat_1", action_taken=ModerationAction.ARCHIVED)) == 1

    def test_rerun_on_fresh_copy_writes_no_duplicate(self, ledger, chat):
        """Test that the closing entry itself guards against a second archive."""
        for _ in range(3):
            block(ledger, chat)
        stale_copy = chat.model_copy(deep=True)
        ledger.check_auto_archive(chat, "org_1")

        assert ledger.check_auto_archive(stale_copy, "org_1") is False
        assert len(ledger.entries(action_taken=ModerationAction.ARCHIVED)) == 1

    def test_old_entries_outside_window(self, ledger, chat, clock):
        block(ledger, chat)
        block(ledger, chat)
        clock.advance(days=8)
        block(ledger, chat)
        assert ledger.check_auto_archive(chat, "org_1") is False

    def test_only_blocked_entries_count(self, ledger, chat):
        for _ in range(5):
            ledger.record(chat, "user_1", "org_1", ViolationType.OTHER, ModerationAction.WARNED)
        assert ledger.check_auto_archive(chat, "org_1") is False

    def test_disabled_with_zero_threshold(self, clock, chat):
        ledger = InMemory(auto_archive_threshold=0, clock=clock)
        for _ in range(10):
            block(ledger, chat)
        assert ledger.check_auto_archive(chat, "org_1") is False

    def test_error_chat_can_be_archived(self, ledger, chat):
        chat.conversation_state = ConversationState.ERROR
        for _ in range(3):
            block(ledger, chat)
        assert ledger.check_auto_archive(chat, "org_1") is True
        assert chat.conversation_state == ConversationState.ARCHIVED


class TestAggregates:
    def test_violation_summary(self, ledger, chat, clock):
        """Test counts per violation type inside the window."""
        block(ledger, chat, violation=ViolationType.HATE_SPEECH)
        clock.advance(hours=25)
        block(ledger, chat, violation=ViolationType.HARASSMENT)
        block(ledger, chat, violation=ViolationType.HARASSMENT)

        assert ledger.violation_summary("org_1", timedelta(hours=24)) == {"harassment": 2}
        assert ledger.violation_summary("org_2") == {}

    def test_repeat_offenders(self, ledger, chat):
        for _ in range(3):
            block(ledger, chat, user_id="user_b")
        for _ in range(2):
            block(ledger, chat, user_id="user_c")
        for _ in range(4):
            block(ledger, chat, user_id="user_a")
        assert ledger.repeat_offenders("org_1", threshold=3) == ["user_a", "user_b"]

    def test_user_violation_count(self, ledger, chat, clock):
        block(ledger, chat)
        clock.advance(days=8)
        block(ledger, chat)
        assert ledger.user_violation_count("user_1", "org_1", timedelta(days=7)) == 1


class TestSQLiteLedger:
    def test_entries_survive_reopen(self, temp_dir, clock, chat):
        """Test that the ledger is read back from the file by a new instance."""
        path = str(temp_dir / "moderation.db")
        entry = block(SQLite(path, clock=clock), chat)

        reopened = SQLite(path, clock=clock)
        assert reopened.entries(chat_id="chat_1") == [entry]

    def test_window_indexes(self, temp_dir):
        """Test the per-organization and per-user time-window indexes."""
        path = str(temp_dir / "moderation.db")
        SQLite(path)
        with closing(sqlite3.connect(path)) as conn:
            indexes = {
                row[0]: [col[2] for col in conn.execute(f"PRAGMA index_info({row[0]})")]
                for row in conn.execute(
                    "SELECT name FROM sqlite_master WHERE type = 'index' AND tbl_name = 'moderation_logs'"
                )
            }
        assert indexes["idx_moderation_org_detected"] == ["organization_id", "detected_at"]
        assert indexes["idx_moderation_user_detected"] == ["user_id", "detected_at"]
