"""
Tests for ConversationManager and the bounded history window.
"""
import unittest
import time

from tutor_chat.models import Citation, Turn
from tutor_chat.rag.conversation_manager import ConversationManager


class TestConversationManager(unittest.TestCase):
    """Test suite for ConversationManager."""

    def test_create_conversation(self):
        """Test creating a new conversation returns a UUID."""
        manager = ConversationManager()
        session_id = manager.create_conversation("student-1")

        assert isinstance(session_id, str)
        assert len(session_id) == 36  # UUID format
        assert session_id in manager.conversations

    def test_create_with_client_id(self):
        manager = ConversationManager()
        assert manager.create_conversation("student-1", "session-abc") == "session-abc"

        with self.assertRaises(ValueError):
            manager.create_conversation("student-1", "session-abc")

    def test_get_conversation(self):
        """Test retrieving an existing conversation."""
        manager = ConversationManager()
        session_id = manager.create_conversation("student-1")

        conversation = manager.get_conversation(session_id)

        assert conversation is not None
        assert conversation.session_id == session_id
        assert conversation.turns == []

    def test_get_conversation_checks_owner(self):
        manager = ConversationManager()
        session_id = manager.create_conversation("student-1")

        assert manager.get_conversation(session_id, "student-1") is not None
        assert manager.get_conversation(session_id, "student-2") is None

    def test_get_nonexistent_conversation(self):
        """Test retrieving a conversation that doesn't exist returns None."""
        manager = ConversationManager()

        assert manager.get_conversation("nonexistent-id") is None

    def test_get_conversation_updates_last_accessed(self):
        """Test that getting a conversation updates its last_accessed timestamp."""
        manager = ConversationManager()
        session_id = manager.create_conversation("student-1")

        initial_time = manager.get_conversation(session_id).last_accessed
        time.sleep(0.1)
        updated_time = manager.get_conversation(session_id).last_accessed

        assert updated_time > initial_time

    def test_ensure_conversation(self):
        manager = ConversationManager()

        created = manager.ensure_conversation("s1", "student-1")
        again = manager.ensure_conversation("s1", "student-1")

        assert created is again
        with self.assertRaises(PermissionError):
            manager.ensure_conversation("s1", "student-2")

    def test_add_turn(self):
        """Test adding turns to a conversation."""
        manager = ConversationManager()
        session_id = manager.create_conversation("student-1")

        manager.add_turn(session_id, "user", "What is a stop loss?")
        manager.add_turn(session_id, "assistant", "A stop loss is...")

        turns = manager.get_turns(session_id)
        assert turns == [Turn("user", "What is a stop loss?"), Turn("assistant", "A stop loss is...")]

    def test_add_turn_invalid_role(self):
        manager = ConversationManager()
        session_id = manager.create_conversation("student-1")

        with self.assertRaises(ValueError):
            manager.add_turn(session_id, "system", "You are...")

    def test_add_turn_to_nonexistent_conversation(self):
        """Test that adding a turn to nonexistent conversation raises error."""
        manager = ConversationManager()

        with self.assertRaises(ValueError):
            manager.add_turn("nonexistent-id", "user", "Hello")

    def test_load_recent_turns_window(self):
        manager = ConversationManager()
        session_id = manager.create_conversation("student-1")
        for i in range(15):
            manager.add_turn(session_id, "user" if i % 2 == 0 else "assistant", f"turn {i}")

        recent = manager.load_recent_turns(session_id, max_turns=10)

        assert len(recent) == 10
        assert recent[0].content == "turn 5"
        assert recent[-1].content == "turn 14"

    def test_load_recent_turns_unknown_session(self):
        manager = ConversationManager()
        assert manager.load_recent_turns("nope") == ()

    def test_stored_history_is_bounded(self):
        manager = ConversationManager(max_stored_turns=4)
        session_id = manager.create_conversation("student-1")
        for i in range(10):
            manager.add_turn(session_id, "user", f"turn {i}")

        assert [t.content for t in manager.get_turns(session_id)] == ["turn 6", "turn 7", "turn 8", "turn 9"]

    def test_citations_collected_across_turns(self):
        manager = ConversationManager()
        session_id = manager.create_conversation("student-1")
        first = Citation("vid-1", "Intro", 225, "snippet")
        second = Citation("vid-2", "Risk", 60, "snippet")

        manager.add_turn(session_id, "assistant", "a", [first])
        manager.add_turn(session_id, "assistant", "b", [first, second])

        assert manager.get_all_citations(session_id) == [first, second]

    def test_get_all_citations_nonexistent_conversation(self):
        assert ConversationManager().get_all_citations("nope") == []

    def test_conversation_summaries(self):
        manager = ConversationManager()
        s1 = manager.create_conversation("student-1")
        manager.create_conversation("student-2")
        manager.add_turn(s1, "user", "First question")

        summaries = manager.get_conversation_summaries("student-1")

        assert len(summaries) == 1
        assert summaries[0]["session_id"] == s1
        assert summaries[0]["first_message"] == "First question"
        assert summaries[0]["turn_count"] == 1

    def test_cleanup_old_conversations(self):
        """Test that old conversations are cleaned up."""
        manager = ConversationManager(max_age_seconds=0.1)  # 100ms

        session_id1 = manager.create_conversation("student-1")
        time.sleep(0.15)  # Wait for conversation to become stale
        session_id2 = manager.create_conversation("student-1")

        removed_count = manager.cleanup_old_conversations()

        assert removed_count == 1
        assert session_id1 not in manager.conversations
        assert session_id2 in manager.conversations

    def test_cleanup_keeps_recently_accessed_conversations(self):
        """Test that recently accessed conversations are not cleaned up."""
        manager = ConversationManager(max_age_seconds=0.1)

        session_id = manager.create_conversation("student-1")
        time.sleep(0.05)
        manager.get_conversation(session_id)  # Access to update timestamp
        time.sleep(0.07)

        assert manager.cleanup_old_conversations() == 0
        assert session_id in manager.conversations

    def test_lazy_cleanup_trigger(self):
        """Test that lazy cleanup triggers when over 100 conversations."""
        manager = ConversationManager(max_age_seconds=0.001)  # 1ms

        for _ in range(101):
            manager.create_conversation("student-1")

        time.sleep(0.01)  # All become stale

        # Creating the 102nd conversation should trigger cleanup
        initial_count = len(manager.conversations)
        manager.create_conversation("student-1")

        assert len(manager.conversations) < initial_count


if __name__ == "__main__":
    unittest.main()
