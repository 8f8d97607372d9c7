"""
Conversation Manager for the tutor chat service.

Keeps a bounded window of turns per chat session and the sources cited across
the session. In-memory; stale sessions are dropped lazily.
"""
from typing import Dict, List, Optional, Sequence, Tuple
import uuid
import time

from tutor_chat.models import Citation, Conversation, Turn, ROLES


class ConversationManager:
    """
    Manages conversation state in-memory.

    Handles:
    - Conversation creation and retrieval
    - Turn history, trimmed to max_stored_turns per session
    - Conversation-wide citation tracking
    - Automatic cleanup of old conversations
    """

    def __init__(self, max_age_seconds: int = 3600, max_stored_turns: int = 50):
        """Initialize conversation manager with max age for cleanup."""
        self.conversations: Dict[str, Conversation] = {}
        self.max_age_seconds = max_age_seconds
        self.max_stored_turns = max_stored_turns


    def create_conversation(self, user_id: str, session_id: Optional[str] = None) -> str:
        """Create a new conversation and return its id. Optionally accept a client-provided id."""
        self._run_cleanup_if_needed()

        s_id = session_id or str(uuid.uuid4())

        if s_id in self.conversations:
            raise ValueError(f"Conversation {s_id} already exists")

        self.conversations[s_id] = Conversation(session_id=s_id, user_id=user_id)
        return s_id


    def get_conversation(self, session_id: str, user_id: Optional[str] = None) -> Optional[Conversation]:
        """Retrieve conversation by id, updating last_accessed. Returns None if not found or unauthorized."""
        c = self.conversations.get(session_id)
        if c is None:
            return None

        # Ownership validation (if user_id provided)
        if user_id is not None and c.user_id != user_id:
            return None

        c.last_accessed = time.time()
        return c


    def ensure_conversation(self, session_id: str, user_id: str) -> Conversation:
        """Get the session, creating it for user_id if it does not exist yet."""
        c = self.conversations.get(session_id)
        if c is None:
            self.create_conversation(user_id, session_id)
            c = self.conversations[session_id]
        elif c.user_id != user_id:
            raise PermissionError(f"Conversation {session_id} belongs to another user")

        c.last_accessed = time.time()
        return c


    def get_turns(self, session_id: str) -> List[Turn]:
        """Full stored history. Returns empty list if conversation not found."""
        c = self.conversations.get(session_id)
        return list(c.turns) if c else []


    def load_recent_turns(self, session_id: str, max_turns: int = 10) -> Tuple[Turn, ...]:
        """The last max_turns turns, oldest first. Unknown sessions have no history."""
        c = self.conversations.get(session_id)
        if c is None or max_turns <= 0:
            return ()

        c.last_accessed = time.time()
        return tuple(c.turns[-max_turns:])


    def add_turn(
            self,
            session_id: str,
            role: str,
            content: str,
            citations: Optional[Sequence[Citation]] = None
            ) -> None:
        """Append a turn, recording any citations it carries."""
        if role not in ROLES:
            raise ValueError(f"Invalid role: {role}")

        c = self.conversations.get(session_id)
        if c is None:
            raise ValueError(f"Conversation {session_id} not found")

        c.turns.append(Turn(role=role, content=content))
        if len(c.turns) > self.max_stored_turns:
            del c.turns[:len(c.turns) - self.max_stored_turns]

        for citation in citations or ():
            c.citations.setdefault((citation.source_id, citation.offset_seconds), citation)

        c.last_accessed = time.time()
        self._run_cleanup_if_needed()


    def get_all_citations(self, session_id: str) -> List[Citation]:
        """Citations across the session, in first-cited order."""
        c = self.conversations.get(session_id)
        if c is None:
            return []

        c.last_accessed = time.time()
        return list(c.citations.values())


    def get_conversation_summaries(self, user_id: str) -> List[dict]:
        """Get all conversation summaries for a specific user, sorted by most recent."""
        summaries = []
        for convo in self.conversations.values():
            if convo.user_id != user_id:
                continue

            first_message = next((t.content for t in convo.turns if t.role == "user"), "")

            summaries.append({
                "session_id": convo.session_id,
                "first_message": first_message[:100],
                "turn_count": len(convo.turns),
                "last_updated": convo.last_accessed
            })

        # Newest first
        summaries.sort(key=lambda x: x["last_updated"], reverse=True)
        return summaries


    def cleanup_old_conversations(self) -> int:
        """Remove stale conversations, return count removed."""
        current_time = time.time()
        to_remove = [
            s_id for s_id, conversation in self.conversations.items()
            if current_time - conversation.last_accessed > self.max_age_seconds
        ]

        for s_id in to_remove:
            del self.conversations[s_id]

        return len(to_remove)


    def _run_cleanup_if_needed(self) -> None:
        """Run cleanup if over 100 conversations stored."""
        if len(self.conversations) > 100:
            self.cleanup_old_conversations()
