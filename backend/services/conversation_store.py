"""In-memory conversation store for multi-turn conversation support."""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from models.conversation import Conversation, Turn
from config import CONVERSATION_TTL_SECONDS

logger = logging.getLogger(__name__)


class ConversationStore:
    """
    Holds per-conversation message history in process memory.

    All operations are synchronous; the store is the only owner of
    Conversation objects and only ever appends to them.
    """

    def __init__(
        self,
        ttl_seconds: int = CONVERSATION_TTL_SECONDS,
        clock: Callable[[], datetime] = datetime.now
    ):
        """
        Initialize an empty store.

        Args:
            ttl_seconds: Idle time after which a conversation may be evicted (0 disables)
            clock: Source of the current time
        """
        self._conversations: Dict[str, Conversation] = {}
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        logger.info(f"ConversationStore initialized (ttl={ttl_seconds}s)")

    def __len__(self) -> int:
        return len(self._conversations)

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._conversations

    def append(self, conversation_id: str, content: str, is_user: bool) -> None:
        """
        Append a message to a conversation, creating the conversation if needed.

        Args:
            conversation_id: ID of the conversation
            content: Message text
            is_user: True for user messages, False for assistant messages
        """
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            conversation = Conversation(last_updated=self._clock())
            self._conversations[conversation_id] = conversation
            logger.info(f"Created conversation {conversation_id}")

        conversation.messages.append(Turn(content=content, is_user=is_user))
        conversation.last_updated = self._clock()
        logger.debug(
            f"Appended {'user' if is_user else 'assistant'} turn to {conversation_id} "
            f"({len(conversation.messages)} messages)"
        )

    def history(self, conversation_id: str) -> Tuple[Turn, ...]:
        """
        Get the ordered turns of a conversation.

        Returns:
            Snapshot of the turns, empty for unknown IDs
        """
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return ()
        return tuple(conversation.messages)

    def rendered_history(self, conversation_id: Optional[str]) -> List[str]:
        """Get the history as '<Speaker>: <content>' lines."""
        if not conversation_id:
            return []
        return [turn.render() for turn in self.history(conversation_id)]

    def last_updated(self, conversation_id: str) -> Optional[datetime]:
        conversation = self._conversations.get(conversation_id)
        return conversation.last_updated if conversation else None

    def new_conversation_id(self) -> str:
        """
        Generate an ID for a new conversation and evict idle ones.

        The conversation itself is created lazily on its first append.

        Returns:
            Unique conversation ID string
        """
        self.evict_idle()
        conversation_id = f"conv_{uuid.uuid4().hex[:12]}"
        while conversation_id in self._conversations:
            conversation_id = f"conv_{uuid.uuid4().hex[:12]}"
        return conversation_id

    def evict_idle(self) -> int:
        """
        Drop conversations that have not been updated within the TTL.

        Returns:
            Number of conversations evicted
        """
        if not self.ttl_seconds:
            return 0

        cutoff = self._clock() - timedelta(seconds=self.ttl_seconds)
        expired = [
            conversation_id
            for conversation_id, conversation in self._conversations.items()
            if conversation.last_updated < cutoff
        ]
        for conversation_id in expired:
            del self._conversations[conversation_id]

        if expired:
            logger.info(f"Evicted {len(expired)} idle conversations")
        return len(expired)
