import asyncio
import logging
from typing import Dict, List, Optional

from arksql.schemas.chat import ChatMessage, ChatRecord

logger = logging.getLogger(__name__)


# --- Custom Exceptions ---
class RepositoryError(Exception):
    """Base class for chat store exceptions."""
    pass


class ChatOwnershipError(RepositoryError):
    """The chat exists but belongs to another user."""
    pass
# --- End Custom Exceptions ---


class ChatStore:
    """Where finished conversations are handed off. Persistence itself lives elsewhere."""

    async def get(self, chat_id: str) -> Optional[ChatRecord]:
        raise NotImplementedError

    async def save(self, record: ChatRecord) -> None:
        raise NotImplementedError

    async def list_for_user(self, user_id: Optional[str]) -> List[ChatRecord]:
        raise NotImplementedError


class InMemoryChatStore(ChatStore):
    def __init__(self):
        self._records: Dict[str, ChatRecord] = {}
        self._lock = asyncio.Lock()

    async def get(self, chat_id: str) -> Optional[ChatRecord]:
        return self._records.get(chat_id)

    async def save(self, record: ChatRecord) -> None:
        async with self._lock:
            existing = self._records.get(record.id)
            if existing is not None and existing.user_id != record.user_id:
                raise ChatOwnershipError(f"Chat {record.id} belongs to another user.")
            if existing is not None:
                # Name and creation time are set once
                record = record.model_copy(update={"name": existing.name or record.name, "created_at": existing.created_at})
            self._records[record.id] = record
        logger.debug(f"[ChatStore] Saved chat {record.id} with {len(record.messages)} messages.")

    async def list_for_user(self, user_id: Optional[str]) -> List[ChatRecord]:
        records = [r for r in self._records.values() if r.user_id == user_id]
        return sorted(records, key=lambda r: r.created_at, reverse=True)


def append_answer(messages: List[ChatMessage], answer_text: str) -> List[ChatMessage]:
    return list(messages) + [ChatMessage(role="assistant", content=answer_text)]
