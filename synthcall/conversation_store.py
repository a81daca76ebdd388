"""
Conversation history store keyed by conference id.

Two backends:
- InMemoryConversationStore: process-local, TTL-aware (dev + tests)
- SyncConversationStore: Twilio Sync document "conversation_<id>" with TTL

Writes are create-or-replace (never merge) and refresh the TTL. A write
never keeps more than max_messages entries. Reads return the stored dicts
as-is; callers must re-validate them before reuse.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

from .conversation_validator import MAX_HISTORY_MESSAGES, trim_history
from .models import ChatMessage
from .sync_documents import RevisionConflict, SyncDocumentClient

logger = logging.getLogger(__name__)

CONVERSATION_TTL_SECONDS = 3600


def conversation_document_name(conversation_id: str) -> str:
    return f"conversation_{conversation_id}"


def _to_stored(messages: Sequence[Any]) -> List[Dict[str, Any]]:
    stored = []
    for msg in messages:
        if isinstance(msg, ChatMessage):
            stored.append(msg.to_openai())
        else:
            stored.append({"role": msg.get("role"), "content": msg.get("content")})
    return stored


@runtime_checkable
class ConversationStore(Protocol):
    """Protocol for conversation persistence."""

    async def get(self, conversation_id: str) -> List[Dict[str, Any]]:
        """Stored messages, or [] if absent or expired."""
        ...

    async def put(
        self,
        conversation_id: str,
        messages: Sequence[Any],
        ttl_seconds: Optional[int] = None,
    ) -> None:
        """Create or replace the history and refresh its TTL."""
        ...

    async def delete(self, conversation_id: str) -> bool:
        """True if something was deleted."""
        ...


class InMemoryConversationStore:
    """Dict-backed store for local development and tests."""

    def __init__(
        self,
        ttl_seconds: int = CONVERSATION_TTL_SECONDS,
        max_messages: int = MAX_HISTORY_MESSAGES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_messages = max_messages
        self._clock = clock
        # conversation_id -> (document data, expires_at)
        self._documents: Dict[str, Tuple[Dict[str, Any], float]] = {}

    async def get(self, conversation_id: str) -> List[Dict[str, Any]]:
        entry = self._documents.get(conversation_id)
        if entry is None:
            return []
        data, expires_at = entry
        if self._clock() >= expires_at:
            del self._documents[conversation_id]
            logger.info(f"Conversation {conversation_id} expired")
            return []
        return [dict(m) for m in data.get("messages", [])]

    async def put(
        self,
        conversation_id: str,
        messages: Sequence[Any],
        ttl_seconds: Optional[int] = None,
    ) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self.ttl_seconds
        stored = trim_history(_to_stored(messages), self.max_messages)
        data = {"messages": stored, "lastUpdated": datetime.now(timezone.utc).isoformat()}
        self._documents[conversation_id] = (data, self._clock() + ttl)
        logger.debug(f"Stored conversation {conversation_id} ({len(stored)} messages)")

    async def delete(self, conversation_id: str) -> bool:
        return self._documents.pop(conversation_id, None) is not None

    def clear(self) -> None:
        self._documents.clear()


class SyncConversationStore:
    """Twilio Sync backed store. Document TTL handles expiry."""

    def __init__(
        self,
        documents: SyncDocumentClient,
        ttl_seconds: int = CONVERSATION_TTL_SECONDS,
        max_messages: int = MAX_HISTORY_MESSAGES,
    ):
        self.documents = documents
        self.ttl_seconds = ttl_seconds
        self.max_messages = max_messages

    async def get(self, conversation_id: str) -> List[Dict[str, Any]]:
        document = await self.documents.fetch(conversation_document_name(conversation_id))
        if document is None:
            logger.info(f"No existing conversation {conversation_id} in Sync")
            return []
        messages = document.data.get("messages") or []
        if not isinstance(messages, list):
            logger.warning(f"Conversation {conversation_id} has non-list messages in Sync, ignoring")
            return []
        logger.info(f"Retrieved conversation {conversation_id} from Sync ({len(messages)} messages)")
        return messages

    async def put(
        self,
        conversation_id: str,
        messages: Sequence[Any],
        ttl_seconds: Optional[int] = None,
    ) -> None:
        name = conversation_document_name(conversation_id)
        ttl = ttl_seconds if ttl_seconds is not None else self.ttl_seconds
        stored = trim_history(_to_stored(messages), self.max_messages)
        data = {"messages": stored, "lastUpdated": datetime.now(timezone.utc).isoformat()}

        updated = await self.documents.update(name, data, ttl=ttl)
        if updated is not None:
            logger.info(f"Updated conversation {conversation_id} in Sync ({len(stored)} messages)")
            return

        try:
            await self.documents.create(name, data, ttl=ttl)
            logger.info(f"Created conversation {conversation_id} in Sync ({len(stored)} messages)")
        except RevisionConflict:
            # Another participant created it between our update and create: last writer wins
            replaced = await self.documents.update(name, data, ttl=ttl)
            if replaced is None:
                logger.warning(
                    f"Conversation {conversation_id} disappeared during create race, "
                    f"write of {len(stored)} messages dropped"
                )
                return
            logger.info(f"Replaced concurrently created conversation {conversation_id} in Sync")

    async def delete(self, conversation_id: str) -> bool:
        deleted = await self.documents.delete(conversation_document_name(conversation_id))
        if deleted:
            logger.info(f"Deleted conversation {conversation_id} from Sync")
        else:
            logger.info(f"Conversation {conversation_id} not found in Sync (already deleted or expired)")
        return deleted
