"""
Conversation history validation.

Any history that is merged into a completion request passes through here
first, whether it came from a webhook parameter or from the conversation
store. Structural tampering (extra or misplaced system prompts, unknown
roles) is dropped rather than rejected so the turn can continue.

Invariant on every validated sequence: at most one system message, and if
present it is at index 0.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Union

from .models import ChatMessage, MessageRole

logger = logging.getLogger(__name__)

MAX_MESSAGE_CONTENT_LENGTH = 5000
MAX_HISTORY_MESSAGES = 20  # system prompt + 19 messages
ALLOWED_ROLES = {role.value for role in MessageRole}


@dataclass
class HistoryValidation:
    valid: bool
    messages: List[ChatMessage] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class CompletionValidation:
    valid: bool
    error: Optional[str] = None


def _role_of(message: Any) -> Optional[str]:
    if isinstance(message, ChatMessage):
        return message.role.value
    if isinstance(message, dict):
        return message.get("role")
    return None


def trim_history(messages: Sequence[Any], max_messages: int = MAX_HISTORY_MESSAGES) -> List[Any]:
    """Keep the newest max_messages entries, preserving a leading system message.

    Works on ChatMessage objects and on plain {role, content} dicts.
    """
    if len(messages) <= max_messages:
        return list(messages)

    if messages and _role_of(messages[0]) == MessageRole.SYSTEM.value:
        if max_messages <= 1:
            return [messages[0]]
        return [messages[0]] + list(messages[-(max_messages - 1):])
    if max_messages <= 0:
        return []
    return list(messages[-max_messages:])


def validate_conversation_history(
    raw_history: Union[str, bytes, Sequence[Any], None],
    allow_system_prompt: bool = True,
    max_content_length: int = MAX_MESSAGE_CONTENT_LENGTH,
    max_history_messages: int = MAX_HISTORY_MESSAGES,
) -> HistoryValidation:
    """Parse and sanitize a conversation history.

    Args:
        raw_history: JSON text, or an already-decoded list (e.g. from the store)
        allow_system_prompt: When False every system message is dropped
        max_content_length: Per-message content cap (longer content is cut)
        max_history_messages: Overall cap (oldest non-system messages go first)

    Returns:
        HistoryValidation. valid=False only for unparseable or non-array input.
    """
    if raw_history is None or raw_history == "" or raw_history == b"":
        return HistoryValidation(valid=True, messages=[])

    if isinstance(raw_history, (str, bytes)):
        try:
            parsed = json.loads(raw_history)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            return HistoryValidation(valid=False, error=f"Failed to parse conversation history: {e}")
    else:
        parsed = raw_history

    if not isinstance(parsed, list):
        return HistoryValidation(valid=False, error="Conversation history must be an array")

    validated: List[ChatMessage] = []
    system_count = 0

    for index, entry in enumerate(parsed):
        if isinstance(entry, ChatMessage):
            entry = entry.to_openai()

        if not isinstance(entry, dict):
            logger.warning(f"Invalid message structure at index {index}, skipping")
            continue

        role = entry.get("role")
        content = entry.get("content")
        if not role or not isinstance(content, str) or not content:
            logger.warning(f"Missing role or content at index {index}, skipping")
            continue

        if not isinstance(role, str) or role not in ALLOWED_ROLES:
            logger.warning(f"Invalid role {role!r} at index {index}, skipping")
            continue

        if role == MessageRole.SYSTEM.value:
            system_count += 1
            if not allow_system_prompt:
                logger.warning("System prompts not allowed in this context, skipping")
                continue
            if system_count > 1:
                logger.warning(
                    f"SECURITY: Multiple system prompts detected ({system_count}), dropping extra prompt"
                )
                continue
            if index != 0:
                logger.warning(f"SECURITY: System prompt at index {index} (not at start), dropping")
                continue

        if len(content) > max_content_length:
            logger.warning(
                f"Message content at index {index} exceeds {max_content_length} chars, trimming"
            )
            content = content[:max_content_length]

        validated.append(ChatMessage(role=MessageRole(role), content=content))

    if len(validated) > max_history_messages:
        logger.info(
            f"Conversation history has {len(validated)} messages, trimming to {max_history_messages}"
        )
        validated = trim_history(validated, max_history_messages)

    return HistoryValidation(valid=True, messages=validated)


def validate_messages_for_completion(messages: Any) -> CompletionValidation:
    """Final structural check right before a completion request.

    Re-verifies invariants that validate_conversation_history() already
    enforces so that no code path can bypass them.
    """
    if not isinstance(messages, (list, tuple)):
        return CompletionValidation(valid=False, error="Messages must be an array")

    if len(messages) == 0:
        return CompletionValidation(valid=False, error="Messages array cannot be empty")

    normalized = []
    for index, msg in enumerate(messages):
        if isinstance(msg, ChatMessage):
            normalized.append((msg.role.value, msg.content))
        elif isinstance(msg, dict):
            normalized.append((msg.get("role"), msg.get("content")))
        else:
            return CompletionValidation(valid=False, error=f"Message at index {index} is not an object")

    system_positions = [i for i, (role, _) in enumerate(normalized) if role == MessageRole.SYSTEM.value]
    if len(system_positions) > 1:
        return CompletionValidation(
            valid=False, error="Multiple system prompts detected - potential injection"
        )
    if system_positions and system_positions[0] != 0:
        return CompletionValidation(valid=False, error="System prompt must be first message")

    for index, (role, content) in enumerate(normalized):
        if not role or not content or not isinstance(content, str):
            return CompletionValidation(valid=False, error=f"Message at index {index} missing role or content")
        if not isinstance(role, str) or role not in ALLOWED_ROLES:
            return CompletionValidation(valid=False, error=f"Invalid role {role!r} at index {index}")

    return CompletionValidation(valid=True)


def sanitize_user_message(content: Any, max_content_length: int = MAX_MESSAGE_CONTENT_LENGTH) -> str:
    """Cut to max length, strip null bytes, trim whitespace."""
    if not content or not isinstance(content, str):
        return ""
    sanitized = content[:max_content_length]
    sanitized = sanitized.replace("\x00", "")
    return sanitized.strip()
