"""
Turn service - runs the LISTENING and RESPONDING steps of the turn loop.

GUARANTEE: listen() and respond() always return an Instruction. Any failure
on the critical path becomes a spoken apology followed by listening again;
a participant is never left without an instruction.

Best-effort side paths (history read/write) never fail the turn:
- history read fails -> start from empty history
- history write fails -> logged, reply still spoken
"""

import asyncio
import logging
from typing import List, Optional

import openai

from engine.turn_machine import (
    CONFIGURATION_APOLOGY,
    GENERIC_APOLOGY,
    Instruction,
    TurnContext,
    TurnState,
    apology_instruction,
    classify_turn,
    limit_exceeded_instruction,
    listen_instruction,
    listen_turn,
    reply_instruction,
)
from personas import PersonaCache, PersonaDescriptor, Role

from .conversation_store import ConversationStore
from .conversation_validator import (
    MAX_HISTORY_MESSAGES,
    MAX_MESSAGE_CONTENT_LENGTH,
    sanitize_user_message,
    validate_conversation_history,
    validate_messages_for_completion,
)
from .errors import CircuitOpenError, NotFound, UpstreamUnavailable, ValidationFailure
from .models import ChatMessage, MessageRole
from .openai_service import CompletionService
from .rate_limiter import RateLimiter
from .resilience import build_error_context, log_structured_error

logger = logging.getLogger(__name__)

UNREACHABLE_APOLOGY = "I apologize, but I am unable to reach my AI service. Please try again in a moment."
MISCONFIGURED_APOLOGY = "I apologize, but my AI service is not configured correctly. Please contact support."
OVERLOADED_APOLOGY = "I apologize, but my AI service is currently overloaded. Please try again shortly."


def apology_for(error: BaseException) -> str:
    """Pick the spoken apology for a RESPONDING failure."""
    if isinstance(error, NotFound):
        return CONFIGURATION_APOLOGY
    if isinstance(error, openai.AuthenticationError) or (
        isinstance(error, UpstreamUnavailable) and "API key" in str(error)
    ):
        return MISCONFIGURED_APOLOGY
    if isinstance(error, openai.RateLimitError):
        return OVERLOADED_APOLOGY
    if isinstance(error, (CircuitOpenError, openai.APIConnectionError, asyncio.TimeoutError, TimeoutError)):
        return UNREACHABLE_APOLOGY
    return GENERIC_APOLOGY


def _parse_role(value: str) -> Optional[Role]:
    try:
        return Role(value)
    except ValueError:
        return None


class ConversationTurnService:
    """Drives one participant's turn: listen, or respond to captured speech."""

    def __init__(
        self,
        store: ConversationStore,
        rate_limiter: RateLimiter,
        personas: PersonaCache,
        completion: CompletionService,
        conversation_ttl_seconds: Optional[int] = None,
        max_history_messages: int = MAX_HISTORY_MESSAGES,
        max_content_length: int = MAX_MESSAGE_CONTENT_LENGTH,
    ):
        self.store = store
        self.rate_limiter = rate_limiter
        self.personas = personas
        self.completion = completion
        self.conversation_ttl_seconds = conversation_ttl_seconds
        self.max_history_messages = max_history_messages
        self.max_content_length = max_content_length

    async def _load_persona(self, context: TurnContext) -> Optional[PersonaDescriptor]:
        role = _parse_role(context.role)
        if role is None:
            logger.error(f"Unknown role {context.role!r} for persona {context.persona}")
            return None
        return await self.personas.load(role, context.persona)

    async def listen(self, context: TurnContext, is_first_turn: bool) -> Instruction:
        """Listen endpoint: agent intro on its first turn, otherwise capture speech."""
        logger.info(f"Listen turn for {context.role}: {context.persona} (first={is_first_turn})")
        if classify_turn(context.role, is_first_turn, None) != TurnState.AGENT_INTRO:
            return listen_instruction(context)

        try:
            persona = await self._load_persona(context)
        except Exception as e:
            log_structured_error(e, build_error_context(
                function_name="transcribe", operation="load persona", conference_sid=context.conference_id,
            ))
            persona = None
        return listen_turn(context, is_first_turn, persona.introduction if persona else None)

    async def _read_history(self, context: TurnContext) -> List[ChatMessage]:
        try:
            stored = await self.store.get(context.conference_id)
        except Exception as e:
            logger.warning(
                f"Failed to retrieve conversation history for {context.conference_id}: {e} - starting fresh"
            )
            return []

        # Never trust a storage round-trip: re-validate, and never accept a stored system prompt
        validation = validate_conversation_history(
            stored,
            allow_system_prompt=False,
            max_content_length=self.max_content_length,
            max_history_messages=self.max_history_messages,
        )
        if not validation.valid:
            logger.error(
                f"SECURITY: Invalid conversation history for {context.conference_id}: {validation.error} - discarding"
            )
            return []
        return validation.messages

    async def _write_history(self, context: TurnContext, messages: List[ChatMessage]) -> None:
        # Persist without the system prompt; it is re-added from the persona every turn
        history = [m for m in messages if m.role != MessageRole.SYSTEM]
        try:
            await self.store.put(context.conference_id, history, self.conversation_ttl_seconds)
        except Exception as e:
            log_structured_error(e, build_error_context(
                function_name="respond",
                operation="store conversation history",
                conference_sid=context.conference_id,
                additional_context={"messageCount": len(history)},
            ))

    async def respond(self, context: TurnContext, captured_speech: Optional[str]) -> Instruction:
        """Respond endpoint: run the RESPONDING pipeline for captured speech."""
        speech = sanitize_user_message(captured_speech, self.max_content_length)
        if classify_turn(context.role, False, speech) == TurnState.LISTENING:
            logger.info(f"No speech detected for {context.role}: {context.persona}, listening again")
            return listen_instruction(context)

        logger.info(f"Respond turn for {context.role}: {context.persona}, speech={speech[:80]!r}")

        try:
            rate_limit = await self.rate_limiter.check_and_increment()
            if not rate_limit.allowed:
                logger.error(
                    f"RATE LIMIT EXCEEDED: {rate_limit.currentCount}/{rate_limit.limit} turns today "
                    f"conference={context.conference_id}"
                )
                return limit_exceeded_instruction(context)

            persona = await self._load_persona(context)
            if persona is None:
                raise NotFound("persona", f"{context.role}/{context.persona}")

            history = await self._read_history(context)
            messages = [ChatMessage(role=MessageRole.SYSTEM, content=persona.system_prompt)]
            messages.extend(history)
            messages.append(ChatMessage(role=MessageRole.USER, content=speech))

            check = validate_messages_for_completion(messages)
            if not check.valid:
                raise ValidationFailure(f"Invalid messages for completion: {check.error}")

            reply = await self.completion.complete(messages)
            if reply is None:
                raise CircuitOpenError(self.completion.breaker.name)
            logger.info(f"Completion for {context.persona}: {reply[:100]!r}")

            messages.append(ChatMessage(role=MessageRole.ASSISTANT, content=reply))
            await self._write_history(context, messages)
            return reply_instruction(context, reply)

        except Exception as e:
            log_structured_error(e, build_error_context(
                function_name="respond",
                operation="conversation turn",
                conference_sid=context.conference_id,
                additional_context={"role": context.role, "persona": context.persona},
            ))
            logger.warning(
                f"METRIC turn_fallback_used conference={context.conference_id} error={type(e).__name__}"
            )
            return apology_instruction(context, apology_for(e))
