"""
Completion service - chat completions for persona replies.

Every request goes through a circuit breaker wrapping retry-with-backoff.
The SDK's own retries are disabled so attempts are counted in one place.
The request carries a bounded timeout; a timeout is a failure like any
other and is retried. The whole retry loop runs under one deadline
(TURN_DEADLINE_SECONDS) that keeps a turn below the platform webhook
timeout; an expired deadline counts as one breaker failure.

RESILIENCE DESIGN:
- Failures below the breaker threshold raise (the turn handler apologizes)
- Once the breaker is OPEN, complete() returns None without calling OpenAI

Python 3.9 compatible - uses typing.List, typing.Optional
"""

import asyncio
import logging
from typing import List, Optional

from openai import AsyncOpenAI

from .errors import UpstreamUnavailable
from .models import ChatMessage
from .resilience import CircuitBreaker, retry_with_backoff

logger = logging.getLogger(__name__)

COMPLETION_SERVICE_NAME = "OpenAICompletion"


class CompletionService:
    """Calls OpenAI chat completions for the next persona utterance."""

    def __init__(
        self,
        api_key: Optional[str],
        breaker: CircuitBreaker,
        model: str = "gpt-4o",
        timeout_seconds: float = 15.0,
        max_attempts: int = 3,
        base_delay_ms: int = 1000,
        max_delay_ms: int = 10000,
        deadline_seconds: Optional[float] = 12.0,
        temperature: float = 0.7,
        max_tokens: int = 150,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.model = model
        self.breaker = breaker
        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.deadline_seconds = deadline_seconds
        self.temperature = temperature
        self.max_tokens = max_tokens

        if client is not None:
            self.client: Optional[AsyncOpenAI] = client
        elif api_key:
            self.client = AsyncOpenAI(api_key=api_key, timeout=timeout_seconds, max_retries=0)
            logger.info(f"Completion service configured with model: {self.model}")
        else:
            self.client = None
            logger.warning("Completion service: OPENAI_API_KEY not configured - replies will fail")

    @property
    def is_configured(self) -> bool:
        return self.client is not None

    async def _create(self, messages: List[ChatMessage]) -> str:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[m.to_openai() for m in messages],
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        content = response.choices[0].message.content if response.choices else None
        if not content or not content.strip():
            raise UpstreamUnavailable(COMPLETION_SERVICE_NAME, "empty completion")
        return content.strip()

    async def complete(self, messages: List[ChatMessage]) -> Optional[str]:
        """Get the next assistant message.

        Returns:
            The completion text, or None if the breaker is open

        Raises:
            UpstreamUnavailable: OpenAI not configured
            asyncio.TimeoutError: The deadline expired before any attempt succeeded
            Exception: The last OpenAI error once retries are exhausted
        """
        if self.client is None:
            raise UpstreamUnavailable(COMPLETION_SERVICE_NAME, "OpenAI API key not configured")

        logger.info(f"Sending to OpenAI with {len(messages)} messages")

        async def _with_retry() -> str:
            attempts = retry_with_backoff(
                lambda: self._create(messages),
                max_attempts=self.max_attempts,
                base_delay_ms=self.base_delay_ms,
                max_delay_ms=self.max_delay_ms,
                operation_name="OpenAI chat completion",
            )
            try:
                return await asyncio.wait_for(attempts, timeout=self.deadline_seconds)
            except asyncio.TimeoutError:
                logger.error(
                    f"METRIC completion_deadline_exceeded deadline_seconds={self.deadline_seconds}"
                )
                raise

        return await self.breaker.execute(_with_retry, fallback=lambda: None)
