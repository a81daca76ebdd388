"""
Shared fixtures: in-memory services, a mocked OpenAI client, persona data.

Nothing here talks to Twilio or OpenAI.
"""

import os
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

os.environ.setdefault("OPENAI_API_KEY", "test-key-for-testing")

from personas import PersonaCache, Role
from synthcall.config import Settings
from synthcall.conversation_store import InMemoryConversationStore
from synthcall.openai_service import COMPLETION_SERVICE_NAME, CompletionService
from synthcall.rate_limiter import InMemoryCounterBackend, RateLimiter
from synthcall.resilience import CircuitBreaker
from synthcall.services import TRANSCRIPT_SERVICE_NAME, Services
from synthcall.twilio_service import TwilioService

AGENTS: Dict[str, Any] = {
    "AgentPrompts": [
        {
            "AgentName": "Sarah",
            "ScriptedIntroduction": "Hi, this is Sarah from Owl Internet. How can I help you today?",
            "ResponseToIssue": "Empathetic and solution focused",
            "CompetenceLevel": "High",
            "Attitude": "Positive",
            "ProductKnowledge": "Expert",
            "Characteristics": "Patient, never interrupts.",
        }
    ]
}

CUSTOMERS: Dict[str, Any] = {
    "CustomerPrompts": [
        {
            "CustomerName": "Lucy",
            "Prompt": "You are Lucy, a customer whose internet keeps dropping. You want a refund.",
        }
    ]
}


def completion_response(content: Optional[str]) -> MagicMock:
    """Shape of an OpenAI chat.completions.create() result."""
    response = MagicMock()
    response.choices = [MagicMock(message=MagicMock(content=content))]
    return response


def mock_openai_client(*outcomes: Any) -> MagicMock:
    """AsyncOpenAI stand-in. Each outcome is a reply string or an exception to raise."""
    client = MagicMock()
    side_effect: List[Any] = [
        o if isinstance(o, BaseException) else completion_response(o) for o in outcomes
    ]
    client.chat.completions.create = AsyncMock(side_effect=side_effect)
    return client


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "skip_webhook_validation": True,
        "retry_max_attempts": 1,
        "retry_base_delay_ms": 0,
        "retry_max_delay_ms": 0,
        "openai_api_key": "test-key-for-testing",
    }
    values.update(overrides)
    return Settings(**values)


def make_personas() -> PersonaCache:
    personas = PersonaCache()
    personas.prime(Role.AGENT, AGENTS)
    personas.prime(Role.CUSTOMER, CUSTOMERS)
    return personas


def make_services(
    settings: Optional[Settings] = None,
    openai_client: Optional[MagicMock] = None,
    twilio_client: Optional[MagicMock] = None,
    store: Optional[Any] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> Services:
    settings = settings or make_settings()
    completion = CompletionService(
        api_key=settings.openai_api_key,
        breaker=CircuitBreaker(
            COMPLETION_SERVICE_NAME,
            failure_threshold=settings.circuit_failure_threshold,
            reset_timeout_ms=settings.circuit_reset_timeout_ms,
        ),
        max_attempts=settings.retry_max_attempts,
        base_delay_ms=settings.retry_base_delay_ms,
        max_delay_ms=settings.retry_max_delay_ms,
        deadline_seconds=settings.turn_deadline_seconds,
        client=openai_client if openai_client is not None else mock_openai_client(),
    )
    return Services(
        settings=settings,
        twilio_service=TwilioService(settings, client=twilio_client),
        store=store or InMemoryConversationStore(
            ttl_seconds=settings.conversation_ttl_seconds,
            max_messages=settings.max_history_messages,
        ),
        rate_limiter=rate_limiter or RateLimiter(InMemoryCounterBackend(), limit=settings.max_daily_calls),
        personas=make_personas(),
        completion=completion,
        transcript_breaker=CircuitBreaker(
            TRANSCRIPT_SERVICE_NAME,
            failure_threshold=settings.circuit_failure_threshold,
            reset_timeout_ms=settings.circuit_reset_timeout_ms,
        ),
    )


@pytest.fixture
def personas() -> PersonaCache:
    return make_personas()
