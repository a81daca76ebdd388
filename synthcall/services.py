"""
Service container.

Everything the endpoints need is built once from Settings and handed to the
handlers through a FastAPI dependency, so tests can swap the whole container
with app.dependency_overrides.

Storage selection:
- SYNC_SERVICE_SID set (and Twilio credentials) -> Sync documents
- otherwise                                    -> in-memory (per process)
"""

import logging
from typing import List, Optional

from personas import PersonaCache

from .config import Settings
from .conversation_store import ConversationStore, InMemoryConversationStore, SyncConversationStore
from .lifecycle import LifecycleDispatcher
from .openai_service import COMPLETION_SERVICE_NAME, CompletionService
from .rate_limiter import InMemoryCounterBackend, RateLimiter, SyncCounterBackend
from .resilience import CircuitBreaker
from .security import RequestAuthenticator
from .turn_service import ConversationTurnService
from .twilio_service import TwilioService
from .twiml import TwimlRenderer

logger = logging.getLogger(__name__)

TRANSCRIPT_SERVICE_NAME = "VoiceIntelligence"


class Services:
    """The wired-up service graph for one running instance."""

    def __init__(
        self,
        settings: Settings,
        twilio_service: TwilioService,
        store: ConversationStore,
        rate_limiter: RateLimiter,
        personas: PersonaCache,
        completion: CompletionService,
        transcript_breaker: CircuitBreaker,
        authenticator: Optional[RequestAuthenticator] = None,
        renderer: Optional[TwimlRenderer] = None,
    ):
        self.settings = settings
        self.twilio_service = twilio_service
        self.store = store
        self.rate_limiter = rate_limiter
        self.personas = personas
        self.completion = completion
        self.transcript_breaker = transcript_breaker
        self.authenticator = authenticator or RequestAuthenticator(
            settings.twilio_auth_token,
            mode=settings.validation_mode,
            base_url=settings.webhook_base_url,
            skip=settings.skip_webhook_validation,
        )
        self.renderer = renderer or TwimlRenderer(voice=settings.voice)

        self.turns = ConversationTurnService(
            store=store,
            rate_limiter=rate_limiter,
            personas=personas,
            completion=completion,
            conversation_ttl_seconds=settings.conversation_ttl_seconds,
            max_history_messages=settings.max_history_messages,
            max_content_length=settings.max_message_content_length,
        )
        self.dispatcher = LifecycleDispatcher(
            twilio_service,
            transcript_breaker,
            max_attempts=settings.retry_max_attempts,
            base_delay_ms=settings.retry_base_delay_ms,
            max_delay_ms=settings.retry_max_delay_ms,
        )

    @property
    def breakers(self) -> List[CircuitBreaker]:
        return [self.completion.breaker, self.transcript_breaker]

    @classmethod
    def from_settings(cls, settings: Settings) -> "Services":
        twilio_service = TwilioService(settings)

        if twilio_service.documents is not None:
            store: ConversationStore = SyncConversationStore(
                twilio_service.documents,
                ttl_seconds=settings.conversation_ttl_seconds,
                max_messages=settings.max_history_messages,
            )
            backend = SyncCounterBackend(twilio_service.documents)
            logger.info("State backend: Twilio Sync")
        else:
            store = InMemoryConversationStore(
                ttl_seconds=settings.conversation_ttl_seconds,
                max_messages=settings.max_history_messages,
            )
            backend = InMemoryCounterBackend()
            logger.warning("State backend: in-memory (state is lost on restart and not shared between instances)")

        rate_limiter = RateLimiter(
            backend,
            limit=settings.max_daily_calls,
            window_ttl_seconds=settings.rate_limit_ttl_seconds,
        )

        personas = PersonaCache(
            data_dir=settings.persona_data_dir,
            base_url=settings.persona_base_url,
            ttl_seconds=settings.persona_cache_ttl_seconds,
        )
        if not personas.is_configured:
            logger.warning("PERSONA_DATA_DIR / PERSONA_BASE_URL not set - personas cannot be loaded")

        completion = CompletionService(
            api_key=settings.openai_api_key,
            breaker=CircuitBreaker(
                COMPLETION_SERVICE_NAME,
                failure_threshold=settings.circuit_failure_threshold,
                reset_timeout_ms=settings.circuit_reset_timeout_ms,
            ),
            model=settings.openai_model,
            timeout_seconds=settings.openai_timeout_seconds,
            max_attempts=settings.retry_max_attempts,
            base_delay_ms=settings.retry_base_delay_ms,
            max_delay_ms=settings.retry_max_delay_ms,
        )

        transcript_breaker = CircuitBreaker(
            TRANSCRIPT_SERVICE_NAME,
            failure_threshold=settings.circuit_failure_threshold,
            reset_timeout_ms=settings.circuit_reset_timeout_ms,
        )

        return cls(
            settings=settings,
            twilio_service=twilio_service,
            store=store,
            rate_limiter=rate_limiter,
            personas=personas,
            completion=completion,
            transcript_breaker=transcript_breaker,
        )
