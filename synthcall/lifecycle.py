"""
Lifecycle event dispatcher for conference/call/recording status callbacks.

classify_event() turns a raw callback payload into a LifecycleEvent. The
explicit StatusCallbackEvent field wins; without it the kind is inferred
from status-specific fields in a fixed order (recording first, then call).
Anything else is UNKNOWN and acknowledged with a passthrough marker.

dispatch() never raises and always acknowledges with success=True so the
platform does not retry the callback. Enrichment outcome is reported in
"enrichmentStatus". Nothing here changes turn-loop state.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

from .resilience import (
    CircuitBreaker,
    build_error_context,
    log_structured_error,
    retry_with_backoff,
    utc_now_iso,
)
from .twilio_service import TwilioService

logger = logging.getLogger(__name__)

TERMINAL_CALL_STATUSES = {"completed", "busy", "failed", "no-answer", "canceled"}

# How long a cued conference is remembered if its conference-end callback never arrives
CUED_CONFERENCE_TTL_SECONDS = 6 * 3600


class EventKind(str, Enum):
    CONFERENCE_START = "conference-start"
    CONFERENCE_END = "conference-end"
    PARTICIPANT_JOIN = "participant-join"
    PARTICIPANT_LEAVE = "participant-leave"
    RECORDING_COMPLETED = "recording-completed"
    CALL_ENDED = "call-ended"
    UNKNOWN = "unknown"


class EnrichmentStatus(str, Enum):
    CREATED = "created"
    SKIPPED_NOT_CONFIGURED = "skipped_not_configured"
    SKIPPED_CIRCUIT_OPEN = "skipped_circuit_open"
    FAILED = "failed"


@dataclass(frozen=True)
class LifecycleEvent:
    kind: EventKind
    conference_id: Optional[str] = None
    call_id: Optional[str] = None
    recording_id: Optional[str] = None
    # Raw event name as sent (kept for UNKNOWN passthrough)
    raw_kind: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    @property
    def event_name(self) -> str:
        if self.kind == EventKind.UNKNOWN:
            return self.raw_kind or EventKind.UNKNOWN.value
        return self.kind.value


def classify_event(payload: Mapping[str, Any]) -> LifecycleEvent:
    """Deterministically classify a status-callback payload."""
    attributes = dict(payload)
    raw_kind = (attributes.get("StatusCallbackEvent") or "").strip() or None

    if raw_kind is not None:
        try:
            kind = EventKind(raw_kind)
        except ValueError:
            kind = EventKind.UNKNOWN
    elif attributes.get("RecordingSid") and attributes.get("RecordingStatus") == "completed":
        kind = EventKind.RECORDING_COMPLETED
    elif attributes.get("CallSid") and attributes.get("CallStatus") in TERMINAL_CALL_STATUSES:
        kind = EventKind.CALL_ENDED
    else:
        kind = EventKind.UNKNOWN

    if kind == EventKind.UNKNOWN and raw_kind == EventKind.UNKNOWN.value:
        raw_kind = None

    return LifecycleEvent(
        kind=kind,
        conference_id=attributes.get("ConferenceSid"),
        call_id=attributes.get("CallSid"),
        recording_id=attributes.get("RecordingSid"),
        raw_kind=raw_kind,
        attributes=attributes,
    )


class LifecycleDispatcher:
    """Performs the side effects of lifecycle events."""

    def __init__(
        self,
        twilio_service: TwilioService,
        transcript_breaker: CircuitBreaker,
        max_attempts: int = 3,
        base_delay_ms: int = 1000,
        max_delay_ms: int = 10000,
        cued_ttl_seconds: float = CUED_CONFERENCE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.twilio_service = twilio_service
        self.transcript_breaker = transcript_breaker
        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.cued_ttl_seconds = cued_ttl_seconds
        self._clock = clock
        # conference SID -> expiry (clock seconds)
        self._cued_conferences: Dict[str, float] = {}

    def _prune_cued(self) -> None:
        now = self._clock()
        expired = [sid for sid, expires_at in self._cued_conferences.items() if expires_at <= now]
        for sid in expired:
            del self._cued_conferences[sid]
        if expired:
            logger.info(f"Forgot {len(expired)} cued conferences with no end callback")

    async def dispatch(self, event: LifecycleEvent) -> Dict[str, Any]:
        timestamp = utc_now_iso()
        logger.info(f"Received lifecycle event: {event.event_name} conference={event.conference_id}")

        try:
            if event.kind == EventKind.CONFERENCE_START:
                return await self._conference_start(event, timestamp)
            if event.kind == EventKind.CONFERENCE_END:
                return self._conference_end(event, timestamp)
            if event.kind in (EventKind.PARTICIPANT_JOIN, EventKind.PARTICIPANT_LEAVE):
                return self._participant(event, timestamp)
            if event.kind == EventKind.RECORDING_COMPLETED:
                return await self._recording_completed(event, timestamp)
            if event.kind == EventKind.CALL_ENDED:
                return self._call_ended(event, timestamp)
        except Exception as e:
            log_structured_error(e, build_error_context(
                function_name="conference-status",
                operation=event.event_name,
                conference_sid=event.conference_id,
                call_sid=event.call_id,
                recording_sid=event.recording_id,
            ))
            return {"success": True, "event": event.event_name, "error": str(e), "timestamp": timestamp}

        logger.warning(f"Unknown event type: {event.event_name}")
        return {
            "success": True,
            "event": event.event_name,
            "message": "Unknown event type processed",
            "passthrough": True,
            "timestamp": timestamp,
        }

    async def _conference_start(self, event: LifecycleEvent, timestamp: str) -> Dict[str, Any]:
        friendly_name = event.attributes.get("FriendlyName")
        response: Dict[str, Any] = {
            "success": True,
            "event": event.kind.value,
            "conferenceSid": event.conference_id,
            "friendlyName": friendly_name,
            "timestamp": timestamp,
        }

        self._prune_cued()
        if not event.conference_id or event.conference_id in self._cued_conferences:
            response["agentCued"] = False
            return response

        try:
            agent_call_sid = await self.twilio_service.cue_agent(event.conference_id, friendly_name)
        except Exception as e:
            logger.error(f"Error cueing agent in {event.conference_id}: {type(e).__name__}: {e}")
            agent_call_sid = None

        if agent_call_sid:
            self._cued_conferences[event.conference_id] = self._clock() + self.cued_ttl_seconds
        response["agentCued"] = agent_call_sid is not None
        return response

    def _conference_end(self, event: LifecycleEvent, timestamp: str) -> Dict[str, Any]:
        friendly_name = event.attributes.get("FriendlyName")
        duration = event.attributes.get("Duration")
        logger.info(f"Conference ended: {event.conference_id} name={friendly_name} duration={duration}")
        if event.conference_id:
            self._cued_conferences.pop(event.conference_id, None)
        return {
            "success": True,
            "event": event.kind.value,
            "conferenceSid": event.conference_id,
            "friendlyName": friendly_name,
            "duration": duration,
            "timestamp": timestamp,
        }

    def _participant(self, event: LifecycleEvent, timestamp: str) -> Dict[str, Any]:
        label = event.attributes.get("ParticipantLabel")
        verb = "joined" if event.kind == EventKind.PARTICIPANT_JOIN else "left"
        logger.info(f"Participant {verb} conference {event.conference_id}: call={event.call_id} label={label}")
        return {
            "success": True,
            "event": event.kind.value,
            "conferenceSid": event.conference_id,
            "callSid": event.call_id,
            "participantLabel": label,
            "timestamp": timestamp,
        }

    def _call_ended(self, event: LifecycleEvent, timestamp: str) -> Dict[str, Any]:
        duration = event.attributes.get("CallDuration")
        status = event.attributes.get("CallStatus")
        logger.info(f"Call ended: {event.call_id} status={status} duration={duration}")
        return {
            "success": True,
            "event": event.kind.value,
            "callSid": event.call_id,
            "callDuration": duration,
            "callStatus": status,
            "timestamp": timestamp,
        }

    async def _recording_completed(self, event: LifecycleEvent, timestamp: str) -> Dict[str, Any]:
        recording_url = event.attributes.get("RecordingUrl")
        response: Dict[str, Any] = {
            "success": True,
            "event": event.kind.value,
            "recordingSid": event.recording_id,
            "recordingUrl": recording_url,
            "conferenceSid": event.conference_id,
            "duration": event.attributes.get("RecordingDuration") or event.attributes.get("Duration"),
            "recordingStatus": event.attributes.get("RecordingStatus"),
            "timestamp": timestamp,
        }
        logger.info(f"Recording completed: {event.recording_id} conference={event.conference_id}")

        if not self.twilio_service.intelligence_configured:
            logger.warning("VOICE_INTELLIGENCE_SID not configured - skipping transcription")
            response["enrichmentStatus"] = EnrichmentStatus.SKIPPED_NOT_CONFIGURED.value
            return response

        async def _create_with_retry() -> str:
            return await retry_with_backoff(
                lambda: self.twilio_service.create_transcript(event.recording_id, recording_url),
                max_attempts=self.max_attempts,
                base_delay_ms=self.base_delay_ms,
                max_delay_ms=self.max_delay_ms,
                operation_name="Voice Intelligence transcript creation",
            )

        try:
            transcript_sid = await self.transcript_breaker.execute(_create_with_retry, fallback=lambda: None)
        except Exception as e:
            log_structured_error(e, build_error_context(
                function_name="conference-status",
                operation="Voice Intelligence transcript creation",
                conference_sid=event.conference_id,
                recording_sid=event.recording_id,
                additional_context={
                    "recordingUrl": recording_url,
                    "circuitState": self.transcript_breaker.get_state(),
                },
            ))
            response["enrichmentStatus"] = EnrichmentStatus.FAILED.value
            return response

        if transcript_sid is None:
            logger.warning("Transcript creation skipped due to circuit breaker")
            response["enrichmentStatus"] = EnrichmentStatus.SKIPPED_CIRCUIT_OPEN.value
            return response

        response["transcriptSid"] = transcript_sid
        response["enrichmentStatus"] = EnrichmentStatus.CREATED.value
        return response
