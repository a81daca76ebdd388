"""
SynthCall - FastAPI Application

Webhook endpoints for synthetic two-party AI phone conversations.

Voice endpoints (/voice-handler, /transcribe, /respond) ALWAYS answer with
TwiML. A participant must never be left without an instruction; failures
become a spoken apology.

JSON callbacks (/conference-status, /conference-timer,
/transcription-webhook, /error-handler) always acknowledge with
{success, ..., timestamp}.

Every POST endpoint validates X-Twilio-Signature first; a failed check
answers 403 before any side effect.

Python 3.9 compatible.
"""

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Form, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from engine.turn_machine import (
    TurnContext,
    entry_failure_instruction,
    entry_instruction,
)

from .analytics import analyze_transcription
from .config import get_settings
from .debugger import handle_debugger_event
from .errors import AuthenticationFailure, NotFound, ValidationFailure
from .lifecycle import classify_event
from .models import DependencyStatus, HealthResponse
from .resilience import CircuitState, build_error_context, log_structured_error, utc_now_iso
from .services import Services

# Load environment variables from .env (repository root, then cwd)
env_paths = [
    Path(__file__).parent.parent / ".env",
    Path.cwd() / ".env",
]
for env_path in env_paths:
    if env_path.exists():
        load_dotenv(env_path)
        break
else:
    load_dotenv()

logging.basicConfig(
    level=logging.DEBUG if os.getenv("DEBUG", "false").lower() == "true" else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

FORBIDDEN_MESSAGE = "Invalid request signature"
CONFERENCE_SID_LENGTH = 34

# Service container (created lazily)
_services: Optional[Services] = None


def get_services() -> Services:
    """Get or create the service container."""
    global _services
    if _services is None:
        _services = Services.from_settings(get_settings())
    return _services


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize services on startup."""
    logger.info("=" * 60)
    logger.info("Starting SynthCall")

    services = get_services()
    settings = services.settings
    logger.info(f"Daily turn limit: {settings.max_daily_calls}")
    logger.info(f"Webhook validation mode: {settings.validation_mode.value}")
    if settings.skip_webhook_validation:
        logger.warning("SKIP_WEBHOOK_VALIDATION=true - inbound signatures are NOT checked")
    if not services.completion.is_configured:
        logger.warning("OPENAI_API_KEY missing - every RESPONDING turn will apologize")
    if not services.twilio_service.is_configured:
        logger.warning("Twilio service NOT configured - lifecycle actions will be skipped")

    logger.info("=" * 60)

    yield

    logger.info("Shutting down SynthCall")


app = FastAPI(
    title="SynthCall",
    description="Synthetic two-party AI phone conversations over Twilio conferences",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AuthenticationFailure)
async def authentication_failure_handler(request: Request, exc: AuthenticationFailure) -> JSONResponse:
    return JSONResponse(status_code=403, content={"error": "Forbidden", "message": FORBIDDEN_MESSAGE})


async def verify_twilio_request(request: Request, services: Services = Depends(get_services)) -> None:
    """Reject callbacks that do not carry a valid Twilio signature."""
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}
    result = services.authenticator.validate(
        request.url.path,
        request.url.query,
        request.headers,
        params,
    )
    if not result.valid:
        logger.error(f"Webhook rejected for {request.url.path}: {result.reason}")
        raise AuthenticationFailure(result.reason or FORBIDDEN_MESSAGE)


def _twiml(content: str) -> Response:
    return Response(content=content, media_type="application/xml")


def _require_context(
    role: Optional[str],
    persona: Optional[str],
    conference_id: Optional[str],
    sync_key: Optional[str],
) -> TurnContext:
    missing = [
        name for name, value in (("role", role), ("persona", persona), ("conferenceId", conference_id))
        if not value
    ]
    if missing:
        raise ValidationFailure(f"Missing required parameters: {', '.join(missing)}")
    return TurnContext(role=role, persona=persona, conference_id=conference_id, sync_key=sync_key)


async def _resolve_context(
    services: Services,
    role: Optional[str],
    persona: Optional[str],
    conference_id: Optional[str],
    sync_key: Optional[str],
) -> TurnContext:
    """Build the turn context, reading the hand-off document when a syncKey is given."""
    if sync_key and not (role and persona and conference_id):
        participant = await services.twilio_service.fetch_participant(sync_key)
        role = participant["role"] or role
        persona = participant["persona"] or persona
        conference_id = participant["conferenceId"] or conference_id
    return _require_context(role, persona, conference_id, sync_key)


def _fallback_context(
    role: Optional[str],
    persona: Optional[str],
    conference_id: Optional[str],
    sync_key: Optional[str],
) -> TurnContext:
    return TurnContext(
        role=role or "unknown",
        persona=persona or "AI",
        conference_id=conference_id or "unknown",
        sync_key=sync_key,
    )


@app.post("/voice-handler", dependencies=[Depends(verify_twilio_request)])
async def voice_handler(
    role: Optional[str] = Query(None),
    persona: Optional[str] = Query(None),
    conferenceId: Optional[str] = Query(None),
    syncKey: Optional[str] = Query(None),
    services: Services = Depends(get_services),
):
    """
    Entry point - called when a participant's call leg joins.

    With a syncKey the participant's role and persona come from the Sync
    hand-off document; otherwise from the query parameters.
    """
    try:
        if syncKey:
            participant = await services.twilio_service.fetch_participant(syncKey)
            role = participant["role"]
            persona = participant["persona"]
            conferenceId = participant["conferenceId"]
            logger.info(f"Voice handler called for {role}: {persona} (from Sync)")
        else:
            logger.info(f"Voice handler called for {role}: {persona}")

        context = _require_context(role, persona, conferenceId, syncKey)
        instruction = entry_instruction(context)
    except Exception as e:
        log_structured_error(e, build_error_context(
            function_name="voice-handler",
            operation="start turn loop",
            conference_sid=conferenceId,
            additional_context={"syncKey": syncKey, "role": role, "persona": persona},
        ))
        instruction = entry_failure_instruction(_fallback_context(role, persona, conferenceId, syncKey))

    return _twiml(services.renderer.render(instruction))


@app.post("/transcribe", dependencies=[Depends(verify_twilio_request)])
async def transcribe(
    role: Optional[str] = Query(None),
    persona: Optional[str] = Query(None),
    conferenceId: Optional[str] = Query(None),
    isFirstCall: str = Query("false"),
    syncKey: Optional[str] = Query(None),
    services: Services = Depends(get_services),
):
    """
    Listen endpoint.

    Agent's first turn: speak the introduction, then come back here.
    Otherwise: gather speech and post it to /respond.
    """
    is_first_turn = isFirstCall.lower() == "true"
    try:
        context = await _resolve_context(services, role, persona, conferenceId, syncKey)
    except Exception as e:
        log_structured_error(e, build_error_context(
            function_name="transcribe",
            operation="resolve turn context",
            conference_sid=conferenceId,
            additional_context={"syncKey": syncKey},
        ))
        instruction = entry_failure_instruction(_fallback_context(role, persona, conferenceId, syncKey))
        return _twiml(services.renderer.render(instruction))

    instruction = await services.turns.listen(context, is_first_turn)
    return _twiml(services.renderer.render(instruction))


@app.post("/respond", dependencies=[Depends(verify_twilio_request)])
async def respond(
    role: Optional[str] = Query(None),
    persona: Optional[str] = Query(None),
    conferenceId: Optional[str] = Query(None),
    syncKey: Optional[str] = Query(None),
    SpeechResult: str = Form(""),
    services: Services = Depends(get_services),
):
    """
    Respond endpoint - Twilio posts the gathered speech here.

    Runs rate limit -> persona -> history -> completion -> persist, and
    speaks the reply (or an apology) before listening again.
    """
    try:
        context = await _resolve_context(services, role, persona, conferenceId, syncKey)
    except Exception as e:
        log_structured_error(e, build_error_context(
            function_name="respond",
            operation="resolve turn context",
            conference_sid=conferenceId,
            additional_context={"syncKey": syncKey},
        ))
        instruction = entry_failure_instruction(_fallback_context(role, persona, conferenceId, syncKey))
        return _twiml(services.renderer.render(instruction))

    instruction = await services.turns.respond(context, SpeechResult)
    return _twiml(services.renderer.render(instruction))


@app.post("/conference-status", dependencies=[Depends(verify_twilio_request)])
async def conference_status(request: Request, services: Services = Depends(get_services)):
    """Status callbacks for conferences, participants, recordings and calls."""
    form = await request.form()
    payload: Dict[str, Any] = {key: str(value) for key, value in form.items()}
    payload.update(request.query_params)

    event = classify_event(payload)
    result = await services.dispatcher.dispatch(event)
    return JSONResponse(content=result)


@app.post("/conference-timer", dependencies=[Depends(verify_twilio_request)])
async def conference_timer(
    ConferenceSid: Optional[str] = Form(None),
    services: Services = Depends(get_services),
):
    """Terminate a conference once its time is up."""
    timestamp = utc_now_iso()

    if ConferenceSid is None:
        logger.error("Missing required ConferenceSid")
        return {"success": False, "error": "Missing required field: ConferenceSid", "timestamp": timestamp}

    conference_sid = ConferenceSid.strip()
    if not conference_sid:
        return {"success": False, "error": "ConferenceSid cannot be empty", "timestamp": timestamp}
    if not conference_sid.startswith("CF") or len(conference_sid) != CONFERENCE_SID_LENGTH:
        logger.error(f"Invalid ConferenceSid format: {conference_sid}")
        return {
            "success": False,
            "error": "ConferenceSid must be a valid Conference SID (CF + 32 characters)",
            "timestamp": timestamp,
        }

    try:
        outcome = await services.twilio_service.terminate_conference(conference_sid)
    except NotFound:
        logger.error(f"Conference {conference_sid} not found")
        return {"success": False, "error": f"Conference {conference_sid} not found", "timestamp": timestamp}
    except Exception as e:
        log_structured_error(e, build_error_context(
            function_name="conference-timer",
            operation="terminate conference",
            conference_sid=conference_sid,
        ))
        return {"success": False, "error": str(e), "timestamp": timestamp}

    response: Dict[str, Any] = {"success": True, "conferenceSid": conference_sid, **outcome, "timestamp": timestamp}
    if outcome["action"] == "already_completed":
        response["message"] = f"Conference {conference_sid} is already completed"
    return response


@app.post("/transcription-webhook", dependencies=[Depends(verify_twilio_request)])
async def transcription_webhook(
    TranscriptionSid: Optional[str] = Form(None),
    TranscriptionStatus: Optional[str] = Form(None),
    TranscriptionText: Optional[str] = Form(None),
    RecordingSid: Optional[str] = Form(None),
    CallSid: Optional[str] = Form(None),
):
    """Keyword analytics for a finished transcription."""
    timestamp = utc_now_iso()
    if not TranscriptionSid:
        logger.error("Missing required TranscriptionSid")
        return {"success": False, "error": "Missing required field: TranscriptionSid", "timestamp": timestamp}

    logger.info(f"Processing transcription {TranscriptionSid} with status: {TranscriptionStatus}")

    try:
        analytics = analyze_transcription(TranscriptionText)
    except Exception as e:
        log_structured_error(e, build_error_context(
            function_name="transcription-webhook",
            operation="analyze transcription",
            call_sid=CallSid,
            recording_sid=RecordingSid,
            transcription_sid=TranscriptionSid,
        ))
        return {"success": False, "error": str(e), "timestamp": timestamp}

    logger.info(
        f"Transcription {TranscriptionSid}: sentiment={analytics['sentiment']} "
        f"resolution={analytics['resolution']} escalation={analytics['escalation']}"
    )
    return {
        "success": True,
        "transcriptionSid": TranscriptionSid,
        "transcriptionText": TranscriptionText,
        "recordingSid": RecordingSid,
        "callSid": CallSid,
        "analytics": analytics,
        "timestamp": timestamp,
    }


@app.post("/error-handler", dependencies=[Depends(verify_twilio_request)])
async def error_handler(request: Request):
    """Twilio Debugger webhook: log, classify and triage platform errors."""
    form = await request.form()
    payload: Dict[str, Any] = {key: str(value) for key, value in form.items()}

    try:
        result = handle_debugger_event(payload)
    except Exception as e:
        log_structured_error(e, build_error_context(
            function_name="error-handler",
            operation="handle debugger event",
            additional_context={"errorSid": payload.get("Sid")},
        ))
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": str(e), "timestamp": utc_now_iso()},
        )
    return JSONResponse(content=result)


@app.get("/health")
async def health_check(services: Services = Depends(get_services)):
    """
    Aggregate dependency health.

    healthy   - every dependency healthy/configured and no breaker open
    degraded  - an optional dependency is missing or failing, or a breaker is open
    unhealthy - the telephony platform is unreachable or the check itself failed
    """
    settings = services.settings
    health = HealthResponse(
        status="healthy",
        timestamp=utc_now_iso(),
        environment={
            "hasAccountSid": bool(settings.twilio_account_sid),
            "hasAuthToken": bool(settings.twilio_auth_token),
            "hasSegmentKey": bool(settings.segment_write_key),
            "hasVoiceIntelligenceSid": bool(settings.voice_intelligence_sid),
            "hasSyncServiceSid": bool(settings.sync_service_sid),
            "hasOpenAIKey": bool(settings.openai_api_key),
        },
    )

    try:
        health.dependencies["twilio"] = await services.twilio_service.check_platform()
        if settings.segment_write_key:
            health.dependencies["segment"] = DependencyStatus(
                status="configured", message="Segment write key present"
            )
        else:
            health.dependencies["segment"] = DependencyStatus(
                status="not_configured", message="SEGMENT_WRITE_KEY not set"
            )
        health.dependencies["voiceIntelligence"] = await services.twilio_service.check_intelligence()
        health.circuitBreakers = [breaker.get_state() for breaker in services.breakers]

        all_ok = all(dep.status in ("healthy", "configured") for dep in health.dependencies.values())
        any_open = any(b["state"] == CircuitState.OPEN.value for b in health.circuitBreakers)
        if health.dependencies["twilio"].status == "unhealthy":
            health.status = "unhealthy"
        elif not all_ok or any_open:
            health.status = "degraded"
    except Exception as e:
        logger.error(f"Health check failed: {type(e).__name__}: {e}")
        health.status = "unhealthy"
        health.error = str(e)

    return JSONResponse(
        status_code=200 if health.status == "healthy" else 503,
        content=health.model_dump(),
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
