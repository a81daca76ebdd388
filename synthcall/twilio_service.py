"""
Twilio Service - the telephony platform at its interface boundary.

This service:
1. Builds the Twilio REST client with a bounded HTTP timeout
2. Exposes Sync documents for the conversation store and rate limiter
3. Reads participant hand-off documents (syncKey)
4. Cues the agent participant when a conference starts
5. Requests Voice Intelligence transcripts for completed recordings
6. Terminates conferences and reports dependency health

The REST client is blocking; calls run in worker threads.

Python 3.9 compatible - uses typing.Dict, typing.Optional
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from twilio.base.exceptions import TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client as TwilioClient
from twilio.twiml.voice_response import VoiceResponse

from .config import Settings
from .errors import NotFound
from .models import DependencyStatus
from .sync_documents import SyncDocumentClient
from .twiml import LISTEN_ENDPOINT, build_function_url

logger = logging.getLogger(__name__)


class TwilioService:
    """Service for the Twilio REST API."""

    def __init__(self, settings: Settings, client: Optional[TwilioClient] = None):
        """Initialize Twilio client.

        Does NOT crash if Twilio not configured - allows graceful degradation.
        """
        self.settings = settings
        self.client: Optional[TwilioClient] = client

        if self.client is None and settings.twilio_configured:
            self.client = TwilioClient(
                settings.twilio_account_sid,
                settings.twilio_auth_token,
                http_client=TwilioHttpClient(timeout=settings.store_timeout_seconds),
            )
            logger.info(f"TwilioService configured for account {settings.twilio_account_sid[:6]}...")
        elif self.client is None:
            logger.warning("TwilioService: Twilio credentials not configured - platform calls will fail")

        self.documents: Optional[SyncDocumentClient] = None
        if self.client is not None and settings.sync_service_sid:
            self.documents = SyncDocumentClient(self.client, settings.sync_service_sid)
        elif self.client is not None:
            logger.warning("TwilioService: SYNC_SERVICE_SID not configured - using in-memory state")

    @property
    def is_configured(self) -> bool:
        return self.client is not None

    @property
    def intelligence_configured(self) -> bool:
        return self.client is not None and bool(self.settings.voice_intelligence_sid)

    async def fetch_participant(self, sync_key: str) -> Dict[str, Any]:
        """Read a participant hand-off document.

        Returns:
            {"role", "persona", "conferenceId"} where conferenceId is the key prefix

        Raises:
            NotFound: Sync not configured or document absent
        """
        if self.documents is None:
            raise NotFound("sync document", sync_key)
        document = await self.documents.fetch(sync_key)
        if document is None:
            raise NotFound("sync document", sync_key)
        data = document.data
        return {
            "role": data.get("role"),
            "persona": data.get("name"),
            "conferenceId": sync_key.split("_")[0],
        }

    async def cue_agent(self, conference_sid: str, friendly_name: Optional[str]) -> Optional[str]:
        """Redirect the agent participant into its first (introduction) turn.

        Returns:
            The agent's call SID, or None when no agent participant was found
        """
        if self.client is None:
            raise RuntimeError("Twilio not configured")
        if not self.settings.webhook_base_url:
            raise RuntimeError("WEBHOOK_BASE_URL not configured - required to cue the agent")

        participants = await asyncio.to_thread(
            lambda: self.client.conferences(conference_sid).participants.list()
        )
        agent = next((p for p in participants if getattr(p, "label", None) == "agent"), None)
        if agent is None:
            logger.warning(f"Agent participant not found in conference {conference_sid}")
            return None

        conference_id = friendly_name or conference_sid
        url = build_function_url(
            LISTEN_ENDPOINT,
            {
                "role": "agent",
                "conferenceId": conference_id,
                "isFirstCall": True,
                "syncKey": f"{conference_id}_agent",
            },
            self.settings.webhook_base_url,
        )
        twiml = VoiceResponse()
        twiml.redirect(url, method="POST")

        await asyncio.to_thread(lambda: self.client.calls(agent.call_sid).update(twiml=str(twiml)))
        logger.info(f"Agent {agent.call_sid} redirected to start greeting in {conference_sid}")
        return agent.call_sid

    async def create_transcript(self, recording_sid: str, recording_url: Optional[str]) -> str:
        """Request a Voice Intelligence transcript. Returns the transcript SID."""
        if not self.intelligence_configured:
            raise RuntimeError("VOICE_INTELLIGENCE_SID not configured")

        if recording_url:
            media_url = recording_url if recording_url.startswith("http") else f"https://api.twilio.com{recording_url}"
            channel = {"media_properties": {"media_url": media_url}}
        else:
            channel = {"media_properties": {"source_sid": recording_sid}}

        transcript = await asyncio.to_thread(
            lambda: self.client.intelligence.v2.transcripts.create(
                service_sid=self.settings.voice_intelligence_sid,
                channel=channel,
            )
        )
        logger.info(f"Transcript created: {transcript.sid} for recording {recording_sid}")
        return transcript.sid

    async def terminate_conference(self, conference_sid: str) -> Dict[str, Any]:
        """End a conference if it is still running.

        Raises:
            NotFound: Conference does not exist
        """
        if self.client is None:
            raise RuntimeError("Twilio not configured")

        try:
            conference = await asyncio.to_thread(lambda: self.client.conferences(conference_sid).fetch())
        except TwilioRestException as e:
            if e.status == 404:
                raise NotFound("conference", conference_sid) from e
            raise

        previous_status = conference.status
        if previous_status == "completed":
            logger.info(f"Conference {conference_sid} is already completed")
            return {"action": "already_completed", "previousStatus": previous_status}

        updated = await asyncio.to_thread(
            lambda: self.client.conferences(conference_sid).update(status="completed")
        )
        logger.info(f"Conference {conference_sid} terminated")
        return {"action": "terminated", "previousStatus": previous_status, "newStatus": updated.status}

    async def check_platform(self) -> DependencyStatus:
        if self.client is None:
            return DependencyStatus(status="not_configured", message="Twilio credentials not set")
        try:
            await asyncio.to_thread(
                lambda: self.client.api.accounts(self.settings.twilio_account_sid).fetch()
            )
            return DependencyStatus(status="healthy", message="Connected to Twilio API")
        except Exception as e:
            return DependencyStatus(status="unhealthy", message=str(e))

    async def check_intelligence(self) -> DependencyStatus:
        if not self.intelligence_configured:
            return DependencyStatus(status="not_configured", message="VOICE_INTELLIGENCE_SID not set")
        try:
            await asyncio.to_thread(
                lambda: self.client.intelligence.v2.services(self.settings.voice_intelligence_sid).fetch()
            )
            return DependencyStatus(status="healthy", message="Voice Intelligence service accessible")
        except Exception as e:
            return DependencyStatus(status="degraded", message=str(e))
