"""
Voice markup rendering.

Turns an engine Instruction into TwiML. Callback URLs carry the turn
context as query parameters so each invocation is self-contained.
"""

import logging
from typing import Any, Dict, Mapping, Optional
from urllib.parse import quote

from twilio.twiml.voice_response import VoiceResponse

from engine.turn_machine import Instruction, InstructionKind

logger = logging.getLogger(__name__)

LISTEN_ENDPOINT = "transcribe"
RESPOND_ENDPOINT = "respond"


def build_function_url(endpoint: str, params: Mapping[str, Any], base_url: Optional[str] = None) -> str:
    """Build "/<endpoint>?k=v&..." with URL-encoded values; None values are dropped."""
    pairs = []
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        pairs.append(f"{key}={quote(str(value), safe='')}")

    path = f"/{endpoint}"
    if pairs:
        path = f"{path}?{'&'.join(pairs)}"
    if base_url:
        return f"{base_url.rstrip('/')}{path}"
    return path


class TwimlRenderer:
    """Render instructions with a fixed voice and callback base URL."""

    def __init__(self, voice: str = "Polly.Joanna-Neural", base_url: Optional[str] = None):
        self.voice = voice
        self.base_url = base_url

    def _url(self, endpoint: str, params: Dict[str, Any]) -> str:
        return build_function_url(endpoint, params, self.base_url)

    def render(self, instruction: Instruction) -> str:
        response = VoiceResponse()
        params = instruction.context.query_params()
        kind = instruction.kind

        if kind == InstructionKind.BEGIN:
            response.redirect(
                self._url(LISTEN_ENDPOINT, {**params, "isFirstCall": instruction.is_first_turn}),
                method="POST",
            )

        elif kind == InstructionKind.SPEAK_INTRODUCTION:
            # No capture on the agent's first turn; come back as a normal listen turn
            response.say(instruction.text or "", voice=self.voice)
            response.redirect(self._url(LISTEN_ENDPOINT, {**params, "isFirstCall": False}), method="POST")

        elif kind == InstructionKind.LISTEN:
            response.gather(
                input="speech",
                action=self._url(RESPOND_ENDPOINT, params),
                method="POST",
                speech_timeout="auto",
                speech_model="experimental_conversations",
                enhanced="true",
                profanity_filter="false",
            )
            # No speech detected: loop back to listening
            response.redirect(self._url(LISTEN_ENDPOINT, params), method="POST")

        elif kind in (InstructionKind.SPEAK_REPLY, InstructionKind.SPEAK_APOLOGY):
            response.say(instruction.text or "", voice=self.voice)
            response.redirect(self._url(LISTEN_ENDPOINT, params), method="POST")

        elif kind in (InstructionKind.SPEAK_LIMIT_EXCEEDED, InstructionKind.SPEAK_AND_HANGUP):
            response.say(instruction.text or "", voice=self.voice)
            response.hangup()

        else:
            logger.error(f"Unhandled instruction kind {kind}, listening instead")
            response.redirect(self._url(LISTEN_ENDPOINT, params), method="POST")

        return str(response)
