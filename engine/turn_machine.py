"""
Deterministic turn-taking state machine.

This module decides WHAT the next voice instruction is. It performs no I/O:
the RESPONDING pipeline (rate limit, history, completion) lives in
synthcall.turn_service and reports back through the instruction builders
below. Rendering an Instruction into voice markup is synthcall.twiml's job.

States:
- AGENT_INTRO: agent's first turn, speak the introduction, no capture
- LISTENING:   either role waiting for speech
- RESPONDING:  speech captured, completion pending

There is no terminal state; the conference is ended from outside.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional
import logging

from personas.specs import DEFAULT_INTRODUCTION, Role

logger = logging.getLogger(__name__)


LIMIT_EXCEEDED_MESSAGE = (
    "I apologize, but the service has reached its daily usage limit. Please try again tomorrow."
)
GENERIC_APOLOGY = "I apologize, but I am experiencing technical difficulties. Please try again."
CONFIGURATION_APOLOGY = (
    "I apologize, but there was an error loading my configuration. Please contact support."
)
ENTRY_FAILURE_MESSAGE = "We encountered an error. Please try again later."


class TurnState(str, Enum):
    AGENT_INTRO = "AGENT_INTRO"
    LISTENING = "LISTENING"
    RESPONDING = "RESPONDING"


class InstructionKind(str, Enum):
    """What the participant's call leg should do next."""
    BEGIN = "BEGIN"                              # redirect into the listen loop
    SPEAK_INTRODUCTION = "SPEAK_INTRODUCTION"    # say intro, redirect to listen (not first turn)
    LISTEN = "LISTEN"                            # capture speech, post it to respond
    SPEAK_REPLY = "SPEAK_REPLY"                  # say completion text, redirect to listen
    SPEAK_APOLOGY = "SPEAK_APOLOGY"              # say apology, redirect to listen
    SPEAK_LIMIT_EXCEEDED = "SPEAK_LIMIT_EXCEEDED"  # say limit message, hang up
    SPEAK_AND_HANGUP = "SPEAK_AND_HANGUP"        # unrecoverable entry failure


@dataclass(frozen=True)
class TurnContext:
    """Identifies one participant's loop. Carried in every callback URL."""
    role: str
    persona: str
    conference_id: str
    sync_key: Optional[str] = None

    @property
    def is_agent(self) -> bool:
        return self.role == Role.AGENT.value

    def query_params(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "persona": self.persona,
            "conferenceId": self.conference_id,
            "syncKey": self.sync_key,
        }


@dataclass(frozen=True)
class Instruction:
    kind: InstructionKind
    context: TurnContext
    text: Optional[str] = None
    is_first_turn: bool = False

    @property
    def ends_call(self) -> bool:
        return self.kind in (InstructionKind.SPEAK_LIMIT_EXCEEDED, InstructionKind.SPEAK_AND_HANGUP)


def classify_turn(role: str, is_first_turn: bool, captured_speech: Optional[str]) -> TurnState:
    """Map transition inputs to the state that handles them."""
    if role == Role.AGENT.value and is_first_turn:
        return TurnState.AGENT_INTRO
    if captured_speech is None or not captured_speech.strip():
        return TurnState.LISTENING
    return TurnState.RESPONDING


def entry_instruction(context: TurnContext) -> Instruction:
    """Start the loop. Only the agent starts with the first-turn flag set."""
    return Instruction(kind=InstructionKind.BEGIN, context=context, is_first_turn=context.is_agent)


def listen_turn(context: TurnContext, is_first_turn: bool, introduction: Optional[str] = None) -> Instruction:
    """Decide the listen endpoint's instruction.

    Agent first turn -> speak the introduction, then come back with
    is_first_turn=False. Everything else -> listen for speech.
    """
    state = classify_turn(context.role, is_first_turn, None)
    if state == TurnState.AGENT_INTRO:
        text = introduction or DEFAULT_INTRODUCTION
        logger.info(f"Turn state AGENT_INTRO for {context.persona} in {context.conference_id}")
        return Instruction(kind=InstructionKind.SPEAK_INTRODUCTION, context=context, text=text)
    return listen_instruction(context)


def listen_instruction(context: TurnContext) -> Instruction:
    return Instruction(kind=InstructionKind.LISTEN, context=context)


def reply_instruction(context: TurnContext, text: str) -> Instruction:
    return Instruction(kind=InstructionKind.SPEAK_REPLY, context=context, text=text)


def apology_instruction(context: TurnContext, text: str = GENERIC_APOLOGY) -> Instruction:
    return Instruction(kind=InstructionKind.SPEAK_APOLOGY, context=context, text=text)


def limit_exceeded_instruction(context: TurnContext) -> Instruction:
    return Instruction(kind=InstructionKind.SPEAK_LIMIT_EXCEEDED, context=context, text=LIMIT_EXCEEDED_MESSAGE)


def entry_failure_instruction(context: TurnContext) -> Instruction:
    return Instruction(kind=InstructionKind.SPEAK_AND_HANGUP, context=context, text=ENTRY_FAILURE_MESSAGE)
