"""
Conversation engine - turn-taking state machine.
"""
from .turn_machine import (
    CONFIGURATION_APOLOGY,
    GENERIC_APOLOGY,
    LIMIT_EXCEEDED_MESSAGE,
    Instruction,
    InstructionKind,
    TurnContext,
    TurnState,
    apology_instruction,
    classify_turn,
    entry_failure_instruction,
    entry_instruction,
    limit_exceeded_instruction,
    listen_instruction,
    listen_turn,
    reply_instruction,
)

__all__ = [
    "CONFIGURATION_APOLOGY",
    "GENERIC_APOLOGY",
    "LIMIT_EXCEEDED_MESSAGE",
    "Instruction",
    "InstructionKind",
    "TurnContext",
    "TurnState",
    "apology_instruction",
    "classify_turn",
    "entry_failure_instruction",
    "entry_instruction",
    "limit_exceeded_instruction",
    "listen_instruction",
    "listen_turn",
    "reply_instruction",
]
