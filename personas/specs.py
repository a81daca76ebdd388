"""
Persona descriptors.

Persona content is deploy-time static JSON:
- agents.json:    {"AgentPrompts": [{"AgentName", "ScriptedIntroduction", ...}]}
- customers.json: {"CustomerPrompts": [{"CustomerName", "Prompt", ...}]}

A bare list is accepted in place of the wrapper object.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class Role(str, Enum):
    """Which side of the synthetic conversation a participant plays."""
    AGENT = "agent"
    CUSTOMER = "customer"


DEFAULT_INTRODUCTION = "Hello, how can I help you today?"


@dataclass(frozen=True)
class PersonaDescriptor:
    """Read-only description of a simulated participant."""
    name: str
    role: Role
    system_prompt: str
    introduction: str = ""
    raw_data: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


def _agent_system_prompt(entry: Dict[str, Any]) -> str:
    return (
        f"{entry.get('ScriptedIntroduction', '')}\n\n"
        "Characteristics:\n"
        f"- Response: {entry.get('ResponseToIssue', '')}\n"
        f"- Competence: {entry.get('CompetenceLevel', '')}\n"
        f"- Attitude: {entry.get('Attitude', '')}\n"
        f"- Product knowledge: {entry.get('ProductKnowledge', '')}\n\n"
        f"{entry.get('Characteristics', '')}"
    )


def persona_entries(data: Any, role: Role) -> List[Dict[str, Any]]:
    """Unwrap the persona list from a decoded agents.json / customers.json."""
    wrapper_key = "AgentPrompts" if role == Role.AGENT else "CustomerPrompts"
    if isinstance(data, dict):
        data = data.get(wrapper_key, [])
    if not isinstance(data, list):
        return []
    return [entry for entry in data if isinstance(entry, dict)]


def build_persona(entry: Dict[str, Any], role: Role) -> PersonaDescriptor:
    """Build a descriptor from one raw persona entry."""
    if role == Role.AGENT:
        return PersonaDescriptor(
            name=entry["AgentName"],
            role=role,
            system_prompt=_agent_system_prompt(entry),
            introduction=entry.get("ScriptedIntroduction") or "",
            raw_data=entry,
        )
    return PersonaDescriptor(
        name=entry["CustomerName"],
        role=role,
        system_prompt=entry.get("Prompt") or "",
        introduction="",
        raw_data=entry,
    )


def find_persona(data: Any, role: Role, name: str) -> Optional[PersonaDescriptor]:
    """Find a persona by its AgentName / CustomerName."""
    name_field = "AgentName" if role == Role.AGENT else "CustomerName"
    for entry in persona_entries(data, role):
        if entry.get(name_field) == name:
            return build_persona(entry, role)
    return None
