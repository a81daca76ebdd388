"""
Persona descriptors and the persona cache.
"""
from .specs import (
    DEFAULT_INTRODUCTION,
    PersonaDescriptor,
    Role,
    build_persona,
    find_persona,
)
from .loader import PersonaCache

__all__ = [
    "DEFAULT_INTRODUCTION",
    "PersonaDescriptor",
    "Role",
    "build_persona",
    "find_persona",
    "PersonaCache",
]
