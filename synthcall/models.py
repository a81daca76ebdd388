"""
Pydantic models shared across the service.
Python 3.9 compatible - uses typing.List, typing.Dict, typing.Optional
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ChatMessage(BaseModel):
    role: MessageRole
    content: str

    def to_openai(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class RateLimitResult(BaseModel):
    allowed: bool
    currentCount: int
    limit: int
    resetsAt: str
    # Populated only when the counter store failed and the check failed open
    error: Optional[str] = None


class RateLimitStatus(BaseModel):
    currentCount: int
    limit: int
    remaining: int
    resetsAt: str


class DependencyStatus(BaseModel):
    status: str = "unknown"  # healthy, configured, degraded, unhealthy, not_configured
    message: Optional[str] = None


class HealthResponse(BaseModel):
    status: str  # healthy, degraded, unhealthy
    timestamp: str
    service: str = "synthcall"
    version: str = "1.0.0"
    dependencies: Dict[str, DependencyStatus] = Field(default_factory=dict)
    environment: Dict[str, bool] = Field(default_factory=dict)
    circuitBreakers: List[Dict[str, Any]] = Field(default_factory=list)
    error: Optional[str] = None
