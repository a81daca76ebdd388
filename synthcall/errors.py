"""
Error taxonomy for the synthetic call service.

Only AuthenticationFailure ever reaches the telephony platform as an HTTP
error (403). Every other class is caught inside the service and turned into
a spoken fallback or a structured JSON acknowledgment.
"""

from typing import Any, Dict, Optional


class SynthCallError(Exception):
    """Base class for all service errors."""


class AuthenticationFailure(SynthCallError):
    """Inbound callback failed signature validation."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class RateLimitExceeded(SynthCallError):
    """Daily turn ceiling reached."""

    def __init__(self, current_count: int, limit: int):
        super().__init__(f"Rate limit exceeded: {current_count}/{limit}")
        self.current_count = current_count
        self.limit = limit


class UpstreamUnavailable(SynthCallError):
    """Completion or enrichment service unreachable or erroring."""

    def __init__(self, service: str, message: str = ""):
        super().__init__(f"{service} unavailable: {message}" if message else f"{service} unavailable")
        self.service = service


class CircuitOpenError(UpstreamUnavailable):
    """Call short-circuited because the breaker is open."""

    def __init__(self, name: str):
        super().__init__(name, "circuit breaker is OPEN")
        self.name = name


class ValidationFailure(SynthCallError):
    """Malformed or tampered payload/history."""


class NotFound(SynthCallError):
    """Referenced conference, recording or persona does not exist."""

    def __init__(self, resource: str, identifier: Optional[str] = None):
        message = f"{resource} {identifier} not found" if identifier else f"{resource} not found"
        super().__init__(message)
        self.resource = resource
        self.identifier = identifier


class StoreUnavailable(SynthCallError):
    """Conversation store or counter store could not be reached."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        super().__init__(f"{operation} failed: {cause}" if cause else f"{operation} failed")
        self.operation = operation
        self.cause = cause


def error_details(error: BaseException) -> Dict[str, Any]:
    """Pull the code/status attributes that client libraries attach to errors."""
    return {
        "errorType": type(error).__name__,
        "errorMessage": str(error),
        "errorCode": getattr(error, "code", None),
        "errorStatus": getattr(error, "status", None) or getattr(error, "status_code", None),
    }
