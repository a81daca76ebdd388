"""
Inbound request authentication.

Verifies X-Twilio-Signature (HMAC-SHA1 over the canonical URL and the sorted
POST parameters, via twilio's RequestValidator) before any handler runs.

The canonical URL is WEBHOOK_BASE_URL + path + query when configured,
otherwise rebuilt from X-Forwarded-Host / X-Forwarded-Proto. When neither
is available the URL is ambiguous:
- permissive mode: allow and log a warning (availability first)
- strict mode:     reject
"""

import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from twilio.request_validator import RequestValidator

from .config import ValidationMode

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-twilio-signature"


@dataclass
class ValidationResult:
    valid: bool
    reason: Optional[str] = None
    skipped: bool = False


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.title())
    return value or None


class RequestAuthenticator:
    """Validates that a callback came from the telephony platform."""

    def __init__(
        self,
        auth_token: Optional[str],
        mode: ValidationMode = ValidationMode.PERMISSIVE,
        base_url: Optional[str] = None,
        skip: bool = False,
    ):
        self.auth_token = auth_token
        self.mode = mode
        self.base_url = base_url.rstrip("/") if base_url else None
        self.skip = skip
        self._validator = RequestValidator(auth_token) if auth_token else None

    def canonical_url(self, path: str, query: str, headers: Mapping[str, str]) -> Optional[str]:
        """Rebuild the URL the platform signed, or None if it cannot be determined."""
        original = _header(headers, "x-original-url")
        path_and_query = original or (f"{path}?{query}" if query else path)

        if self.base_url:
            return f"{self.base_url}{path_and_query}"

        forwarded_host = _header(headers, "x-forwarded-host")
        if forwarded_host:
            proto = _header(headers, "x-forwarded-proto") or "https"
            return f"{proto}://{forwarded_host}{path_and_query}"

        return None

    def validate(
        self,
        path: str,
        query: str,
        headers: Mapping[str, str],
        params: Mapping[str, str],
    ) -> ValidationResult:
        if self.skip:
            logger.warning("Webhook validation SKIPPED (SKIP_WEBHOOK_VALIDATION=true)")
            return ValidationResult(valid=True, skipped=True)

        signature = _header(headers, SIGNATURE_HEADER)
        if not signature:
            return ValidationResult(valid=False, reason="Missing X-Twilio-Signature header")

        if self._validator is None:
            logger.error("TWILIO_AUTH_TOKEN not configured")
            return ValidationResult(valid=False, reason="TWILIO_AUTH_TOKEN not configured")

        url = self.canonical_url(path, query, headers)
        if url is None:
            if self.mode == ValidationMode.STRICT:
                return ValidationResult(valid=False, reason="Cannot determine canonical request URL")
            logger.warning(
                f"Cannot determine canonical URL for {path} - skipping signature validation (permissive mode)"
            )
            return ValidationResult(valid=True, skipped=True)

        if not self._validator.validate(url, dict(params), signature):
            logger.error(f"Signature validation failed for URL: {url} ({len(params)} params)")
            return ValidationResult(valid=False, reason="Invalid signature - request may not be from Twilio")

        logger.debug(f"Signature validated for URL: {url}")
        return ValidationResult(valid=True)
