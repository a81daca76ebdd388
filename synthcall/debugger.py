"""
Twilio Debugger webhook: parse, classify and triage platform errors.

The Debugger posts form fields (Sid, AccountSid, Level, Timestamp) plus a
JSON "Payload" string with the error details. Each event is written as one
structured log line, assigned a severity from its error code, and answered
with the remediation notes for that code. CRITICAL events also emit an
alert log line.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from .resilience import utc_now_iso

logger = logging.getLogger(__name__)

# Webhook down (11200), auth failed (20003), resource missing (20404), conference error (53205)
CRITICAL_ERROR_CODES = {11200, 20003, 20404, 53205}
# Invalid TwiML, document parse failure, call in wrong state, bad or unreachable number
HIGH_PRIORITY_ERROR_CODES = {11100, 12100, 13227, 21211, 21217}

REMEDIATION_ACTIONS: Dict[int, List[str]] = {
    11200: ["ALERT: Webhook endpoint may be down", "Check webhook service deployment status"],
    11100: ["ALERT: TwiML validation failed", "Review TwiML structure in webhook response"],
    53205: ["ALERT: Conference creation/management failed", "Check conference orchestrator logs"],
    60001: ["LOG: Voice Intelligence service error", "Transcription may have failed"],
}


class Severity(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


@dataclass
class DebuggerError:
    sid: str
    level: str
    timestamp: str
    account_sid: Optional[str] = None
    error_code: Optional[int] = None
    message: Optional[str] = None
    more_info: Optional[str] = None
    resource_sid: Optional[str] = None
    service_sid: Optional[str] = None
    request_url: Optional[str] = None
    request_method: Optional[str] = None
    response_status_code: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)


def _error_code(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_debugger_payload(form: Mapping[str, Any]) -> DebuggerError:
    """Build a DebuggerError from the webhook form fields.

    Values inside the JSON Payload win over the top-level form fields.
    An unparseable Payload is logged and treated as empty.
    """
    payload: Dict[str, Any] = {}
    raw = form.get("Payload")
    if isinstance(raw, Mapping):
        payload = dict(raw)
    elif raw:
        try:
            parsed = json.loads(raw)
        except ValueError as e:
            logger.warning(f"Failed to parse Debugger Payload JSON: {e}")
        else:
            if isinstance(parsed, dict):
                payload = parsed
            else:
                logger.warning("Debugger Payload is not a JSON object, ignoring")

    def pick(payload_key: str, form_key: str) -> Any:
        return payload.get(payload_key) or form.get(form_key)

    status = payload.get("response_status_code")
    return DebuggerError(
        sid=form.get("Sid") or "unknown",
        level=form.get("Level") or "unknown",
        timestamp=form.get("Timestamp") or utc_now_iso(),
        account_sid=form.get("AccountSid"),
        error_code=_error_code(pick("error_code", "ErrorCode")),
        message=pick("message", "Message"),
        more_info=pick("more_info", "MoreInfo"),
        resource_sid=pick("resource_sid", "ResourceSid"),
        service_sid=pick("service_sid", "ServiceSid"),
        request_url=payload.get("request_url"),
        request_method=payload.get("request_method"),
        response_status_code=str(status) if status is not None else None,
        payload=payload,
    )


def classify_severity(error: DebuggerError) -> Severity:
    """Warnings are LOW; errors are CRITICAL, HIGH or MEDIUM by code."""
    if error.level != "ERROR":
        return Severity.LOW
    if error.error_code in CRITICAL_ERROR_CODES:
        return Severity.CRITICAL
    if error.error_code in HIGH_PRIORITY_ERROR_CODES:
        return Severity.HIGH
    return Severity.MEDIUM


def remediation_for(error: DebuggerError, severity: Severity) -> Dict[str, Any]:
    if error.error_code == 21211:
        actions = ["LOG: Invalid phone number detected", f"Phone number: {error.payload.get('to') or 'unknown'}"]
    elif error.error_code in REMEDIATION_ACTIONS:
        actions = list(REMEDIATION_ACTIONS[error.error_code])
    else:
        actions = [f"No automated remediation for error code {error.error_code}", "Manual review may be required"]

    return {
        "severity": severity.value,
        "actions": actions,
        "automated": any("Manual" not in action for action in actions),
    }


def log_debugger_error(error: DebuggerError, severity: Severity) -> None:
    record = asdict(error)
    record.pop("payload")
    record["severity"] = severity.value
    line = f"Twilio Debugger event: {json.dumps(record, default=str)}"
    if error.level == "ERROR":
        logger.error(line)
    else:
        logger.warning(line)


def send_critical_alert(error: DebuggerError, actions: List[str]) -> None:
    alert = {
        "errorSid": error.sid,
        "errorCode": error.error_code,
        "message": error.message,
        "timestamp": error.timestamp,
        "actions": actions,
    }
    logger.critical(f"METRIC debugger_critical_error {json.dumps(alert, default=str)}")


def handle_debugger_event(form: Mapping[str, Any]) -> Dict[str, Any]:
    """Parse, log, classify and triage one Debugger webhook call."""
    error = parse_debugger_payload(form)
    severity = classify_severity(error)
    log_debugger_error(error, severity)

    remediation = remediation_for(error, severity)
    for action in remediation["actions"]:
        logger.info(f"Remediation for {error.sid}: {action}")
    if severity == Severity.CRITICAL:
        send_critical_alert(error, remediation["actions"])

    return {
        "success": True,
        "errorSid": error.sid,
        "severity": severity.value,
        "remediation": remediation,
        "timestamp": utc_now_iso(),
    }
