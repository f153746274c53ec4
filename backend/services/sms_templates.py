"""SMS templates - named message bodies with a default priority, rendered by {{key}} substitution."""
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from models import SMSPriority
from services.sms_errors import ValidationError

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")
_LEFTOVER = re.compile(r"\{\{.*?\}\}")

# Marks where a token rendered empty; a run of them with its surrounding blanks is one gap
_GAP = "\x00"
_GAP_RUN = re.compile(r"[ \t]*(?:\x00[ \t]*)+")


@dataclass(frozen=True)
class SMSTemplate:
    name: str
    body: str
    priority: SMSPriority


SMS_TEMPLATES: Dict[str, SMSTemplate] = {
    t.name: t
    for t in (
        SMSTemplate(
            "otp_verification",
            "Your CAMS verification code is: {{otp}}. Valid for 5 minutes. Do not share this code.",
            SMSPriority.IMMEDIATE,
        ),
        SMSTemplate(
            "welcome",
            "Welcome to {{churchName}}! Your account has been created. Login with your phone number to get started.",
            SMSPriority.NORMAL,
        ),
        SMSTemplate(
            "event_reminder",
            "Reminder: {{eventTitle}} starts at {{startTime}}. See you there! - {{churchName}}",
            SMSPriority.NORMAL,
        ),
        SMSTemplate(
            "event_cancelled",
            "NOTICE: {{eventTitle}} scheduled for {{startTime}} has been cancelled. Contact church office for details.",
            SMSPriority.IMMEDIATE,
        ),
        SMSTemplate(
            "attendance_marked",
            "Your attendance for {{eventTitle}} has been recorded. Thank you for participating!",
            SMSPriority.LOW,
        ),
        SMSTemplate(
            "password_reset",
            "Your CAMS password reset code is: {{resetCode}}. Valid for 15 minutes. Do not share this code.",
            SMSPriority.IMMEDIATE,
        ),
        SMSTemplate(
            "bulk_announcement",
            "{{message}} - {{churchName}}",
            SMSPriority.BULK,
        ),
    )
}


def get_template(name: str) -> SMSTemplate:
    template = SMS_TEMPLATES.get(name)
    if template is None:
        raise ValidationError(f"SMS template not found: {name}", field="template_name")
    return template


def render(body: str, variables: Optional[Dict[str, Any]] = None) -> str:
    """
    Substitute {{key}} placeholders from variables.

    Missing keys and None values render as an empty string and any unresolved
    {{...}} token left over is removed. The blanks around a removed token
    collapse to one space, or to nothing at either end of the message; all
    other whitespace is kept as written. Pure, no side effects.
    """
    variables = variables or {}

    def _sub(match: re.Match) -> str:
        value = variables.get(match.group(1))
        if value is None or str(value) == "":
            return _GAP
        return str(value)

    def _close_gap(match: re.Match) -> str:
        if match.start() == 0 or match.end() == len(match.string):
            return ""
        return " " if match.group().replace(_GAP, "") else ""

    message = _PLACEHOLDER.sub(_sub, body)
    message = _LEFTOVER.sub(_GAP, message)
    return _GAP_RUN.sub(_close_gap, message)


def render_template(name: str, variables: Optional[Dict[str, Any]] = None) -> str:
    return render(get_template(name).body, variables)


def recipient_variables(
    first_name: Optional[str],
    last_name: Optional[str],
    variables: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Per-recipient variables for campaign personalization (firstName, lastName, fullName)."""
    merged: Dict[str, Any] = {
        "firstName": first_name or "",
        "lastName": last_name or "",
        "fullName": " ".join(p for p in (first_name, last_name) if p),
    }
    merged.update(variables or {})
    return merged
