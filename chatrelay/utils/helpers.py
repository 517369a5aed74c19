"""Common utility functions."""

import re
import uuid

_JID_USER_RE = re.compile(r"^(\d+)(?::\d+)?@(s\.whatsapp\.net|hosted)$")


def normalize_e164(number: str) -> str:
    """
    Normalize a phone number or WhatsApp address to E.164.

    Args:
        number: Raw number, optionally prefixed with ``whatsapp:``.

    Returns:
        The number as ``+digits``.
    """
    without_prefix = re.sub(r"^whatsapp:", "", number.strip()).strip()
    digits = re.sub(r"[^\d+]", "", without_prefix)
    if digits.startswith("+"):
        return "+" + digits[1:].replace("+", "")
    return f"+{digits}"


def jid_to_e164(jid: str | None) -> str | None:
    """Convert a user JID (``15551234567:3@s.whatsapp.net``) to E.164."""
    if not jid:
        return None
    match = _JID_USER_RE.match(jid.strip())
    if not match:
        return None
    return f"+{match.group(1)}"


def is_self_chat_mode(self_e164: str | None, allow_from: list[str] | None) -> bool:
    """
    Check whether the relay runs on the owner's own number.

    The owner talks to the relay by messaging themselves when their own
    number is on the allowlist.
    """
    if not self_e164 or not allow_from:
        return False
    normalized_self = normalize_e164(self_e164)
    return any(
        entry != "*" and normalize_e164(str(entry)) == normalized_self for entry in allow_from
    )


def format_error(error: BaseException) -> str:
    """
    Format an exception for display.

    Args:
        error: The exception to format.

    Returns:
        Human-readable error string.
    """
    error_type = type(error).__name__
    return f"{error_type}: {str(error)}"


def elide(text: str | None, limit: int = 400) -> str:
    """Shorten text for log lines, noting how much was cut."""
    if not text:
        return ""
    if len(text) <= limit:
        return text
    return f"{text[:limit]}… (truncated {len(text) - limit} chars)"


def new_connection_id() -> str:
    """Generate a short identifier for one listener connection."""
    return uuid.uuid4().hex[:12]


def format_duration(ms: float) -> str:
    """Render a millisecond duration as ``850ms`` or ``2.5s``."""
    if ms >= 1000:
        return f"{ms / 1000:.1f}s"
    return f"{round(ms)}ms"
