"""Agent envelope formatting shared by all surfaces."""

from datetime import datetime, timezone


def _format_timestamp(timestamp: float | datetime | None) -> str | None:
    if timestamp is None:
        return None
    if isinstance(timestamp, datetime):
        moment = timestamp if timestamp.tzinfo else timestamp.replace(tzinfo=timezone.utc)
    else:
        try:
            moment = datetime.fromtimestamp(float(timestamp), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%MZ")


def format_agent_envelope(
    surface: str,
    body: str,
    from_: str | None = None,
    timestamp: float | datetime | None = None,
    host: str | None = None,
    ip: str | None = None,
) -> str:
    """
    Wrap a message body in a bracketed routing header.

    Example: ``[WhatsApp +15550001111 2025-01-01T10:00Z] hello``

    Args:
        surface: Human-readable surface name.
        body: Message body.
        from_: Sender or conversation label.
        timestamp: Epoch seconds or datetime of the message.
        host: Optional host label.
        ip: Optional remote address.

    Returns:
        The enveloped body.
    """
    parts = [surface.strip() or "Surface"]
    for value in (from_, host, ip):
        if value and value.strip():
            parts.append(value.strip())
    formatted = _format_timestamp(timestamp)
    if formatted:
        parts.append(formatted)
    return f"[{' '.join(parts)}] {body}"
