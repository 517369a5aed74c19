"""Group activation modes and the owner ``/activation`` command."""

import re
from dataclasses import dataclass
from typing import Literal

GroupActivation = Literal["mention", "always"]

_ACTIVATION_RE = re.compile(r"^/activation(?:\s+([a-zA-Z]+))?\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class ActivationCommand:
    """Parsed ``/activation`` command."""

    has_command: bool
    mode: GroupActivation | None = None


def normalize_group_activation(raw: str | None) -> GroupActivation | None:
    value = (raw or "").strip().lower()
    if value == "mention":
        return "mention"
    if value == "always":
        return "always"
    return None


def parse_activation_command(raw: str | None) -> ActivationCommand:
    """
    Parse ``/activation`` with an optional ``mention`` or ``always`` argument.

    An unknown argument still counts as a command (with no mode) so the
    caller can answer with usage help.
    """
    trimmed = (raw or "").strip()
    if not trimmed:
        return ActivationCommand(has_command=False)
    match = _ACTIVATION_RE.match(trimmed)
    if not match:
        return ActivationCommand(has_command=False)
    return ActivationCommand(has_command=True, mode=normalize_group_activation(match.group(1)))
