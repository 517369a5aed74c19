"""Group mention detection and activation gating for the web surface."""

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from loguru import logger

from chatrelay.bus.events import InboundMessage
from chatrelay.reply.activation import GroupActivation, parse_activation_command
from chatrelay.session.store import SessionStore, group_session_key
from chatrelay.utils.helpers import is_self_chat_mode, jid_to_e164, normalize_e164
from chatrelay.web.history import GroupHistory, GroupHistoryEntry

if TYPE_CHECKING:
    from chatrelay.config.schema import GroupConfig

_INVISIBLE_RE = re.compile("[\u200b-\u200f\u202a-\u202e\u2060-\u206f]")
_DEVICE_SUFFIX_RE = re.compile(r":\d+(?=@)")
_STRAY_AT_RE = re.compile(r"(?:^|(?<=\s))@(?=\s|$)")


@dataclass(frozen=True)
class MentionConfig:
    """Compiled mention settings, built once per monitor run."""

    mention_regexes: tuple[re.Pattern[str], ...] = ()
    allow_from: tuple[str, ...] = ()
    digit_fallback: bool = True


def build_mention_config(
    patterns: list[str] | None,
    allow_from: list[str] | None = None,
    digit_fallback: bool = True,
) -> MentionConfig:
    """Compile mention patterns case-insensitively, skipping invalid ones."""
    compiled: list[re.Pattern[str]] = []
    for pattern in patterns or []:
        try:
            compiled.append(re.compile(pattern, re.IGNORECASE))
        except re.error as e:
            logger.debug(f"Ignoring invalid mention pattern {pattern!r}: {e}")
    return MentionConfig(
        mention_regexes=tuple(compiled),
        allow_from=tuple(str(entry) for entry in allow_from or []),
        digit_fallback=digit_fallback,
    )


def clean_mention_text(text: str | None) -> str:
    """Drop zero-width and direction markers, then lowercase."""
    return _INVISIBLE_RE.sub("", text or "").lower()


def is_bot_mentioned(msg: InboundMessage, config: MentionConfig) -> bool:
    """
    Decide whether a group message addresses the relay.

    Checks, in order: platform mention tags against our own identity, the
    configured patterns, and finally our own number appearing in the text.
    In self-chat mode the relay shares the owner's number, so tags and digits
    there are human mentions and only the configured patterns count.
    """
    self_chat = is_self_chat_mode(msg.self_e164, list(config.allow_from))

    if msg.mentioned_ids and not self_chat:
        normalized = [jid_to_e164(jid) or jid for jid in msg.mentioned_ids]
        if msg.self_e164 and normalize_e164(msg.self_e164) in normalized:
            return True
        if msg.self_jid:
            bare_self = _DEVICE_SUFFIX_RE.sub("", msg.self_jid)
            bare_mentions = {_DEVICE_SUFFIX_RE.sub("", jid) for jid in msg.mentioned_ids}
            if bare_self in bare_mentions:
                return True

    body_clean = clean_mention_text(msg.body)
    if any(regex.search(body_clean) for regex in config.mention_regexes):
        return True

    if config.digit_fallback and msg.self_e164 and not self_chat:
        self_digits = re.sub(r"\D", "", msg.self_e164)
        if self_digits:
            if self_digits in re.sub(r"\D", "", body_clean):
                return True
            body_compact = re.sub(r"[\s-]", "", msg.body or "")
            if re.search(rf"\+?{self_digits}", body_compact):
                return True

    return False


def strip_mentions_for_command(
    text: str,
    mention_regexes: tuple[re.Pattern[str], ...] | list[re.Pattern[str]],
    self_e164: str | None = None,
) -> str:
    """Remove mentions so ``@bot /activation always`` parses as a command."""
    result = _INVISIBLE_RE.sub("", text or "")
    for regex in mention_regexes:
        result = regex.sub(" ", result)
    if self_e164:
        digits = re.sub(r"\D", "", self_e164)
        if digits:
            result = re.sub(rf"\+?{digits}", " ", result)
    result = _STRAY_AT_RE.sub(" ", result)
    return re.sub(r"\s+", " ", result).strip()


def is_status_command(body: str | None) -> bool:
    trimmed = (body or "").strip().lower()
    if not trimmed:
        return False
    return trimmed in ("/status", "status") or trimmed.startswith("/status ")


def resolve_owner_list(allow_from: list[str] | tuple[str, ...] | None, self_e164: str | None) -> list[str]:
    """Owners are the explicit allowlist entries; with none, the relay's own number."""
    owners = [normalize_e164(str(entry)) for entry in allow_from or [] if str(entry).strip() and entry != "*"]
    if not owners and self_e164:
        owners = [normalize_e164(self_e164)]
    return owners


def resolve_group_require_mention(groups: "dict[str, GroupConfig] | None", conversation_id: str) -> bool:
    groups = groups or {}
    for key in (conversation_id, "*"):
        group = groups.get(key)
        if group is not None and group.require_mention is not None:
            return group.require_mention
    return True


def resolve_group_activation(
    conversation_id: str,
    store: SessionStore | None,
    groups: "dict[str, GroupConfig] | None",
) -> GroupActivation:
    """Stored activation for a group, else the configured default."""
    default: GroupActivation = (
        "mention" if resolve_group_require_mention(groups, conversation_id) else "always"
    )
    if store is None:
        return default
    return store.get_group_activation(group_session_key(conversation_id)) or default


@dataclass(frozen=True)
class GroupDecision:
    """Outcome of gating one group message."""

    respond: bool
    was_mentioned: bool = False
    bypass_mention: bool = False
    recorded: bool = False
    is_owner: bool = False
    command_body: str = ""
    activation: GroupActivation = "mention"
    reason: str = ""


class GroupGate:
    """
    Decides whether the relay answers a group message.

    History is appended synchronously here, before any await in the caller,
    so overlapping turns observe a consistent order.
    """

    def __init__(
        self,
        mention_config: MentionConfig,
        history: GroupHistory,
        owners: list[str],
        groups: "dict[str, GroupConfig] | None" = None,
        store: SessionStore | None = None,
    ) -> None:
        self.mention_config = mention_config
        self.history = history
        self.owners = owners
        self.groups = groups or {}
        self.store = store

    def is_owner(self, msg: InboundMessage) -> bool:
        if not msg.sender_e164:
            return False
        return normalize_e164(msg.sender_e164) in self.owners

    def evaluate(self, msg: InboundMessage) -> GroupDecision:
        conversation_id = msg.conversation_id
        self.history.note_member(conversation_id, msg.sender_e164, msg.sender_name)

        command_body = strip_mentions_for_command(
            msg.body, self.mention_config.mention_regexes, msg.self_e164
        )
        activation_command = parse_activation_command(command_body)
        is_owner = self.is_owner(msg)
        bypass = is_owner and (activation_command.has_command or is_status_command(command_body))

        if activation_command.has_command and not is_owner:
            logger.debug(f"Ignoring /activation from non-owner in group {conversation_id}")
            return GroupDecision(respond=False, command_body=command_body, reason="non-owner-command")

        recorded = False
        if not bypass:
            self.history.append(
                conversation_id,
                GroupHistoryEntry(
                    sender=msg.sender_name or msg.sender_e164 or "Unknown",
                    body=msg.body,
                    timestamp=msg.timestamp,
                ),
            )
            recorded = True

        was_mentioned = is_bot_mentioned(msg, self.mention_config)
        activation = resolve_group_activation(conversation_id, self.store, self.groups)
        if not bypass and activation != "always" and not was_mentioned:
            logger.debug(f"Group message stored for context (no mention detected) in {conversation_id}")
            return GroupDecision(
                respond=False,
                was_mentioned=False,
                recorded=recorded,
                is_owner=is_owner,
                command_body=command_body,
                activation=activation,
                reason="no-mention",
            )

        return GroupDecision(
            respond=True,
            was_mentioned=was_mentioned,
            bypass_mention=bypass,
            recorded=recorded,
            is_owner=is_owner,
            command_body=command_body,
            activation=activation,
        )
