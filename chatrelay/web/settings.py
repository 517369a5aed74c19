"""Immutable web monitor settings derived from the config once at start."""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from chatrelay.config.schema import Config, GroupConfig
from chatrelay.web.delivery import WEB_TEXT_LIMIT
from chatrelay.web.history import DEFAULT_GROUP_HISTORY_LIMIT
from chatrelay.web.mentions import MentionConfig, build_mention_config, resolve_owner_list

DEFAULT_MESSAGE_PREFIX = "[chatrelay]"


@dataclass(frozen=True, eq=False)
class WebMonitorSettings:
    """Everything the per-message pipeline reads from configuration."""

    allow_from: tuple[str, ...] = ()
    groups: Mapping[str, GroupConfig] = field(default_factory=lambda: MappingProxyType({}))
    self_e164: str | None = None
    owners: tuple[str, ...] = ()
    message_prefix: str = ""
    response_prefix: str | None = None
    text_limit: int = WEB_TEXT_LIMIT
    max_media_bytes: int = 5 * 1024 * 1024
    group_history_limit: int = DEFAULT_GROUP_HISTORY_LIMIT
    mention_config: MentionConfig = field(default_factory=MentionConfig)
    session_scope: str = "per-sender"
    main_key: str = "main"

    @classmethod
    def from_config(cls, config: Config) -> "WebMonitorSettings":
        web = config.web
        allow_from = tuple(str(entry) for entry in web.allow_from)
        self_e164 = web.self_e164 or None

        message_prefix = config.messages.message_prefix
        if message_prefix is None:
            # Without an allowlist anyone can write in; mark relayed text.
            message_prefix = "" if allow_from else DEFAULT_MESSAGE_PREFIX

        group_chat = config.routing.group_chat
        return cls(
            allow_from=allow_from,
            groups=MappingProxyType(dict(web.groups)),
            self_e164=self_e164,
            owners=tuple(resolve_owner_list(allow_from, self_e164)),
            message_prefix=message_prefix,
            response_prefix=config.messages.response_prefix or None,
            text_limit=web.text_limit,
            max_media_bytes=int(config.agents.defaults.media_max_mb * 1024 * 1024),
            group_history_limit=group_chat.history_limit,
            mention_config=build_mention_config(
                group_chat.mention_patterns,
                allow_from=list(allow_from),
                digit_fallback=group_chat.digit_fallback,
            ),
            session_scope=config.session.scope,
            main_key=config.session.main_key.strip() or "main",
        )
