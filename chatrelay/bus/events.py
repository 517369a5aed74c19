"""Message bus event types."""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Literal, Protocol

if TYPE_CHECKING:
    from chatrelay.config.schema import Config
    from chatrelay.web.media import LoadedMedia

ChatType = Literal["direct", "group"]


class ReplyTransport(Protocol):
    """Outbound side of a live connection."""

    async def send_text(self, to: str, text: str) -> str | None: ...

    async def send_media(self, to: str, media: "LoadedMedia", caption: str | None = None) -> str | None: ...

    async def send_composing(self, to: str) -> None: ...


@dataclass(frozen=True)
class InboundMessage:
    """A message received from the web surface."""

    id: str | None
    from_address: str
    to_address: str
    body: str
    conversation_id: str
    chat_type: ChatType = "direct"
    timestamp: float | None = None
    sender_jid: str | None = None
    sender_e164: str | None = None
    sender_name: str | None = None
    push_name: str | None = None
    mentioned_ids: tuple[str, ...] = ()
    reply_to_id: str | None = None
    reply_to_body: str | None = None
    reply_to_sender: str | None = None
    media_type: str | None = None
    media_path: str | None = None
    media_url: str | None = None
    group_subject: str | None = None
    group_participants: tuple[str, ...] = ()
    self_jid: str | None = None
    self_e164: str | None = None
    transport: ReplyTransport | None = field(default=None, compare=False, repr=False)

    @property
    def is_group(self) -> bool:
        return self.chat_type == "group"


@dataclass
class ReplyPayload:
    """One reply produced by the resolver."""

    text: str | None = None
    media_url: str | None = None
    media_urls: list[str] = field(default_factory=list)
    reply_to_id: str | None = None

    def media_list(self) -> list[str]:
        """Ordered media URLs, ``media_urls`` winning over ``media_url``."""
        if self.media_urls:
            return list(self.media_urls)
        if self.media_url:
            return [self.media_url]
        return []

    def has_media(self) -> bool:
        return bool(self.media_list())


@dataclass
class ReplyEnvelope:
    """Normalized inbound message plus routing metadata handed to the resolver."""

    body: str
    from_address: str
    to_address: str
    surface: str = "whatsapp"
    chat_type: ChatType = "direct"
    conversation_id: str | None = None
    message_sid: str | None = None
    raw_body: str | None = None
    command_body: str | None = None
    reply_to_id: str | None = None
    reply_to_body: str | None = None
    reply_to_sender: str | None = None
    media_path: str | None = None
    media_url: str | None = None
    media_type: str | None = None
    group_subject: str | None = None
    group_members: str | None = None
    sender_name: str | None = None
    sender_e164: str | None = None
    was_mentioned: bool | None = None
    is_owner: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_group(self) -> bool:
        return self.chat_type == "group"


@dataclass
class ReplyHooks:
    """Callbacks the resolver may use while producing a reply."""

    on_reply_start: Callable[[], Awaitable[None]] | None = None
    on_tool_result: Callable[[ReplyPayload], Awaitable[None]] | None = None
    is_heartbeat: bool = False


@dataclass(frozen=True)
class DisconnectReason:
    """Why a listener connection ended."""

    status: int | None = None
    logged_out: bool = False
    error: str | None = None


ReplyResult = ReplyPayload | list[ReplyPayload] | None
ReplyResolver = Callable[[ReplyEnvelope, ReplyHooks, "Config"], Awaitable[ReplyResult]]


def normalize_reply_result(result: ReplyResult) -> list[ReplyPayload]:
    """Flatten a resolver result into a list of payloads."""
    if result is None:
        return []
    if isinstance(result, list):
        return [p for p in result if p is not None]
    return [result]
