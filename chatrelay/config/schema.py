"""Configuration schema using Pydantic."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AgentDefaults(BaseModel):
    """Default agent configuration."""

    workspace: str = "~/.chatrelay/workspace"
    model: str = "anthropic/claude-sonnet-4-20250514"
    max_tokens: int = 4096
    temperature: float = 0.7
    system_prompt: str = ""
    history_turns: int = 20
    media_max_mb: float = 5
    heartbeat_minutes: int = 0


class AgentsConfig(BaseModel):
    """Agent configuration."""

    defaults: AgentDefaults = Field(default_factory=AgentDefaults)


class ProviderConfig(BaseModel):
    """LLM provider configuration."""

    api_key: str = ""
    api_base: str | None = None


class ProvidersConfig(BaseModel):
    """Configuration for LLM providers."""

    anthropic: ProviderConfig = Field(default_factory=ProviderConfig)
    openai: ProviderConfig = Field(default_factory=ProviderConfig)
    openrouter: ProviderConfig = Field(default_factory=ProviderConfig)
    groq: ProviderConfig = Field(default_factory=ProviderConfig)
    vllm: ProviderConfig = Field(default_factory=ProviderConfig)
    gemini: ProviderConfig = Field(default_factory=ProviderConfig)


class ReconnectConfig(BaseModel):
    """Reconnect policy overrides for the web connection."""

    initial_ms: int | None = None
    max_ms: int | None = None
    factor: float | None = None
    max_attempts: int | None = None


class GroupConfig(BaseModel):
    """Per-group overrides. The key "*" applies to every group."""

    require_mention: bool | None = None


class WebConfig(BaseModel):
    """WhatsApp Web (bridge) surface configuration."""

    enabled: bool = True
    bridge_url: str = "ws://localhost:3001"
    bridge_token: str = ""
    self_e164: str = ""
    allow_from: list[str] = Field(default_factory=list)
    groups: dict[str, GroupConfig] = Field(default_factory=dict)
    heartbeat_seconds: int | None = None
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)
    text_limit: int = 4000


class GroupChatConfig(BaseModel):
    """Group chat mention routing."""

    mention_patterns: list[str] = Field(default_factory=list)
    history_limit: int = 50
    digit_fallback: bool = True


class RoutingConfig(BaseModel):
    """Inbound routing configuration."""

    group_chat: GroupChatConfig = Field(default_factory=GroupChatConfig)


class MessagesConfig(BaseModel):
    """Prefixes applied to inbound envelopes and outbound replies."""

    message_prefix: str | None = None
    response_prefix: str | None = None


class SessionConfig(BaseModel):
    """Session store configuration."""

    store: str = "~/.chatrelay/sessions.json"
    scope: Literal["per-sender", "global"] = "per-sender"
    main_key: str = "main"
    idle_minutes: int = 60


class TelegramConfig(BaseModel):
    """Telegram channel configuration."""

    enabled: bool = False
    token: str = ""
    allow_from: list[str] = Field(default_factory=list)
    require_mention: bool = True
    reply_to_mode: Literal["off", "first", "all"] = "first"


class DiscordConfig(BaseModel):
    """Discord channel configuration (outbound only)."""

    enabled: bool = False
    token: str = ""


class KeybaseConfig(BaseModel):
    """Keybase channel configuration."""

    enabled: bool = False
    binary: str = "keybase"
    allow_from: list[str] = Field(default_factory=list)
    group_policy: Literal["disabled", "open", "allowlist"] = "allowlist"
    group_allow_from: list[str] = Field(default_factory=list)
    require_mention: bool = True


class ChannelsConfig(BaseModel):
    """Configuration for chat channels."""

    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    discord: DiscordConfig = Field(default_factory=DiscordConfig)
    keybase: KeybaseConfig = Field(default_factory=KeybaseConfig)


class Config(BaseSettings):
    """Root configuration for chatrelay."""

    model_config = SettingsConfigDict(env_prefix="CHATRELAY_", env_nested_delimiter="__")

    agents: AgentsConfig = Field(default_factory=AgentsConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    web: WebConfig = Field(default_factory=WebConfig)
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    messages: MessagesConfig = Field(default_factory=MessagesConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    data_dir: str = "~/.chatrelay/data"

    @property
    def workspace_path(self) -> Path:
        """Get expanded workspace path."""
        return Path(self.agents.defaults.workspace).expanduser()

    @property
    def data_path(self) -> Path:
        """Get expanded data directory (audit logs)."""
        return Path(self.data_dir).expanduser()

    @property
    def session_store_path(self) -> Path:
        """Get expanded session store path."""
        return Path(self.session.store).expanduser()

    def get_api_key(self) -> str | None:
        """Get API key in priority order: OpenRouter > Anthropic > OpenAI > Gemini > Groq > vLLM."""
        return (
            self.providers.openrouter.api_key
            or self.providers.anthropic.api_key
            or self.providers.openai.api_key
            or self.providers.gemini.api_key
            or self.providers.groq.api_key
            or self.providers.vllm.api_key
            or None
        )

    def get_api_base(self) -> str | None:
        """Get API base URL if using OpenRouter or vLLM."""
        if self.providers.openrouter.api_key:
            return self.providers.openrouter.api_base or "https://openrouter.ai/api/v1"
        if self.providers.vllm.api_base:
            return self.providers.vllm.api_base
        return None
