"""Exception types raised across chatrelay."""


class ChatRelayError(Exception):
    """Base class for chatrelay errors."""


class ConfigError(ChatRelayError):
    """Configuration is missing or invalid."""


class DeliveryError(ChatRelayError):
    """A reply could not be delivered to its conversation."""


class MediaError(ChatRelayError):
    """Media could not be loaded or fits no size limit."""


class ListenerError(ChatRelayError):
    """The inbound listener failed to connect or was used while closed."""


class ResolverError(ChatRelayError):
    """The reply resolver failed to produce a reply."""
