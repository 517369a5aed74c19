"""Base class for chat channels."""

from abc import ABC, abstractmethod

from chatrelay.bus.events import ReplyResolver
from chatrelay.config.schema import Config


class BaseChannel(ABC):
    """
    Abstract base class for chat channels.

    Channels are responsible for:
    - Connecting to external platforms
    - Authorizing senders
    - Converting platform messages into reply envelopes
    - Delivering resolver replies back to the platform
    """

    def __init__(self, reply_resolver: ReplyResolver, config: Config) -> None:
        self.reply_resolver = reply_resolver
        self.config = config

    @property
    @abstractmethod
    def name(self) -> str:
        """Channel identifier."""
        pass

    @abstractmethod
    async def start(self) -> None:
        """Start the channel and begin receiving messages."""
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the channel and clean up resources."""
        pass

    @abstractmethod
    async def send_message(self, chat_id: str, content: str) -> None:
        """
        Send a message to a specific chat.

        Args:
            chat_id: Target chat identifier.
            content: Message content.
        """
        pass
