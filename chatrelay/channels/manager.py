"""Channel manager for multi-channel orchestration."""

from loguru import logger

from chatrelay.channels.base import BaseChannel
from chatrelay.errors import DeliveryError


class ChannelManager:
    """
    Manages multiple chat channels.

    Handles channel lifecycle and routes outbound messages to the correct channel.
    """

    def __init__(self) -> None:
        self._channels: dict[str, BaseChannel] = {}

    def register(self, channel: BaseChannel) -> None:
        """Register a channel."""
        self._channels[channel.name] = channel
        logger.info(f"Channel registered: {channel.name}")

    def get(self, name: str) -> BaseChannel | None:
        return self._channels.get(name)

    async def send(self, channel: str, chat_id: str, content: str) -> None:
        """
        Send a message through a registered channel.

        Raises:
            DeliveryError: If no channel with that name is registered.
        """
        target = self._channels.get(channel)
        if target is None:
            raise DeliveryError(f"Unknown channel: {channel}")
        await target.send_message(chat_id, content)

    async def start_all(self) -> None:
        """Start all registered channels."""
        for name, channel in self._channels.items():
            try:
                await channel.start()
                logger.info(f"Channel started: {name}")
            except Exception as e:
                logger.error(f"Failed to start channel {name}: {e}")

    async def stop_all(self) -> None:
        """Stop all registered channels."""
        for name, channel in self._channels.items():
            try:
                await channel.stop()
                logger.info(f"Channel stopped: {name}")
            except Exception as e:
                logger.error(f"Failed to stop channel {name}: {e}")

    @property
    def channel_names(self) -> list[str]:
        """Get list of registered channel names."""
        return list(self._channels.keys())
