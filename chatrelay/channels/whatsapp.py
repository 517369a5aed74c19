"""WhatsApp Web channel backed by the connection monitor."""

from typing import Any

from loguru import logger

from chatrelay.bus.events import ReplyResolver
from chatrelay.channels.base import BaseChannel
from chatrelay.config.schema import Config
from chatrelay.errors import ListenerError
from chatrelay.web.monitor import ConnectionStatus, MonitorHandle, WebMonitor


class WhatsAppChannel(BaseChannel):
    """
    Runs a ``WebMonitor`` in the background.

    Extra keyword arguments are passed to ``WebMonitor`` (session store,
    delivery log, listener factory and so on).
    """

    def __init__(self, reply_resolver: ReplyResolver, config: Config, **monitor_kwargs: Any) -> None:
        super().__init__(reply_resolver, config)
        self.monitor_kwargs = monitor_kwargs
        self.handle: MonitorHandle | None = None

    @property
    def name(self) -> str:
        return "whatsapp"

    @property
    def status(self) -> ConnectionStatus | None:
        return self.handle.status if self.handle else None

    async def start(self) -> None:
        if self.handle is not None:
            return
        monitor = WebMonitor(self.config, self.reply_resolver, **self.monitor_kwargs)
        self.handle = monitor.start()

    async def stop(self) -> None:
        if self.handle is None:
            return
        handle, self.handle = self.handle, None
        handle.stop()
        status = await handle.wait()
        logger.debug(f"WhatsApp monitor finished after {status.reconnect_attempts} reconnect attempts")

    async def send_text(self, to: str, text: str) -> str | None:
        """Send through the live listener; raises ``ListenerError`` when not connected."""
        if self.handle is None:
            raise ListenerError("WhatsApp channel is not running")
        return await self.handle.send_text(to, text)

    async def send_message(self, chat_id: str, content: str) -> None:
        if self.handle is None:
            logger.warning("Cannot send WhatsApp message: channel not running.")
            return
        await self.handle.send_text(chat_id, content)
