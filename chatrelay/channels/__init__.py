"""Chat channels module."""

from chatrelay.channels.base import BaseChannel
from chatrelay.channels.manager import ChannelManager

__all__ = ["BaseChannel", "ChannelManager"]
