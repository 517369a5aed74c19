"""Observability module."""

from chatrelay.observability.audit import DeliveryLog

__all__ = ["DeliveryLog"]
