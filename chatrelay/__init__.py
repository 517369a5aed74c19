"""chatrelay: multi-surface chat relay."""

__version__ = "0.1.0"
