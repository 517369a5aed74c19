"""Reply resolver module."""

from chatrelay.agent.resolver import RelayReplyResolver, build_system_prompt

__all__ = ["RelayReplyResolver", "build_system_prompt"]
