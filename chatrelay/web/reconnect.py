"""Reconnect backoff policy for the web connection."""

import asyncio
from dataclasses import dataclass

from chatrelay.config.schema import Config, ReconnectConfig

DEFAULT_HEARTBEAT_SECONDS = 60


@dataclass(frozen=True)
class ReconnectPolicy:
    """Exponential backoff parameters. ``max_attempts=0`` retries forever."""

    initial_ms: int = 2_000
    max_ms: int = 30_000
    factor: float = 1.8
    max_attempts: int = 12


DEFAULT_RECONNECT_POLICY = ReconnectPolicy()


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def resolve_reconnect_policy(
    config: Config | None = None,
    overrides: ReconnectConfig | ReconnectPolicy | None = None,
) -> ReconnectPolicy:
    """
    Merge defaults, ``web.reconnect`` config and explicit overrides.

    Values are clamped: ``initial_ms >= 250``, ``max_ms >= initial_ms``,
    ``1.1 <= factor <= 10`` and ``max_attempts >= 0``.
    """
    merged = {
        "initial_ms": DEFAULT_RECONNECT_POLICY.initial_ms,
        "max_ms": DEFAULT_RECONNECT_POLICY.max_ms,
        "factor": DEFAULT_RECONNECT_POLICY.factor,
        "max_attempts": DEFAULT_RECONNECT_POLICY.max_attempts,
    }
    layers = []
    if config is not None:
        layers.append(config.web.reconnect)
    if overrides is not None:
        layers.append(overrides)
    for layer in layers:
        for name in merged:
            value = getattr(layer, name, None)
            if value is not None:
                merged[name] = value

    initial_ms = int(max(250, merged["initial_ms"]))
    return ReconnectPolicy(
        initial_ms=initial_ms,
        max_ms=int(max(initial_ms, merged["max_ms"])),
        factor=_clamp(float(merged["factor"]), 1.1, 10.0),
        max_attempts=int(max(0, merged["max_attempts"])),
    )


def resolve_heartbeat_seconds(config: Config | None = None, override: int | None = None) -> int:
    """Heartbeat interval: explicit override, then ``web.heartbeat_seconds``, then 60."""
    candidate = override
    if candidate is None and config is not None:
        candidate = config.web.heartbeat_seconds
    if candidate is None or candidate <= 0:
        return DEFAULT_HEARTBEAT_SECONDS
    return int(candidate)


def compute_backoff(policy: ReconnectPolicy, attempt: int) -> int:
    """
    Delay before reconnect attempt ``attempt`` (1-based), in milliseconds.

    ``min(max_ms, initial_ms * factor ** (attempt - 1))`` with no jitter.
    """
    exponent = max(attempt - 1, 0)
    try:
        raw = policy.initial_ms * policy.factor**exponent
    except OverflowError:
        return policy.max_ms
    return int(min(policy.max_ms, round(raw)))


async def sleep_with_abort(seconds: float, abort: asyncio.Event | None = None) -> bool:
    """
    Sleep unless the abort event fires first.

    Returns:
        True if the full delay elapsed, False if aborted.
    """
    if abort is None:
        await asyncio.sleep(seconds)
        return True
    if abort.is_set():
        return False
    try:
        await asyncio.wait_for(abort.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return True
    return False
