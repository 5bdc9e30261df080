"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class RetryConfig:
    """Bounded retry policy applied by callers to upstream failures."""

    attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 5.0


@dataclass(frozen=True)
class PollingConfig:
    """Periodic re-fetch settings for screens without push updates."""

    interval_seconds: float = 10.0


@dataclass(frozen=True)
class ChatConfig:
    """Live chat subscription settings."""

    reconnect_delay_seconds: float = 2.0
    max_reconnects: int = 0  # 0 means keep reconnecting until cancelled
