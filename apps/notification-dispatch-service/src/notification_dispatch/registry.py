"""Channel registry: channel ids mapped to descriptors and adapters."""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Mapping

from .adapters import ChannelAdapter
from .config import Settings


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff: `base * multiplier ** (attempt - 1)`, capped."""

    base_seconds: float
    multiplier: float
    cap_seconds: float

    def __post_init__(self) -> None:
        if self.base_seconds < 0:
            raise ValueError("backoff base must be >= 0")
        if self.multiplier < 1:
            raise ValueError("backoff multiplier must be >= 1")
        if self.cap_seconds < self.base_seconds:
            raise ValueError("backoff cap must be >= base")

    def delay_for(self, attempt: int) -> float:
        """Delay before the retry that follows `attempt`."""

        if attempt < 1:
            raise ValueError("attempt must be >= 1")
        exponent = attempt - 1
        # Stop multiplying once past the cap so large attempts cannot overflow.
        delay = self.base_seconds
        for _ in range(exponent):
            if delay >= self.cap_seconds:
                break
            delay *= self.multiplier
        return min(delay, self.cap_seconds)


@dataclass(frozen=True)
class ChannelDescriptor:
    """Static delivery properties of one channel."""

    id: str
    retryable: bool
    max_attempts: int
    backoff_policy: BackoffPolicy
    timeout_seconds: float

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1 for channel {self.id}")
        if self.timeout_seconds <= 0:
            raise ValueError(f"timeout must be positive for channel {self.id}")


@dataclass(frozen=True)
class RegisteredChannel:
    descriptor: ChannelDescriptor
    adapter: ChannelAdapter


class ChannelRegistry:
    """Read-only lookup table built once before workers start."""

    def __init__(self, channels: Mapping[str, RegisteredChannel]) -> None:
        self._channels = MappingProxyType(dict(channels))

    def resolve(self, channel_id: str) -> ChannelDescriptor | None:
        entry = self._channels.get(channel_id)
        return entry.descriptor if entry else None

    def adapter_for(self, channel_id: str) -> ChannelAdapter | None:
        entry = self._channels.get(channel_id)
        return entry.adapter if entry else None

    def channel_ids(self) -> tuple[str, ...]:
        return tuple(self._channels)

    def __contains__(self, channel_id: object) -> bool:
        return channel_id in self._channels

    def __len__(self) -> int:
        return len(self._channels)


def build_descriptor(channel_id: str, settings: Settings, overrides: Mapping[str, Any] | None = None) -> ChannelDescriptor:
    """Merge per-channel overrides onto the service defaults."""

    values = dict(overrides or {})
    return ChannelDescriptor(
        id=channel_id,
        retryable=bool(values.get("retryable", True)),
        max_attempts=int(values.get("max_attempts", settings.default_max_attempts)),
        backoff_policy=BackoffPolicy(
            base_seconds=float(values.get("backoff_base_seconds", settings.default_backoff_base_seconds)),
            multiplier=float(values.get("backoff_multiplier", settings.default_backoff_multiplier)),
            cap_seconds=float(values.get("backoff_cap_seconds", settings.default_backoff_cap_seconds)),
        ),
        timeout_seconds=float(values.get("timeout_seconds", settings.default_timeout_seconds)),
    )


def build_channel_registry(settings: Settings, adapters: Mapping[str, ChannelAdapter]) -> ChannelRegistry:
    """Register every enabled channel that has an adapter."""

    channels: dict[str, RegisteredChannel] = {}
    for channel_id in settings.enabled_channels:
        adapter = adapters.get(channel_id)
        if adapter is None:
            raise ValueError(f"no adapter configured for enabled channel: {channel_id}")
        descriptor = build_descriptor(channel_id, settings, settings.channel_overrides.get(channel_id))
        channels[channel_id] = RegisteredChannel(descriptor=descriptor, adapter=adapter)
    return ChannelRegistry(channels)
