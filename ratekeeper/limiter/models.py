"""Rate limiter configuration, per-identifier records and result types."""

from dataclasses import asdict, dataclass, field


class ConfigurationError(ValueError):
    """Raised when a limiter is constructed with unusable settings."""


@dataclass(frozen=True)
class RateLimitConfig:
    max_requests: int
    window_ms: int
    block_duration_ms: int
    ip_whitelist: frozenset[str] = field(default_factory=frozenset)
    endpoints: frozenset[str] = field(default_factory=frozenset)  # empty = every endpoint

    def __post_init__(self) -> None:
        for name in ("max_requests", "window_ms", "block_duration_ms"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")
        # Accept any iterable of strings but store immutably
        object.__setattr__(self, "ip_whitelist", frozenset(self.ip_whitelist))
        object.__setattr__(self, "endpoints", frozenset(self.endpoints))


@dataclass
class RequestRecord:
    timestamp: int  # ms, start of the current window
    count: int
    blocked_until: int | None = None

    def is_blocked(self, now: int) -> bool:
        return self.blocked_until is not None and now < self.blocked_until

    def window_elapsed(self, now: int, window_ms: int) -> bool:
        return now - self.timestamp >= window_ms


@dataclass
class RateLimitStatus:
    requests_in_window: int
    window_remaining_ms: int
    is_blocked: bool
    blocked_remaining_ms: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class BlockedIdentifier:
    identifier: str
    remaining_ms: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class RateLimitStats:
    total_tracked_identifiers: int
    total_requests: int
    active_blocks: int
    expired_records: int
    window_ms: int
    max_requests: int
    block_duration_ms: int

    def to_dict(self) -> dict:
        return asdict(self)
