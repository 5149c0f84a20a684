"""Rate limiting module using in-memory fixed-start sliding windows.

Each identifier owns one record: the start of its current window, the
number of requests seen in it and, once it exceeds the limit, the time
its block ends. Windows are reset lazily by the next admitted request;
a background sweep removes records that no longer carry information.

Identifiers in the whitelist are never tracked. When the config lists
endpoints, requests tagged with any other endpoint bypass the limiter.
"""

import threading

from ratekeeper.limiter.models import (
    BlockedIdentifier,
    RateLimitConfig,
    RateLimitStats,
    RateLimitStatus,
    RequestRecord,
)
from ratekeeper.limiter.scheduler import Clock, IntervalScheduler, Scheduler, monotonic_ms
from ratekeeper.logging.audit import get_audit_logger

CLEANUP_INTERVAL_MS = 60_000  # sweep cadence, independent of window_ms


class RateLimiter:
    """Per-identifier request limiter with cooldown blocks.

    Every access to the record map goes through one lock, so the
    read-check-write in is_allowed() never interleaves with another call
    or with the sweep.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        *,
        clock: Clock | None = None,
        scheduler: Scheduler | None = None,
        cleanup_interval_ms: int = CLEANUP_INTERVAL_MS,
    ):
        self.config = config
        self._clock = clock or monotonic_ms
        self._records: dict[str, RequestRecord] = {}
        self._lock = threading.Lock()
        self._scheduler = scheduler or IntervalScheduler()
        self._scheduler.start(cleanup_interval_ms, self.cleanup)

    def is_allowed(self, identifier: str, endpoint: str | None = None) -> bool:
        """Decide whether a request from identifier may proceed, recording it if so."""
        if identifier in self.config.ip_whitelist:
            return True

        if endpoint and self.config.endpoints and endpoint not in self.config.endpoints:
            return True

        with self._lock:
            now = self._clock()
            record = self._records.get(identifier)

            if record is not None and record.is_blocked(now):
                return False

            if record is None or record.window_elapsed(now, self.config.window_ms):
                # Replacing the record also drops a stale block
                self._records[identifier] = RequestRecord(timestamp=now, count=1)
                return True

            record.count += 1
            if record.count > self.config.max_requests:
                record.blocked_until = now + self.config.block_duration_ms
                get_audit_logger().warning(
                    "Identifier blocked",
                    extra={"audit_data": {
                        "identifier": identifier,
                        "endpoint": endpoint,
                        "request_count": record.count,
                        "max_requests": self.config.max_requests,
                        "block_duration_ms": self.config.block_duration_ms,
                    }},
                )
                return False

            return True

    def get_status(self, identifier: str) -> RateLimitStatus:
        """Report the identifier's current window without mutating it."""
        with self._lock:
            now = self._clock()
            record = self._records.get(identifier)

            if record is None:
                return RateLimitStatus(
                    requests_in_window=0,
                    window_remaining_ms=self.config.window_ms,
                    is_blocked=False,
                    blocked_remaining_ms=0,
                )

            if record.is_blocked(now):
                return RateLimitStatus(
                    requests_in_window=record.count,
                    window_remaining_ms=0,
                    is_blocked=True,
                    blocked_remaining_ms=record.blocked_until - now,
                )

            return RateLimitStatus(
                requests_in_window=record.count,
                window_remaining_ms=max(0, self.config.window_ms - (now - record.timestamp)),
                is_blocked=False,
                blocked_remaining_ms=0,
            )

    def reset(self, identifier: str) -> None:
        """Forget everything about identifier. Unknown identifiers are ignored."""
        with self._lock:
            self._records.pop(identifier, None)

    def get_blocked_identifiers(self) -> list[BlockedIdentifier]:
        with self._lock:
            now = self._clock()
            return [
                BlockedIdentifier(identifier=identifier, remaining_ms=record.blocked_until - now)
                for identifier, record in self._records.items()
                if record.is_blocked(now)
            ]

    def get_stats(self) -> RateLimitStats:
        with self._lock:
            now = self._clock()
            total_requests = 0
            active_blocks = 0
            expired_records = 0

            for record in self._records.values():
                total_requests += record.count
                blocked = record.is_blocked(now)
                if blocked:
                    active_blocks += 1
                elif record.window_elapsed(now, self.config.window_ms):
                    expired_records += 1

            return RateLimitStats(
                total_tracked_identifiers=len(self._records),
                total_requests=total_requests,
                active_blocks=active_blocks,
                expired_records=expired_records,
                window_ms=self.config.window_ms,
                max_requests=self.config.max_requests,
                block_duration_ms=self.config.block_duration_ms,
            )

    def cleanup(self) -> int:
        """Drop records whose window elapsed and that carry no active block.

        A record whose block expired is kept until its original window has
        also elapsed. Returns the number of records removed.
        """
        with self._lock:
            now = self._clock()
            stale = [
                identifier
                for identifier, record in self._records.items()
                if record.window_elapsed(now, self.config.window_ms) and not record.is_blocked(now)
            ]
            for identifier in stale:
                del self._records[identifier]

        if stale:
            get_audit_logger().debug(
                "Rate limit sweep",
                extra={"audit_data": {"removed": len(stale)}},
            )
        return len(stale)

    def destroy(self) -> None:
        """Stop the sweep and drop all records. Safe to call repeatedly."""
        self._scheduler.stop()
        with self._lock:
            self._records.clear()
