"""Shared fixtures for the Ratekeeper test suite."""

import logging

import pytest

from ratekeeper.config.settings import get_settings
from ratekeeper.limiter.models import RateLimitConfig
from ratekeeper.limiter.ratelimit import RateLimiter
from ratekeeper.limiter.scheduler import Scheduler
from ratekeeper.logging.audit import AUDIT_LOGGER_NAME


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class ManualScheduler(Scheduler):
    """Scheduler whose ticks are fired by the test."""

    def __init__(self):
        self.interval_ms: int | None = None
        self.callback = None
        self.stop_calls = 0
        self._started = False

    @property
    def running(self) -> bool:
        return self._started and self.stop_calls == 0

    def start(self, interval_ms, callback) -> None:
        self.interval_ms = interval_ms
        self.callback = callback
        self._started = True

    def stop(self) -> None:
        self.stop_calls += 1

    def tick(self) -> None:
        if self.running:
            self.callback()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def make_limiter(clock, scheduler):
    """Factory fixture: build a limiter on the fake clock and manual scheduler.

    Usage:
        limiter = make_limiter(max_requests=3, window_ms=1000, block_duration_ms=5000)
    """
    created: list[RateLimiter] = []

    def _make(**kwargs) -> RateLimiter:
        config = RateLimitConfig(**kwargs)
        limiter = RateLimiter(config, clock=clock, scheduler=scheduler)
        created.append(limiter)
        return limiter

    yield _make

    for limiter in created:
        limiter.destroy()


@pytest.fixture
def override_settings(monkeypatch):
    """Factory fixture: set env vars and clear settings cache.

    Usage:
        override_settings(ADMIN_API_KEYS="key1,key2", AUTH_MAX_REQUESTS="3")
    """
    def _override(**kwargs):
        for key, value in kwargs.items():
            monkeypatch.setenv(key.upper(), str(value))
        # Clear lru_cache so Settings re-reads env
        get_settings.cache_clear()

    yield _override

    # Always clear cache on teardown so other tests get fresh settings
    get_settings.cache_clear()


@pytest.fixture
def restore_audit_logger():
    """Undo setup_logging() so later tests keep pytest's log capture."""
    logger = logging.getLogger(AUDIT_LOGGER_NAME)
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    yield logger
    for handler in logger.handlers:
        if handler not in handlers:
            handler.close()
    logger.handlers[:] = handlers
    logger.setLevel(level)
    logger.propagate = propagate
