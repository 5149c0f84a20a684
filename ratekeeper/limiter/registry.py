"""Limiter registry — named RateLimiter instances owned by the application."""

from collections.abc import Callable

from ratekeeper.config.settings import Settings
from ratekeeper.limiter.models import RateLimitConfig
from ratekeeper.limiter.ratelimit import RateLimiter
from ratekeeper.limiter.scheduler import Clock, Scheduler

API_LIMITER = "api"
AUTH_LIMITER = "auth"
GENERAL_LIMITER = "general"


class LimiterRegistry:
    """Holds one limiter per name and tears them all down together."""

    def __init__(self, limiters: dict[str, RateLimiter] | None = None):
        self._limiters: dict[str, RateLimiter] = dict(limiters or {})

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        clock: Clock | None = None,
        scheduler_factory: Callable[[], Scheduler] | None = None,
    ) -> "LimiterRegistry":
        """Build the api, auth and general limiters from settings."""
        whitelist = frozenset(settings.ip_whitelist_list)
        configs = {
            API_LIMITER: RateLimitConfig(
                max_requests=settings.api_max_requests,
                window_ms=settings.api_window_ms,
                block_duration_ms=settings.api_block_duration_ms,
                ip_whitelist=whitelist,
                endpoints=frozenset(settings.api_endpoints_list),
            ),
            AUTH_LIMITER: RateLimitConfig(
                max_requests=settings.auth_max_requests,
                window_ms=settings.auth_window_ms,
                block_duration_ms=settings.auth_block_duration_ms,
                ip_whitelist=whitelist,
                endpoints=frozenset(settings.auth_endpoints_list),
            ),
            GENERAL_LIMITER: RateLimitConfig(
                max_requests=settings.general_max_requests,
                window_ms=settings.general_window_ms,
                block_duration_ms=settings.general_block_duration_ms,
                ip_whitelist=whitelist,
            ),
        }
        registry = cls()
        for name, config in configs.items():
            scheduler = scheduler_factory() if scheduler_factory else None
            registry.register(name, RateLimiter(config, clock=clock, scheduler=scheduler))
        return registry

    def register(self, name: str, limiter: RateLimiter) -> None:
        """Add a limiter, destroying any previous one registered under name."""
        previous = self._limiters.get(name)
        if previous is not None and previous is not limiter:
            previous.destroy()
        self._limiters[name] = limiter

    def get(self, name: str) -> RateLimiter:
        if name not in self._limiters:
            raise KeyError(f"Unknown limiter: {name}")
        return self._limiters[name]

    def names(self) -> list[str]:
        return list(self._limiters)

    def __contains__(self, name: str) -> bool:
        return name in self._limiters

    def close(self) -> None:
        """Destroy every limiter and empty the registry."""
        for limiter in self._limiters.values():
            limiter.destroy()
        self._limiters.clear()
