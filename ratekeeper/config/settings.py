"""Application settings loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    # Admin authentication
    # Comma-separated list of keys accepted on /admin routes
    admin_api_keys: str = "dev-admin-key"

    # Identifiers that bypass every limiter (comma-separated)
    rate_limit_ip_whitelist: str = ""

    # API limiter: 100 requests / 15 min, 1 h block
    api_max_requests: int = 100
    api_window_ms: int = 15 * 60 * 1000
    api_block_duration_ms: int = 60 * 60 * 1000
    api_endpoints: str = "/api/"

    # Auth limiter: 5 attempts / 5 min, 15 min block
    auth_max_requests: int = 5
    auth_window_ms: int = 5 * 60 * 1000
    auth_block_duration_ms: int = 15 * 60 * 1000
    auth_endpoints: str = "/auth,/login,/signup"

    # General limiter: 1000 requests / hour, 1 h block, every endpoint
    general_max_requests: int = 1000
    general_window_ms: int = 60 * 60 * 1000
    general_block_duration_ms: int = 60 * 60 * 1000

    # Monitoring
    monitoring_enable_performance: bool = True
    monitoring_enable_error_tracking: bool = True
    monitoring_performance_threshold_ms: float = 100.0
    monitoring_alert_endpoints: str = ""  # Empty = buffer and drop
    monitoring_batch_size: int = 50
    monitoring_flush_interval_s: float = 30.0
    environment: str = "development"

    # Logging
    log_level: str = "INFO"
    audit_log_file: str = ""  # Empty = stdout only

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def admin_api_keys_list(self) -> list[str]:
        return _split_csv(self.admin_api_keys)

    @property
    def ip_whitelist_list(self) -> list[str]:
        return _split_csv(self.rate_limit_ip_whitelist)

    @property
    def api_endpoints_list(self) -> list[str]:
        return _split_csv(self.api_endpoints)

    @property
    def auth_endpoints_list(self) -> list[str]:
        return _split_csv(self.auth_endpoints)

    @property
    def alert_endpoints_list(self) -> list[str]:
        return _split_csv(self.monitoring_alert_endpoints)


@lru_cache
def get_settings() -> Settings:
    return Settings()
