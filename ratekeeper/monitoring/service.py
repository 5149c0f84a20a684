"""Batching telemetry client.

Performance metrics are buffered until the batch is full or the periodic
flush fires; error events flush immediately. A flush empties the buffers
before delivery, so a batch that fails to reach an endpoint is logged and
dropped rather than retried.

Flushes triggered from the track_* calls deliver on a background task so
callers never wait on the network; join() waits for those deliveries.
"""

import asyncio
import contextlib
import time
import traceback
from dataclasses import asdict, dataclass, field

import httpx

from ratekeeper.config.settings import Settings
from ratekeeper.logging.audit import get_audit_logger
from ratekeeper.version import VERSION


@dataclass
class MonitoringConfig:
    enable_performance: bool = True
    enable_error_tracking: bool = True
    performance_threshold_ms: float = 100.0
    alert_endpoints: list[str] = field(default_factory=list)
    batch_size: int = 50
    flush_interval_s: float = 30.0
    environment: str = "development"
    version: str = VERSION

    @classmethod
    def from_settings(cls, settings: Settings) -> "MonitoringConfig":
        return cls(
            enable_performance=settings.monitoring_enable_performance,
            enable_error_tracking=settings.monitoring_enable_error_tracking,
            performance_threshold_ms=settings.monitoring_performance_threshold_ms,
            alert_endpoints=settings.alert_endpoints_list,
            batch_size=settings.monitoring_batch_size,
            flush_interval_s=settings.monitoring_flush_interval_s,
            environment=settings.environment,
        )


@dataclass
class PerformanceMetric:
    name: str
    value: float
    timestamp: int
    tags: dict[str, str] | None = None


@dataclass
class ErrorEvent:
    message: str
    timestamp: int
    stack: str | None = None
    user_id: str | None = None
    url: str | None = None
    user_agent: str | None = None
    component_stack: str | None = None


def _now_ms() -> int:
    return int(time.time() * 1000)


class MonitoringService:
    """Collects metrics and errors and ships them to alert endpoints."""

    def __init__(self, config: MonitoringConfig | None = None, client: httpx.AsyncClient | None = None):
        self.config = config or MonitoringConfig()
        self._client = client
        self._owns_client = client is None
        self._performance_metrics: list[PerformanceMetric] = []
        self._error_events: list[ErrorEvent] = []
        self._flush_task: asyncio.Task | None = None
        self._pending: set[asyncio.Task] = set()
        self._last_flush_time: int | None = None
        self._closed = False

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(10.0, connect=5.0))
            self._owns_client = True
        return self._client

    async def track_performance(self, name: str, value: float, tags: dict[str, str] | None = None) -> None:
        if not self.config.enable_performance:
            return

        self._performance_metrics.append(
            PerformanceMetric(name=name, value=value, timestamp=_now_ms(), tags=tags)
        )
        if len(self._performance_metrics) >= self.config.batch_size:
            self._flush_in_background()

    async def track_slow_operation(self, name: str, elapsed_ms: float, tags: dict[str, str] | None = None) -> None:
        """Record a long-task metric when elapsed_ms crosses the threshold."""
        if elapsed_ms > self.config.performance_threshold_ms:
            await self.track_performance("long-task", elapsed_ms, {"name": name, **(tags or {})})

    async def track_error(
        self,
        message: str,
        *,
        stack: str | None = None,
        user_id: str | None = None,
        url: str | None = None,
        user_agent: str | None = None,
        component_stack: str | None = None,
    ) -> None:
        if not self.config.enable_error_tracking:
            return

        self._error_events.append(ErrorEvent(
            message=message,
            timestamp=_now_ms(),
            stack=stack,
            user_id=user_id,
            url=url,
            user_agent=user_agent,
            component_stack=component_stack,
        ))
        # Errors are not batched
        self._flush_in_background()

    async def track_exception(
        self,
        exc: BaseException,
        *,
        component_stack: str | None = None,
        url: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        await self.track_error(
            f"Unhandled error: {exc}",
            stack="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            component_stack=component_stack,
            url=url,
            user_agent=user_agent,
        )

    async def track_api_error(self, endpoint: str, exc: BaseException, status_code: int | None = None) -> None:
        await self.track_error(
            f"API Error: {endpoint} - {exc}",
            stack="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        )
        tags = {"endpoint": endpoint}
        if status_code is not None:
            tags["status_code"] = str(status_code)
        await self.track_performance("api-error", 1, tags)

    async def track_user_action(self, action: str, extra: dict[str, str] | None = None) -> None:
        await self.track_performance(f"user-action-{action}", 1, extra)

    def _take_batch(self) -> list[dict]:
        """Empty both buffers and return their contents as one batch."""
        metrics = [asdict(m) for m in self._performance_metrics] + [asdict(e) for e in self._error_events]
        if metrics:
            self._performance_metrics = []
            self._error_events = []
            self._last_flush_time = _now_ms()
        return metrics

    async def _deliver(self, metrics: list[dict]) -> None:
        payload = {
            "metrics": metrics,
            "timestamp": self._last_flush_time,
            "environment": self.config.environment,
            "version": self.config.version,
        }
        logger = get_audit_logger()

        for endpoint in self.config.alert_endpoints:
            try:
                response = await self._get_client().post(endpoint, json=payload)
                response.raise_for_status()
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                # InvalidURL is not an HTTPError subclass
                logger.warning(
                    "Failed to deliver metrics",
                    extra={"audit_data": {"endpoint": endpoint, "error": str(e), "dropped": len(metrics)}},
                )

        logger.debug("Metrics flushed", extra={"audit_data": {"count": len(metrics)}})

    async def flush(self) -> None:
        """Send everything buffered and wait for delivery."""
        metrics = self._take_batch()
        if metrics:
            await self._deliver(metrics)

    async def _flush_logged(self, metrics: list[dict] | None = None) -> None:
        try:
            if metrics is None:
                await self.flush()
            else:
                await self._deliver(metrics)
        except Exception:
            get_audit_logger().exception("Metrics flush failed")

    def _flush_in_background(self) -> None:
        """Take the batch now and deliver it without blocking the caller."""
        metrics = self._take_batch()
        if not metrics:
            return
        task = asyncio.get_running_loop().create_task(self._flush_logged(metrics))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def join(self) -> None:
        """Wait until background deliveries already started have finished."""
        while self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.flush_interval_s)
            await self._flush_logged()

    def start(self) -> None:
        """Begin periodic flushing on the running event loop."""
        if self._flush_task is not None and not self._flush_task.done():
            return
        self._closed = False
        self._flush_task = asyncio.get_running_loop().create_task(self._flush_loop())

    @property
    def running(self) -> bool:
        return self._flush_task is not None and not self._flush_task.done()

    def health_metrics(self) -> dict:
        return {
            "total_performance_metrics": len(self._performance_metrics),
            "total_errors": len(self._error_events),
            "is_tracking_enabled": self.config.enable_performance or self.config.enable_error_tracking,
            "last_flush_time": self._last_flush_time,
            "pending_deliveries": len(self._pending),
        }

    async def aclose(self) -> None:
        """Stop the flush loop, send what is buffered, release the HTTP client."""
        if self._closed:
            return
        self._closed = True

        if self._flush_task is not None:
            self._flush_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._flush_task
            self._flush_task = None

        await self.join()
        await self._flush_logged()

        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
