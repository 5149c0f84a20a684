"""Tests for ratekeeper/monitoring/service.py — batching telemetry client."""

import asyncio
import json

import httpx
import pytest

from ratekeeper.monitoring.service import MonitoringConfig, MonitoringService


@pytest.fixture
def sent():
    """Payloads received by the fake alert endpoint."""
    return []


@pytest.fixture
def http_client(sent):
    def _handler(request: httpx.Request) -> httpx.Response:
        sent.append((str(request.url), json.loads(request.content)))
        return httpx.Response(200, json={"ok": True})

    return httpx.AsyncClient(transport=httpx.MockTransport(_handler))


@pytest.fixture
def make_service(http_client):
    def _make(**kwargs) -> MonitoringService:
        kwargs.setdefault("alert_endpoints", ["https://alerts.test/ingest"])
        service = MonitoringService(MonitoringConfig(**kwargs), client=http_client)
        return service

    return _make


class TestPerformanceTracking:

    async def test_buffers_until_batch_size(self, make_service, sent):
        service = make_service(batch_size=3)
        await service.track_performance("render", 12.5)
        await service.track_performance("render", 8.0, {"page": "sales"})
        assert sent == []
        assert service.health_metrics()["total_performance_metrics"] == 2

        await service.track_performance("render", 3.0)
        assert service.health_metrics()["total_performance_metrics"] == 0
        await service.join()
        assert len(sent) == 1
        url, payload = sent[0]
        assert url == "https://alerts.test/ingest"
        assert [m["name"] for m in payload["metrics"]] == ["render"] * 3
        assert payload["metrics"][1]["tags"] == {"page": "sales"}
        assert payload["environment"] == "development"
        assert "version" in payload

    async def test_disabled_performance_ignored(self, make_service, sent):
        service = make_service(enable_performance=False, batch_size=1)
        await service.track_performance("render", 1.0)
        assert sent == []
        assert service.health_metrics()["total_performance_metrics"] == 0

    async def test_slow_operation_threshold(self, make_service):
        service = make_service(performance_threshold_ms=100)
        await service.track_slow_operation("query", 100)
        assert service.health_metrics()["total_performance_metrics"] == 0
        await service.track_slow_operation("query", 150, {"limiter": "api"})
        assert service._performance_metrics[0].name == "long-task"
        assert service._performance_metrics[0].tags == {"name": "query", "limiter": "api"}

    async def test_user_action(self, make_service):
        service = make_service()
        await service.track_user_action("export", {"format": "xlsx"})
        metric = service._performance_metrics[0]
        assert metric.name == "user-action-export"
        assert metric.value == 1


class TestErrorTracking:

    async def test_error_flushes_immediately(self, make_service, sent):
        service = make_service()
        await service.track_performance("render", 1.0)
        await service.track_error("Something broke", url="https://erp.test/sales")
        await service.join()
        assert len(sent) == 1
        metrics = sent[0][1]["metrics"]
        assert metrics[0]["name"] == "render"
        assert metrics[1]["message"] == "Something broke"
        assert metrics[1]["url"] == "https://erp.test/sales"

    async def test_disabled_error_tracking(self, make_service, sent):
        service = make_service(enable_error_tracking=False)
        await service.track_error("ignored")
        assert sent == []
        assert service.health_metrics()["total_errors"] == 0

    async def test_track_exception_includes_stack(self, make_service, sent):
        service = make_service()
        try:
            raise ValueError("bad input")
        except ValueError as e:
            await service.track_exception(e, component_stack="InvoiceForm")
        await service.join()
        event = sent[0][1]["metrics"][0]
        assert "bad input" in event["message"]
        assert "ValueError" in event["stack"]
        assert event["component_stack"] == "InvoiceForm"

    async def test_api_error_records_metric(self, make_service, sent):
        service = make_service()
        await service.track_api_error("/rest/v1/invoices", RuntimeError("timeout"), status_code=504)
        await service.join()
        assert sent[0][1]["metrics"][0]["message"] == "API Error: /rest/v1/invoices - timeout"
        metric = service._performance_metrics[0]
        assert metric.name == "api-error"
        assert metric.tags == {"endpoint": "/rest/v1/invoices", "status_code": "504"}


class TestFlush:

    async def test_empty_flush_sends_nothing(self, make_service, sent):
        service = make_service()
        await service.flush()
        assert sent == []
        assert service.health_metrics()["last_flush_time"] is None

    async def test_sends_to_every_endpoint(self, make_service, sent):
        service = make_service(alert_endpoints=["https://a.test/m", "https://b.test/m"])
        await service.track_error("x")
        await service.join()
        assert [url for url, _ in sent] == ["https://a.test/m", "https://b.test/m"]

    async def test_delivery_failure_logged_and_dropped(self, caplog):
        def _handler(request):
            return httpx.Response(500)

        client = httpx.AsyncClient(transport=httpx.MockTransport(_handler))
        service = MonitoringService(
            MonitoringConfig(alert_endpoints=["https://down.test/m"]), client=client,
        )
        caplog.set_level("WARNING", logger="ratekeeper.audit")
        await service.track_error("x")
        await service.join()
        assert any(r.message == "Failed to deliver metrics" for r in caplog.records)
        assert service.health_metrics()["total_errors"] == 0
        assert service.health_metrics()["last_flush_time"] is not None

    async def test_no_endpoints_still_clears(self, make_service, sent):
        service = make_service(alert_endpoints=[])
        await service.track_error("x")
        assert sent == []
        assert service.health_metrics()["total_errors"] == 0

    async def test_malformed_endpoint_logged_not_raised(self, make_service, sent, caplog):
        service = make_service(alert_endpoints=["https://alerts.test:badport/m", "https://ok.test/m"])
        caplog.set_level("WARNING", logger="ratekeeper.audit")
        await service.track_performance("render", 1.0)
        await service.flush()
        assert any(r.message == "Failed to deliver metrics" for r in caplog.records)
        assert [url for url, _ in sent] == ["https://ok.test/m"]

    async def test_aclose_survives_malformed_endpoint(self, make_service):
        service = make_service(alert_endpoints=["https://alerts.test:badport/m"])
        service.start()
        await service.track_performance("render", 1.0)
        await service.aclose()
        assert not service.running


class TestLifecycle:

    async def test_periodic_flush(self, make_service, sent):
        service = make_service(flush_interval_s=0.01)
        await service.track_performance("render", 1.0)
        service.start()
        try:
            for _ in range(100):
                if sent:
                    break
                await asyncio.sleep(0.01)
            assert len(sent) == 1
        finally:
            await service.aclose()

    async def test_flush_loop_survives_failed_flush(self, make_service, sent, caplog):
        service = make_service(flush_interval_s=0.01)
        real_flush = service.flush
        calls = []

        async def _flaky_flush():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("endpoint exploded")
            await real_flush()

        service.flush = _flaky_flush
        caplog.set_level("ERROR", logger="ratekeeper.audit")
        await service.track_performance("render", 1.0)
        service.start()
        try:
            for _ in range(100):
                if sent:
                    break
                await asyncio.sleep(0.01)
            assert len(sent) == 1
            assert service.running
            assert any(r.message == "Metrics flush failed" for r in caplog.records)
        finally:
            await service.aclose()

    async def test_aclose_final_flush_and_idempotent(self, make_service, sent):
        service = make_service(flush_interval_s=60)
        service.start()
        assert service.running
        await service.track_performance("render", 1.0)
        await service.aclose()
        assert not service.running
        assert len(sent) == 1
        await service.aclose()
        assert len(sent) == 1

    async def test_aclose_keeps_injected_client_open(self, make_service, http_client):
        service = make_service()
        await service.aclose()
        assert not http_client.is_closed

    def test_health_metrics(self):
        service = MonitoringService(MonitoringConfig(enable_performance=False, enable_error_tracking=False))
        assert service.health_metrics() == {
            "total_performance_metrics": 0,
            "total_errors": 0,
            "is_tracking_enabled": False,
            "last_flush_time": None,
            "pending_deliveries": 0,
        }


class TestBackgroundDelivery:

    async def test_track_error_does_not_wait_for_endpoint(self):
        gate = asyncio.Event()
        received = []

        async def _slow_handler(request):
            await gate.wait()
            received.append(json.loads(request.content))
            return httpx.Response(204)

        client = httpx.AsyncClient(transport=httpx.MockTransport(_slow_handler))
        service = MonitoringService(MonitoringConfig(alert_endpoints=["https://slow.test/m"]), client=client)

        await service.track_error("boom")
        assert received == []
        assert service.health_metrics()["total_errors"] == 0
        assert service.health_metrics()["pending_deliveries"] == 1

        gate.set()
        await service.join()
        assert received[0]["metrics"][0]["message"] == "boom"
        assert service.health_metrics()["pending_deliveries"] == 0

    async def test_aclose_waits_for_pending_delivery(self, make_service, sent):
        service = make_service()
        await service.track_error("late")
        await service.aclose()
        assert len(sent) == 1

    async def test_join_without_pending(self, make_service):
        await make_service().join()
