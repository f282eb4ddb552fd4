"""
Tests for the container orchestrator adapters and call bounding.
"""
import json
import time

import httpx
import pytest

from mymcp.core.errors import ConfigurationError, OrchestratorError
from mymcp.core.metrics import orchestrator_call_seconds, orchestrator_failures_total
from mymcp.features.servers.orchestrator import (
    ContainerStartRequest,
    ContainerStatus,
    HttpContainerOrchestrator,
    MockContainerOrchestrator,
    build_orchestrator,
    call_orchestrator,
    get_orchestrator,
    map_container_status,
    set_orchestrator,
)
from mymcp.models.server import ServerStatus


START_REQUEST = ContainerStartRequest(
    image_name="mcp-github-server",
    image_tag="1.2.3",
    environment={"GITHUB_TOKEN": "ghp_x"},
    labels={"mcp.server.id": "srv-1"},
    cpu_limit=1000,
    memory_limit=512,
    port=8080,
)


def http_orchestrator(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler), base_url="http://orchestrator.test")
    return HttpContainerOrchestrator("http://orchestrator.test", client=client)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("running", ServerStatus.RUNNING),
        ("RUNNING", ServerStatus.RUNNING),
        (" starting ", ServerStatus.STARTING),
        ("stopping", ServerStatus.STOPPING),
        ("stopped", ServerStatus.STOPPED),
        ("failed", ServerStatus.FAILED),
        ("unknown", ServerStatus.UNKNOWN),
        ("exploded", ServerStatus.UNKNOWN),
        (None, ServerStatus.UNKNOWN),
        (ContainerStatus.RUNNING, ServerStatus.RUNNING),
    ],
)
def test_map_container_status(raw, expected):
    assert map_container_status(raw) == expected


def test_mock_start_stop_health():
    orch = MockContainerOrchestrator()
    started = orch.start_container(START_REQUEST)
    assert started.status == "running"
    assert orch.containers[started.container_instance_id]["image"] == "mcp-github-server:1.2.3"

    assert orch.get_container_health(started.container_instance_id).is_healthy is True
    assert orch.stop_container(started.container_instance_id).success is True

    health = orch.get_container_health(started.container_instance_id)
    assert health.is_healthy is False
    assert health.status == "stopped"

    resumed = orch.resume_container(started.container_instance_id)
    assert resumed.status == "running"
    assert orch.get_container_health(started.container_instance_id).is_healthy is True


def test_mock_unknown_container():
    orch = MockContainerOrchestrator()
    stopped = orch.stop_container("nope")
    assert stopped.success is False
    assert stopped.not_found is True
    assert orch.resume_container("nope").status == "failed"
    health = orch.get_container_health("nope")
    assert health.is_healthy is False
    assert health.status == "unknown"


def test_http_start_sends_image_and_resources():
    seen = {}

    def handler(request):
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "c-123", "status": "starting", "address": "10.0.0.5:8080"})

    result = http_orchestrator(handler).start_container(START_REQUEST)

    assert (seen["method"], seen["path"]) == ("POST", "/containers")
    assert seen["body"]["image"] == "mcp-github-server:1.2.3"
    assert seen["body"]["environment"] == {"GITHUB_TOKEN": "ghp_x"}
    assert seen["body"]["resources"] == {"cpu_millis": 1000, "memory_mb": 512, "port": 8080}
    assert result.container_instance_id == "c-123"
    assert result.status == "starting"
    assert result.address == "10.0.0.5:8080"


def test_http_stop_and_health():
    def handler(request):
        if request.url.path == "/containers/c-1/stop":
            return httpx.Response(200, json={"success": True})
        if request.url.path == "/containers/c-1/health":
            return httpx.Response(
                200,
                json={"healthy": False, "status": "failed", "checked_at": "2025-03-15T12:00:00", "error": "oom"},
            )
        return httpx.Response(404)

    orch = http_orchestrator(handler)
    assert orch.stop_container("c-1").success is True

    health = orch.get_container_health("c-1")
    assert health.is_healthy is False
    assert health.status == "failed"
    assert health.error_message == "oom"
    assert health.checked_at.tzinfo is not None


def test_http_resume_and_missing_container():
    def handler(request):
        if request.url.path == "/containers/c-1/start":
            return httpx.Response(200, json={"status": "running"})
        return httpx.Response(404)

    orch = http_orchestrator(handler)
    resumed = orch.resume_container("c-1")
    assert resumed.container_instance_id == "c-1"
    assert resumed.status == "running"

    missing = orch.stop_container("gone")
    assert missing.success is False
    assert missing.not_found is True
    assert orch.resume_container("gone").status == "failed"
    with pytest.raises(OrchestratorError):
        orch.get_container_health("gone")


def test_http_error_status_raises():
    orch = http_orchestrator(lambda request: httpx.Response(503, text="busy"))
    with pytest.raises(OrchestratorError) as exc_info:
        orch.start_container(START_REQUEST)
    assert exc_info.value.operation == "start"
    assert "503" in exc_info.value.message


def test_http_invalid_json_raises():
    orch = http_orchestrator(lambda request: httpx.Response(200, text="not json"))
    with pytest.raises(OrchestratorError):
        orch.stop_container("c-1")


def test_http_transport_timeout_is_flagged():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(OrchestratorError) as exc_info:
        http_orchestrator(handler).get_container_health("c-1")
    assert exc_info.value.timed_out is True


def test_call_orchestrator_passes_result_through():
    assert call_orchestrator("health", lambda x: x * 2, 21) == 42
    assert orchestrator_call_seconds.count({"operation": "health"}) == 1
    assert orchestrator_failures_total.value({"operation": "health"}) == 0


def test_call_orchestrator_wraps_exceptions():
    def boom():
        raise RuntimeError("socket closed")

    with pytest.raises(OrchestratorError) as exc_info:
        call_orchestrator("stop", boom)
    assert exc_info.value.operation == "stop"
    assert isinstance(exc_info.value.__cause__, RuntimeError)
    assert orchestrator_failures_total.value({"operation": "stop"}) == 1


def test_call_orchestrator_times_out():
    with pytest.raises(OrchestratorError) as exc_info:
        call_orchestrator("start", time.sleep, 0.5, timeout=0.05)
    assert exc_info.value.timed_out is True
    assert exc_info.value.retryable is True


def test_build_orchestrator_modes(monkeypatch):
    from mymcp.core.config import settings

    assert isinstance(build_orchestrator("mock"), MockContainerOrchestrator)

    monkeypatch.setattr(settings, "ORCHESTRATOR_URL", None)
    with pytest.raises(ConfigurationError):
        build_orchestrator("http")

    monkeypatch.setattr(settings, "ORCHESTRATOR_URL", "http://orchestrator.test")
    http = build_orchestrator("http")
    assert isinstance(http, HttpContainerOrchestrator)
    http.close()

    with pytest.raises(ConfigurationError):
        build_orchestrator("kubernetes")


def test_process_orchestrator_can_be_replaced():
    custom = MockContainerOrchestrator()
    set_orchestrator(custom)
    assert get_orchestrator() is custom
    set_orchestrator(None)
    assert get_orchestrator() is not custom
