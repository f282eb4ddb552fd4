import threading
from datetime import datetime, timezone
from typing import List, Optional

from mymcp.features.servers.orchestrator import (
    ContainerHealthResult,
    ContainerStartRequest,
    ContainerStartResult,
    ContainerStatus,
    ContainerStopResult,
    MockContainerOrchestrator,
)


class RecordingOrchestrator(MockContainerOrchestrator):
    """Mock orchestrator that records every call it receives."""

    def __init__(self, start_status: ContainerStatus = ContainerStatus.RUNNING):
        super().__init__(start_status=start_status)
        self.calls: List[tuple] = []

    def start_container(self, request: ContainerStartRequest) -> ContainerStartResult:
        self.calls.append(("start", request))
        return super().start_container(request)

    def resume_container(self, container_instance_id: str) -> ContainerStartResult:
        self.calls.append(("resume", container_instance_id))
        return super().resume_container(container_instance_id)

    def stop_container(self, container_instance_id: str) -> ContainerStopResult:
        self.calls.append(("stop", container_instance_id))
        return super().stop_container(container_instance_id)

    def get_container_health(self, container_instance_id: str) -> ContainerHealthResult:
        self.calls.append(("health", container_instance_id))
        return super().get_container_health(container_instance_id)

    def count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)


class FailedStartOrchestrator(RecordingOrchestrator):
    """Start call succeeds but the container reports failure."""

    def __init__(self):
        super().__init__(start_status=ContainerStatus.FAILED)

    def start_container(self, request: ContainerStartRequest) -> ContainerStartResult:
        result = super().start_container(request)
        return ContainerStartResult(
            container_instance_id=result.container_instance_id,
            status=result.status,
            error_message="image pull failed",
        )


class BrokenOrchestrator(RecordingOrchestrator):
    """Every call raises, as if the orchestrator were unreachable."""

    def start_container(self, request):
        self.calls.append(("start", request))
        raise ConnectionError("orchestrator unreachable")

    def resume_container(self, container_instance_id):
        self.calls.append(("resume", container_instance_id))
        raise ConnectionError("orchestrator unreachable")

    def stop_container(self, container_instance_id):
        self.calls.append(("stop", container_instance_id))
        raise ConnectionError("orchestrator unreachable")

    def get_container_health(self, container_instance_id):
        self.calls.append(("health", container_instance_id))
        raise ConnectionError("orchestrator unreachable")


class RefusingStopOrchestrator(RecordingOrchestrator):
    """Stop is answered but refused."""

    def stop_container(self, container_instance_id: str) -> ContainerStopResult:
        self.calls.append(("stop", container_instance_id))
        return ContainerStopResult(success=False, error_message="container busy")


class SlowOrchestrator(RecordingOrchestrator):
    """Blocks until released; used to exercise call timeouts."""

    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def start_container(self, request):
        self.calls.append(("start", request))
        self.release.wait(5)
        return MockContainerOrchestrator.start_container(self, request)

    def stop_container(self, container_instance_id):
        self.calls.append(("stop", container_instance_id))
        self.release.wait(5)
        return ContainerStopResult(success=True)


class FixedHealthOrchestrator(RecordingOrchestrator):
    def __init__(self, status: str, healthy: bool, error: Optional[str] = None):
        super().__init__()
        self.health_status = status
        self.healthy = healthy
        self.error = error

    def get_container_health(self, container_instance_id):
        self.calls.append(("health", container_instance_id))
        return ContainerHealthResult(
            is_healthy=self.healthy,
            status=self.health_status,
            checked_at=datetime(2025, 3, 15, 12, 5, tzinfo=timezone.utc),
            error_message=self.error,
        )
