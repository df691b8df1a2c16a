"""
Tests for health check polling
"""

import asyncio

import pytest

from devharbor.core.errors import HealthCheckTimeout, OperationCancelled, RuntimeOperationFailed
from devharbor.core.labels import service_container_labels
from devharbor.core.models import HealthCheckSpec, HealthStatus
from devharbor.lifecycle.health import wait_for_healthy


class SleepRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _spec(**overrides) -> HealthCheckSpec:
    values = {"test": ["CMD", "true"], "retries": 3, "timeout": 1.0, "interval": 5.0}
    values.update(overrides)
    return HealthCheckSpec(**values)


def _running_container(runtime) -> str:
    container_id = runtime.add_container(
        service_container_labels("redis", "cache"), running=True, healthcheck=True
    )
    return container_id


@pytest.mark.asyncio
async def test_becomes_healthy(runtime):
    runtime.health_script = [HealthStatus.STARTING, HealthStatus.HEALTHY]
    container_id = _running_container(runtime)
    sleep = SleepRecorder()
    seen = []

    status = await wait_for_healthy(runtime, container_id, _spec(), on_status=seen.append, sleep=sleep)

    assert status == HealthStatus.HEALTHY
    assert seen == [HealthStatus.STARTING, HealthStatus.HEALTHY]
    assert sleep.calls == [5.0, 5.0]


@pytest.mark.asyncio
async def test_start_period_waited_first(runtime):
    container_id = _running_container(runtime)
    sleep = SleepRecorder()

    await wait_for_healthy(runtime, container_id, _spec(start_period=40), sleep=sleep)

    assert sleep.calls == [40.0, 5.0]


@pytest.mark.asyncio
async def test_timeout_after_retries(runtime):
    runtime.health_script = [HealthStatus.UNHEALTHY]
    container_id = _running_container(runtime)
    sleep = SleepRecorder()

    with pytest.raises(HealthCheckTimeout) as exc_info:
        await wait_for_healthy(runtime, container_id, _spec(retries=4), sleep=sleep)

    assert runtime.called("inspect") == 4
    assert len(sleep.calls) == 4
    assert exc_info.value.data["last_status"] == "unhealthy"


@pytest.mark.asyncio
async def test_slow_inspect_counts_as_attempt(runtime):
    """An inspect exceeding the probe timeout uses up one attempt"""
    runtime.inspect_delay = 0.2
    container_id = _running_container(runtime)

    with pytest.raises(HealthCheckTimeout):
        await wait_for_healthy(runtime, container_id, _spec(retries=2, timeout=0.01), sleep=SleepRecorder())

    assert runtime.called("inspect") == 2


@pytest.mark.asyncio
async def test_container_disappears(runtime):
    with pytest.raises(RuntimeOperationFailed):
        await wait_for_healthy(runtime, "f" * 64, _spec(), sleep=SleepRecorder())


@pytest.mark.asyncio
async def test_cancel_before_first_attempt(runtime):
    container_id = _running_container(runtime)
    cancel = asyncio.Event()
    cancel.set()

    with pytest.raises(OperationCancelled):
        await wait_for_healthy(runtime, container_id, _spec(), cancel=cancel, sleep=SleepRecorder())

    assert runtime.called("inspect") == 0


@pytest.mark.asyncio
async def test_cancel_during_interval(runtime):
    """Cancellation set while sleeping is seen before the next inspect"""
    runtime.health_script = [HealthStatus.STARTING]
    container_id = _running_container(runtime)
    cancel = asyncio.Event()

    async def sleep(seconds):
        if runtime.called("inspect") >= 1:
            cancel.set()

    with pytest.raises(OperationCancelled):
        await wait_for_healthy(runtime, container_id, _spec(retries=5), cancel=cancel, sleep=sleep)

    assert runtime.called("inspect") == 1
