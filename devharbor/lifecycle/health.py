"""
Health check polling

After start_period, inspect the container up to `retries` times, once per
`interval`, each inspect bounded by `timeout`. Cancellation is cooperative
and only observed between attempts.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from devharbor.core.errors import HealthCheckTimeout, OperationCancelled, RuntimeOperationFailed
from devharbor.core.models import HealthCheckSpec, HealthStatus
from devharbor.runtime.client import RuntimeClient

logger = logging.getLogger(__name__)


def _check_cancelled(cancel: Optional[asyncio.Event], container_id: str) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelled(
            "Health check wait cancelled",
            data={"container_id": container_id},
        )


async def wait_for_healthy(
    runtime: RuntimeClient,
    container_id: str,
    spec: HealthCheckSpec,
    cancel: Optional[asyncio.Event] = None,
    on_status: Optional[Callable[[HealthStatus], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> HealthStatus:
    """Poll until the container reports healthy; raise HealthCheckTimeout otherwise"""
    if spec.start_period > 0:
        logger.debug(f"Waiting {spec.start_period}s start period for {container_id[:12]}")
        await sleep(spec.start_period)

    last = HealthStatus.NONE
    for attempt in range(1, spec.retries + 1):
        _check_cancelled(cancel, container_id)
        await sleep(spec.interval)
        _check_cancelled(cancel, container_id)

        try:
            state = await asyncio.wait_for(runtime.inspect(container_id), spec.timeout)
        except asyncio.TimeoutError:
            logger.debug(f"Health inspect attempt {attempt} timed out after {spec.timeout}s")
            continue

        if not state.exists:
            raise RuntimeOperationFailed(
                "Container disappeared while waiting for it to become healthy",
                data={"container_id": container_id},
            )

        if state.health != last and on_status is not None:
            on_status(state.health)
        last = state.health

        if last == HealthStatus.HEALTHY:
            logger.info(f"Container {container_id[:12]} healthy after {attempt} attempt(s)")
            return last
        logger.debug(f"Health attempt {attempt}/{spec.retries}: {last.value}")

    raise HealthCheckTimeout(
        f"Container did not become healthy after {spec.retries} attempts",
        data={
            "container_id": container_id,
            "last_status": last.value,
            "retries": spec.retries,
            "interval": spec.interval,
        },
    )
