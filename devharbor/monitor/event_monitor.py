"""
Container event monitor

Keeps one resilient subscription to the runtime event feed, enriches raw
events with resource identity recovered from labels and fans them out to
subscribers. Disconnects are published as ConnectionStatus updates and
followed by a reconnect after a fixed delay; after a reconnect every
subscriber receives a reconciliation signal because events may have been
missed in between.
"""

import asyncio
import inspect
import itertools
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from devharbor.core.errors import HarborError, NotFound, RuntimeUnavailable
from devharbor.core.labels import LabelKeys, resource_identity
from devharbor.core.models import (
    ConnectionStatus,
    ContainerAction,
    ContainerEvent,
    HealthStatus,
    ResourceKind,
)
from devharbor.runtime.client import EventStream, RuntimeClient

logger = logging.getLogger(__name__)

EVENT_FILTERS: Dict[str, List[str]] = {
    "type": ["container"],
    "event": [action.value for action in ContainerAction],
    "label": [f"{LabelKeys.MANAGED}=true"],
}

EventCallback = Callable[[ContainerEvent], Union[None, Awaitable[None]]]
StatusCallback = Callable[[ConnectionStatus], Union[None, Awaitable[None]]]
ReconcileCallback = Callable[[], Union[None, Awaitable[None]]]


class MonitorState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def parse_action(value: str) -> Tuple[Optional[ContainerAction], Optional[HealthStatus]]:
    """Split a runtime action such as "health_status: healthy" """
    name, _, detail = (value or "").partition(":")
    try:
        action = ContainerAction(name.strip())
    except ValueError:
        return None, None
    health = HealthStatus.parse(detail.strip()) if action == ContainerAction.HEALTH_STATUS else None
    return action, health


async def _invoke(callback: Callable[..., Any], *args) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


_STOP = object()


class _Subscriber:
    """One subscriber's private queue and delivery task"""

    def __init__(
        self,
        subscriber_id: int,
        on_event: Optional[EventCallback],
        on_status: Optional[StatusCallback],
        on_reconcile: Optional[ReconcileCallback],
    ):
        self.id = subscriber_id
        self.on_event = on_event
        self.on_status = on_status
        self.on_reconcile = on_reconcile
        self.queue: asyncio.Queue = asyncio.Queue()
        self.task = asyncio.create_task(self._drain(), name=f"devharbor-subscriber-{subscriber_id}")

    async def _drain(self) -> None:
        while True:
            kind, payload = await self.queue.get()
            if kind is _STOP:
                return
            callback = {
                "event": self.on_event,
                "status": self.on_status,
                "reconcile": self.on_reconcile,
            }[kind]
            if callback is None:
                continue
            try:
                if kind == "reconcile":
                    await _invoke(callback)
                else:
                    await _invoke(callback, payload)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Subscriber {self.id} failed handling {kind}: {e}", exc_info=True)

    def offer(self, kind: str, payload: Any = None) -> None:
        self.queue.put_nowait((kind, payload))

    async def close(self, drain_timeout: float = 1.0) -> None:
        """Deliver what is already queued, then stop the delivery task"""
        self.queue.put_nowait((_STOP, None))
        if self.task is asyncio.current_task():
            return
        done, _ = await asyncio.wait({self.task}, timeout=drain_timeout)
        if not done:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass


class Subscription:
    """Cancellation handle returned by EventMonitor.subscribe"""

    def __init__(self, monitor: "EventMonitor", subscriber_id: int):
        self._monitor = monitor
        self.id = subscriber_id

    @property
    def active(self) -> bool:
        return self.id in self._monitor._subscribers

    def cancel(self) -> None:
        self._monitor._unsubscribe(self.id)


class EventMonitor:
    """
    Resilient runtime event subscription with fan-out

    State machine: DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTED
    on error, with reconnect attempts until stop() is called.
    """

    def __init__(
        self,
        runtime: RuntimeClient,
        reconnect_delay: float = 5.0,
        ping_interval: float = 30.0,
        label_cache_ttl: float = 30.0,
    ):
        self.runtime = runtime
        self.reconnect_delay = reconnect_delay
        self.ping_interval = ping_interval
        self.label_cache_ttl = label_cache_ttl

        self.state = MonitorState.DISCONNECTED
        self._running = False
        self._has_connected = False
        self._reconnect_attempts = 0
        self._last_status: Optional[ConnectionStatus] = None

        self._stream: Optional[EventStream] = None
        self._stream_task: Optional[asyncio.Task] = None
        self._ping_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

        self._label_cache: Dict[str, Tuple[float, Dict[str, str]]] = {}
        # Replaced wholesale on every change so delivery can iterate safely
        self._subscribers: Dict[int, _Subscriber] = {}
        self._ids = itertools.count(1)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_connected(self) -> bool:
        return self.state == MonitorState.CONNECTED

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def last_status(self) -> Optional[ConnectionStatus]:
        return self._last_status

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(
        self,
        on_event: Optional[EventCallback] = None,
        on_status: Optional[StatusCallback] = None,
        on_reconcile: Optional[ReconcileCallback] = None,
    ) -> Subscription:
        subscriber = _Subscriber(next(self._ids), on_event, on_status, on_reconcile)
        self._subscribers = {**self._subscribers, subscriber.id: subscriber}
        logger.debug(f"Subscriber {subscriber.id} added ({len(self._subscribers)} active)")
        return Subscription(self, subscriber.id)

    def _unsubscribe(self, subscriber_id: int) -> None:
        subscribers = dict(self._subscribers)
        subscriber = subscribers.pop(subscriber_id, None)
        if subscriber is None:
            return
        self._subscribers = subscribers
        subscriber.offer(_STOP)
        logger.debug(f"Subscriber {subscriber_id} removed ({len(subscribers)} active)")

    def _publish(self, kind: str, payload: Any = None) -> None:
        for subscriber in self._subscribers.values():
            subscriber.offer(kind, payload)

    def _publish_status(self, status: ConnectionStatus) -> None:
        self._last_status = status
        self._publish("status", status)

    async def start(self) -> None:
        """Open the event subscription; a no-op when already started"""
        if self._running:
            logger.debug("Event monitor already running")
            return
        self._running = True
        logger.info("Starting event monitor")
        await self._connect()
        self._ping_task = asyncio.create_task(self._ping_loop(), name="devharbor-monitor-ping")

    async def stop(self) -> None:
        """Tear down the subscription and clear all subscribers"""
        was_running = self._running
        self._running = False

        for task in (self._ping_task, self._reconnect_task, self._stream_task):
            if task is None or task.done() or task is asyncio.current_task():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._ping_task = self._reconnect_task = self._stream_task = None

        await self._close_stream()
        self.state = MonitorState.DISCONNECTED
        self._label_cache.clear()

        if was_running:
            self._publish_status(
                ConnectionStatus(
                    connected=False,
                    reconnect_attempts=self._reconnect_attempts,
                    last_error="Stopped",
                )
            )

        subscribers = self._subscribers
        self._subscribers = {}
        for subscriber in subscribers.values():
            await subscriber.close()

        self._reconnect_attempts = 0
        self._has_connected = False
        if was_running:
            logger.info("Event monitor stopped")

    async def _connect(self) -> None:
        self.state = MonitorState.CONNECTING
        try:
            if not await self.runtime.ping():
                raise RuntimeUnavailable("Container runtime is not responding")
            stream = await self.runtime.subscribe_events(EVENT_FILTERS)
        except HarborError as e:
            logger.warning(f"Event monitor failed to connect: {e.message}")
            self._handle_disconnect(e.message)
            return

        if not self._running:
            await stream.close()
            return

        reconnected = self._has_connected or self._reconnect_attempts > 0
        self._stream = stream
        self.state = MonitorState.CONNECTED
        self._has_connected = True
        self._reconnect_attempts = 0
        logger.info("Event monitor connected")
        self._publish_status(ConnectionStatus(connected=True, reconnect_attempts=0))

        if reconnected:
            self._label_cache.clear()
            logger.info("Reconnected, requesting reconciliation from subscribers")
            self._publish("reconcile")

        self._stream_task = asyncio.create_task(
            self._consume(stream), name="devharbor-monitor-stream"
        )

    async def _consume(self, stream: EventStream) -> None:
        try:
            async for raw in stream:
                event = await self._enrich(raw)
                if event is not None:
                    self._publish("event", event)
        except asyncio.CancelledError:
            raise
        except HarborError as e:
            error = e.message
        except Exception as e:
            logger.error(f"Unexpected error reading event stream: {e}", exc_info=True)
            error = str(e)
        else:
            error = "Event stream ended"

        if self._running and self._stream is stream:
            logger.warning(f"Event stream disconnected: {error}")
            await self._close_stream()
            self._handle_disconnect(error)

    def _handle_disconnect(self, error: str) -> None:
        self.state = MonitorState.DISCONNECTED
        if not self._running:
            return
        self._reconnect_attempts += 1
        self._publish_status(
            ConnectionStatus(
                connected=False,
                reconnect_attempts=self._reconnect_attempts,
                last_error=error,
            )
        )
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(
                self._reconnect_after_delay(), name="devharbor-monitor-reconnect"
            )

    async def _reconnect_after_delay(self) -> None:
        logger.info(
            f"Reconnecting in {self.reconnect_delay}s (attempt {self._reconnect_attempts})"
        )
        await asyncio.sleep(self.reconnect_delay)
        self._reconnect_task = None
        if self._running and self.state == MonitorState.DISCONNECTED:
            await self._connect()

    async def _close_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            await stream.close()
        except HarborError as e:
            logger.debug(f"Error closing event stream: {e}")

    async def _ping_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.ping_interval)
            if self.state != MonitorState.CONNECTED:
                continue
            if await self.runtime.ping():
                continue
            logger.warning("Runtime ping failed, forcing reconnect")
            await self.force_reconnect("Runtime ping failed")

    async def force_reconnect(self, reason: str = "Reconnect requested") -> None:
        """Drop the current stream and go through the reconnect path"""
        if not self._running:
            return
        task, self._stream_task = self._stream_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._close_stream()
        self._handle_disconnect(reason)

    async def _labels_for(self, container_id: str) -> Dict[str, str]:
        now = time.monotonic()
        cached = self._label_cache.get(container_id)
        if cached and cached[0] > now:
            return cached[1]

        try:
            labels = await self.runtime.container_labels(container_id)
        except NotFound:
            labels = {}
        except HarborError as e:
            logger.debug(f"Could not resolve labels for {container_id[:12]}: {e}")
            return {}

        if len(self._label_cache) > 256:
            self._label_cache = {k: v for k, v in self._label_cache.items() if v[0] > now}
        self._label_cache[container_id] = (now + self.label_cache_ttl, labels)
        return labels

    async def _enrich(self, raw: Dict[str, Any]) -> Optional[ContainerEvent]:
        """Turn a raw runtime event into a ContainerEvent, or None to skip it"""
        if raw.get("Type", "container") != "container":
            return None
        action, health = parse_action(raw.get("Action") or raw.get("status") or "")
        if action is None:
            return None
        actor = raw.get("Actor") or {}
        container_id = actor.get("ID") or raw.get("id")
        if not container_id:
            return None

        identity = resource_identity(actor.get("Attributes"))
        if identity is None:
            identity = resource_identity(await self._labels_for(container_id))

        if raw.get("timeNano"):
            timestamp = raw["timeNano"] / 1e9
        else:
            timestamp = float(raw.get("time") or time.time())

        return ContainerEvent(
            container_id=container_id,
            action=action,
            timestamp=timestamp,
            resource_id=identity["resource_id"] if identity else None,
            kind=identity["kind"] if identity else None,
            category=identity["category"] if identity else None,
            health=health,
        )


class ProxySyncTrigger:
    """
    Debounced reverse-proxy resync when project containers start.

    Bursts of project start events collapse into a single callback run
    `delay` seconds after the last one.
    """

    def __init__(self, callback: Callable[[], Awaitable[Any]], delay: float = 0.5):
        self.callback = callback
        self.delay = delay
        self._pending: Optional[asyncio.Task] = None
        self._subscription: Optional[Subscription] = None

    @property
    def pending(self) -> bool:
        return self._pending is not None and not self._pending.done()

    def attach(self, monitor: EventMonitor) -> Subscription:
        self._subscription = monitor.subscribe(on_event=self.on_event)
        return self._subscription

    def on_event(self, event: ContainerEvent) -> None:
        if event.kind == ResourceKind.PROJECT and event.action == ContainerAction.START:
            logger.debug(f"Project {event.resource_id} started, scheduling proxy sync")
            self.schedule()

    def schedule(self) -> None:
        if self.pending:
            self._pending.cancel()
        self._pending = asyncio.create_task(self._run_later(), name="devharbor-proxy-sync")

    async def _run_later(self) -> None:
        await asyncio.sleep(self.delay)
        try:
            await self.callback()
        except HarborError as e:
            logger.warning(f"Proxy sync failed: {e}")
        except Exception as e:
            logger.error(f"Proxy sync failed: {e}", exc_info=True)

    async def close(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        if self.pending:
            self._pending.cancel()
            try:
                await self._pending
            except asyncio.CancelledError:
                pass
        self._pending = None
