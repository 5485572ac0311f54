"""
Event fan-out to in-process subscribers, push listeners and webhooks.

Publishing never blocks and never raises: local subscribers run in-line with
their errors logged, and external delivery happens in a consumer task fed by a
queue so state transitions never wait on a socket or HTTP endpoint.
"""

from __future__ import annotations

import asyncio
import inspect
import typing as t
from collections import defaultdict
from dataclasses import dataclass

import httpx
import structlog

log = structlog.get_logger(__name__)

GENERATION_PROGRESS = "generation_progress"
GENERATION_COMPLETE = "generation_complete"
GENERATION_ERROR = "generation_error"
JOB_UPDATE = "job_update"
BATCH_UPDATE = "batch_update"
BATCH_COMPLETED = "batch_completed"

Subscriber = t.Callable[[dict[str, t.Any]], t.Any]


class PushTransport(t.Protocol):
    async def push(self, listener_id: str, event: str, payload: dict[str, t.Any]) -> None: ...


@dataclass(frozen=True)
class Notification:
    """
    One event awaiting external delivery.

    Parameters
    ----------
    event : str
        Event name.
    payload : dict[str, typing.Any]
        JSON-serializable event body.
    listener_id : str | None
        Push listener to deliver to.
    webhook_url : str | None
        HTTP callback to POST to.
    """

    event: str
    payload: dict[str, t.Any]
    listener_id: str | None = None
    webhook_url: str | None = None


class QueuePushTransport:
    """
    Buffer pushed events per listener so a socket layer can drain them.
    """

    def __init__(self, *, maxsize: int = 1000) -> None:
        self._maxsize = maxsize
        self._queues: dict[str, asyncio.Queue[tuple[str, dict[str, t.Any]]]] = {}

    def queue_for(self, listener_id: str) -> asyncio.Queue[tuple[str, dict[str, t.Any]]]:
        queue = self._queues.get(listener_id)
        if queue is None:
            queue = asyncio.Queue(maxsize=self._maxsize)
            self._queues[listener_id] = queue
        return queue

    async def push(self, listener_id: str, event: str, payload: dict[str, t.Any]) -> None:
        queue = self.queue_for(listener_id)
        if queue.full():
            # drop the oldest event for slow listeners
            queue.get_nowait()
        queue.put_nowait((event, payload))

    def drain(self, listener_id: str) -> list[tuple[str, dict[str, t.Any]]]:
        queue = self._queues.get(listener_id)
        events: list[tuple[str, dict[str, t.Any]]] = []
        while queue is not None and not queue.empty():
            events.append(queue.get_nowait())
        return events

    def discard(self, listener_id: str) -> None:
        self._queues.pop(listener_id, None)


class NotificationFanout:
    """
    Deliver engine events without blocking the engine's state transitions.
    """

    def __init__(
        self,
        *,
        push_transport: PushTransport | None = None,
        webhook_timeout_seconds: float = 10.0,
    ) -> None:
        self._push_transport = push_transport
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)
        self._queue: asyncio.Queue[Notification | None] | None = None
        self._consumer_task: asyncio.Task[None] | None = None
        self._subscriber_tasks: set[asyncio.Future[None]] = set()
        self._client_factory: t.Callable[[], httpx.AsyncClient] = lambda: httpx.AsyncClient(
            timeout=webhook_timeout_seconds
        )

    def subscribe(self, event: str, handler: Subscriber) -> t.Callable[[], None]:
        """
        Register an in-process handler for ``event``.

        Returns
        -------
        typing.Callable[[], None]
            Function removing the handler again.
        """
        self._subscribers[event].append(handler)

        def unsubscribe() -> None:
            if handler in self._subscribers[event]:
                self._subscribers[event].remove(handler)

        return unsubscribe

    def publish(
        self,
        event: str,
        payload: dict[str, t.Any],
        *,
        listener_id: str | None = None,
        webhook_url: str | None = None,
    ) -> None:
        """
        Publish an event.

        Parameters
        ----------
        event : str
            Event name.
        payload : dict[str, typing.Any]
            Event body.
        listener_id : str | None, optional
            Push listener that should receive the event.
        webhook_url : str | None, optional
            HTTP callback that should receive the event.
        """
        for handler in list(self._subscribers.get(event, ())):
            try:
                outcome = handler(payload)
                if inspect.isawaitable(outcome):
                    self._spawn_awaitable(event=event, awaitable=outcome)
            except Exception as error:
                log.error(event="Event subscriber failed", notification=event, error=str(object=error))

        if listener_id is None and webhook_url is None:
            return
        if listener_id is not None and self._push_transport is None:
            listener_id = None
            if webhook_url is None:
                return

        queue = self._ensure_consumer()
        if queue is None:
            log.warning(
                event="No running event loop; dropping notification",
                notification=event,
            )
            return
        queue.put_nowait(
            Notification(
                event=event,
                payload=payload,
                listener_id=listener_id,
                webhook_url=webhook_url,
            )
        )

    def _spawn_awaitable(self, *, event: str, awaitable: t.Awaitable[t.Any]) -> None:
        async def runner() -> None:
            try:
                await awaitable
            except Exception as error:
                log.error(event="Async event subscriber failed", notification=event, error=str(object=error))

        task = asyncio.ensure_future(runner())
        self._subscriber_tasks.add(task)
        task.add_done_callback(self._subscriber_tasks.discard)

    def _ensure_consumer(self) -> asyncio.Queue[Notification | None] | None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return None
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._consumer_task is None or self._consumer_task.done():
            self._consumer_task = asyncio.create_task(
                coro=self._consume(queue=self._queue),
                name="genwave_notification_consumer",
            )
        return self._queue

    async def _consume(self, *, queue: asyncio.Queue[Notification | None]) -> None:
        while True:
            notification = await queue.get()
            try:
                if notification is None:
                    return
                await self._deliver(notification=notification)
            except Exception as error:
                log.error(
                    event="Notification delivery crashed",
                    notification=notification.event if notification else None,
                    error=str(object=error),
                )
            finally:
                queue.task_done()

    async def _deliver(self, *, notification: Notification) -> None:
        if notification.listener_id is not None and self._push_transport is not None:
            try:
                await self._push_transport.push(
                    notification.listener_id,
                    notification.event,
                    notification.payload,
                )
            except Exception as error:
                log.warning(
                    event="Push delivery failed",
                    notification=notification.event,
                    listener_id=notification.listener_id,
                    error=str(object=error),
                )
        if notification.webhook_url is not None:
            await self.post_webhook(
                url=notification.webhook_url,
                event=notification.event,
                payload=notification.payload,
            )

    async def post_webhook(self, *, url: str, event: str, payload: dict[str, t.Any]) -> bool:
        """
        POST an event to an HTTP callback.

        Returns
        -------
        bool
            ``True`` when the endpoint answered with a success status.
        """
        try:
            async with self._client_factory() as client:
                response = await client.post(url=url, json={"event": event, "data": payload})
                response.raise_for_status()
        except httpx.HTTPError as error:
            log.warning(
                event="Webhook delivery failed",
                notification=event,
                url=url,
                error=str(object=error),
            )
            return False
        log.debug(event="Webhook delivered", notification=event, url=url)
        return True

    async def flush(self) -> None:
        """
        Wait until every queued notification has been delivered.
        """
        if self._queue is not None and self._consumer_task is not None:
            if not self._consumer_task.done():
                await self._queue.join()

    async def aclose(self) -> None:
        if self._queue is not None and self._consumer_task is not None:
            if not self._consumer_task.done():
                self._queue.put_nowait(None)
                await self._consumer_task
        self._consumer_task = None
        self._queue = None
