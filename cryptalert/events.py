"""
In-process publish/subscribe channel.
"""

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Any]


class EventBus:
    """Topic based pub/sub owned by the composing application.

    Coroutine handlers are scheduled on the running event loop. A failing
    handler is logged and does not stop delivery to the others.
    """

    def __init__(self):
        self._subscribers: dict[str, list[Handler]] = defaultdict(list)
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        """
        Register a handler for a topic.

        Returns:
            A callable that removes this subscription
        """
        self._subscribers[topic].append(handler)

        def unsubscribe() -> None:
            handlers = self._subscribers.get(topic)
            if handlers and handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def publish(self, topic: str, payload: Any = None) -> None:
        """Deliver payload to every handler subscribed to topic."""
        for handler in list(self._subscribers.get(topic, ())):
            try:
                result = handler(payload)
            except Exception:
                logger.exception(f"Event handler for {topic} failed")
                continue

            if inspect.isawaitable(result):
                self._schedule(topic, result)

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))

    def close(self) -> None:
        """Drop every subscription and cancel handler tasks still running."""
        self._subscribers.clear()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    def _schedule(self, topic: str, awaitable) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop for async handler of {topic}")
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        task = loop.create_task(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._task_done(topic))

    def _task_done(self, topic: str) -> Callable[[asyncio.Task], None]:
        def done(task: asyncio.Task) -> None:
            self._tasks.discard(task)
            if not task.cancelled() and task.exception() is not None:
                logger.error(
                    f"Async event handler for {topic} failed: {task.exception()}"
                )

        return done
