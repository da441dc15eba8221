"""
Durable queue of network actions attempted while offline.
"""

import asyncio
import logging
from typing import Any, Callable, Optional

from cryptalert.database.models import OfflineAction
from cryptalert.database.repository import OfflineQueueRepository
from cryptalert.errors import NetworkError

logger = logging.getLogger(__name__)

# Blocking callable that performs one action, raising NetworkError on failure
ActionHandler = Callable[[dict[str, Any]], None]


class OfflineQueue:
    """FIFO of {action, data} replayed when connectivity returns.

    Handlers run in a worker thread; the queue itself is only touched
    from the event loop.
    """

    def __init__(self, repository: OfflineQueueRepository, online: bool = True):
        self.repository = repository
        self.online = online
        self._handlers: dict[str, ActionHandler] = {}
        self._draining = False

    def register(self, action: str, handler: ActionHandler) -> None:
        self._handlers[action] = handler

    def handles(self, action: str) -> bool:
        return action in self._handlers

    def __len__(self) -> int:
        return self.repository.count()

    def pending(self) -> list[OfflineAction]:
        return self.repository.list_all()

    def enqueue(self, action: str, data: dict[str, Any]) -> OfflineAction:
        """Append an action at the tail."""
        queued = self.repository.push(OfflineAction(action=action, data=data))
        logger.info(f"Queued offline action {action} (#{queued.id})")
        return queued

    async def submit(self, action: str, data: dict[str, Any]) -> bool:
        """
        Run an action now, or queue it when that is not possible.

        Returns:
            True if the action completed
        """
        if not self.online:
            self.enqueue(action, data)
            return False

        try:
            await self._run(action, data)
            return True
        except NetworkError as e:
            if e.temporary:
                logger.info(f"Action {action} failed temporarily, queued: {e}")
                self.enqueue(action, data)
            else:
                logger.warning(f"Action {action} failed, dropped: {e}")
            return False
        except Exception as e:
            logger.error(f"Action {action} failed, dropped: {e}")
            return False

    async def set_online(self, online: bool) -> int:
        """Record connectivity; coming back online drains the queue."""
        self.online = online
        if online:
            return await self.drain()
        return 0

    async def drain(self) -> int:
        """
        Replay queued actions in FIFO order.

        Only the actions present when the pass starts are processed, so a
        re-queued action waits for the next pass.

        Returns:
            Number of actions that completed
        """
        if not self.online or self._draining:
            return 0

        self._draining = True
        completed = 0
        try:
            items = self.repository.list_all()
            if items:
                logger.info(f"Draining {len(items)} offline actions")

            for item in items:
                if not self.online:
                    break

                self.repository.remove(item.id)
                try:
                    await self._run(item.action, item.data)
                    completed += 1
                except NetworkError as e:
                    if e.temporary:
                        logger.info(f"Offline action {item.action} still failing, re-queued: {e}")
                        self.repository.push(OfflineAction(action=item.action, data=item.data))
                    else:
                        logger.warning(f"Offline action {item.action} dropped: {e}")
                except Exception as e:
                    logger.warning(f"Offline action {item.action} dropped: {e}")
        finally:
            self._draining = False

        return completed

    async def _run(self, action: str, data: dict[str, Any]) -> None:
        handler: Optional[ActionHandler] = self._handlers.get(action)
        if handler is None:
            raise ValueError(f"No handler for offline action: {action}")
        await asyncio.to_thread(handler, data)
