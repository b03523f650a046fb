"""
UI message channels.

Each channel has at most one inbound handler. Messages posted by the UI
surfaces are dispatched one at a time by a single processing loop, and a
handler's return value (if any) is the reply.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

Message = Dict[str, Any]
Handler = Callable[[Message], Awaitable[Optional[Message]]]


class MessageRouter:
    """Registry of channel handlers plus the loop that dispatches to them."""

    def __init__(self):
        self._handlers: Dict[str, Handler] = {}
        self._inbox: "asyncio.Queue[Tuple[str, Message, asyncio.Future]]" = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._in_flight: Optional[asyncio.Future] = None
        self._stopped = False

    def register(self, channel: str, handler: Handler) -> None:
        """Attach the inbound handler of a channel.

        Raises:
            ValueError: If the channel already has a handler
        """
        if channel in self._handlers:
            raise ValueError(f"Channel already has a handler: {channel}")
        self._handlers[channel] = handler
        logger.debug("Registered handler for channel %s", channel)

    def deregister(self, channel: str) -> None:
        """Detach a channel's handler. Safe to call repeatedly."""
        if self._handlers.pop(channel, None) is not None:
            logger.debug("Deregistered handler for channel %s", channel)

    def is_registered(self, channel: str) -> bool:
        return channel in self._handlers

    async def dispatch(self, channel: str, message: Message) -> Optional[Message]:
        """Deliver one message to its channel's handler and return the reply."""
        handler = self._handlers.get(channel)
        if handler is None:
            logger.warning("Ignoring message on channel without handler: %s", channel)
            return None
        return await handler(message)

    def post(self, channel: str, message: Message) -> "asyncio.Future[Optional[Message]]":
        """Queue a message for the processing loop.

        Returns:
            Future resolved with the handler's reply, or already cancelled
            when the router has been stopped
        """
        future = asyncio.get_running_loop().create_future()
        if self._stopped:
            logger.warning("Router stopped, dropping message on channel %s", channel)
            future.cancel()
            return future
        self._inbox.put_nowait((channel, message, future))
        return future

    def run(self) -> None:
        """Start the processing loop. Calling run while running is a no-op."""
        if self._task is not None and not self._task.done():
            return
        self._stopped = False
        self._task = asyncio.get_running_loop().create_task(self._process_messages())

    def stop(self) -> None:
        """Stop the processing loop and cancel every unanswered message.

        Safe to call repeatedly.
        """
        self._stopped = True
        if self._task is not None:
            self._task.cancel()
            self._task = None
        if self._in_flight is not None:
            self._in_flight.cancel()
            self._in_flight = None
        dropped = 0
        while True:
            try:
                _, _, future = self._inbox.get_nowait()
            except asyncio.QueueEmpty:
                break
            future.cancel()
            self._inbox.task_done()
            dropped += 1
        if dropped:
            logger.info("Cancelled %d queued messages on stop", dropped)

    async def _process_messages(self) -> None:
        while True:
            channel, message, future = await self._inbox.get()
            self._in_flight = future
            try:
                reply = await self.dispatch(channel, message)
            except asyncio.CancelledError:
                future.cancel()
                raise
            except Exception as e:
                logger.exception("Handler for channel %s failed", channel)
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(reply)
            finally:
                if self._in_flight is future:
                    self._in_flight = None
                self._inbox.task_done()
