import asyncio
import logging

from .config import settings

logger = logging.getLogger(__name__)


class TriggerChannel:
    """
    Hands off notifications to a dependent controller without blocking the sender
    for longer than a fixed deadline.
    """

    def __init__(self, maxsize = 1):
        self._queue = asyncio.Queue(maxsize)

    async def send(self, item, timeout = None):
        """
        Sends the item, waiting at most timeout seconds for the receiver to make room.

        Returns true if the item was sent. A timeout is logged and not raised, since
        notifications are best-effort.
        """
        if timeout is None:
            timeout = settings.trigger_timeout
        try:
            await asyncio.wait_for(self._queue.put(item), timeout)
        except asyncio.TimeoutError:
            logger.warning("timed out after %ss sending trigger for %s", timeout, item)
            return False
        else:
            return True

    async def receive(self):
        """
        Waits for and returns the next item.
        """
        return await self._queue.get()


class TriggerRegistry:
    """
    Holds a trigger channel for each tenant control plane.
    """

    def __init__(self):
        self._channels = {}

    def channel(self, namespace, name):
        """
        Returns the channel for the named tenant control plane, creating it if needed.
        """
        return self._channels.setdefault((namespace, name), TriggerChannel())

    def discard(self, namespace, name):
        self._channels.pop((namespace, name), None)

    async def notify(self, namespace, name, timeout = None):
        """
        Notifies the receiver for the named tenant control plane, if there is one.
        """
        channel = self._channels.get((namespace, name))
        if channel is None:
            return False
        return await channel.send((namespace, name), timeout)
