"""Channel from background tasks to the foreground loop."""

from dataclasses import dataclass
from queue import Empty as QueueEmpty
from queue import SimpleQueue

from mytxt.config import Settings
from mytxt.index.messages import IndexMessage, SearchMessage


@dataclass(frozen=True)
class SettingsChangedMessage:
    settings: Settings


SettingsMessage = SettingsChangedMessage

AppMessage = IndexMessage | SearchMessage | SettingsMessage


class MessageBus:
    """
    Many producers, one consumer.

    Messages sent from one thread are received in the order they were sent.
    Receiving never blocks.
    """

    def __init__(self):
        self._queue: SimpleQueue = SimpleQueue()

    def send(self, message: AppMessage):
        self._queue.put(message)

    def try_recv(self) -> AppMessage | None:
        try:
            return self._queue.get_nowait()
        except QueueEmpty:
            return None

    def drain(self) -> list[AppMessage]:
        """Receive every message that is already available."""
        messages = []
        while True:
            try:
                messages.append(self._queue.get_nowait())
            except QueueEmpty:
                return messages
