"""Message passing between application windows.

Each window owns a mailbox. Windows never share memory: the only ways
information crosses from one window to another are messages on this bus
and the credential store.

Handoff protocol used by the authentication window:

1. The auth window sends ``oauth-code-received`` with ``code``/``state``
   (or ``error``) to the main window.
2. The main window answers ``oauth-code-ack`` as soon as it takes the
   message out of its mailbox.
3. The auth window closes itself after the acknowledgement, or after a
   fixed delay if none arrives.
"""

import asyncio
import logging
import typing as t
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

OAUTH_CODE_RECEIVED = 'oauth-code-received'
OAUTH_CODE_ACK = 'oauth-code-ack'
OAUTH_SUCCESS = 'oauth-success'


@dataclass(frozen=True)
class WindowMessage:
    event: str
    source: str
    payload: t.Dict[str, t.Any] = field(default_factory=dict)


class WindowEventBus:
    """Per-window mailboxes."""

    def __init__(self) -> None:
        self._mailboxes: t.Dict[str, 'asyncio.Queue[WindowMessage]'] = {}

    def mailbox(self, label: str) -> 'asyncio.Queue[WindowMessage]':
        """Get/create the mailbox of a window."""
        if label not in self._mailboxes:
            self._mailboxes[label] = asyncio.Queue()
        return self._mailboxes[label]

    async def send(
        self, target: str, event: str, payload: t.Optional[t.Dict[str, t.Any]] = None, *, source: str
    ) -> None:
        """Deliver a message to one window."""
        logger.debug('%s -> %s: %s', source, target, event)
        await self.mailbox(target).put(WindowMessage(event=event, source=source, payload=dict(payload or {})))

    async def emit(self, event: str, payload: t.Optional[t.Dict[str, t.Any]] = None, *, source: str) -> None:
        """Deliver a message to every known window except the sender."""
        for label in list(self._mailboxes):
            if label != source:
                await self.send(label, event, payload, source=source)

    async def receive(self, label: str, timeout: t.Optional[float] = None) -> WindowMessage:
        """Wait for the next message addressed to a window.

        Raises:
            asyncio.TimeoutError: If ``timeout`` elapses first.
        """
        queue = self.mailbox(label)
        if timeout is None:
            return await queue.get()
        return await asyncio.wait_for(queue.get(), timeout)

    async def receive_event(self, label: str, event: str, timeout: t.Optional[float] = None) -> WindowMessage:
        """Wait for a message of a given event type, dropping any other."""

        async def _wait() -> WindowMessage:
            while True:
                message = await self.receive(label)
                if message.event == event:
                    return message
                logger.debug('%s dropped %s while waiting for %s', label, message.event, event)

        if timeout is None:
            return await _wait()
        return await asyncio.wait_for(_wait(), timeout)

    def clear(self, label: str) -> int:
        """Discard pending messages of a window. Returns how many were dropped."""
        queue = self._mailboxes.get(label)
        dropped = 0
        while queue is not None and not queue.empty():
            queue.get_nowait()
            dropped += 1
        return dropped
