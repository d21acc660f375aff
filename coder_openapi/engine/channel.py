"""
coder-openapi :: Streaming Channel

Bounded queue of ChatMessage fragments between one generation (producer)
and one HTTP response (consumer).

  producer: send(fragment) -> bool, finish()
  consumer: async for fragment in channel, close()

send() returns False when the consumer has closed the channel or the
buffer stayed full for longer than send_timeout; the producer stops
generating at that point. abort_reason records which case happened.
"""

import asyncio
from typing import Optional

from coder_openapi.core.chat import ChatMessage

CHANNEL_CLOSED = "channel_closed"
BUFFER_FULL = "buffer_full"

_END = object()


class StreamChannel:

    def __init__(self, maxsize: int = 32, send_timeout: float = 5.0):
        if maxsize < 1:
            raise ValueError(f"maxsize must be >= 1, got {maxsize}")
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.send_timeout = send_timeout
        self._closed = False
        self._finished = False
        self.abort_reason: Optional[str] = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def finished(self) -> bool:
        return self._finished

    # -----------------------------------------------------------------
    # Producer side
    # -----------------------------------------------------------------

    async def send(self, fragment: ChatMessage) -> bool:
        if self._closed:
            self.abort_reason = CHANNEL_CLOSED
            return False
        if self._finished:
            raise RuntimeError("send() after finish()")
        try:
            await asyncio.wait_for(self._queue.put(fragment), timeout=self.send_timeout)
        except asyncio.TimeoutError:
            self.abort_reason = BUFFER_FULL
            return False
        if self._closed:
            self.abort_reason = CHANNEL_CLOSED
            return False
        return True

    def finish(self):
        """Mark the end of the stream. Safe to call more than once."""
        if self._finished:
            return
        self._finished = True
        if self._closed:
            return
        try:
            self._queue.put_nowait(_END)
        except asyncio.QueueFull:
            # the consumer stops once it has drained the buffer
            pass

    # -----------------------------------------------------------------
    # Consumer side
    # -----------------------------------------------------------------

    def close(self):
        """Consumer is gone: drop buffered fragments and unblock the producer."""
        self._closed = True
        while not self._queue.empty():
            self._queue.get_nowait()

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChatMessage:
        if self._closed or (self._finished and self._queue.empty()):
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            raise StopAsyncIteration
        return item
