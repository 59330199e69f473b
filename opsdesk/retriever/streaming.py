"""
Answer Streams

A cancellable async iterator of answer fragments with an explicit terminal
state. The fragment source runs in its own task and hands fragments over a
queue, so ``cancel()`` can abort an in-flight provider call from any task.
The queue holds one fragment: the source is not read further ahead of the
consumer than that. A consumer that stops early should ``aclose()`` the
stream or iterate it inside ``async with``.

Terminal states:
- COMPLETE: the source finished normally
- FAILED: the source raised; one fallback fragment is emitted, then iteration ends
- CANCELLED: ``cancel()`` was called or the consumer was cancelled
"""

import asyncio
import logging
from enum import Enum
from typing import Any, AsyncIterator, Callable, List, Optional, Union

logger = logging.getLogger("opsdesk.retriever.streaming")


class StreamStatus(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = (StreamStatus.COMPLETE, StreamStatus.FAILED, StreamStatus.CANCELLED)

_DONE = object()
_CANCELLED = object()


class _Failure:
    def __init__(self, error: BaseException):
        self.error = error


class AnswerStream:
    """Async iterator over answer fragments"""

    def __init__(
        self,
        source: Callable[[], AsyncIterator[str]],
        fallback_message: Union[str, Callable[[BaseException], str]],
    ):
        """
        Args:
            source: Zero-argument callable returning the fragment iterator
            fallback_message: Fragment emitted once if the source fails, or a
                callable choosing it from the exception
        """
        self._source = source
        self._fallback = fallback_message
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._task: Optional[asyncio.Task] = None
        self._chunks: List[str] = []

        self.status = StreamStatus.PENDING
        self.error: Optional[str] = None

        # Filled in by the producer as the answer is built
        self.route: Optional[str] = None
        self.classification: Any = None
        self.cited_sources: List[Any] = []
        self.warnings: List[str] = []

    @property
    def is_finished(self) -> bool:
        return self.status in TERMINAL_STATES

    @property
    def text(self) -> str:
        """Everything emitted so far"""
        return "".join(self._chunks)

    def _start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._produce())

    async def _produce(self) -> None:
        iterator = self._source()
        try:
            async for fragment in iterator:
                if fragment:
                    await self._queue.put(fragment)
        except Exception as e:
            logger.warning("Answer stream failed: %s", e)
            await self._queue.put(_Failure(e))
        else:
            await self._queue.put(_DONE)
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

    def __aiter__(self) -> "AnswerStream":
        return self

    async def __anext__(self) -> str:
        if self.is_finished:
            raise StopAsyncIteration

        self._start()
        self.status = StreamStatus.STREAMING

        try:
            entry = await self._queue.get()
        except asyncio.CancelledError:
            self.status = StreamStatus.CANCELLED
            self._task.cancel()
            raise

        if entry is _DONE:
            self.status = StreamStatus.COMPLETE
            raise StopAsyncIteration
        if entry is _CANCELLED:
            self.status = StreamStatus.CANCELLED
            raise StopAsyncIteration
        if isinstance(entry, _Failure):
            self.status = StreamStatus.FAILED
            self.error = str(entry.error) or type(entry.error).__name__
            fallback = self._fallback(entry.error) if callable(self._fallback) else self._fallback
            self._chunks.append(fallback)
            return fallback

        if self.status == StreamStatus.CANCELLED:
            raise StopAsyncIteration
        self._chunks.append(entry)
        return entry

    async def cancel(self) -> None:
        """Abort the stream and any provider call it is waiting on"""
        if self.is_finished:
            return
        self.status = StreamStatus.CANCELLED
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.wait({self._task})
        # Fragments nobody will read
        while not self._queue.empty():
            self._queue.get_nowait()
        # Wakes a consumer blocked on the queue even if the task never ran
        self._queue.put_nowait(_CANCELLED)

    async def aclose(self) -> None:
        await self.cancel()

    async def __aenter__(self) -> "AnswerStream":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def collect(self) -> str:
        """Drain the stream and return the full text"""
        async for _ in self:
            pass
        return self.text
