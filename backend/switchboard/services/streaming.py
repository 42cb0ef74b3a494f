"""
streaming.py – the delivery rules every provider stream goes through.

  CancellationToken – one per streaming request, never shared across requests
  ChunkReader       – what a transport must offer: read() / cancel() / release()
  guarded_stream()  – checks the token before every read, cancels the transport,
                      raises StreamCancelled once, releases the reader on every exit
  to_deltas()       – turns full-text snapshots into incremental deltas
"""
from __future__ import annotations

import asyncio
import logging
import os
from contextlib import aclosing
from typing import Any, AsyncIterator, Awaitable, Callable, Iterator, Optional, Protocol

from ..errors import StreamCancelled

logger = logging.getLogger(__name__)

_END = object()


class CancellationToken:
    """Per-request cancel signal. Cancelling twice is the same as cancelling once."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled by caller") -> bool:
        """Signal cancellation. Returns False if the token was already cancelled."""
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    async def wait(self) -> None:
        await self._event.wait()

    def __repr__(self) -> str:
        return f"<CancellationToken cancelled={self.cancelled}>"


class ChunkReader(Protocol):
    async def read(self) -> Optional[str]:
        """Return the next chunk, or None once the transport is exhausted."""
        ...

    async def cancel(self) -> None:
        """Abort the underlying generation and free its resources."""
        ...

    async def release(self) -> None:
        """Release the handle. Must be safe to call more than once."""
        ...


# ──────────────────────────────────────────────────────────────────────────────
# Reader adapters
# ──────────────────────────────────────────────────────────────────────────────

class IteratorReader:
    """ChunkReader over an async iterator (SDK stream, httpx line parser …).

    *on_close* runs once when the reader is cancelled or released, e.g. to close
    an SDK stream object that owns the HTTP response.
    """

    def __init__(
        self,
        source: AsyncIterator[str],
        on_close: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> None:
        self._source = source
        self._on_close = on_close
        self._closed = False
        self.cancelled = False

    async def read(self) -> Optional[str]:
        if self._closed:
            return None
        try:
            return await self._source.__anext__()
        except StopAsyncIteration:
            return None

    async def cancel(self) -> None:
        self.cancelled = True
        await self.release()

    async def release(self) -> None:
        if self._closed:
            return
        self._closed = True
        aclose = getattr(self._source, "aclose", None)
        try:
            if aclose is not None:
                await aclose()
        finally:
            if self._on_close is not None:
                await self._on_close()


class ThreadedIteratorReader:
    """ChunkReader over a blocking iterator; each next() runs in a worker thread.

    A read abandoned by a cancelled consumer keeps running in its thread, so
    release() defers closing the iterator until that next() has returned.
    """

    def __init__(self, source: Iterator[str]) -> None:
        self._source = source
        self._closed = False
        self._pending: Optional[asyncio.Future] = None
        self.cancelled = False

    async def read(self) -> Optional[str]:
        if self._closed:
            return None
        self._pending = asyncio.ensure_future(asyncio.to_thread(next, self._source, _END))
        # Shielded so cancelling the consumer does not mark the read finished early.
        chunk = await asyncio.shield(self._pending)
        return None if chunk is _END else chunk

    async def cancel(self) -> None:
        self.cancelled = True
        await self.release()

    async def release(self) -> None:
        if self._closed:
            return
        self._closed = True
        pending = self._pending
        if pending is not None and not pending.done():
            logger.debug("Deferring iterator close until the pending read returns")
            pending.add_done_callback(self._close_after_read)
            return
        self._close_source()

    def _close_after_read(self, pending: asyncio.Future) -> None:
        if not pending.cancelled() and pending.exception() is not None:
            logger.debug("Abandoned read ended with: %s", pending.exception())
        self._close_source()

    def _close_source(self) -> None:
        close = getattr(self._source, "close", None)
        if close is None:
            return
        try:
            close()
        except Exception as exc:
            logger.warning("Failed to close iterator: %s", exc)


# ──────────────────────────────────────────────────────────────────────────────
# Protocol enforcement
# ──────────────────────────────────────────────────────────────────────────────

async def guarded_stream(
    reader: ChunkReader,
    token: Optional[CancellationToken] = None,
) -> AsyncIterator[str]:
    """Yield chunks from *reader* in order, honouring *token* before each read."""
    try:
        while True:
            if token is not None and token.cancelled:
                try:
                    await reader.cancel()
                except Exception as exc:
                    logger.debug("Transport cancel failed: %s", exc)
                raise StreamCancelled()
            chunk = await reader.read()
            if chunk is None:
                return
            yield chunk
    finally:
        try:
            await reader.release()
        except Exception as exc:
            logger.warning("Failed to release stream reader: %s", exc)


async def to_deltas(snapshots: AsyncIterator[str]) -> AsyncIterator[str]:
    """Convert whole-text-so-far chunks into the text added since the last one.

    If a snapshot rewrites earlier text, the delta starts after the longest
    common prefix with the previous snapshot.
    """
    previous = ""
    async with aclosing(snapshots) as stream:
        async for text in stream:
            if text.startswith(previous):
                delta = text[len(previous):]
            else:
                common = os.path.commonprefix([previous, text])
                logger.debug(
                    "Snapshot rewrote %d chars of earlier output", len(previous) - len(common)
                )
                delta = text[len(common):]
            previous = text
            if delta:
                yield delta
