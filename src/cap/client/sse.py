"""
Stream consumer for pipeline progress.

Rebuilds discrete events from an arbitrarily chunked SSE byte stream and
drives caller callbacks:
- SSEDecoder: incremental bytes -> typed events
- EventSubscription: cancellable async iterator of events
- StreamConsumer: dispatches events to callbacks under cancellation
- run_pipeline_analysis: POST a run request and consume its stream
"""

from __future__ import annotations

import asyncio
import codecs
import inspect
from collections import deque
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Callable

import httpx
import orjson

from cap.coordinator.events import (
    CompleteEvent,
    ErrorEvent,
    PipelineEvent,
    StageCompleteEvent,
    StageErrorEvent,
    StageStartEvent,
    is_terminal,
    parse_event,
)
from cap.exceptions import ParseError
from cap.logging import get_logger

logger = get_logger(__name__)

FRAME_DELIMITER = "\n\n"
DEFAULT_PATH = "/analysis/runs"


class SSEDecoder:
    """Incremental decoder from raw bytes to pipeline events.

    Only complete frames leave the buffer. A partial trailing fragment,
    including a multi-byte character split across chunks, waits for the
    next feed.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    @property
    def buffered(self) -> str:
        return self._buffer

    def feed(self, chunk: bytes) -> list[PipelineEvent]:
        """Decode a chunk and return every event it completes."""
        self._buffer += self._decoder.decode(chunk)
        return self._drain()

    def flush(self) -> list[PipelineEvent]:
        """Finish decoding at end of stream.

        A trailing fragment without its delimiter is incomplete and dropped.
        """
        self._buffer += self._decoder.decode(b"", final=True)
        events = self._drain()
        if self._buffer.strip():
            logger.debug("Dropping incomplete trailing frame", size=len(self._buffer))
        self._buffer = ""
        return events

    def _drain(self) -> list[PipelineEvent]:
        if "\r" in self._buffer:
            self._buffer = self._buffer.replace("\r\n", "\n")
        *frames, self._buffer = self._buffer.split(FRAME_DELIMITER)

        events = []
        for frame in frames:
            event = self._parse_frame(frame)
            if event is not None:
                events.append(event)
        return events

    @staticmethod
    def _parse_frame(frame: str) -> PipelineEvent | None:
        data_lines = []
        for line in frame.split("\n"):
            if line.startswith("data:"):
                value = line[5:]
                data_lines.append(value[1:] if value.startswith(" ") else value)
        if not data_lines:
            # Comments, keep-alives, blank frames
            return None

        data = "\n".join(data_lines)
        try:
            return parse_event(orjson.loads(data))
        except orjson.JSONDecodeError as e:
            logger.warning("Failed to parse stream event", error=str(e), frame=data[:200])
        except (ParseError, ValueError, TypeError, OverflowError) as e:
            logger.warning("Skipping unrecognized stream event", error=str(e))
        return None


class EventSubscription:
    """Cancellable async iterator of events over a byte chunk source.

    Iteration stops after a terminal event or on cancellation. Either way
    the source is closed and no further reads are issued. A read that is in
    flight when cancellation arrives is abandoned.
    """

    def __init__(
        self,
        chunks: AsyncIterable[bytes],
        cancel_event: asyncio.Event | None = None,
        on_close: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self._chunks = chunks.__aiter__()
        self._cancel = cancel_event or asyncio.Event()
        self._on_close = on_close
        self._decoder = SSEDecoder()
        self._pending: deque[PipelineEvent] = deque()
        self._exhausted = False
        self._closed = False
        self._inflight: asyncio.Future[bytes | None] | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        """Stop iteration; nothing further is yielded."""
        self._cancel.set()

    def __aiter__(self) -> AsyncIterator[PipelineEvent]:
        return self

    async def __anext__(self) -> PipelineEvent:
        while True:
            if self.cancelled or self._closed:
                await self.aclose()
                raise StopAsyncIteration

            if self._pending:
                event = self._pending.popleft()
                if is_terminal(event):
                    self._pending.clear()
                    await self.aclose()
                return event

            if self._exhausted:
                await self.aclose()
                raise StopAsyncIteration

            try:
                chunk = await self._read()
            except Exception:
                await self.aclose()
                raise

            if chunk is None:
                if self.cancelled:
                    continue
                self._exhausted = True
                self._pending.extend(self._decoder.flush())
            else:
                self._pending.extend(self._decoder.feed(chunk))

    async def _read(self) -> bytes | None:
        """Next chunk, or None at end of stream or on cancellation."""
        read = self._inflight = asyncio.ensure_future(self._next_chunk())
        cancelled = asyncio.ensure_future(self._cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {read, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            cancelled.cancel()
            if not read.done():
                read.cancel()

        if read not in done:
            await asyncio.gather(read, return_exceptions=True)
            return None

        return read.result()

    async def _next_chunk(self) -> bytes | None:
        try:
            return await self._chunks.__anext__()
        except StopAsyncIteration:
            return None

    async def aclose(self) -> None:
        """Release the source. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._pending.clear()
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
            await asyncio.gather(self._inflight, return_exceptions=True)

        close = getattr(self._chunks, "aclose", None)
        if close is not None:
            await close()
        if self._on_close is not None:
            await self._on_close()


@dataclass
class AnalysisProgress:
    """Progress snapshot passed to on_progress."""

    stage: str
    stage_name: str
    stage_number: int
    total_stages: int

    @property
    def fraction(self) -> float:
        if not self.total_stages:
            return 0.0
        return (self.stage_number - 1) / self.total_stages


@dataclass
class PipelineCallbacks:
    """Caller callbacks. Each may be a plain function or a coroutine function."""

    on_progress: Callable[[AnalysisProgress], Any] | None = None
    on_stage_complete: Callable[[str, int], Any] | None = None
    on_complete: Callable[[dict[str, Any]], Any] | None = None
    on_error: Callable[[str, str | None], Any] | None = None


class StreamConsumer:
    """Reads an event stream to completion or cancellation.

    Cancellation is checked before every callback. Once cancelled, no
    callback runs and the cancellation itself is never reported as an error.
    """

    def __init__(self, cancel_event: asyncio.Event | None = None) -> None:
        self.cancel_event = cancel_event or asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        self.cancel_event.set()

    async def _emit(self, callback: Callable[..., Any] | None, *args: Any) -> None:
        if callback is None or self.cancelled:
            return
        result = callback(*args)
        if inspect.isawaitable(result):
            await result

    async def report_error(
        self, callbacks: PipelineCallbacks, message: str, stage: str | None = None
    ) -> None:
        """Deliver an error to on_error unless cancelled."""
        await self._emit(callbacks.on_error, message, stage)

    async def dispatch(self, event: PipelineEvent, callbacks: PipelineCallbacks) -> None:
        if isinstance(event, StageStartEvent):
            await self._emit(
                callbacks.on_progress,
                AnalysisProgress(
                    stage=event.stage,
                    stage_name=event.stage_name,
                    stage_number=event.stage_number,
                    total_stages=event.total_stages,
                ),
            )
        elif isinstance(event, StageCompleteEvent):
            await self._emit(callbacks.on_stage_complete, event.stage, event.duration_ms)
        elif isinstance(event, CompleteEvent):
            await self._emit(callbacks.on_complete, event.result)
        elif isinstance(event, StageErrorEvent):
            await self._emit(callbacks.on_error, event.message, event.stage)
        elif isinstance(event, ErrorEvent):
            await self._emit(callbacks.on_error, event.message, None)

    async def consume(
        self,
        chunks: AsyncIterable[bytes],
        callbacks: PipelineCallbacks,
        on_close: Callable[[], Awaitable[None]] | None = None,
    ) -> PipelineEvent | None:
        """Consume a byte stream and drive callbacks.

        Args:
            chunks: Raw response body chunks.
            callbacks: Callbacks to invoke.
            on_close: Optional hook run when the source is released.

        Returns:
            The terminal event, or None if the stream was cancelled or broke
            off early.
        """
        subscription = EventSubscription(chunks, self.cancel_event, on_close=on_close)
        terminal: PipelineEvent | None = None
        try:
            async for event in subscription:
                await self.dispatch(event, callbacks)
                if is_terminal(event):
                    terminal = event
        except Exception as e:
            if self.cancelled:
                return None
            logger.warning("Event stream failed", error=str(e))
            await self.report_error(callbacks, str(e) or "Analysis failed")
            return None
        finally:
            await subscription.aclose()

        if terminal is None and not self.cancelled:
            await self.report_error(callbacks, "Stream ended before the analysis finished")
        return terminal


async def run_pipeline_analysis(
    payload: dict[str, Any],
    callbacks: PipelineCallbacks,
    *,
    base_url: str = "http://127.0.0.1:8000",
    path: str = DEFAULT_PATH,
    cancel_event: asyncio.Event | None = None,
    client: httpx.AsyncClient | None = None,
    headers: dict[str, str] | None = None,
) -> PipelineEvent | None:
    """Start a run on a pipeline server and consume its progress stream.

    Args:
        payload: Run request body (camelCase).
        callbacks: Progress, completion and error callbacks.
        base_url: Server root URL.
        path: Run endpoint path.
        cancel_event: Set to abandon the stream. The server-side run
            continues regardless.
        client: Optional shared client; one is created and closed otherwise.
        headers: Extra request headers (auth).

    Returns:
        The terminal event, or None on cancellation or transport failure.
    """
    consumer = StreamConsumer(cancel_event)
    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=httpx.Timeout(30.0, read=None))
    url = f"{base_url.rstrip('/')}{path}"

    try:
        async with http.stream("POST", url, json=payload, headers=headers) as response:
            if response.status_code >= 400:
                body = (await response.aread()).decode("utf-8", errors="replace")
                await consumer.report_error(
                    callbacks, f"Pipeline request failed: {response.status_code} - {body}"
                )
                return None
            return await consumer.consume(response.aiter_bytes(), callbacks)
    except httpx.HTTPError as e:
        if consumer.cancelled:
            return None
        logger.warning("Pipeline request failed", url=url, error=str(e))
        await consumer.report_error(callbacks, str(e) or "Analysis failed")
        return None
    finally:
        if owns_client:
            await http.aclose()
