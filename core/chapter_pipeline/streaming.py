"""
Event Stream Transport

Turns StreamEvents into a long-lived, heartbeat-protected byte stream
of newline-delimited frames, plus the consumer-side decoder for it.

Frames:
    data: {json StreamEvent}\\n\\n     an event
    : heartbeat\\n\\n                  keep-alive, no payload
    data: [DONE]\\n\\n                 terminal sentinel
"""

import asyncio
import codecs
import json
import logging
from typing import AsyncIterable, AsyncIterator, Callable, List, Optional, Union

from .models import AgentOutput, StreamEvent, StreamEventType

logger = logging.getLogger("ChapterPipeline.Stream")

DATA_PREFIX = "data: "
DONE_MARKER = "[DONE]"
HEARTBEAT_FRAME = ": heartbeat\n\n"
DONE_FRAME = f"{DATA_PREFIX}{DONE_MARKER}\n\n"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def encode_event(event: StreamEvent) -> str:
    """Serialize one event as one frame."""
    return f"{DATA_PREFIX}{event.to_json()}\n\n"


class EventStream:
    """
    Outbound event channel with a heartbeat timer.

    The heartbeat task and the frame queue are one resource: they are
    acquired when iteration starts (or on `start()`) and released on
    every exit path: producer `close()`, consumer disconnect, or an
    error inside the consumer. A transport that may drop the consumer
    before `frames()` is first iterated must call `release()` itself.

    Usage:
        stream = EventStream(heartbeat_interval=15.0)
        return StreamingResponse(stream.frames(), media_type="text/event-stream")
        ...
        stream.send(StreamEvent.agent_start(AgentType.WRITER))
        stream.close()
    """

    def __init__(
        self,
        heartbeat_interval: float = 15.0,
        on_disconnect: Optional[Callable[["EventStream"], None]] = None,
    ):
        self.heartbeat_interval = heartbeat_interval
        self.on_disconnect = on_disconnect
        self._queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        self._closed = False
        self._released = False
        self._heartbeat_task: Optional[asyncio.Task] = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def heartbeat_running(self) -> bool:
        return self._heartbeat_task is not None and not self._heartbeat_task.done()

    def start(self):
        """Start the heartbeat timer. Must be called from a running loop."""
        if self._closed or self._heartbeat_task is not None:
            return
        self._heartbeat_task = asyncio.get_running_loop().create_task(self._heartbeat_loop())

    def send(self, event: StreamEvent) -> bool:
        """Queue one event frame. Sending after close is a silent no-op."""
        if self._closed:
            return False
        self._queue.put_nowait(encode_event(event))
        return True

    def close(self):
        """Emit the terminal sentinel and end the stream. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(DONE_FRAME)
        self._queue.put_nowait(None)
        self._stop_heartbeat()

    async def frames(self) -> AsyncIterator[bytes]:
        """Yield encoded frames until close() or the consumer goes away."""
        self.start()
        try:
            while True:
                frame = await self._queue.get()
                if frame is None:
                    break
                yield frame.encode("utf-8")
        finally:
            self.release()

    async def __aenter__(self) -> "EventStream":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()
        self.release()

    async def _heartbeat_loop(self):
        try:
            while not self._closed:
                await asyncio.sleep(self.heartbeat_interval)
                if self._closed:
                    break
                self._queue.put_nowait(HEARTBEAT_FRAME)
        except asyncio.CancelledError:
            logger.debug("Heartbeat timer stopped")
            raise

    def _stop_heartbeat(self):
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is not None and not task.done():
            task.cancel()

    def release(self):
        """End the stream from the consumer side. Reports a disconnect if close() had not run."""
        if self._released:
            return
        self._released = True
        disconnected = not self._closed
        self._closed = True
        self._stop_heartbeat()
        if disconnected:
            logger.info("Event stream consumer disconnected before close")
            if self.on_disconnect:
                try:
                    self.on_disconnect(self)
                except Exception as e:
                    logger.warning(f"Disconnect callback error: {e}")


# === Consumer side ===

def parse_frame_line(line: str) -> Optional[StreamEvent]:
    """
    Parse one line of the stream.

    Returns None for heartbeats, the sentinel, blank/non-data lines and
    payloads that fail to parse.
    """
    if not line.startswith(DATA_PREFIX):
        return None
    payload = line[len(DATA_PREFIX):].strip()
    if payload == DONE_MARKER:
        return None
    try:
        return StreamEvent.from_dict(json.loads(payload))
    except (ValueError, KeyError, TypeError, AttributeError):
        return None


class EventStreamDecoder:
    """
    Incremental decoder for arbitrarily chunked stream bytes.

    Keeps the trailing partial line (and any split UTF-8 sequence)
    across feed() calls. Invalid bytes decode to U+FFFD.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False

    def feed(self, chunk: Union[bytes, str]) -> List[StreamEvent]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._parse_lines(lines)

    def flush(self) -> List[StreamEvent]:
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return self._parse_lines([tail]) if tail else []

    def _parse_lines(self, lines: List[str]) -> List[StreamEvent]:
        events = []
        for line in lines:
            line = line.rstrip("\r")
            if line.startswith(DATA_PREFIX) and line[len(DATA_PREFIX):].strip() == DONE_MARKER:
                self.done = True
                continue
            event = parse_frame_line(line)
            if event is not None:
                events.append(event)
        return events


async def consume_event_stream(
    chunks: AsyncIterable[Union[bytes, str]],
    on_items: Callable[[List[AgentOutput]], None],
    on_error: Optional[Callable[[str], None]] = None,
) -> None:
    """
    Drive a decoder over a byte stream and surface only two effects:
    a completed batch of outputs, or an error message.
    """
    decoder = EventStreamDecoder()

    def dispatch(events: List[StreamEvent]):
        for event in events:
            if event.type == StreamEventType.PIPELINE_COMPLETE:
                on_items(event.outputs or [])
            elif event.type == StreamEventType.ERROR and on_error:
                on_error(event.message or "Generation failed")

    try:
        async for chunk in chunks:
            dispatch(decoder.feed(chunk))
        dispatch(decoder.flush())
    except Exception as e:
        if on_error is None:
            raise
        on_error(str(e) or "Generation failed")
