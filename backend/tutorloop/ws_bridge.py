"""
Websocket-backed adapters for the capabilities the browser owns: the canvas,
the speaker and the visible UI.
"""
import asyncio
import base64
import logging
import uuid
from typing import Any, Optional

from fastapi import WebSocket

from tutorloop.capabilities import CaptureMode
from tutorloop.errors import CaptureError
from tutorloop.session import HighlightRegion, SessionPhase, SurfaceElement, Verdict

logger = logging.getLogger(__name__)


class WebSocketOutbox:
    """
    Ordered, non-blocking sender. Messages queue up and a single writer task
    sends them, so callers never interleave or block on the socket.
    """

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self._queue: asyncio.Queue = asyncio.Queue()
        self._writer: asyncio.Task | None = None
        self.closed = False

    def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._write_loop(), name="ws-writer")

    def send(self, message: dict[str, Any]) -> None:
        if not self.closed:
            self._queue.put_nowait(message)

    async def _write_loop(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self.websocket.send_json(message)
            except Exception as e:
                # Socket already closed; the receive loop will tear the session down.
                logger.info("Dropping %s message, socket closed: %s", message.get("type"), e)
                self.closed = True
                return

    def close(self) -> None:
        self.closed = True
        if self._writer is not None and not self._writer.done():
            self._writer.cancel()
        self._writer = None


class WebSocketBoardUI:
    def __init__(self, outbox: WebSocketOutbox):
        self.outbox = outbox

    async def show_feedback(self, verdict: Verdict) -> None:
        self.outbox.send(
            {
                "type": "feedback_show",
                "feedback": verdict.feedback,
                "hints": list(verdict.hints),
                "encouragement": verdict.encouragement,
                "timestamp": verdict.timestamp,
            }
        )

    async def hide_feedback(self) -> None:
        self.outbox.send({"type": "feedback_hide"})

    async def show_highlight(self, region: HighlightRegion) -> None:
        self.outbox.send(
            {
                "type": "highlight_show",
                "region": {
                    "x": region.x,
                    "y": region.y,
                    "width": region.width,
                    "height": region.height,
                },
            }
        )

    async def clear_highlight(self) -> None:
        self.outbox.send({"type": "highlight_clear"})

    async def show_countdown(self, seconds_left: int) -> None:
        self.outbox.send({"type": "countdown", "seconds_left": seconds_left})

    async def show_checking(self, checking: bool) -> None:
        self.outbox.send({"type": "checking", "checking": checking})

    async def show_error(self, message: str) -> None:
        self.outbox.send({"type": "error", "message": message})

    async def session_finalized(self, record: dict[str, Any]) -> None:
        self.outbox.send({"type": "session_finalized", **record})


class WebSocketCallUI:
    def __init__(self, outbox: WebSocketOutbox):
        self.outbox = outbox

    async def set_phase(self, phase: SessionPhase) -> None:
        self.outbox.send({"type": "phase", "phase": phase.value})

    async def show_interim(self, text: str) -> None:
        self.outbox.send({"type": "interim", "text": text})

    async def show_tap_to_speak(self) -> None:
        self.outbox.send({"type": "tap_to_speak"})

    async def show_manual_input(self) -> None:
        self.outbox.send({"type": "manual_input"})

    async def show_error(self, message: str) -> None:
        self.outbox.send({"type": "error", "message": message})


class WebSocketSurface:
    """
    The browser canvas. Element ids and versions are pushed by the client on
    every change; images are fetched on demand with a capture request.
    """

    def __init__(self, outbox: WebSocketOutbox, timeout: float = 10.0):
        self.outbox = outbox
        self.timeout = timeout
        self._elements: list[SurfaceElement] = []
        self._pending: dict[str, asyncio.Future] = {}

    def update_elements(self, elements: list[SurfaceElement]) -> None:
        self._elements = list(elements)

    def elements(self) -> list[SurfaceElement]:
        return list(self._elements)

    async def capture(self, mode: CaptureMode = "fast") -> str:
        if self.outbox.closed:
            raise CaptureError("socket closed")
        request_id = uuid.uuid4().hex
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        self.outbox.send({"type": "capture_request", "request_id": request_id, "mode": mode})
        try:
            image = await asyncio.wait_for(future, timeout=self.timeout)
        except asyncio.TimeoutError:
            raise CaptureError(f"no {mode} capture within {self.timeout:.0f}s") from None
        finally:
            self._pending.pop(request_id, None)
        if not image:
            raise CaptureError("empty capture")
        return image

    def resolve(self, request_id: str, image_base64: Optional[str], error: Optional[str]) -> None:
        future = self._pending.get(request_id)
        if future is None or future.done():
            return
        if error:
            future.set_exception(CaptureError(error))
        else:
            future.set_result(image_base64 or "")

    def close(self) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(CaptureError("session closed"))
        self._pending.clear()


class WebSocketAudioSink:
    """Sends synthesized audio to the browser and waits for its playback_ended."""

    def __init__(self, outbox: WebSocketOutbox):
        self.outbox = outbox
        self._pending: dict[str, asyncio.Future] = {}

    async def play(self, audio: bytes) -> None:
        playback_id = uuid.uuid4().hex
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[playback_id] = future
        self.outbox.send(
            {
                "type": "audio",
                "playback_id": playback_id,
                "data": base64.b64encode(audio).decode("utf-8"),
            }
        )
        try:
            await future
        finally:
            self._pending.pop(playback_id, None)

    async def stop(self) -> None:
        self.outbox.send({"type": "audio_stop"})
        self._release_all()

    def playback_ended(self, playback_id: str) -> None:
        future = self._pending.get(playback_id)
        if future is not None and not future.done():
            future.set_result(None)

    def _release_all(self) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_result(None)
        self._pending.clear()

    def close(self) -> None:
        self._release_all()
