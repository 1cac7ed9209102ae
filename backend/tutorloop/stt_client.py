import asyncio
import json
import logging
import os
import ssl
from collections.abc import AsyncIterator

import aiohttp
import certifi

from tutorloop.capabilities import TranscriptEvent
from tutorloop.config import Settings
from tutorloop.errors import CapabilityUnavailable, NoSpeechTimeout

logger = logging.getLogger(__name__)

_SSL_CTX = ssl.create_default_context(cafile=certifi.where())

DEEPGRAM_WS_URL = "wss://api.deepgram.com/v1/listen"

# Genuine speech from Nova-2 is usually > 0.8; background noise is much lower.
MIN_CONFIDENCE = float(os.getenv("STT_MIN_CONFIDENCE", "0.50"))

# With no speech at all for this long the listening session reports NoSpeechTimeout.
NO_SPEECH_TIMEOUT_SEC = float(os.getenv("STT_NO_SPEECH_TIMEOUT_SEC", "8.0"))

_SENTINEL = None


class STTClient:
    """
    Deepgram Nova-2 streaming speech input.

    The UI shell pushes microphone chunks with feed(); listen() opens one
    Deepgram connection per listening session and yields interim transcripts
    followed by at most one final transcript. abort() ends the session at once.
    """

    def __init__(self, settings: Settings):
        self.api_key = settings.deepgram_api_key
        self.model = settings.deepgram_model or "nova-2"
        self.available = bool(self.api_key)
        self._audio_queue: asyncio.Queue | None = None
        self._aborted = asyncio.Event()

    def build_url(self) -> str:
        return (
            f"{DEEPGRAM_WS_URL}"
            f"?model={self.model}"
            "&language=en-GB"
            "&punctuate=true"
            "&smart_format=true"
            "&endpointing=300"
            "&interim_results=true"
            "&encoding=opus"
            "&container=webm"
        )

    def feed(self, chunk: bytes) -> None:
        """Queue a microphone chunk; dropped when no session is listening."""
        if self._audio_queue is not None:
            self._audio_queue.put_nowait(chunk)

    def end_of_audio(self) -> None:
        """The microphone stopped; let Deepgram flush its last result."""
        if self._audio_queue is not None:
            self._audio_queue.put_nowait(_SENTINEL)

    def abort(self) -> None:
        self._aborted.set()
        if self._audio_queue is not None:
            self._audio_queue.put_nowait(_SENTINEL)

    async def listen(self) -> AsyncIterator[TranscriptEvent]:
        if not self.available:
            raise CapabilityUnavailable("speech_input", "DEEPGRAM_API_KEY not set")

        self._aborted = asyncio.Event()
        self._audio_queue = asyncio.Queue()
        audio_queue = self._audio_queue
        headers = {"Authorization": f"Token {self.api_key}"}

        try:
            connector = aiohttp.TCPConnector(ssl=_SSL_CTX)
            async with aiohttp.ClientSession(connector=connector) as session:
                async with session.ws_connect(self.build_url(), headers=headers) as dg_ws:
                    send_task = asyncio.create_task(self._send_audio(dg_ws, audio_queue))
                    try:
                        async for event in self._recv_events(dg_ws):
                            if self._aborted.is_set():
                                return
                            yield event
                            if event.kind == "final":
                                return
                    finally:
                        send_task.cancel()
                        try:
                            await send_task
                        except (asyncio.CancelledError, aiohttp.ClientError):
                            pass
        except aiohttp.ClientError as e:
            raise CapabilityUnavailable("speech_input", str(e)) from e
        finally:
            if self._audio_queue is audio_queue:
                self._audio_queue = None

    async def _send_audio(
        self, dg_ws: aiohttp.ClientWebSocketResponse, audio_queue: asyncio.Queue
    ) -> None:
        while True:
            chunk = await audio_queue.get()
            if chunk is _SENTINEL:
                await dg_ws.send_str(json.dumps({"type": "CloseStream"}))
                return
            await dg_ws.send_bytes(chunk)

    async def _recv_events(
        self, dg_ws: aiohttp.ClientWebSocketResponse
    ) -> AsyncIterator[TranscriptEvent]:
        heard_anything = False
        while True:
            try:
                msg = await asyncio.wait_for(dg_ws.receive(), timeout=NO_SPEECH_TIMEOUT_SEC)
            except asyncio.TimeoutError:
                if heard_anything:
                    return
                raise NoSpeechTimeout("no speech detected")

            if msg.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSED,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.ERROR,
            ):
                return
            if msg.type != aiohttp.WSMsgType.TEXT:
                continue

            try:
                data = json.loads(msg.data)
            except (json.JSONDecodeError, TypeError):
                continue
            if not isinstance(data, dict) or data.get("type") != "Results":
                continue

            alternatives = data.get("channel", {}).get("alternatives", [])
            if not alternatives:
                continue
            transcript = alternatives[0].get("transcript", "").strip()
            confidence = alternatives[0].get("confidence", 0.0)
            if not transcript:
                continue
            heard_anything = True

            if not data.get("is_final", False):
                yield TranscriptEvent(kind="interim", text=transcript)
                continue

            if confidence < MIN_CONFIDENCE:
                logger.debug("STT filtered: %r (confidence=%.2f)", transcript, confidence)
                continue
            yield TranscriptEvent(kind="final", text=transcript)
