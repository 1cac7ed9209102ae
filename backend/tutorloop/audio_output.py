import asyncio
import itertools
import logging
from collections.abc import Callable
from typing import Literal, Optional, Protocol

from tutorloop.capabilities import AudioSink
from tutorloop.errors import CapabilityUnavailable
from tutorloop.timers import spawn_background

logger = logging.getLogger(__name__)

SpeechEndReason = Literal["completed", "error", "stopped", "unavailable", "timeout"]
OnSpeechEnd = Callable[[SpeechEndReason], None]


class Synthesizer(Protocol):
    enabled: bool

    async def synthesize(self, text: str) -> bytes: ...


class _Utterance:
    def __init__(self, utterance_id: int, sink: Optional[AudioSink], on_end: Optional[OnSpeechEnd]):
        self.id = utterance_id
        self.sink = sink
        self.on_end = on_end
        self.task: asyncio.Task | None = None
        self.playing = False
        self.finished = False


class AudioOutputManager:
    """
    Process-wide speech output. Create one per process and hand it to every
    session: starting an utterance always stops whatever is playing first, so
    at most one utterance is audible across the whole application.

    Every utterance reports its end exactly once through on_end, whether it
    completed, failed, was stopped, or could not be spoken at all.
    """

    def __init__(self, synthesizer: Synthesizer, safety_timeout: float = 45.0):
        self.synthesizer = synthesizer
        self.safety_timeout = safety_timeout
        self._ids = itertools.count(1)
        self._current: _Utterance | None = None

    @property
    def is_speaking(self) -> bool:
        return self._current is not None

    def speak(
        self,
        text: str,
        sink: Optional[AudioSink],
        on_end: Optional[OnSpeechEnd] = None,
    ) -> int:
        self.stop_all()

        utterance = _Utterance(next(self._ids), sink, on_end)
        self._current = utterance
        utterance.task = asyncio.create_task(
            self._run(utterance, text), name=f"speech:{utterance.id}"
        )
        return utterance.id

    def stop(self, utterance_id: Optional[int]) -> None:
        """Stop the given utterance if it is still the one playing."""
        if utterance_id is not None and self._current is not None and self._current.id == utterance_id:
            self.stop_all()

    def stop_all(self) -> None:
        utterance = self._current
        self._current = None
        if utterance is None:
            return
        if utterance.task is not None and utterance.task is not asyncio.current_task():
            utterance.task.cancel()
        if utterance.playing and utterance.sink is not None:
            spawn_background(utterance.sink.stop(), name=f"speech-stop:{utterance.id}")
        self._finish(utterance, "stopped")

    async def _run(self, utterance: _Utterance, text: str) -> None:
        reason: SpeechEndReason = "completed"
        try:
            await asyncio.wait_for(self._synthesize_and_play(utterance, text), self.safety_timeout)
        except asyncio.CancelledError:
            # stop_all already reported the end.
            return
        except CapabilityUnavailable as e:
            logger.info("Speech skipped: %s", e)
            reason = "unavailable"
        except asyncio.TimeoutError:
            logger.warning("Speech %d did not finish within %.0fs", utterance.id, self.safety_timeout)
            reason = "timeout"
            if utterance.playing and utterance.sink is not None:
                spawn_background(utterance.sink.stop(), name=f"speech-stop:{utterance.id}")
        except Exception:
            logger.exception("Speech %d failed", utterance.id)
            reason = "error"
        self._finish(utterance, reason)

    async def _synthesize_and_play(self, utterance: _Utterance, text: str) -> None:
        if utterance.sink is None:
            raise CapabilityUnavailable("speech_output", "no audio sink")
        audio = await self.synthesizer.synthesize(text)
        if not audio:
            raise CapabilityUnavailable("speech_output", "empty audio")
        utterance.playing = True
        await utterance.sink.play(audio)

    def _finish(self, utterance: _Utterance, reason: SpeechEndReason) -> None:
        if utterance.finished:
            return
        utterance.finished = True
        if self._current is utterance:
            self._current = None
        if utterance.on_end is None:
            return
        try:
            utterance.on_end(reason)
        except Exception:
            logger.exception("Speech end callback failed")
