"""
Contracts for the external collaborators the engine drives.

Everything here is a boundary: the work surface, the reasoning service, the
speech capabilities, durable storage and the UI shell. Concrete adapters live
in llm_client, tts_client, stt_client, store and ws_bridge; tests substitute
fakes.
"""
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Protocol

from tutorloop.session import (
    ConversationTurn,
    HighlightRegion,
    SessionPhase,
    SurfaceElement,
    Verdict,
)

CaptureMode = Literal["fast", "full"]


@dataclass
class TutorReply:
    text: str
    speak_text: str
    is_question: bool = False
    auxiliary: dict[str, Any] = field(default_factory=dict)


@dataclass
class AnswerEvaluation:
    correct: bool
    text: str
    speak_text: str


@dataclass(frozen=True)
class TranscriptEvent:
    kind: Literal["interim", "final"]
    text: str


class WorkSurface(Protocol):
    def elements(self) -> list[SurfaceElement]: ...

    async def capture(self, mode: CaptureMode = "fast") -> str:
        """Return the surface as a base64 JPEG. Raises CaptureError."""
        ...


class ReasoningService(Protocol):
    async def analyze(
        self,
        problem: str,
        image_base64: str,
        previous_feedback: Optional[str] = None,
        context: Optional[str] = None,
    ) -> Verdict: ...

    async def final_feedback(self, problem: str, image_base64: str) -> str: ...

    async def reply(
        self,
        turns: list[ConversationTurn],
        context: str,
        request_question: bool = False,
    ) -> TutorReply: ...

    async def evaluate_answer(
        self, turns: list[ConversationTurn], answer: str, context: str
    ) -> AnswerEvaluation: ...


class SpeechInput(Protocol):
    available: bool

    def listen(self) -> AsyncIterator[TranscriptEvent]:
        """
        One listening session: interim events, then at most one final event.
        Ends without a final on silence; raises NoSpeechTimeout when the
        recogniser reports no speech and CapabilityUnavailable on hard failures.
        """
        ...

    def abort(self) -> None: ...


class AudioSink(Protocol):
    async def play(self, audio: bytes) -> None:
        """Play audio and return once playback has finished."""
        ...

    async def stop(self) -> None: ...


class DurableStore(Protocol):
    async def read_last_verdict(self, session_id: str) -> Optional[Verdict]: ...

    async def append_verdict(self, session_id: str, verdict: Verdict) -> None: ...

    async def save_snapshot(
        self, session_id: str, image_base64: str, metadata: dict[str, Any]
    ) -> None: ...

    async def append_turns(self, session_id: str, turns: list[ConversationTurn]) -> None: ...

    async def update_session(self, session_id: str, fields: dict[str, Any]) -> bool:
        """Merge fields into an existing session document. False if it is gone."""
        ...


class BoardUI(Protocol):
    async def show_feedback(self, verdict: Verdict) -> None: ...

    async def hide_feedback(self) -> None: ...

    async def show_highlight(self, region: HighlightRegion) -> None: ...

    async def clear_highlight(self) -> None: ...

    async def show_countdown(self, seconds_left: int) -> None: ...

    async def show_checking(self, checking: bool) -> None: ...

    async def show_error(self, message: str) -> None: ...

    async def session_finalized(self, record: dict[str, Any]) -> None: ...


class CallUI(Protocol):
    async def set_phase(self, phase: SessionPhase) -> None: ...

    async def show_interim(self, text: str) -> None: ...

    async def show_tap_to_speak(self) -> None: ...

    async def show_manual_input(self) -> None: ...

    async def show_error(self, message: str) -> None: ...
