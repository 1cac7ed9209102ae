import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Literal, Optional


class SessionPhase(str, Enum):
    SPEAKING = "speaking"
    LISTENING = "listening"
    PROCESSING = "processing"
    AWAITING_INPUT = "awaiting_input"


@dataclass(frozen=True)
class SurfaceElement:
    """One drawable element on the work surface, as reported by the canvas."""

    id: str
    version: int
    is_deleted: bool = False


@dataclass(frozen=True)
class WorkSnapshot:
    image_base64: str
    signature: str
    media_type: str = "image/jpeg"
    captured_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class HighlightRegion:
    """Normalized rectangle (0..1 on both axes) over the work surface."""

    x: float
    y: float
    width: float
    height: float

    @property
    def area(self) -> float:
        return self.width * self.height

    def is_within_surface(self) -> bool:
        return (
            0.0 <= self.x <= 1.0
            and 0.0 <= self.y <= 1.0
            and self.width > 0.0
            and self.height > 0.0
            and self.x + self.width <= 1.0 + 1e-9
            and self.y + self.height <= 1.0 + 1e-9
        )

    @classmethod
    def from_dict(cls, data: object) -> Optional["HighlightRegion"]:
        if not isinstance(data, dict):
            return None
        try:
            return cls(
                x=float(data["x"]),
                y=float(data["y"]),
                width=float(data["width"]),
                height=float(data["height"]),
            )
        except (KeyError, TypeError, ValueError):
            return None


@dataclass(frozen=True)
class Verdict:
    is_correct: bool
    is_incomplete: bool
    feedback: str
    hints: tuple[str, ...] = ()
    encouragement: str = ""
    speak: Optional[str] = None
    highlight: Optional[HighlightRegion] = None
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def build(
        cls,
        *,
        is_correct: bool,
        is_incomplete: bool,
        feedback: str,
        hints: list[str] | tuple[str, ...] = (),
        encouragement: str = "",
        speak: Optional[str] = None,
        highlight: Optional[HighlightRegion] = None,
        max_highlight_area: float = 1.0,
        timestamp: Optional[float] = None,
    ) -> "Verdict":
        """
        Create a verdict with its invariants enforced.

        A correct verdict is never also incomplete. The spoken summary only
        survives on a definite error, and a highlight that leaves the surface
        or covers too much of it is discarded.
        """
        if is_correct:
            is_incomplete = False
        is_error = not is_correct and not is_incomplete
        speak = (speak or "").strip() or None
        if highlight is not None and (
            not highlight.is_within_surface() or highlight.area >= max_highlight_area
        ):
            highlight = None
        return cls(
            is_correct=is_correct,
            is_incomplete=is_incomplete,
            feedback=feedback.strip(),
            hints=tuple(h.strip() for h in hints if isinstance(h, str) and h.strip()),
            encouragement=encouragement.strip(),
            speak=speak if is_error else None,
            highlight=highlight if is_error else None,
            timestamp=time.time() if timestamp is None else timestamp,
        )

    @property
    def is_error(self) -> bool:
        return not self.is_correct and not self.is_incomplete

    def spoken_text(self) -> str:
        if self.speak:
            return self.speak
        if self.encouragement:
            return f"{self.encouragement}. {self.feedback}"
        return self.feedback

    def to_dict(self) -> dict:
        data = asdict(self)
        data["hints"] = list(self.hints)
        return data


@dataclass
class ConversationTurn:
    role: Literal["user", "assistant"]
    content: str
    is_question: bool = False
    timestamp: float = 0.0


@dataclass
class CapabilityFlags:
    # Computed once when the session opens; read by the state machine.
    speech_input_supported: bool = True
    manual_trigger_needed: bool = False


@dataclass
class WhiteboardSession:
    session_id: str
    problem: str
    context: str = ""
    feedback_history: list[Verdict] = field(default_factory=list)
    last_checked_signature: Optional[str] = None
    check_in_flight: bool = False
    is_alive: bool = True
    is_muted: bool = False
    is_finishing: bool = False
    is_completed: bool = False

    def last_feedback_text(self) -> Optional[str]:
        if not self.feedback_history:
            return None
        return self.feedback_history[-1].feedback

    def close(self) -> None:
        self.is_alive = False


@dataclass
class CallSession:
    session_id: str
    user_name: str = ""
    context: str = ""
    turns: list[ConversationTurn] = field(default_factory=list)
    phase: SessionPhase = SessionPhase.SPEAKING
    flags: CapabilityFlags = field(default_factory=CapabilityFlags)
    is_alive: bool = True
    # Text of the last question Ada posed that still awaits an answer.
    pending_question: Optional[str] = None
    question_posed_since_user_turn: bool = False

    def add_user_turn(self, text: str, timestamp: float = 0.0) -> None:
        self.turns.append(ConversationTurn(role="user", content=text, timestamp=timestamp))
        self.question_posed_since_user_turn = False

    def add_assistant_turn(
        self, text: str, timestamp: float = 0.0, is_question: bool = False
    ) -> None:
        self.turns.append(
            ConversationTurn(
                role="assistant", content=text, is_question=is_question, timestamp=timestamp
            )
        )

    def has_user_turns(self) -> bool:
        return any(turn.role == "user" for turn in self.turns)

    def close(self) -> None:
        self.is_alive = False
