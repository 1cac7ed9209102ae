"""
Shared fakes and fixtures. Every external capability is replaced by an
in-process fake that records what the engine asked of it.
"""
import asyncio
from collections import deque
from dataclasses import replace

import pytest

from tutorloop.capabilities import AnswerEvaluation, TranscriptEvent, TutorReply
from tutorloop.config import Settings
from tutorloop.errors import CaptureError
from tutorloop.session import SurfaceElement, Verdict
from tutorloop.store import MemoryStore


async def settle(rounds: int = 20) -> None:
    """Let pending callbacks and freshly created tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def eventually(predicate, timeout: float = 1.0) -> None:
    """Poll until predicate() holds, failing the test after timeout seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class FakeSurface:
    def __init__(self, elements=None):
        self._elements = list(elements or [])
        self.captures: list[str] = []
        self.fail = False
        self.gate: asyncio.Event | None = None

    def set_elements(self, *pairs):
        self._elements = [SurfaceElement(id=i, version=v) for i, v in pairs]

    def elements(self):
        return list(self._elements)

    async def capture(self, mode="fast"):
        self.captures.append(mode)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise CaptureError("canvas gone")
        return f"{mode}-image"


class FakeReasoning:
    def __init__(self):
        self.verdicts: deque = deque()
        self.replies: deque = deque()
        self.evaluations: deque = deque()
        self.analyze_calls: list[tuple] = []
        self.reply_calls: list[dict] = []
        self.evaluate_calls: list[str] = []
        self.final_calls: list[str] = []
        self.final_text = "You solved it. Great persistence."
        self.gate: asyncio.Event | None = None

    async def analyze(self, problem, image_base64, previous_feedback=None, context=None):
        self.analyze_calls.append((problem, image_base64, previous_feedback, context))
        if self.gate is not None:
            await self.gate.wait()
        result = self.verdicts.popleft()
        if isinstance(result, Exception):
            raise result
        return result

    async def final_feedback(self, problem, image_base64):
        self.final_calls.append(image_base64)
        if self.gate is not None:
            await self.gate.wait()
        return self.final_text

    async def reply(self, turns, context, request_question=False):
        self.reply_calls.append(
            {"turns": list(turns), "context": context, "request_question": request_question}
        )
        if self.gate is not None:
            await self.gate.wait()
        result = self.replies.popleft()
        if isinstance(result, Exception):
            raise result
        return result

    async def evaluate_answer(self, turns, answer, context):
        self.evaluate_calls.append(answer)
        if self.gate is not None:
            await self.gate.wait()
        result = self.evaluations.popleft()
        if isinstance(result, Exception):
            raise result
        return result


class RecordingUI:
    """Stands in for both the board UI and the call UI."""

    def __init__(self):
        self.events: list[tuple] = []

    def named(self, name):
        return [e for e in self.events if e[0] == name]

    async def show_feedback(self, verdict):
        self.events.append(("show_feedback", verdict))

    async def hide_feedback(self):
        self.events.append(("hide_feedback",))

    async def show_highlight(self, region):
        self.events.append(("show_highlight", region))

    async def clear_highlight(self):
        self.events.append(("clear_highlight",))

    async def show_countdown(self, seconds_left):
        self.events.append(("show_countdown", seconds_left))

    async def show_checking(self, checking):
        self.events.append(("show_checking", checking))

    async def show_error(self, message):
        self.events.append(("show_error", message))

    async def session_finalized(self, record):
        self.events.append(("session_finalized", record))

    async def set_phase(self, phase):
        self.events.append(("set_phase", phase))

    async def show_interim(self, text):
        self.events.append(("show_interim", text))

    async def show_tap_to_speak(self):
        self.events.append(("show_tap_to_speak",))

    async def show_manual_input(self):
        self.events.append(("show_manual_input",))


class FakeSynthesizer:
    def __init__(self, enabled=True):
        self.enabled = enabled
        self.texts: list[str] = []

    async def synthesize(self, text):
        self.texts.append(text)
        return b"mp3-bytes"


class FakeSink:
    """Playback finishes only when the test calls finish()."""

    def __init__(self):
        self.played: list[bytes] = []
        self.stops = 0
        self._done: asyncio.Event | None = None

    @property
    def playing(self):
        return self._done is not None and not self._done.is_set()

    async def play(self, audio):
        self.played.append(audio)
        self._done = asyncio.Event()
        await self._done.wait()

    def finish(self):
        if self._done is not None:
            self._done.set()

    async def stop(self):
        self.stops += 1
        self.finish()


class FakeSpeechInput:
    """
    Each listen() consumes one script: a list of TranscriptEvents, optionally
    ending with an exception to raise. An empty script means silence.
    """

    def __init__(self, available=True):
        self.available = available
        self.scripts: deque = deque()
        self.listens = 0
        self.aborts = 0
        self.active = 0
        self.hold: asyncio.Event | None = None

    def say(self, *texts, interim=()):
        events = [TranscriptEvent("interim", t) for t in interim]
        events += [TranscriptEvent("final", t) for t in texts]
        self.scripts.append(events)

    def silence(self):
        self.scripts.append([])

    def fail_with(self, exc):
        self.scripts.append([exc])

    def abort(self):
        self.aborts += 1

    async def listen(self):
        self.listens += 1
        self.active += 1
        try:
            if self.hold is not None:
                await self.hold.wait()
            script = self.scripts.popleft() if self.scripts else None
            if script is None:
                # Nothing scripted: stay open until aborted or cancelled.
                await asyncio.Event().wait()
                return
            for item in script:
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            self.active -= 1


def error_verdict(**overrides):
    fields = dict(
        is_correct=False,
        is_incomplete=False,
        feedback="The sign flips when you divide by a negative.",
        hints=["Divide both sides by minus two"],
        encouragement="Nearly there",
        speak="Check the sign",
    )
    fields.update(overrides)
    return Verdict.build(**fields)


def reply(text="Sure, let's look at it.", is_question=False):
    return TutorReply(text=text, speak_text=text, is_question=is_question)


def evaluation(correct=True, text="Yes, that's right."):
    return AnswerEvaluation(correct=correct, text=text, speak_text=text)


@pytest.fixture
def settings():
    return replace(
        Settings(),
        check_interval_sec=3,
        check_prefetch_sec=1,
        feedback_dismiss_sec=0.05,
        highlight_sec=0.02,
        highlight_max_area=0.25,
        listen_restart_delay_sec=0.01,
        speaking_timeout_sec=5.0,
        awaiting_input_timeout_sec=5.0,
        speech_safety_timeout_sec=5.0,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def ui():
    return RecordingUI()


@pytest.fixture
def reasoning():
    return FakeReasoning()


@pytest.fixture
def surface():
    return FakeSurface()


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def speech_input():
    return FakeSpeechInput()
