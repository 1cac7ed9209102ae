import asyncio
import contextlib
import logging
from collections.abc import Callable
from typing import Any, Optional

from tutorloop.audio_output import AudioOutputManager, SpeechEndReason
from tutorloop.capabilities import AudioSink, CallUI, SpeechInput
from tutorloop.config import Settings
from tutorloop.errors import CapabilityUnavailable, NoSpeechTimeout
from tutorloop.session import CallSession, CapabilityFlags, SessionPhase
from tutorloop.timers import SingleSlotTimer, spawn_background

logger = logging.getLogger(__name__)


class TurnTakingStateMachine:
    """
    Serialises microphone and speaker use for one conversational session.

    Phases:
      SPEAKING        speech output active, microphone off
      LISTENING       microphone active (or waiting for a tap), speaker silent
      PROCESSING      a reasoning call is in flight, both off
      AWAITING_INPUT  a question was posed; microphone stays off until the
                      student deliberately resumes

    All phase changes are synchronous writes to session.phase, so callbacks
    that resume after an await always read the current phase. The microphone
    is only ever opened while the phase is LISTENING, and every transition
    out of LISTENING closes it first.
    """

    def __init__(
        self,
        session: CallSession,
        audio: AudioOutputManager,
        speech_input: Optional[SpeechInput],
        ui: CallUI,
        settings: Settings,
        sink: Optional[AudioSink] = None,
        input_supported_by_client: bool = True,
    ):
        self.session = session
        self.audio = audio
        self.speech_input = speech_input
        self.ui = ui
        self.settings = settings
        self.sink = sink

        session.flags = CapabilityFlags(
            speech_input_supported=(
                input_supported_by_client
                and speech_input is not None
                and speech_input.available
            ),
            manual_trigger_needed=sink is None or not audio.synthesizer.enabled,
        )

        # Set by the session controller.
        self.on_final_transcript: Callable[[str], Any] = lambda text: None

        self._speech_token = 0
        self._utterance_id: Optional[int] = None
        self._listen_task: asyncio.Task | None = None
        self._restart_timer = SingleSlotTimer("listen-restart")
        self._safety_timer = SingleSlotTimer("phase-safety")

    @property
    def phase(self) -> SessionPhase:
        return self.session.phase

    @property
    def is_listening(self) -> bool:
        return self._listen_task is not None and not self._listen_task.done()

    # ── UI ───────────────────────────────────────────────────────────────────

    def _notify(self, method: str, *args: Any) -> None:
        spawn_background(self._call_ui(method, *args), name=f"ui:{method}")

    async def _call_ui(self, method: str, *args: Any) -> None:
        if self.session.is_alive:
            await getattr(self.ui, method)(*args)

    def _set_phase(self, phase: SessionPhase) -> None:
        if self.session.phase is not phase:
            logger.debug(
                "Session %s: %s -> %s",
                self.session.session_id,
                self.session.phase.value,
                phase.value,
            )
        self.session.phase = phase
        self._notify("set_phase", phase)

    # ── Speaking ─────────────────────────────────────────────────────────────

    def speak(self, text: str, then: SessionPhase = SessionPhase.LISTENING) -> None:
        """
        Enter SPEAKING and play text. When the speech ends (or is skipped,
        fails, or stalls) the machine moves on to `then`.
        """
        if not self.session.is_alive:
            return
        self._stop_listening()
        self._set_phase(SessionPhase.SPEAKING)

        self._speech_token += 1
        token = self._speech_token
        self._safety_timer.start(
            self.settings.speaking_timeout_sec,
            lambda: self._on_speaking_timeout(token, then),
        )
        self._utterance_id = self.audio.speak(
            text,
            self.sink,
            on_end=lambda reason: self._on_speech_end(token, then, reason),
        )

    def _owns_speech(self, token: int) -> bool:
        return (
            self.session.is_alive
            and token == self._speech_token
            and self.session.phase is SessionPhase.SPEAKING
        )

    def _on_speech_end(self, token: int, then: SessionPhase, reason: SpeechEndReason) -> None:
        if not self._owns_speech(token):
            return
        self._safety_timer.cancel()
        self._utterance_id = None
        manual = reason == "unavailable" or self.session.flags.manual_trigger_needed
        self._leave_speaking(then, manual=manual)

    def _on_speaking_timeout(self, token: int, then: SessionPhase) -> None:
        if not self._owns_speech(token):
            return
        logger.warning("Session %s stuck speaking, forcing turn over", self.session.session_id)
        self._speech_token += 1
        self.audio.stop(self._utterance_id)
        self._utterance_id = None
        self._leave_speaking(then, manual=True)

    def _leave_speaking(self, then: SessionPhase, manual: bool) -> None:
        if then is SessionPhase.AWAITING_INPUT:
            self._enter_awaiting_input()
        elif manual:
            # Never open the microphone without a user gesture here.
            self._set_phase(SessionPhase.LISTENING)
            self._notify("show_tap_to_speak")
        else:
            self._start_listening()

    # ── Awaiting input ───────────────────────────────────────────────────────

    def _enter_awaiting_input(self) -> None:
        self._stop_listening()
        self._set_phase(SessionPhase.AWAITING_INPUT)
        self._safety_timer.start(
            self.settings.awaiting_input_timeout_sec, self._on_awaiting_timeout
        )

    def _on_awaiting_timeout(self) -> None:
        if self.session.is_alive and self.session.phase is SessionPhase.AWAITING_INPUT:
            self._notify("show_tap_to_speak")

    # ── Listening ────────────────────────────────────────────────────────────

    def resume_listening(self) -> None:
        """The student tapped to speak."""
        if not self.session.is_alive:
            return
        if self.session.phase is SessionPhase.AWAITING_INPUT:
            self._safety_timer.cancel()
            self._start_listening()
        elif self.session.phase is SessionPhase.LISTENING and not self.is_listening:
            if self.session.flags.speech_input_supported:
                self._open_input()
            else:
                self._notify("show_manual_input")

    def _start_listening(self) -> None:
        if not self.session.is_alive:
            return
        self._set_phase(SessionPhase.LISTENING)
        if not self.session.flags.speech_input_supported:
            self._notify("show_manual_input")
            return
        self._open_input()

    def _open_input(self) -> None:
        if self.session.phase is not SessionPhase.LISTENING or self.is_listening:
            return
        self._restart_timer.cancel()
        self._listen_task = asyncio.create_task(
            self._listen_once(), name=f"listen:{self.session.session_id}"
        )

    def _stop_listening(self) -> None:
        self._restart_timer.cancel()
        task = self._listen_task
        self._listen_task = None
        if task is None or task.done():
            return
        if self.speech_input is not None:
            self.speech_input.abort()
        if task is not asyncio.current_task():
            task.cancel()

    async def _listen_once(self) -> None:
        if self.speech_input is None:
            return
        accepted = False
        try:
            async with contextlib.aclosing(self.speech_input.listen()) as events:
                async for event in events:
                    if not self.session.is_alive or self.session.phase is not SessionPhase.LISTENING:
                        return
                    if event.kind == "interim":
                        await self._call_ui("show_interim", event.text)
                        continue
                    self.speech_input.abort()
                    self._listen_task = None
                    logger.debug("Session %s heard: %r", self.session.session_id, event.text)
                    # A handler returning False refused the transcript; listen again.
                    accepted = self.on_final_transcript(event.text) is not False
                    break
        except NoSpeechTimeout:
            pass
        except CapabilityUnavailable as e:
            logger.warning("Speech input unavailable for session %s: %s", self.session.session_id, e)
            await self._call_ui("show_manual_input")
            return
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Speech input failed for session %s", self.session.session_id)
            await self._call_ui("show_manual_input")
            return
        finally:
            if self._listen_task is asyncio.current_task():
                self._listen_task = None

        if not accepted and self.session.is_alive and self.session.phase is SessionPhase.LISTENING:
            self._restart_timer.start(self.settings.listen_restart_delay_sec, self._restart_listening)

    def _restart_listening(self) -> None:
        if self.session.is_alive and self.session.phase is SessionPhase.LISTENING:
            self._open_input()

    # ── Processing ───────────────────────────────────────────────────────────

    def begin_processing(self, explicit: bool = False) -> bool:
        """
        Enter PROCESSING. Allowed from LISTENING, or from AWAITING_INPUT when
        the student explicitly triggers it. Returns False when not allowed,
        which is also how a second concurrent turn is refused.
        """
        if not self.session.is_alive:
            return False
        phase = self.session.phase
        allowed = phase is SessionPhase.LISTENING or (
            explicit and phase is SessionPhase.AWAITING_INPUT
        )
        if not allowed:
            return False
        self._stop_listening()
        self._safety_timer.cancel()
        self._notify("show_interim", "")
        self._set_phase(SessionPhase.PROCESSING)
        return True

    def recover(self) -> None:
        """The reasoning call failed; hand the turn back to the student."""
        if self.session.is_alive and self.session.phase is SessionPhase.PROCESSING:
            self._start_listening()

    # ── Teardown ─────────────────────────────────────────────────────────────

    def close(self) -> None:
        """Abort microphone and speech regardless of phase; later callbacks are no-ops."""
        self.session.close()
        self._speech_token += 1
        self._safety_timer.cancel()
        self._stop_listening()
        self.audio.stop(self._utterance_id)
        self._utterance_id = None
