import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Optional

from tutorloop.analysis_loop import AnalysisLoop
from tutorloop.audio_output import AudioOutputManager
from tutorloop.capabilities import DurableStore, ReasoningService
from tutorloop.config import Settings
from tutorloop.conversation import SessionController
from tutorloop.feedback import CompletionHook, FeedbackLifecycleManager
from tutorloop.session import CallSession, WhiteboardSession
from tutorloop.signature import parse_elements
from tutorloop.stt_client import STTClient
from tutorloop.turn_taking import TurnTakingStateMachine
from tutorloop.ws_bridge import (
    WebSocketAudioSink,
    WebSocketBoardUI,
    WebSocketCallUI,
    WebSocketOutbox,
    WebSocketSurface,
)

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Process-wide collaborators shared by every session."""

    settings: Settings
    store: DurableStore
    reasoning: ReasoningService
    audio: AudioOutputManager
    after_completion: tuple[CompletionHook, ...] = ()


class BoardOrchestrator:
    """Routes whiteboard websocket messages to the analysis loop."""

    def __init__(self, session_id: str, outbox: WebSocketOutbox, services: Services):
        self.session_id = session_id
        self.outbox = outbox
        self.services = services
        self.surface = WebSocketSurface(outbox, timeout=services.settings.capture_timeout_sec)
        self.sink = WebSocketAudioSink(outbox)
        self.ui = WebSocketBoardUI(outbox)
        self.session: Optional[WhiteboardSession] = None
        self.feedback: Optional[FeedbackLifecycleManager] = None
        self.loop: Optional[AnalysisLoop] = None

    async def handle_message(self, data: dict) -> None:
        msg_type = data.get("type")

        if msg_type == "session_start":
            await self._handle_session_start(data)
        elif msg_type == "surface_update":
            self.surface.update_elements(parse_elements(data.get("elements")))
        elif msg_type == "capture_result":
            self.surface.resolve(
                str(data.get("request_id", "")), data.get("image_base64"), data.get("error")
            )
        elif msg_type == "playback_ended":
            self.sink.playback_ended(str(data.get("playback_id", "")))
        elif self.loop is None or self.feedback is None:
            await self.ui.show_error("Session not started")
        elif msg_type == "check_now":
            self.loop.check_now()
        elif msg_type == "dismiss_feedback":
            await self.feedback.dismiss()
        elif msg_type == "set_muted":
            self.loop.set_muted(bool(data.get("muted", False)))
        elif msg_type == "finish":
            await self.loop.finish()
        else:
            await self.ui.show_error(f"Unknown message type: {msg_type}")

    async def _handle_session_start(self, data: dict) -> None:
        problem = str(data.get("problem", "")).strip()
        if not problem:
            await self.ui.show_error("A problem statement is required")
            return
        if self.loop is not None:
            self.loop.close()

        services = self.services
        session = WhiteboardSession(
            session_id=self.session_id,
            problem=problem,
            context=str(data.get("context", "")),
        )
        # A resumed solve continues from its last feedback.
        previous = await services.store.read_last_verdict(self.session_id)
        if previous is not None:
            session.feedback_history.append(previous)

        self.surface.update_elements(parse_elements(data.get("elements")))
        self.session = session
        self.feedback = FeedbackLifecycleManager(
            session,
            self.ui,
            self.surface,
            services.reasoning,
            services.store,
            services.audio,
            services.settings,
            after_completion=services.after_completion,
        )
        self.loop = AnalysisLoop(
            session,
            self.surface,
            services.reasoning,
            services.store,
            self.feedback,
            self.ui,
            services.settings,
            sink=self.sink,
        )
        self.loop.start()
        logger.info("Whiteboard session %s started", self.session_id)

    def cleanup(self) -> None:
        if self.loop is not None:
            self.loop.close()
        self.surface.close()
        self.sink.close()


class CallOrchestrator:
    """Routes voice-call websocket messages to the turn-taking machine."""

    def __init__(self, session_id: str, outbox: WebSocketOutbox, services: Services):
        self.session_id = session_id
        self.outbox = outbox
        self.services = services
        self.sink = WebSocketAudioSink(outbox)
        self.ui = WebSocketCallUI(outbox)
        self.stt = STTClient(services.settings)
        self.controller: Optional[SessionController] = None
        self.machine: Optional[TurnTakingStateMachine] = None

    async def handle_message(self, data: dict) -> None:
        msg_type = data.get("type")

        if msg_type == "session_start":
            self._handle_session_start(data)
        elif msg_type == "audio_data":
            self._handle_audio_data(data)
        elif msg_type == "audio_stop":
            self.stt.end_of_audio()
        elif msg_type == "audio_start":
            pass  # chunks are only forwarded while a listening session is open
        elif msg_type == "playback_ended":
            self.sink.playback_ended(str(data.get("playback_id", "")))
        elif self.controller is None or self.machine is None:
            await self.ui.show_error("Session not started")
        elif msg_type == "tap_to_speak":
            self.machine.resume_listening()
        elif msg_type == "text_submit":
            if not self.controller.submit_text(str(data.get("text", ""))):
                logger.debug("Text ignored in phase %s", self.machine.phase.value)
        elif msg_type == "ask_question":
            if not self.controller.pose_question():
                await self.ui.show_error("Answer the current question first")
        elif msg_type == "end_call":
            self.controller.end_session()
        else:
            await self.ui.show_error(f"Unknown message type: {msg_type}")

    def _handle_session_start(self, data: dict) -> None:
        if self.controller is not None:
            self.controller.end_session()

        services = self.services
        session = CallSession(
            session_id=self.session_id,
            user_name=str(data.get("name", "")),
            context=str(data.get("context", "")),
        )
        self.machine = TurnTakingStateMachine(
            session,
            services.audio,
            self.stt,
            self.ui,
            services.settings,
            sink=self.sink,
            input_supported_by_client=bool(data.get("speech_input", True)),
        )
        self.controller = SessionController(
            session, self.machine, services.reasoning, services.store, self.ui
        )
        self.controller.open()
        logger.info("Call session %s started", self.session_id)

    def _handle_audio_data(self, data: dict) -> None:
        b64 = data.get("data", "")
        if not b64:
            return
        try:
            self.stt.feed(base64.b64decode(b64))
        except (binascii.Error, ValueError):
            logger.debug("Dropping undecodable audio chunk")

    def cleanup(self) -> None:
        if self.controller is not None:
            self.controller.end_session()
        self.stt.abort()
        self.sink.close()
