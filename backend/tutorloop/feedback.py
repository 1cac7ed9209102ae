import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Literal, Optional

from tutorloop.audio_output import AudioOutputManager
from tutorloop.capabilities import BoardUI, DurableStore, ReasoningService, WorkSurface
from tutorloop.config import Settings
from tutorloop.errors import CaptureError, TutorError
from tutorloop.session import HighlightRegion, Verdict, WhiteboardSession
from tutorloop.timers import SingleSlotTimer, spawn_background

logger = logging.getLogger(__name__)

FinishReason = Literal["user", "correct"]
CompletionHook = Callable[[WhiteboardSession, Optional[str]], Awaitable[None]]


class FeedbackLifecycleManager:
    """
    Owns the on-screen life of a verdict: the feedback toast with its
    auto-dismiss, the transient highlight, and the completion record written
    when the session is finalized.
    """

    def __init__(
        self,
        session: WhiteboardSession,
        ui: BoardUI,
        surface: WorkSurface,
        service: ReasoningService,
        store: DurableStore,
        audio: AudioOutputManager,
        settings: Settings,
        after_completion: Sequence[CompletionHook] = (),
    ):
        self.session = session
        self.ui = ui
        self.surface = surface
        self.service = service
        self.store = store
        self.audio = audio
        self.settings = settings
        self.after_completion = list(after_completion)

        self.toast_visible = False
        self.highlight: Optional[HighlightRegion] = None
        self.speech_id: Optional[int] = None
        self._dismiss_timer = SingleSlotTimer("feedback-dismiss")
        self._highlight_timer = SingleSlotTimer("highlight-clear")

    async def present(self, verdict: Verdict) -> None:
        if not self.session.is_alive:
            return

        self.toast_visible = True
        await self.ui.show_feedback(verdict)
        self._dismiss_timer.start(self.settings.feedback_dismiss_sec, self._auto_dismiss)

        region = verdict.highlight
        if region is not None and region.area < self.settings.highlight_max_area:
            self.highlight = region
            await self.ui.show_highlight(region)
            self._highlight_timer.start(self.settings.highlight_sec, self._auto_clear_highlight)

    async def dismiss(self) -> None:
        """User closed the toast. History and storage are untouched."""
        self._dismiss_timer.cancel()
        await self._hide_toast()

    async def _auto_dismiss(self) -> None:
        await self._hide_toast()

    async def _hide_toast(self) -> None:
        if not self.toast_visible:
            return
        self.toast_visible = False
        if self.session.is_alive:
            await self.ui.hide_feedback()

    async def _auto_clear_highlight(self) -> None:
        if self.highlight is None:
            return
        self.highlight = None
        if self.session.is_alive:
            await self.ui.clear_highlight()

    def speak(self, text: str, sink: Any) -> None:
        self.speech_id = self.audio.speak(text, sink)

    def stop_speaking(self) -> None:
        self.audio.stop(self.speech_id)
        self.speech_id = None

    async def finalize(self, reason: FinishReason) -> Optional[dict[str, Any]]:
        """
        Write the completion record and hand control back at once. The fuller
        final feedback and any completion hooks run in the background.
        """
        session = self.session
        if session.is_finishing or session.is_completed:
            return None
        session.is_finishing = True

        self.stop_speaking()
        self._dismiss_timer.cancel()
        self._highlight_timer.cancel()
        await self._hide_toast()
        await self._auto_clear_highlight()

        image: Optional[str] = None
        try:
            image = await self.surface.capture("full")
        except CaptureError as e:
            logger.warning("Final capture failed for session %s: %s", session.session_id, e)

        record: dict[str, Any] = {
            "status": "completed",
            "completed_at": time.time(),
            "finish_reason": reason,
            "final_feedback": session.last_feedback_text() or "Session completed.",
        }
        try:
            await self.store.save_snapshot(session.session_id, image or "", {"kind": "final", **record})
            await self.store.update_session(session.session_id, record)
        except Exception:
            logger.exception("Failed to write completion record for session %s", session.session_id)

        session.is_completed = True
        session.is_finishing = False
        if session.is_alive:
            await self.ui.session_finalized(record)

        spawn_background(self._enrich(image), name=f"final-feedback:{session.session_id}")
        return record

    async def _enrich(self, image: Optional[str]) -> None:
        session = self.session
        final_text: Optional[str] = None
        # Without a full capture there is nothing to judge; hooks still run.
        if image:
            try:
                final_text = await self.service.final_feedback(session.problem, image)
            except TutorError as e:
                logger.warning("Final feedback failed for session %s: %s", session.session_id, e)

        if final_text:
            stored = await self.store.update_session(
                session.session_id, {"final_feedback": final_text}
            )
            if not stored:
                logger.info("Session %s is gone; final feedback dropped", session.session_id)

        for hook in self.after_completion:
            try:
                await hook(session, final_text)
            except Exception:
                logger.exception("Completion hook failed for session %s", session.session_id)

    def close(self) -> None:
        self._dismiss_timer.cancel()
        self._highlight_timer.cancel()
        self.stop_speaking()
