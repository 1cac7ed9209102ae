import asyncio
import logging
from typing import Optional

from tutorloop.capabilities import AudioSink, BoardUI, DurableStore, ReasoningService, WorkSurface
from tutorloop.config import Settings
from tutorloop.errors import CaptureError, ServiceError
from tutorloop.feedback import FeedbackLifecycleManager
from tutorloop.session import Verdict, WhiteboardSession
from tutorloop.signature import compute_signature
from tutorloop.store import persist

logger = logging.getLogger(__name__)


class AnalysisLoop:
    """
    Periodically checks the student's work.

    A visible countdown runs once per second. The check is issued when the
    countdown reaches the prefetch mark rather than zero, so the reasoning
    call's latency is hidden and feedback lands about when the counter resets.
    At most one check is in flight per session, and unchanged work is never
    sent twice once it has been judged.
    """

    def __init__(
        self,
        session: WhiteboardSession,
        surface: WorkSurface,
        service: ReasoningService,
        store: DurableStore,
        feedback: FeedbackLifecycleManager,
        ui: BoardUI,
        settings: Settings,
        sink: Optional[AudioSink] = None,
    ):
        self.session = session
        self.surface = surface
        self.service = service
        self.store = store
        self.feedback = feedback
        self.ui = ui
        self.settings = settings
        self.sink = sink

        self.interval = int(settings.check_interval_sec)
        self.seconds_left = self.interval
        self._countdown_task: asyncio.Task | None = None
        self._check_task: asyncio.Task | None = None

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def start(self) -> None:
        if self._countdown_task is None or self._countdown_task.done():
            self._countdown_task = asyncio.create_task(
                self._run_countdown(), name=f"countdown:{self.session.session_id}"
            )

    def close(self) -> None:
        """Tear down: nothing this loop started may touch the UI afterwards."""
        self.session.close()
        for task in (self._countdown_task, self._check_task):
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
        self._countdown_task = None
        self._check_task = None
        self.feedback.close()

    @property
    def _active(self) -> bool:
        s = self.session
        return s.is_alive and not s.is_finishing and not s.is_completed

    async def _run_countdown(self) -> None:
        mark = self.settings.prefetch_mark
        while self._active:
            await self.ui.show_countdown(self.seconds_left)
            await asyncio.sleep(1)
            if not self._active:
                break
            if self.seconds_left == mark:
                self.schedule_tick()
            self.seconds_left = self.interval if self.seconds_left <= 1 else self.seconds_left - 1

    # ── Triggers ─────────────────────────────────────────────────────────────

    def schedule_tick(self) -> Optional[asyncio.Task]:
        """Start a check in the background. No-op while one is in flight."""
        if not self._active or self.session.check_in_flight:
            return None
        # A scheduled check may not have claimed the in-flight flag yet.
        if self._check_task is not None and not self._check_task.done():
            return None
        self._check_task = asyncio.create_task(
            self.tick(), name=f"check:{self.session.session_id}"
        )
        return self._check_task

    def check_now(self) -> Optional[asyncio.Task]:
        return self.schedule_tick()

    def set_muted(self, muted: bool) -> None:
        self.session.is_muted = muted
        if muted:
            self.feedback.stop_speaking()

    async def finish(self) -> Optional[dict]:
        return await self.feedback.finalize("user")

    # ── One check ────────────────────────────────────────────────────────────

    async def tick(self) -> None:
        session = self.session
        # Claimed before the first await so a concurrent tick sees it.
        if not self._active or session.check_in_flight:
            return
        session.check_in_flight = True
        checking_shown = False
        try:
            signature = compute_signature(self.surface.elements())
            if not signature or signature == session.last_checked_signature:
                return

            checking_shown = True
            await self.ui.show_checking(True)
            image = await self.surface.capture("fast")
            if not self._active:
                return

            verdict = await self.service.analyze(
                session.problem,
                image,
                session.last_feedback_text(),
                session.context or None,
            )
            if not self._active:
                return
            await self._apply(verdict, signature)
        except CaptureError as e:
            logger.warning("Capture failed for session %s: %s", session.session_id, e)
            await self._report_error("Couldn't read the whiteboard, will try again shortly")
        except ServiceError as e:
            logger.warning("Check failed for session %s: %s", session.session_id, e)
            await self._report_error("Failed to check work, will try again shortly")
        except Exception:
            logger.exception("Unexpected error checking session %s", session.session_id)
            await self._report_error("Failed to check work")
        finally:
            session.check_in_flight = False
            if checking_shown and session.is_alive:
                await self.ui.show_checking(False)

    async def _report_error(self, message: str) -> None:
        if self.session.is_alive:
            await self.ui.show_error(message)

    async def _apply(self, verdict: Verdict, signature: str) -> None:
        session = self.session
        session.last_checked_signature = signature

        if verdict.is_correct:
            logger.info("Session %s solved", session.session_id)
            await self.feedback.finalize("correct")
            return

        if verdict.is_incomplete:
            # Partial work gets no comment at all.
            return

        session.feedback_history.append(verdict)
        persist(
            self.store.append_verdict(session.session_id, verdict),
            "append verdict",
            session.session_id,
        )
        await self.feedback.present(verdict)
        if session.is_alive and not session.is_muted:
            self.feedback.speak(verdict.spoken_text(), self.sink)
