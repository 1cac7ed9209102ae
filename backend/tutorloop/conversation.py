import asyncio
import logging
import time
from typing import Optional

from tutorloop.capabilities import CallUI, DurableStore, ReasoningService
from tutorloop.errors import TutorError
from tutorloop.session import CallSession, SessionPhase
from tutorloop.store import persist
from tutorloop.turn_taking import TurnTakingStateMachine

logger = logging.getLogger(__name__)


class SessionController:
    """
    Drives one conversational turn at a time: takes the student's finished
    utterance, asks the reasoning service for a reply (or for a judgement when
    it answers a question Ada posed), and hands the result to the state
    machine to speak.
    """

    def __init__(
        self,
        session: CallSession,
        machine: TurnTakingStateMachine,
        service: ReasoningService,
        store: DurableStore,
        ui: CallUI,
    ):
        self.session = session
        self.machine = machine
        self.service = service
        self.store = store
        self.ui = ui
        self._turn_task: asyncio.Task | None = None
        self._ended = False

        machine.on_final_transcript = self.handle_utterance

    def open(self) -> None:
        name = self.session.user_name.strip()
        greeting = f"Hi{' ' + name if name else ''}! What are you working on?"
        self.session.add_assistant_turn(greeting, time.time())
        self.machine.speak(greeting)

    # ── Turns ────────────────────────────────────────────────────────────────

    def handle_utterance(self, text: str) -> bool:
        """A final transcript or a typed message. False if it was not accepted."""
        text = text.strip()
        if not text or not self.machine.begin_processing():
            return False
        self.session.add_user_turn(text, time.time())
        self._turn_task = asyncio.create_task(
            self._run_turn(text), name=f"turn:{self.session.session_id}"
        )
        return True

    def submit_text(self, text: str) -> bool:
        return self.handle_utterance(text)

    def pose_question(self) -> bool:
        """Ask Ada for a practice question. Once per idle period."""
        if self.session.question_posed_since_user_turn:
            return False
        if not self.machine.begin_processing(explicit=True):
            return False
        self.session.question_posed_since_user_turn = True
        self._turn_task = asyncio.create_task(
            self._run_question(), name=f"question:{self.session.session_id}"
        )
        return True

    async def _run_turn(self, text: str) -> None:
        session = self.session
        try:
            if session.pending_question is not None:
                evaluation = await self.service.evaluate_answer(
                    list(session.turns), text, session.context
                )
                if not session.is_alive:
                    return
                session.pending_question = None
                logger.info(
                    "Session %s answer judged %s",
                    session.session_id,
                    "correct" if evaluation.correct else "incorrect",
                )
                self._deliver(evaluation.text, evaluation.speak_text, is_question=False)
                return

            reply = await self.service.reply(list(session.turns), session.context)
            if not session.is_alive:
                return
            self._deliver(reply.text, reply.speak_text, is_question=reply.is_question)
        except TutorError as e:
            await self._turn_failed(str(e))
        except Exception:
            logger.exception("Turn failed for session %s", session.session_id)
            await self._turn_failed("Something went wrong, please try again")

    async def _run_question(self) -> None:
        session = self.session
        try:
            reply = await self.service.reply(
                list(session.turns), session.context, request_question=True
            )
            if not session.is_alive:
                return
            self._deliver(reply.text, reply.speak_text, is_question=True)
        except TutorError as e:
            await self._turn_failed(str(e))
        except Exception:
            logger.exception("Question failed for session %s", session.session_id)
            await self._turn_failed("Something went wrong, please try again")

    def _deliver(self, text: str, speak_text: str, is_question: bool) -> None:
        session = self.session
        session.add_assistant_turn(text, time.time(), is_question=is_question)
        if is_question:
            session.pending_question = text
        then = SessionPhase.AWAITING_INPUT if is_question else SessionPhase.LISTENING
        self.machine.speak(speak_text or text, then=then)

    async def _turn_failed(self, message: str) -> None:
        if not self.session.is_alive:
            return
        logger.warning("Turn failed for session %s: %s", self.session.session_id, message)
        await self.ui.show_error(message)
        self.machine.recover()

    # ── Ending ───────────────────────────────────────────────────────────────

    def end_session(self) -> Optional[asyncio.Task]:
        """
        Stop everything and flush the turn history, but only when the student
        actually said something.
        """
        if self._ended:
            return None
        self._ended = True
        self.machine.close()
        if self._turn_task is not None and not self._turn_task.done():
            self._turn_task.cancel()
        self._turn_task = None

        if not self.session.has_user_turns():
            return None
        return persist(
            self.store.append_turns(self.session.session_id, list(self.session.turns)),
            "append turns",
            self.session.session_id,
        )
