import json
import logging
import re
from typing import Any, Optional

import anthropic

from tutorloop.capabilities import AnswerEvaluation, TutorReply
from tutorloop.config import Settings, is_placeholder_key
from tutorloop.errors import ServiceError
from tutorloop.session import ConversationTurn, HighlightRegion, Verdict

logger = logging.getLogger(__name__)

CHECK_PROMPT = """You are a maths tutor glancing at a student's handwritten work while they solve a problem.
Problem: "{problem}"{previous}{context}

Decide which ONE of these is true:
- the work is complete and correct  -> "isCorrect": true
- the work is unfinished, or you cannot yet tell  -> "isIncomplete": true
- there is a definite, objective mistake  -> both false

Reply with ONLY a raw JSON object, no markdown, no code fences:
{{"feedback":"1-2 specific sentences about what is right and where any error is.","isCorrect":false,"isIncomplete":false,"hints":["one concrete next step if wrong, else leave empty"],"encouragement":"Short upbeat phrase.","speak":"Only when there is a definite mistake: one short spoken nudge, else empty.","highlight":{{"x":0.1,"y":0.2,"width":0.3,"height":0.1}}}}

RULES:
1. "highlight" is the region of the mistake as fractions of the image (0 to 1), or null.
2. Never mark unfinished work as a mistake. Partial progress is "isIncomplete".
3. Write all mathematics in plain English words. Never use symbols like +, =, ^, or LaTeX."""

FINAL_PROMPT = (
    'Maths tutor. Problem: "{problem}". Give a final verdict in 2 sentences: did they '
    "get it right, and one piece of encouragement. Write everything in plain English "
    "words only, no mathematical symbols, no LaTeX, no notation of any kind."
)

CONVERSATION_PROMPT = """You are Professor Ada, a warm maths tutor on a live voice call with a student.

This is VOICE. Keep it short and human: 1 to 3 sentences. Use contractions, react naturally,
and never read symbols aloud. Guide with questions instead of handing over answers.

ALWAYS respond with valid JSON exactly like this (no markdown fences, no extra keys):
{"text": "...", "speech": "...", "is_question": false}

- "text" is what appears in the transcript.
- "speech" is the same idea written to be spoken: plain words, no symbols.
- "is_question" is true only when you pose a practice question the student must answer."""

ASK_QUESTION_NOTE = (
    "[The student asked you to quiz them. Pose exactly one short practice question "
    "that fits what you have discussed and set is_question to true.]"
)

EVALUATE_PROMPT = """You are Professor Ada, a warm maths tutor on a live voice call.
You asked the student this question: "{question}"
They answered: "{answer}"

Judge the answer. Respond with ONLY valid JSON (no markdown fences):
{{"correct": true, "text": "...", "speech": "..."}}

"text" is one or two sentences of feedback; "speech" is the same in plain spoken words."""


def _as_bool(value: Any) -> bool:
    """Read a JSON flag. Only true booleans and the strings "true"/"false" count."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


class LLMClient:
    """Reasoning service backed by the Anthropic Messages API."""

    def __init__(self, settings: Settings, client: Optional[anthropic.AsyncAnthropic] = None):
        api_key = settings.anthropic_api_key
        if client is None and is_placeholder_key(api_key):
            raise RuntimeError(
                "ANTHROPIC_API_KEY is missing or looks like a placeholder. "
                "Set a real key in the project .env and restart the backend."
            )

        self.client = client or anthropic.AsyncAnthropic(api_key=api_key)
        self.model = settings.anthropic_model
        self.max_highlight_area = settings.highlight_max_area

    async def analyze(
        self,
        problem: str,
        image_base64: str,
        previous_feedback: Optional[str] = None,
        context: Optional[str] = None,
    ) -> Verdict:
        prompt = CHECK_PROMPT.format(
            problem=problem,
            previous=f'\nPrevious feedback: "{previous_feedback}"' if previous_feedback else "",
            context=f"\nAbout the student: {context}" if context else "",
        )
        raw = await self._create(
            max_tokens=400,
            messages=[{"role": "user", "content": self._image_content(image_base64, prompt)}],
        )
        data = self._extract_json(raw)
        if data is None:
            logger.warning("Check reply was not JSON: %s", raw[:300])
            raise ServiceError("Could not read the tutor's feedback")
        return self._parse_verdict(data)

    async def final_feedback(self, problem: str, image_base64: str) -> str:
        raw = await self._create(
            max_tokens=200,
            messages=[
                {
                    "role": "user",
                    "content": self._image_content(
                        image_base64, FINAL_PROMPT.format(problem=problem)
                    ),
                }
            ],
        )
        return raw.strip() or "Well done, session saved."

    async def reply(
        self,
        turns: list[ConversationTurn],
        context: str,
        request_question: bool = False,
    ) -> TutorReply:
        messages = self._turns_to_messages(turns)
        if request_question:
            messages = self._append_user_note(messages, ASK_QUESTION_NOTE)
        system = CONVERSATION_PROMPT
        if context:
            system = f"{system}\n\nAbout the student:\n{context}"

        raw = await self._create(max_tokens=400, system=system, messages=messages)
        data = self._extract_json(raw)
        if data is None:
            # Plain prose is still a usable spoken reply.
            logger.info("Conversation reply was not JSON, using it as speech")
            text = raw.strip()
            if not text:
                raise ServiceError("Empty reply from tutor")
            return TutorReply(text=text, speak_text=text)

        text = str(data.get("text") or data.get("speech") or "").strip()
        speech = str(data.get("speech") or text).strip()
        if not text:
            raise ServiceError("Empty reply from tutor")
        auxiliary = {
            key: value
            for key, value in data.items()
            if key not in {"text", "speech", "is_question"}
        }
        return TutorReply(
            text=text,
            speak_text=speech,
            is_question=_as_bool(data.get("is_question")) or request_question,
            auxiliary=auxiliary,
        )

    async def evaluate_answer(
        self, turns: list[ConversationTurn], answer: str, context: str
    ) -> AnswerEvaluation:
        question = next(
            (t.content for t in reversed(turns) if t.role == "assistant" and t.is_question),
            "",
        )
        system = EVALUATE_PROMPT.format(question=question, answer=answer)
        if context:
            system = f"{system}\n\nAbout the student:\n{context}"

        raw = await self._create(
            max_tokens=300, system=system, messages=self._turns_to_messages(turns)
        )
        data = self._extract_json(raw)
        if data is None:
            raise ServiceError("Could not read the answer evaluation")
        text = str(data.get("text") or data.get("speech") or "").strip()
        return AnswerEvaluation(
            correct=_as_bool(data.get("correct")),
            text=text,
            speak_text=str(data.get("speech") or text).strip(),
        )

    # ── Private helpers ──────────────────────────────────────────────────────

    async def _create(self, **kwargs: Any) -> str:
        try:
            response = await self.client.messages.create(model=self.model, **kwargs)
        except anthropic.APIError as e:
            raise ServiceError(f"Reasoning service error: {e}") from e
        for block in response.content:
            if getattr(block, "type", None) == "text":
                return block.text
        return ""

    @staticmethod
    def _image_content(image_base64: str, text: str) -> list[dict]:
        return [
            {
                "type": "image",
                "source": {"type": "base64", "media_type": "image/jpeg", "data": image_base64},
            },
            {"type": "text", "text": text},
        ]

    @staticmethod
    def _turns_to_messages(turns: list[ConversationTurn]) -> list[dict]:
        messages: list[dict] = []
        for turn in turns:
            if not messages and turn.role == "assistant":
                messages.append({"role": "user", "content": "(call started)"})
            if messages and messages[-1]["role"] == turn.role:
                merged = messages[-1]["content"] + "\n" + turn.content
                messages[-1] = {"role": turn.role, "content": merged}
            else:
                messages.append({"role": turn.role, "content": turn.content})
        if not messages or messages[-1]["role"] != "user":
            messages.append({"role": "user", "content": "(continue)"})
        return messages

    @staticmethod
    def _append_user_note(messages: list[dict], note: str) -> list[dict]:
        result = list(messages)
        last = result[-1]
        result[-1] = dict(last, content=f"{last['content']}\n{note}")
        return result

    @staticmethod
    def _extract_json(raw: str) -> Optional[dict]:
        fence_match = re.search(r"```(?:json)?\s*([\s\S]*?)\s*```", raw)
        text = fence_match.group(1) if fence_match else raw.strip()

        candidates = [text]
        brace_match = re.search(r"\{[\s\S]*\}", text)
        if brace_match:
            candidates.append(brace_match.group(0))

        for candidate in candidates:
            try:
                data = json.loads(candidate)
            except json.JSONDecodeError:
                continue
            if isinstance(data, dict):
                return data
        return None

    def _parse_verdict(self, data: dict) -> Verdict:
        hints = data.get("hints")
        return Verdict.build(
            is_correct=_as_bool(data.get("isCorrect")),
            is_incomplete=_as_bool(data.get("isIncomplete")),
            feedback=str(data.get("feedback") or ""),
            hints=hints if isinstance(hints, list) else [],
            encouragement=str(data.get("encouragement") or ""),
            speak=data.get("speak") if isinstance(data.get("speak"), str) else None,
            highlight=HighlightRegion.from_dict(data.get("highlight")),
            max_highlight_area=self.max_highlight_area,
        )
