import json
from types import SimpleNamespace

import anthropic
import httpx
import pytest

from tutorloop.config import Settings
from tutorloop.errors import ServiceError
from tutorloop.llm_client import ASK_QUESTION_NOTE, LLMClient
from tutorloop.session import ConversationTurn


class FakeMessages:
    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return SimpleNamespace(content=[SimpleNamespace(type="text", text=reply)])


def make_client(*replies):
    messages = FakeMessages(replies)
    client = LLMClient(Settings(), client=SimpleNamespace(messages=messages))
    return client, messages


def test_placeholder_key_is_rejected():
    with pytest.raises(RuntimeError):
        LLMClient(Settings(anthropic_api_key="your_api_key_here"))


async def test_analyze_parses_fenced_verdict():
    body = {
        "feedback": "You divided by minus two but kept the sign.",
        "isCorrect": False,
        "isIncomplete": False,
        "hints": ["Flip the inequality"],
        "encouragement": "Good setup",
        "speak": "Watch the sign when you divide.",
        "highlight": {"x": 0.1, "y": 0.4, "width": 0.3, "height": 0.1},
    }
    client, messages = make_client(f"```json\n{json.dumps(body)}\n```")

    verdict = await client.analyze("Solve -2x > 4", "abc", "Earlier note", "Year 9")

    assert verdict.is_error
    assert verdict.hints == ("Flip the inequality",)
    assert verdict.speak == "Watch the sign when you divide."
    assert verdict.highlight is not None
    content = messages.calls[0]["messages"][0]["content"]
    assert content[0]["source"]["data"] == "abc"
    assert "Earlier note" in content[1]["text"]
    assert "Year 9" in content[1]["text"]


async def test_analyze_finds_json_inside_prose():
    client, _ = make_client(
        'Sure! {"feedback": "Looks right", "isCorrect": true, "isIncomplete": true} Hope that helps.'
    )

    verdict = await client.analyze("Solve x + 1 = 2", "abc")

    assert verdict.is_correct
    assert not verdict.is_incomplete


async def test_analyze_rejects_non_json():
    client, _ = make_client("I can't see any work yet.")

    with pytest.raises(ServiceError):
        await client.analyze("Solve x + 1 = 2", "abc")


async def test_api_failure_becomes_service_error():
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    client, _ = make_client(anthropic.APIConnectionError(request=request))

    with pytest.raises(ServiceError):
        await client.analyze("Solve x + 1 = 2", "abc")


async def test_reply_uses_plain_text_when_not_json():
    client, messages = make_client("Let's start by isolating x.")
    turns = [
        ConversationTurn(role="assistant", content="Hi! What are you working on?"),
        ConversationTurn(role="user", content="Linear equations"),
    ]

    reply = await client.reply(turns, "")

    assert reply.text == reply.speak_text == "Let's start by isolating x."
    assert not reply.is_question
    sent = messages.calls[0]["messages"]
    assert sent[0] == {"role": "user", "content": "(call started)"}
    assert sent[-1] == {"role": "user", "content": "Linear equations"}


async def test_requested_question_is_always_a_question():
    client, messages = make_client(
        json.dumps({"text": "What is 3 times 4?", "speech": "What's three times four?", "is_question": False})
    )
    turns = [ConversationTurn(role="user", content="Quiz me")]

    reply = await client.reply(turns, "Likes football", request_question=True)

    assert reply.is_question
    assert reply.speak_text == "What's three times four?"
    call = messages.calls[0]
    assert ASK_QUESTION_NOTE in call["messages"][-1]["content"]
    assert "Likes football" in call["system"]


async def test_reply_keeps_unknown_fields_as_auxiliary():
    client, _ = make_client(json.dumps({"text": "Nice.", "speech": "Nice.", "mood": "happy"}))

    reply = await client.reply([ConversationTurn(role="user", content="Done")], "")

    assert reply.auxiliary == {"mood": "happy"}


async def test_evaluate_answer_names_the_pending_question():
    client, messages = make_client(json.dumps({"correct": True, "text": "Spot on.", "speech": "Spot on!"}))
    turns = [
        ConversationTurn(role="assistant", content="What is 7 squared?", is_question=True),
        ConversationTurn(role="user", content="49"),
    ]

    evaluation = await client.evaluate_answer(turns, "49", "")

    assert evaluation.correct
    assert evaluation.speak_text == "Spot on!"
    assert "What is 7 squared?" in messages.calls[0]["system"]


async def test_final_feedback_falls_back_when_empty():
    client, _ = make_client("   ")

    assert await client.final_feedback("Solve x + 1 = 2", "abc") == "Well done, session saved."


async def test_string_flags_are_read_literally():
    client, _ = make_client(
        json.dumps({"feedback": "The sign is wrong.", "isCorrect": "false", "isIncomplete": "false"})
    )

    verdict = await client.analyze("Solve 3 - 2x = 7", "abc")

    assert not verdict.is_correct
    assert not verdict.is_incomplete
    assert verdict.is_error


async def test_string_true_flag_marks_correct():
    client, _ = make_client(json.dumps({"feedback": "Done.", "isCorrect": "True", "isIncomplete": 0}))

    verdict = await client.analyze("Solve 3 - 2x = 7", "abc")

    assert verdict.is_correct


async def test_string_flags_in_conversation_replies():
    client, _ = make_client(
        json.dumps({"text": "Nice try.", "speech": "Nice try.", "is_question": "false"}),
        json.dumps({"correct": "false", "text": "Not quite.", "speech": "Not quite."}),
    )
    turns = [ConversationTurn(role="user", content="Is it five?")]

    reply = await client.reply(turns, "")
    evaluation = await client.evaluate_answer(turns, "five", "")

    assert reply.is_question is False
    assert evaluation.correct is False
