import pytest
from fastapi.testclient import TestClient

from conftest import FakeReasoning, FakeSynthesizer, error_verdict, reply
from tutorloop import main
from tutorloop.audio_output import AudioOutputManager
from tutorloop.orchestrator import Services
from tutorloop.store import MemoryStore


@pytest.fixture
def services(settings):
    return Services(
        settings=settings,
        store=MemoryStore(),
        reasoning=FakeReasoning(),
        audio=AudioOutputManager(FakeSynthesizer()),
    )


@pytest.fixture
def client(services, monkeypatch):
    monkeypatch.setattr(main, "build_services", lambda settings: services)
    with TestClient(main.app) as client:
        yield client


def receive_until(ws, msg_type, limit=50):
    for _ in range(limit):
        message = ws.receive_json()
        if message["type"] == msg_type:
            return message
    raise AssertionError(f"no {msg_type} message")


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_new_session_ids_are_unique(client):
    first = client.get("/session/new").json()["session_id"]
    second = client.get("/session/new").json()["session_id"]
    assert first != second


def test_board_check_round_trip(client, services):
    services.reasoning.verdicts.append(error_verdict())

    with client.websocket_connect("/ws/board/b1") as ws:
        assert ws.receive_json() == {"type": "connected", "session_id": "b1"}
        ws.send_json(
            {
                "type": "session_start",
                "problem": "Solve 3 - 2x = 7",
                "elements": [{"id": "A", "version": 1}],
            }
        )
        ws.send_json({"type": "check_now"})

        request = receive_until(ws, "capture_request")
        assert request["mode"] == "fast"
        ws.send_json(
            {"type": "capture_result", "request_id": request["request_id"], "image_base64": "img"}
        )

        shown = receive_until(ws, "feedback_show")
        assert shown["feedback"] == "The sign flips when you divide by a negative."
        audio = receive_until(ws, "audio")
        assert audio["data"]

    assert services.reasoning.analyze_calls[0][1] == "img"
    assert services.store.get("b1")["verdicts"]


def test_board_requires_session_start(client):
    with client.websocket_connect("/ws/board/b2") as ws:
        ws.receive_json()
        ws.send_json({"type": "check_now"})
        assert receive_until(ws, "error")["message"] == "Session not started"


def test_board_rejects_missing_problem(client):
    with client.websocket_connect("/ws/board/b3") as ws:
        ws.receive_json()
        ws.send_json({"type": "session_start", "problem": "  "})
        assert receive_until(ws, "error")["message"] == "A problem statement is required"


def test_call_text_turn(client, services):
    services.reasoning.replies.append(reply("Let's start with the numerator."))

    with client.websocket_connect("/ws/call/c1") as ws:
        ws.receive_json()
        ws.send_json({"type": "session_start", "name": "Sam", "speech_input": False})

        greeting = receive_until(ws, "audio")
        ws.send_json({"type": "playback_ended", "playback_id": greeting["playback_id"]})
        receive_until(ws, "manual_input")

        ws.send_json({"type": "text_submit", "text": "How do I add fractions?"})
        assert receive_until(ws, "phase")["phase"] in {"processing", "speaking"}
        receive_until(ws, "audio")
        ws.send_json({"type": "end_call"})

    turns = [t.content for t in services.reasoning.reply_calls[0]["turns"]]
    assert turns == ["Hi Sam! What are you working on?", "How do I add fractions?"]


def test_call_unknown_message(client):
    with client.websocket_connect("/ws/call/c2") as ws:
        ws.receive_json()
        ws.send_json({"type": "session_start"})
        ws.send_json({"type": "dance"})
        assert receive_until(ws, "error")["message"] == "Unknown message type: dance"
