import logging
import os
import uuid
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from tutorloop.audio_output import AudioOutputManager
from tutorloop.config import Settings
from tutorloop.llm_client import LLMClient
from tutorloop.orchestrator import BoardOrchestrator, CallOrchestrator, Services
from tutorloop.store import build_store
from tutorloop.tts_client import TTSClient
from tutorloop.ws_bridge import WebSocketOutbox

# main.py is at backend/tutorloop/main.py, so two parents up is the project root.
_env_path = Path(__file__).resolve().parent.parent.parent / ".env"
load_dotenv(_env_path, override=True)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("tutorloop")

settings = Settings.from_env()


def build_services(settings: Settings) -> Services:
    # One audio manager per process: at most one utterance plays at a time.
    return Services(
        settings=settings,
        store=build_store(settings.store_dir),
        reasoning=LLMClient(settings),
        audio=AudioOutputManager(
            TTSClient(settings), safety_timeout=settings.speech_safety_timeout_sec
        ),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Tutor backend starting up...")
    app.state.services = build_services(settings)
    yield
    app.state.services.audio.stop_all()
    logger.info("Tutor backend shutting down...")


app = FastAPI(title="Tutor Loop API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check():
    return {"status": "ok", "version": "0.1.0"}


@app.get("/session/new")
async def new_session():
    session_id = str(uuid.uuid4())
    return {"session_id": session_id}


async def _serve(websocket: WebSocket, session_id: str, orchestrator_cls) -> None:
    await websocket.accept()
    outbox = WebSocketOutbox(websocket)
    outbox.start()
    orchestrator = orchestrator_cls(session_id, outbox, websocket.app.state.services)
    outbox.send({"type": "connected", "session_id": session_id})

    try:
        while True:
            data = await websocket.receive_json()
            await orchestrator.handle_message(data)
    except WebSocketDisconnect:
        logger.info("Session %s disconnected", session_id)
    except Exception as e:
        logger.exception("Error in session %s", session_id)
        # WebSocket close reason has a 123-byte hard limit, truncate to be safe
        await websocket.close(code=1011, reason=str(e)[:100])
    finally:
        orchestrator.cleanup()
        outbox.close()


@app.websocket("/ws/board/{session_id}")
async def board_socket(websocket: WebSocket, session_id: str):
    await _serve(websocket, session_id, BoardOrchestrator)


@app.websocket("/ws/call/{session_id}")
async def call_socket(websocket: WebSocket, session_id: str):
    await _serve(websocket, session_id, CallOrchestrator)
