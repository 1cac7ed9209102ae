import asyncio
import copy
import json
import logging
import time
from collections.abc import Coroutine
from dataclasses import asdict
from pathlib import Path
from typing import Any, Optional

from tutorloop.session import ConversationTurn, HighlightRegion, Verdict
from tutorloop.timers import spawn_background

logger = logging.getLogger(__name__)


def persist(coro: Coroutine[Any, Any, Any], what: str, session_id: str) -> asyncio.Task:
    """
    Fire-and-forget a store write. Failures are logged, never retried here;
    retry policy belongs to the store.
    """

    async def _run() -> None:
        try:
            await coro
        except Exception:
            logger.exception("Failed to %s for session %s", what, session_id)

    return spawn_background(_run(), name=f"persist:{what}:{session_id}")


def verdict_from_dict(data: dict) -> Verdict:
    return Verdict(
        is_correct=bool(data.get("is_correct", False)),
        is_incomplete=bool(data.get("is_incomplete", False)),
        feedback=str(data.get("feedback", "")),
        hints=tuple(data.get("hints") or ()),
        encouragement=str(data.get("encouragement", "")),
        speak=data.get("speak"),
        highlight=HighlightRegion.from_dict(data.get("highlight")),
        timestamp=float(data.get("timestamp", 0.0)),
    )


def _new_document(session_id: str) -> dict:
    now = time.time()
    return {
        "session_id": session_id,
        "created_at": now,
        "updated_at": now,
        "verdicts": [],
        "snapshots": [],
        "turns": [],
    }


class MemoryStore:
    """Session documents kept in a dict. Used when STORE_DIR is not set."""

    def __init__(self):
        self.documents: dict[str, dict] = {}

    def _document(self, session_id: str) -> dict:
        if session_id not in self.documents:
            self.documents[session_id] = _new_document(session_id)
        return self.documents[session_id]

    async def read_last_verdict(self, session_id: str) -> Optional[Verdict]:
        doc = self.documents.get(session_id)
        if not doc or not doc["verdicts"]:
            return None
        return verdict_from_dict(doc["verdicts"][-1])

    async def append_verdict(self, session_id: str, verdict: Verdict) -> None:
        doc = self._document(session_id)
        doc["verdicts"].append(verdict.to_dict())
        doc["updated_at"] = time.time()

    async def save_snapshot(
        self, session_id: str, image_base64: str, metadata: dict[str, Any]
    ) -> None:
        doc = self._document(session_id)
        doc["snapshots"].append({"image_base64": image_base64, **metadata})
        doc["updated_at"] = time.time()

    async def append_turns(self, session_id: str, turns: list[ConversationTurn]) -> None:
        doc = self._document(session_id)
        doc["turns"].extend(asdict(turn) for turn in turns)
        doc["updated_at"] = time.time()

    async def update_session(self, session_id: str, fields: dict[str, Any]) -> bool:
        doc = self.documents.get(session_id)
        if doc is None:
            return False
        doc.update(fields)
        doc["updated_at"] = time.time()
        return True

    def get(self, session_id: str) -> Optional[dict]:
        doc = self.documents.get(session_id)
        return copy.deepcopy(doc) if doc is not None else None


class JsonFileStore:
    """
    One JSON document per session under a directory. Reads and writes run in a
    worker thread; a lock serialises read-modify-write cycles.
    """

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def _path(self, session_id: str) -> Path:
        safe = "".join(c for c in session_id if c.isalnum() or c in "-_")
        if not safe:
            raise ValueError(f"Unusable session id: {session_id!r}")
        return self.directory / f"{safe}.json"

    def _load(self, session_id: str) -> Optional[dict]:
        path = self._path(session_id)
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def _save(self, doc: dict) -> None:
        path = self._path(doc["session_id"])
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(doc), encoding="utf-8")
        tmp.replace(path)

    async def _mutate(self, session_id: str, create: bool, apply) -> bool:
        async with self._lock:
            doc = await asyncio.to_thread(self._load, session_id)
            if doc is None:
                if not create:
                    return False
                doc = _new_document(session_id)
            apply(doc)
            doc["updated_at"] = time.time()
            await asyncio.to_thread(self._save, doc)
            return True

    async def read_last_verdict(self, session_id: str) -> Optional[Verdict]:
        doc = await asyncio.to_thread(self._load, session_id)
        if not doc or not doc.get("verdicts"):
            return None
        return verdict_from_dict(doc["verdicts"][-1])

    async def append_verdict(self, session_id: str, verdict: Verdict) -> None:
        await self._mutate(session_id, True, lambda doc: doc["verdicts"].append(verdict.to_dict()))

    async def save_snapshot(
        self, session_id: str, image_base64: str, metadata: dict[str, Any]
    ) -> None:
        entry = {"image_base64": image_base64, **metadata}
        await self._mutate(session_id, True, lambda doc: doc["snapshots"].append(entry))

    async def append_turns(self, session_id: str, turns: list[ConversationTurn]) -> None:
        rows = [asdict(turn) for turn in turns]
        await self._mutate(session_id, True, lambda doc: doc["turns"].extend(rows))

    async def update_session(self, session_id: str, fields: dict[str, Any]) -> bool:
        return await self._mutate(session_id, False, lambda doc: doc.update(fields))

    def get(self, session_id: str) -> Optional[dict]:
        return self._load(session_id)


def build_store(store_dir: str) -> "MemoryStore | JsonFileStore":
    if store_dir:
        logger.info("Persisting sessions to %s", store_dir)
        return JsonFileStore(store_dir)
    return MemoryStore()
