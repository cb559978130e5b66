from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from turnflow.agent.errors import StepPersistenceError
from turnflow.agent.models import ExecutionStepRecord

logger = structlog.get_logger(__name__)


@dataclass
class InMemoryStepStore:
    records: list[ExecutionStepRecord] = field(default_factory=list)

    async def save_step(self, record: ExecutionStepRecord) -> None:
        self.records.append(record)

    def for_chat(self, chat_id: str) -> list[ExecutionStepRecord]:
        return [record for record in self.records if record.chat_id == chat_id]


def _safe_file_stem(chat_id: str) -> str:
    stem = re.sub(r"[^A-Za-z0-9_.-]+", "_", str(chat_id or "").strip())
    return stem.strip("._") or "chat"


class JsonlStepStore:
    """Append-only step log, one JSON-lines file per chat.

    Writes for the same chat are serialized; different chats write concurrently.
    A chat's lock lives only while a write for it is pending.
    """

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)
        self._locks: dict[str, asyncio.Lock] = {}
        self._pending: dict[str, int] = {}

    def path_for(self, chat_id: str) -> Path:
        return self._directory / f"{_safe_file_stem(chat_id)}.jsonl"

    async def save_step(self, record: ExecutionStepRecord) -> None:
        line = json.dumps(record.to_dict(), ensure_ascii=False, default=str)
        chat_id = record.chat_id
        lock = self._locks.setdefault(chat_id, asyncio.Lock())
        self._pending[chat_id] = self._pending.get(chat_id, 0) + 1
        try:
            async with lock:
                await asyncio.to_thread(self._append, self.path_for(chat_id), line)
        except OSError as exc:
            logger.error("step_store_write_failed", chat_id=chat_id, error=str(exc))
            raise StepPersistenceError(str(exc)) from exc
        finally:
            self._pending[chat_id] -= 1
            if not self._pending[chat_id]:
                del self._pending[chat_id]
                del self._locks[chat_id]

    def pending_chats(self) -> list[str]:
        return sorted(self._pending)

    def load(self, chat_id: str) -> list[dict]:
        path = self.path_for(chat_id)
        if not path.exists():
            return []
        out: list[dict] = []
        for raw in path.read_text(encoding="utf-8").splitlines():
            if raw.strip():
                out.append(json.loads(raw))
        return out

    @staticmethod
    def _append(path: Path, line: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")
