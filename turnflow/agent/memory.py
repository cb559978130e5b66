from __future__ import annotations

import re
from collections import OrderedDict
from collections.abc import Sequence
from dataclasses import dataclass, field

import structlog

from turnflow.agent.models import TurnMessage
from turnflow.core.config import settings

logger = structlog.get_logger(__name__)

NO_MEMORY_PLACEHOLDER = "No relevant memory."


def _tokenize(text: str) -> set[str]:
    return {
        token
        for token in re.findall(r"[a-zA-Z0-9_]{3,}", str(text or "").lower())
        if token
    }


def keyword_overlap_score(query: str, content: str) -> int:
    q_tokens = _tokenize(query)
    if not q_tokens:
        return 0
    c_tokens = _tokenize(content)
    return sum(1 for token in q_tokens if token in c_tokens)


@dataclass
class InMemoryMemoryProvider:
    """Keeps prior exchanges per chat and returns the most relevant ones as a digest.

    Each chat keeps its newest ``max_entries_per_chat`` entries; past ``max_chats``
    the least recently written chat is dropped.
    """

    max_chars: int = field(default_factory=lambda: settings.TURN_MEMORY_DIGEST_MAX_CHARS)
    max_items: int = 6
    max_chats: int = 256
    max_entries_per_chat: int = 50
    _entries: OrderedDict[str, list[str]] = field(default_factory=OrderedDict)

    def remember(self, chat_id: str, text: str) -> None:
        value = " ".join(str(text or "").split())
        if not value:
            return
        entries = self._entries.setdefault(chat_id, [])
        self._entries.move_to_end(chat_id)
        entries.append(value)
        del entries[: -self.max_entries_per_chat]
        while len(self._entries) > self.max_chats:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("memory_chat_evicted", chat_id=evicted)

    def remember_exchange(self, chat_id: str, user_message: str, final_output: str) -> None:
        self.remember(chat_id, f"User asked: {user_message} | Answer: {final_output}")

    async def get_relevant_context(
        self,
        chat_id: str,
        query: str,
        objective: str | None = None,
        recent_messages: Sequence[TurnMessage] | None = None,
    ) -> str:
        try:
            return self._digest(chat_id, query, objective, recent_messages)
        except Exception as exc:
            logger.warning("memory_digest_failed", chat_id=chat_id, error=str(exc))
            return NO_MEMORY_PLACEHOLDER

    def _digest(
        self,
        chat_id: str,
        query: str,
        objective: str | None,
        recent_messages: Sequence[TurnMessage] | None,
    ) -> str:
        probe = " ".join(part for part in (query, objective or "") if part)
        candidates = list(self._entries.get(chat_id, []))
        for message in list(recent_messages or []):
            if message.role in ("user", "assistant") and message.content:
                candidates.append(f"{message.role}: {message.content}")
        ranked = sorted(
            (
                (keyword_overlap_score(probe, text), -idx, text)
                for idx, text in enumerate(candidates)
            ),
            reverse=True,
        )
        picked = [text for score, _, text in ranked if score > 0][: self.max_items]
        if not picked:
            return NO_MEMORY_PLACEHOLDER
        digest = "\n".join(f"- {text}" for text in picked)
        if len(digest) > self.max_chars:
            digest = digest[: self.max_chars].rstrip() + "..."
        return digest
