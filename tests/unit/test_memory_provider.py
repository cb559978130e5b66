from __future__ import annotations

import pytest

from turnflow.agent.memory import (
    NO_MEMORY_PLACEHOLDER,
    InMemoryMemoryProvider,
    keyword_overlap_score,
)
from turnflow.agent.models import TurnMessage


def test_keyword_overlap_ignores_short_tokens() -> None:
    assert keyword_overlap_score("list the src files", "src files: a.py") == 2
    assert keyword_overlap_score("a b", "a b") == 0


@pytest.mark.asyncio
async def test_digest_ranks_relevant_exchanges() -> None:
    memory = InMemoryMemoryProvider(max_chars=500)
    memory.remember_exchange("chat-1", "what is in config.py", "It defines Settings.")
    memory.remember_exchange("chat-1", "tell me a joke", "No.")
    memory.remember_exchange("chat-2", "config.py again", "Other chat.")

    digest = await memory.get_relevant_context("chat-1", "where is config.py")

    assert "config.py" in digest
    assert "joke" not in digest
    assert "Other chat" not in digest


@pytest.mark.asyncio
async def test_digest_includes_recent_messages() -> None:
    memory = InMemoryMemoryProvider()
    digest = await memory.get_relevant_context(
        "chat-1",
        "read the readme",
        recent_messages=[TurnMessage(role="assistant", content="The readme explains setup.")],
    )
    assert "readme explains setup" in digest


@pytest.mark.asyncio
async def test_digest_is_bounded_and_has_placeholder() -> None:
    memory = InMemoryMemoryProvider(max_chars=40)
    assert await memory.get_relevant_context("chat-1", "anything") == NO_MEMORY_PLACEHOLDER

    memory.remember("chat-1", "alpha " * 50)
    digest = await memory.get_relevant_context("chat-1", "alpha")
    assert len(digest) <= 43
    assert digest.endswith("...")


@pytest.mark.asyncio
async def test_least_recent_chat_is_evicted() -> None:
    memory = InMemoryMemoryProvider(max_chats=2)
    memory.remember("chat-1", "deploy notes")
    memory.remember("chat-2", "deploy notes")
    memory.remember("chat-1", "deploy again")
    memory.remember("chat-3", "deploy notes")

    assert await memory.get_relevant_context("chat-2", "deploy") == NO_MEMORY_PLACEHOLDER
    assert "deploy again" in await memory.get_relevant_context("chat-1", "deploy")
    assert "deploy notes" in await memory.get_relevant_context("chat-3", "deploy")


@pytest.mark.asyncio
async def test_chat_keeps_only_newest_entries() -> None:
    memory = InMemoryMemoryProvider(max_entries_per_chat=2, max_chars=500)
    for idx in range(5):
        memory.remember("chat-1", f"release step{idx}")

    digest = await memory.get_relevant_context("chat-1", "release")

    assert "step4" in digest and "step3" in digest
    assert "step0" not in digest
