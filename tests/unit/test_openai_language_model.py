from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace
from typing import Any

import pytest

from turnflow.agent.errors import LanguageModelError
from turnflow.agent.llm import OpenAILanguageModel, _parse_json_payload


class _Completions:
    def __init__(self, content: str | None = None, error: Exception | None = None, delay: float = 0.0):
        self.content = content
        self.error = error
        self.delay = delay
        self.requests: list[dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> Any:
        self.requests.append(kwargs)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _model(completions: _Completions, timeout_ms: int = 2000) -> OpenAILanguageModel:
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return OpenAILanguageModel(model="test-model", client=client, timeout_ms=timeout_ms)  # type: ignore[arg-type]


def test_parse_json_payload_tolerates_fences() -> None:
    assert _parse_json_payload('```json\n{"response": "ok"}\n```') == {"response": "ok"}
    assert _parse_json_payload("no json here") is None
    assert _parse_json_payload("[1, 2]") is None


@pytest.mark.asyncio
async def test_invoke_sends_json_request() -> None:
    completions = _Completions(content='{"understanding": "u", "initial_plan": []}')
    payload = await _model(completions).invoke("analyze", {"user_message": "hi"})

    assert payload == {"understanding": "u", "initial_plan": []}
    [request] = completions.requests
    assert request["model"] == "test-model"
    assert request["response_format"] == {"type": "json_object"}
    assert json.loads(request["messages"][1]["content"]) == {"user_message": "hi"}


@pytest.mark.asyncio
async def test_unknown_prompt_is_rejected() -> None:
    with pytest.raises(LanguageModelError, match="unknown_prompt"):
        await _model(_Completions(content="{}")).invoke("summarize", {})


@pytest.mark.asyncio
async def test_malformed_output_raises() -> None:
    with pytest.raises(LanguageModelError, match="malformed_model_output"):
        await _model(_Completions(content="sorry, I cannot")).invoke("respond", {})


@pytest.mark.asyncio
async def test_transport_failure_raises() -> None:
    with pytest.raises(LanguageModelError, match="model_invoke_failed"):
        await _model(_Completions(error=RuntimeError("connection reset"))).invoke("respond", {})


@pytest.mark.asyncio
async def test_timeout_raises() -> None:
    with pytest.raises(LanguageModelError, match="model_timeout"):
        await _model(_Completions(content="{}", delay=2.0), timeout_ms=500).invoke("respond", {})
