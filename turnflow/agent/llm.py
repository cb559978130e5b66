from __future__ import annotations

import asyncio
import json
from collections.abc import Mapping
from typing import Any

import structlog
from openai import AsyncOpenAI

from turnflow.agent.errors import LanguageModelError
from turnflow.core.config import settings

logger = structlog.get_logger(__name__)


_JSON_RULE = (
    "Return ONLY a valid JSON object with the exact schema below. "
    "No text before or after the JSON. No markdown fences."
)

_PROMPT_INSTRUCTIONS: dict[str, str] = {
    "analyze": (
        "You are a coding assistant analysing a user request. Summarise what the user "
        "wants and draft a short plan of actions using the available tools.\n"
        '{"understanding": "...", "initial_plan": ["..."], "extracted_entities": {}}'
    ),
    "reason": (
        "You are a coding assistant deciding the next action. Use a tool only when its "
        "output is needed; never repeat a call that already ran with the same parameters.\n"
        '{"next_action": "respond" | "use_tool", "reasoning": "...", "tool": "name or null", '
        '"parameters": {}, "response": "final message when responding"}'
    ),
    "interpret": (
        "You are interpreting the output of a tool call in light of the objective. "
        "Decide whether the request can now be answered.\n"
        '{"next_action": "respond" | "continue", "understanding": "...", '
        '"response": "final message when responding"}'
    ),
    "validate": (
        "You are diagnosing failures during a coding-assistant turn. For each error "
        "propose one correction. Kinds: parameter_correction (give tool and parameters), "
        "plan_correction (give the revised plan), clarification_needed, unrecoverable.\n"
        '{"corrections": [{"kind": "...", "tool": null, "parameters": null, "plan": null, '
        '"message": "..."}], "reasoning": "..."}'
    ),
    "respond": (
        "You are writing the final answer to the user from the objective, the plan and "
        "the tool outputs gathered so far. Be concise and concrete.\n"
        '{"response": "..."}'
    ),
    "direct": (
        "You are a coding assistant answering directly. Use a tool only if essential.\n"
        '{"next_action": "respond" | "use_tool", "reasoning": "...", "tool": "name or null", '
        '"parameters": {}, "response": "final message when responding"}'
    ),
}


def _parse_json_payload(raw: str) -> dict[str, Any] | None:
    text = str(raw or "").strip()
    if not text:
        return None
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        return None
    try:
        data = json.loads(text[start : end + 1])
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    return data


class OpenAILanguageModel:
    """Structured-output model invoker backed by an OpenAI-compatible endpoint."""

    def __init__(
        self,
        *,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        temperature: float | None = None,
        timeout_ms: int | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._model = str(model or settings.OPENAI_MODEL)
        self._temperature = float(
            settings.LLM_TEMPERATURE if temperature is None else temperature
        )
        self._timeout_s = max(
            0.5, float(timeout_ms or settings.TURN_TIMEOUT_MODEL_MS) / 1000.0
        )
        self._client = client or AsyncOpenAI(
            api_key=api_key or settings.OPENAI_API_KEY,
            base_url=base_url or settings.OPENAI_BASE_URL,
        )

    @property
    def model(self) -> str:
        return self._model

    async def invoke(self, prompt: str, inputs: Mapping[str, Any]) -> dict[str, Any]:
        instructions = _PROMPT_INSTRUCTIONS.get(prompt)
        if instructions is None:
            raise LanguageModelError(f"unknown_prompt: {prompt}")
        try:
            completion = await asyncio.wait_for(
                self._client.chat.completions.create(
                    model=self._model,
                    temperature=self._temperature,
                    messages=[
                        {"role": "system", "content": f"{instructions}\n\n{_JSON_RULE}"},
                        {
                            "role": "user",
                            "content": json.dumps(dict(inputs), ensure_ascii=False, default=str),
                        },
                    ],
                    response_format={"type": "json_object"},
                ),
                timeout=self._timeout_s,
            )
        except TimeoutError as exc:
            raise LanguageModelError(f"model_timeout: {prompt}") from exc
        except Exception as exc:
            logger.warning("llm_invoke_failed", prompt=prompt, model=self._model, error=str(exc))
            raise LanguageModelError(f"model_invoke_failed: {exc}") from exc

        raw = str(completion.choices[0].message.content or "").strip()
        payload = _parse_json_payload(raw)
        if payload is None:
            raise LanguageModelError(f"malformed_model_output: {raw[:200]}")
        return payload
