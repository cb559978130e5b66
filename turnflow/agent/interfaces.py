from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Protocol

from turnflow.agent.models import (
    ExecutionStepRecord,
    ToolExecutionResult,
    ToolSpec,
    TurnEvent,
    TurnMessage,
)


class LanguageModelPort(Protocol):
    async def invoke(self, prompt: str, inputs: Mapping[str, Any]) -> dict[str, Any]: ...


class ToolRegistryPort(Protocol):
    def get_tool(self, name: str) -> ToolSpec | None: ...

    def describe(self) -> list[dict[str, Any]]: ...

    async def execute(
        self,
        name: str,
        params: dict[str, Any],
        metadata: dict[str, Any],
    ) -> ToolExecutionResult: ...


class MemoryProviderPort(Protocol):
    async def get_relevant_context(
        self,
        chat_id: str,
        query: str,
        objective: str | None = None,
        recent_messages: Sequence[TurnMessage] | None = None,
    ) -> str: ...


class EventSinkPort(Protocol):
    def emit(self, event: TurnEvent) -> None: ...


class StepStorePort(Protocol):
    async def save_step(self, record: ExecutionStepRecord) -> None: ...


class ExchangeMemoryPort(MemoryProviderPort, Protocol):
    def remember_exchange(self, chat_id: str, user_message: str, final_output: str) -> None: ...
