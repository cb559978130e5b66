from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from turnflow.agent.engine import TurnCommand, build_initial_state
from turnflow.agent.errors import LanguageModelError, StepPersistenceError
from turnflow.agent.models import ExecutionStepRecord, TurnEvent, TurnMessage
from turnflow.agent.tools import create_default_tools
from turnflow.graph.turn.direct import DirectTurnStrategy
from turnflow.graph.turn.fallback import FallbackTurnStrategy
from turnflow.graph.turn.flow import TurnGraphEngine
from turnflow.graph.turn.nodes import TurnComponents
from turnflow.graph.turn.nodes.common import CANCELLED_MESSAGE, TIMEOUT_MESSAGE
from turnflow.graph.turn.recorder import StepRecorder
from turnflow.graph.turn.state import TurnLimits, TurnState


@dataclass
class _ScriptedModel:
    script: dict[str, list[Any]]
    calls: list[str] = field(default_factory=list)

    async def invoke(self, prompt: str, inputs: dict[str, Any]) -> dict[str, Any]:
        del inputs
        self.calls.append(prompt)
        queue = self.script.get(prompt) or []
        if not queue:
            raise LanguageModelError(f"no scripted output for {prompt}")
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return dict(item)


class _Memory:
    async def get_relevant_context(self, chat_id, query, objective=None, recent_messages=None):
        del chat_id, query, objective, recent_messages
        return "No relevant memory."


class _NullEvents:
    def emit(self, event: TurnEvent) -> None:
        del event


@dataclass
class _FailingStore:
    fail_after: int = 0
    saved: list[ExecutionStepRecord] = field(default_factory=list)

    async def save_step(self, record: ExecutionStepRecord) -> None:
        if len(self.saved) >= self.fail_after:
            raise StepPersistenceError("disk full")
        self.saved.append(record)


@dataclass
class _RecordingStrategy:
    name: str = "recording"
    seen: list[TurnState] = field(default_factory=list)

    async def run(self, state: TurnState, *, cancel_event=None) -> TurnState:
        del cancel_event
        self.seen.append(state)
        return {**state, "is_completed": True, "final_output": "recovered"}  # type: ignore[typeddict-item]


@dataclass
class _ExplodingStrategy:
    error: Exception
    name: str = "exploding"

    async def run(self, state: TurnState, *, cancel_event=None) -> TurnState:
        del state, cancel_event
        raise self.error


@dataclass
class _StallingModel:
    calls: list[str] = field(default_factory=list)

    async def invoke(self, prompt: str, inputs: dict[str, Any]) -> dict[str, Any]:
        del inputs
        self.calls.append(prompt)
        await asyncio.sleep(5)
        return {"next_action": "respond", "response": "too late"}


@dataclass
class _CancellingStrategy:
    event: asyncio.Event
    name: str = "cancelling"

    async def run(self, state: TurnState, *, cancel_event=None) -> TurnState:
        del state, cancel_event
        self.event.set()
        raise RuntimeError("graph crashed while stopping")


def _components(model, store, root: Path) -> TurnComponents:
    return TurnComponents(
        model=model,
        tools=create_default_tools(root),
        memory=_Memory(),
        recorder=StepRecorder(store=store, events=_NullEvents()),
        model_timeout_ms=1000,
        tool_timeout_ms=1000,
    )


def _initial(message: str = "list files") -> TurnState:
    limits = TurnLimits(max_iterations=3, max_node_iterations={"execute": 3, "validate": 2})
    return build_initial_state(TurnCommand(chat_id="chat-9", message=message), limits)


@pytest.mark.asyncio
async def test_graph_failure_falls_back_to_direct_strategy(tmp_path: Path) -> None:
    model = _ScriptedModel(
        {
            "analyze": [{"understanding": "list", "initial_plan": ["call list_files"]}],
            "reason": [{"next_action": "use_tool", "tool": "list_files", "parameters": {}}],
            "interpret": [{"next_action": "continue"}],
            "direct": [{"next_action": "respond", "response": "Answered directly."}],
        }
    )
    components = _components(model, _FailingStore(fail_after=1), tmp_path)
    strategy = FallbackTurnStrategy(
        primary=TurnGraphEngine(components=components),
        secondary=DirectTurnStrategy(components=components),
    )

    final = await strategy.run(_initial())

    assert final["is_completed"] is True
    assert final["degraded"] is True
    assert final["final_output"] == "Answered directly."
    assert final["strategy"] == "direct"
    assert "StepPersistenceError" in final["error"]
    assert model.calls[-1] == "direct"


@pytest.mark.asyncio
async def test_fallback_input_comes_from_original_state() -> None:
    secondary = _RecordingStrategy()
    strategy = FallbackTurnStrategy(
        primary=_ExplodingStrategy(RuntimeError("graph crashed")),
        secondary=secondary,
    )
    initial = _initial()

    final = await strategy.run(initial)

    [seen] = secondary.seen
    assert seen["messages"] == [TurnMessage(role="user", content="list files")]
    assert seen["error"].startswith("engine_failed: RuntimeError: graph crashed")
    [entry] = seen["planning_history"]
    assert entry.action == "engine_failure"
    assert entry.status == "failed"
    assert initial["planning_history"] == []
    assert final["final_output"] == "recovered"
    assert final["degraded"] is True


@pytest.mark.asyncio
async def test_double_failure_still_returns_terminal_state() -> None:
    strategy = FallbackTurnStrategy(
        primary=_ExplodingStrategy(RuntimeError("graph crashed")),
        secondary=_ExplodingStrategy(ValueError("direct crashed")),
    )

    final = await strategy.run(_initial())

    assert final["is_completed"] is True
    assert final["degraded"] is True
    assert final["final_output"]
    assert "graph crashed" in final["error"] and "direct crashed" in final["error"]
    assert "graph crashed" in final["final_output"] and "direct crashed" in final["final_output"]
    errors = final["validation"].errors
    assert errors[0].startswith("engine_failed")
    assert errors[1].startswith("fallback_failed")
    assert [entry.action for entry in final["planning_history"]] == [
        "engine_failure",
        "fallback_failure",
    ]


@pytest.mark.asyncio
async def test_disabled_fallback_still_completes() -> None:
    strategy = FallbackTurnStrategy(primary=_ExplodingStrategy(RuntimeError("boom")))

    final = await strategy.run(_initial())

    assert final["is_completed"] is True
    assert "boom" in final["final_output"]


@pytest.mark.asyncio
async def test_direct_strategy_deduplicates_and_runs_tools(tmp_path: Path) -> None:
    (tmp_path / "notes.txt").write_text("hello", encoding="utf-8")
    model = _ScriptedModel(
        {
            "direct": [
                {"next_action": "use_tool", "tool": "read_file", "parameters": {"path": "notes.txt"}},
                {"next_action": "use_tool", "tool": "read_file", "parameters": {"path": "notes.txt"}},
                {"next_action": "respond", "response": "It says hello."},
            ]
        }
    )
    strategy = DirectTurnStrategy(components=_components(model, _FailingStore(fail_after=99), tmp_path))

    final = await strategy.run(_initial("what is in notes.txt?"))

    tool_messages = [m for m in final["messages"] if m.role == "tool"]
    assert len(tool_messages) == 1
    assert "hello" in tool_messages[0].content
    assert final["final_output"] == "It says hello."
    assert final["iteration"] == 3
    assert final["tools_used"] == ["read_file"]


@pytest.mark.asyncio
async def test_direct_strategy_stops_at_ceiling(tmp_path: Path) -> None:
    model = _ScriptedModel(
        {"direct": [{"next_action": "use_tool", "tool": "grep", "parameters": {}}]}
    )
    strategy = DirectTurnStrategy(components=_components(model, _FailingStore(fail_after=99), tmp_path))

    final = await strategy.run(_initial())

    assert final["iteration"] == 3
    assert final["is_completed"] is True
    assert final["stop_reason"] == "max_iterations_reached"
    assert final["final_output"]


@pytest.mark.asyncio
async def test_direct_strategy_stops_when_cancelled(tmp_path: Path) -> None:
    model = _StallingModel()
    strategy = DirectTurnStrategy(components=_components(model, _FailingStore(fail_after=99), tmp_path))
    event = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, event.set)

    final = await strategy.run(_initial(), cancel_event=event)

    assert model.calls == ["direct"]
    assert final["is_completed"] is True
    assert final["cancelled"] is True
    assert final["stop_reason"] == "cancelled"
    assert final["final_output"] == CANCELLED_MESSAGE


@pytest.mark.asyncio
async def test_direct_strategy_honours_total_timeout(tmp_path: Path) -> None:
    strategy = DirectTurnStrategy(
        components=_components(_StallingModel(), _FailingStore(fail_after=99), tmp_path),
        total_timeout_ms=50,
    )

    final = await strategy.run(_initial())

    assert final["cancelled"] is True
    assert final["stop_reason"] == "turn_timeout"
    assert final["final_output"] == TIMEOUT_MESSAGE


@pytest.mark.asyncio
async def test_cancelled_turn_skips_secondary() -> None:
    event = asyncio.Event()
    secondary = _RecordingStrategy()
    strategy = FallbackTurnStrategy(primary=_CancellingStrategy(event), secondary=secondary)

    final = await strategy.run(_initial(), cancel_event=event)

    assert secondary.seen == []
    assert final["is_completed"] is True
    assert final["cancelled"] is True
    assert final["degraded"] is True
    assert final["final_output"] == CANCELLED_MESSAGE


@pytest.mark.asyncio
async def test_cancel_reaches_secondary_strategy(tmp_path: Path) -> None:
    model = _StallingModel()
    strategy = FallbackTurnStrategy(
        primary=_ExplodingStrategy(RuntimeError("graph crashed")),
        secondary=DirectTurnStrategy(
            components=_components(model, _FailingStore(fail_after=99), tmp_path)
        ),
    )
    event = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, event.set)

    final = await strategy.run(_initial(), cancel_event=event)

    assert model.calls == ["direct"]
    assert final["strategy"] == "direct"
    assert final["cancelled"] is True
    assert final["degraded"] is True
    assert final["stop_reason"] == "cancelled"
