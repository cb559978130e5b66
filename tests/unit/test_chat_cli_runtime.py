from __future__ import annotations

import asyncio
from pathlib import Path

from turnflow import chat_cli_runtime
from turnflow.agent.engine import TurnCommand, TurnResult
from turnflow.storage.steps import InMemoryStepStore, JsonlStepStore


def _result(text: str = "done") -> TurnResult:
    return TurnResult(
        chat_id="c",
        trace_id="t",
        final_output=text,
        is_completed=True,
        degraded=False,
        iterations=1,
        tools_used=["list_files"],
        messages=[],
        validation_errors=[],
        stop_reason="responded",
        trace={"engine": "graph", "steps": []},
    )


class _FakeUseCase:
    def __init__(self) -> None:
        self.commands: list[TurnCommand] = []

    async def execute(self, cmd: TurnCommand) -> TurnResult:
        self.commands.append(cmd)
        return _result(f"answer to {cmd.message}")


def test_parse_args_defaults() -> None:
    args = chat_cli_runtime.parse_args([])
    assert args.workspace == "."
    assert args.message is None
    assert args.json is False
    assert args.max_iterations is None


def test_parse_args_one_shot() -> None:
    args = chat_cli_runtime.parse_args(
        ["--message", "list files", "--json", "--max-iterations", "3", "--chat-id", "abc"]
    )
    assert args.message == "list files"
    assert args.json is True
    assert args.max_iterations == 3
    assert args.chat_id == "abc"


def test_build_use_case_picks_step_store(monkeypatch, tmp_path: Path) -> None:
    captured = {}

    def _build(**kwargs):
        captured.update(kwargs)
        return _FakeUseCase()

    monkeypatch.setattr(chat_cli_runtime, "build_turn_use_case", _build)
    monkeypatch.setattr(chat_cli_runtime, "OpenAILanguageModel", lambda **kwargs: object())
    chat_cli_runtime.build_use_case(
        chat_cli_runtime.parse_args(["--steps-dir", str(tmp_path), "--max-iterations", "2"])
    )
    assert isinstance(captured["store"], JsonlStepStore)
    assert captured["config"].TURN_MAX_ITERATIONS == 2

    chat_cli_runtime.build_use_case(chat_cli_runtime.parse_args(["--steps-dir", ""]))
    assert isinstance(captured["store"], InMemoryStepStore)


def test_one_shot_prints_answer(monkeypatch, capsys) -> None:
    fake = _FakeUseCase()
    monkeypatch.setattr(chat_cli_runtime, "build_use_case", lambda args: fake)
    monkeypatch.setattr(chat_cli_runtime, "configure_logging", lambda *a, **k: None)

    asyncio.run(chat_cli_runtime.main(["--message", "hi", "--chat-id", "c1"]))

    out = capsys.readouterr().out
    assert "answer to hi" in out
    assert "tools=list_files" in out
    assert fake.commands[0].chat_id == "c1"


def test_interactive_loop_keeps_history(monkeypatch, capsys) -> None:
    fake = _FakeUseCase()
    replies = iter(["first", "/trace", "second", "/exit"])
    monkeypatch.setattr(chat_cli_runtime, "build_use_case", lambda args: fake)
    monkeypatch.setattr(chat_cli_runtime, "configure_logging", lambda *a, **k: None)
    monkeypatch.setattr(chat_cli_runtime, "_prompt", lambda message: next(replies))

    asyncio.run(chat_cli_runtime.main([]))

    assert [cmd.message for cmd in fake.commands] == ["first", "second"]
    assert fake.commands[0].history == []
    assert [m.content for m in fake.commands[1].history] == ["first", "answer to first"]
    assert "engine=graph" in capsys.readouterr().out
