"""Interactive chat CLI running turns in-process against an OpenAI-compatible model."""

from __future__ import annotations

import argparse
import asyncio
import json
import time
import uuid
from dataclasses import asdict
from pathlib import Path
from typing import Any

import structlog

from turnflow.agent.engine import HandleTurnUseCase, TurnCommand, TurnResult, build_turn_use_case
from turnflow.agent.events import StructlogEventSink
from turnflow.agent.llm import OpenAILanguageModel
from turnflow.agent.memory import InMemoryMemoryProvider
from turnflow.agent.models import TurnMessage
from turnflow.agent.tools import create_default_tools
from turnflow.core.config import settings
from turnflow.core.logging import configure_logging
from turnflow.storage.steps import InMemoryStepStore, JsonlStepStore

logger = structlog.get_logger(__name__)

EXIT_COMMANDS = {"/exit", "/quit", "exit", "quit"}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Coding-assistant chat with the turn engine")
    parser.add_argument("--chat-id", default=None, help="Chat id (a random one by default)")
    parser.add_argument(
        "--workspace",
        default=".",
        help="Directory the list_files/read_file tools are confined to",
    )
    parser.add_argument("--model", default=None, help="Model name (defaults to OPENAI_MODEL)")
    parser.add_argument(
        "--steps-dir",
        default=settings.TURN_STEP_STORE_DIR,
        help="Directory for JSONL step records (in-memory when omitted)",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help="Override TURN_MAX_ITERATIONS for this session",
    )
    parser.add_argument("--message", default=None, help="Run a single turn and exit")
    parser.add_argument("--json", action="store_true", help="Print the result as JSON with trace")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    return parser.parse_args(argv)


def _prompt(message: str) -> str:
    return input(message).strip()


def build_use_case(args: argparse.Namespace) -> HandleTurnUseCase:
    config = settings
    if args.max_iterations is not None:
        config = settings.model_copy(update={"TURN_MAX_ITERATIONS": int(args.max_iterations)})
    store = JsonlStepStore(Path(args.steps_dir)) if args.steps_dir else InMemoryStepStore()
    return build_turn_use_case(
        model=OpenAILanguageModel(model=args.model),
        tools=create_default_tools(Path(args.workspace).resolve()),
        memory=InMemoryMemoryProvider(),
        events=StructlogEventSink(),
        store=store,
        global_context={"workspace": str(Path(args.workspace).resolve())},
        config=config,
    )


def _result_payload(result: TurnResult) -> dict[str, Any]:
    payload = asdict(result)
    payload["messages"] = [asdict(message) for message in result.messages]
    return payload


def _print_result(result: TurnResult, *, as_json: bool) -> None:
    if as_json:
        print(json.dumps(_result_payload(result), ensure_ascii=False, indent=2, default=str))
        return
    print(result.final_output)
    flags: list[str] = [f"iterations={result.iterations}"]
    if result.tools_used:
        flags.append("tools=" + ",".join(result.tools_used))
    if result.degraded:
        flags.append("degraded")
    if result.cancelled:
        flags.append("cancelled")
    if result.stop_reason:
        flags.append(f"stop={result.stop_reason}")
    print(f"   ({'; '.join(flags)})")


def _print_trace(result: TurnResult | None) -> None:
    if result is None:
        print("No previous turn to trace.")
        return
    trace = result.trace
    print("Trace")
    for key in ("engine", "stop_reason", "iterations", "node_iterations", "tools_used"):
        print(f"   {key}={trace.get(key)}")
    for step in list(trace.get("steps") or [])[:20]:
        line = f"   - {step.get('step_name')}: {step.get('action')} [{step.get('status')}]"
        if step.get("error"):
            line += f" error={step.get('error')}"
        print(line)
    timings = dict(trace.get("stage_timings_ms") or {})
    if timings:
        print("   timings_ms=" + ", ".join(f"{k}={v}" for k, v in timings.items()))


async def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    configure_logging(args.log_level)
    use_case = build_use_case(args)
    chat_id = args.chat_id or uuid.uuid4().hex[:12]
    history: list[TurnMessage] = []

    if args.message:
        result = await use_case.execute(TurnCommand(chat_id=chat_id, message=args.message))
        _print_result(result, as_json=args.json)
        return

    print(f"chat_id={chat_id}  (/trace, /reset, /exit)")
    last_result: TurnResult | None = None
    while True:
        try:
            message = _prompt("> ")
        except (EOFError, KeyboardInterrupt):
            print()
            return
        if not message:
            continue
        if message.lower() in EXIT_COMMANDS:
            return
        if message.lower() == "/trace":
            _print_trace(last_result)
            continue
        if message.lower() == "/reset":
            history.clear()
            print("History cleared.")
            continue

        t0 = time.perf_counter()
        result = await use_case.execute(
            TurnCommand(chat_id=chat_id, message=message, history=list(history))
        )
        logger.debug(
            "cli_turn_latency",
            chat_id=chat_id,
            latency_ms=round((time.perf_counter() - t0) * 1000.0, 2),
        )
        _print_result(result, as_json=args.json)
        history.append(TurnMessage(role="user", content=message))
        history.append(TurnMessage(role="assistant", content=result.final_output))
        last_result = result


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
