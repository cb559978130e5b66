from __future__ import annotations

import asyncio
import functools
import json
import time
from collections.abc import Awaitable, Mapping
from typing import Any, TypeVar

import structlog

from turnflow.agent.errors import TurnCancelledError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def _clip_text(value: object, limit: int = 280) -> str:
    text = " ".join(str(value or "").split())
    if len(text) <= limit:
        return text
    return text[:limit].rstrip() + "..."


def _sanitize_payload(payload: Mapping[str, object]) -> dict[str, object]:
    out: dict[str, object] = {}
    for key, value in payload.items():
        if isinstance(value, str):
            out[key] = _clip_text(value)
        elif isinstance(value, (int, float, bool)) or value is None:
            out[key] = value
        elif isinstance(value, dict):
            out[key] = {str(k): _clip_text(v) for k, v in value.items()}
        else:
            out[key] = _clip_text(value)
    return out


def _append_stage_timing(
    state: Mapping[str, object],
    *,
    stage: str,
    elapsed_ms: float,
) -> dict[str, float]:
    current = state.get("stage_timings_ms")
    timings = dict(current) if isinstance(current, dict) else {}
    timings[stage] = round(float(timings.get(stage, 0.0)) + max(0.0, elapsed_ms), 2)
    return timings


def tool_dedup_key(name: str, params: Mapping[str, Any] | None) -> str:
    """Order-independent identity of a tool call."""
    serialized = json.dumps(
        dict(params or {}),
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
        default=str,
    )
    return f"{str(name or '').strip()}:{serialized}"


# --- Safe State Getters ---

def state_get_list(state: Mapping[str, Any], key: str, default: list[Any] | None = None) -> list[Any]:
    val = state.get(key)
    if isinstance(val, list):
        return list(val)
    return default if default is not None else []


def state_get_dict(state: Mapping[str, Any], key: str, default: dict[str, Any] | None = None) -> dict[str, Any]:
    val = state.get(key)
    if isinstance(val, dict):
        return dict(val)
    return default if default is not None else {}


def state_get_int(state: Mapping[str, Any], key: str, default: int = 0) -> int:
    val = state.get(key)
    try:
        return int(val) if val is not None else default
    except (ValueError, TypeError):
        return default


def state_get_str(state: Mapping[str, Any], key: str, default: str = "") -> str:
    val = state.get(key)
    return str(val).strip() if val is not None else default


# --- Cancellation ---

async def run_cancellable(awaitable: Awaitable[T], cancel_event: asyncio.Event | None) -> T:
    """Await ``awaitable`` unless ``cancel_event`` fires first.

    When the event wins, the in-flight work is cancelled and
    ``TurnCancelledError`` is raised.
    """
    if cancel_event is None:
        return await awaitable
    if cancel_event.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise TurnCancelledError()

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        if not waiter.done():
            waiter.cancel()
    if work in done:
        return work.result()
    work.cancel()
    try:
        await work
    except asyncio.CancelledError:
        pass
    except Exception as exc:
        logger.debug("cancelled_call_failed_late", error=str(exc))
    raise TurnCancelledError()


async def with_timeout(awaitable: Awaitable[T], timeout_ms: int) -> T:
    return await asyncio.wait_for(awaitable, timeout=max(25, int(timeout_ms)) / 1000.0)


class TurnDeadline:
    """Sets ``event`` once ``timeout_ms`` elapses.

    ``expired`` tells a timeout apart from an external cancel of the same event.
    """

    def __init__(self, event: asyncio.Event, timeout_ms: int) -> None:
        self.event = event
        self.expired = False
        self._handle = asyncio.get_running_loop().call_later(
            max(0, int(timeout_ms)) / 1000.0, self._expire
        )

    def _expire(self) -> None:
        if not self.event.is_set():
            self.expired = True
            self.event.set()

    def cancel(self) -> None:
        self._handle.cancel()


# --- Node Timing Decorator ---

def track_node_timing(stage_name: str):
    """Accumulate the wall time of a node into ``stage_timings_ms``."""

    def decorator(func):
        @functools.wraps(func)
        async def async_wrapper(state: Mapping[str, Any], *args, **kwargs) -> dict[str, Any]:
            t0 = time.perf_counter()
            result = await func(state, *args, **kwargs)
            elapsed_ms = (time.perf_counter() - t0) * 1000.0
            if isinstance(result, dict):
                result["stage_timings_ms"] = _append_stage_timing(
                    state, stage=stage_name, elapsed_ms=elapsed_ms
                )
            return result

        return async_wrapper

    return decorator
