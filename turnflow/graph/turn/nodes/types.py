from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from turnflow.agent.interfaces import LanguageModelPort, MemoryProviderPort, ToolRegistryPort
from turnflow.core.config import settings
from turnflow.graph.turn.recorder import StepRecorder


@dataclass
class TurnComponents:
    """Everything a node may call out to. Passed explicitly, never looked up."""

    model: LanguageModelPort
    tools: ToolRegistryPort
    memory: MemoryProviderPort
    recorder: StepRecorder
    global_context: dict[str, Any] = field(default_factory=dict)
    model_timeout_ms: int = field(default_factory=lambda: settings.TURN_TIMEOUT_MODEL_MS)
    tool_timeout_ms: int = field(default_factory=lambda: settings.TURN_TIMEOUT_TOOL_MS)
    tool_output_max_chars: int = field(default_factory=lambda: settings.TURN_TOOL_OUTPUT_MAX_CHARS)
