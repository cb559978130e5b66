from __future__ import annotations


class TurnflowError(Exception):
    """Base class for engine errors."""


class LanguageModelError(TurnflowError):
    """Model invocation failed or its structured output could not be parsed."""


class TurnCancelledError(TurnflowError):
    def __init__(self, reason: str = "cancelled") -> None:
        super().__init__(reason)
        self.reason = reason


class StepPersistenceError(TurnflowError):
    """The step store rejected a write."""


# --- Error codes recorded in validation errors and planning history ---
ERROR_CODE_ANALYSIS_FAILED = "analysis_failed"
ERROR_CODE_TOOL_NOT_REGISTERED = "tool_not_registered"
ERROR_CODE_TOOL_FAILED = "tool_failed"
ERROR_CODE_TOOL_TIMEOUT = "tool_timeout"
ERROR_CODE_MISSING_TOOL = "missing_tool_name"
ERROR_CODE_CORRECTION_PARSE_FAILED = "correction_parse_failed"
ERROR_CODE_CORRECTIONS_NOT_APPLIED = "corrections_not_applied"
ERROR_CODE_VALIDATION_BUDGET_EXHAUSTED = "validation_budget_exhausted"
ERROR_CODE_NODE_FAILED = "node_failed"
ERROR_CODE_ENGINE_FAILED = "engine_failed"
ERROR_CODE_FALLBACK_FAILED = "fallback_failed"


def merge_error_codes(*groups: object) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for group in groups:
        if not isinstance(group, list):
            continue
        for raw in group:
            value = str(raw or "").strip()
            if not value or value in seen:
                continue
            seen.add(value)
            out.append(value)
    return out
