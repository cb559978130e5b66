from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, assert_never

import structlog

from turnflow.agent.errors import (
    ERROR_CODE_CORRECTION_PARSE_FAILED,
    ERROR_CODE_CORRECTIONS_NOT_APPLIED,
    ERROR_CODE_VALIDATION_BUDGET_EXHAUSTED,
    LanguageModelError,
)
from turnflow.agent.models import (
    Correction,
    CorrectionKind,
    CorrectionOutput,
    PlanningHistoryEntry,
    ValidationState,
)
from turnflow.graph.turn.state import (
    ERROR_DETAIL_LIMIT,
    PHASE_VALIDATE,
    TurnState,
    state_validation,
)
from turnflow.graph.turn.utils import (
    _clip_text,
    state_get_dict,
    state_get_list,
    state_get_str,
    track_node_timing,
)

from .common import invoke_structured, node_context
from .types import TurnComponents

logger = structlog.get_logger(__name__)

RECENT_HISTORY_LIMIT = 8


@dataclass
class CorrectionPlan:
    updates: dict[str, Any] = field(default_factory=dict)
    applied: list[str] = field(default_factory=list)
    terminal: Correction | None = None


def _retain(validation: ValidationState, meta_error: str) -> ValidationState:
    return ValidationState(
        errors=[*validation.errors, meta_error],
        corrections=list(validation.corrections),
    )


def _recent_history(state: TurnState) -> list[dict[str, Any]]:
    entries = state_get_list(state, "planning_history")[-RECENT_HISTORY_LIMIT:]
    return [
        {
            "action": entry.action,
            "status": entry.status,
            "error": entry.error or None,
        }
        for entry in entries
        if isinstance(entry, PlanningHistoryEntry)
    ]


def apply_corrections(state: TurnState, corrections: list[Correction]) -> CorrectionPlan:
    """Fold model corrections into a state update.

    The first clarification or unrecoverable correction wins and stops processing.
    """
    plan = CorrectionPlan()
    current_tool = state_get_str(state, "current_tool")
    for correction in corrections:
        kind = correction.kind
        if kind is CorrectionKind.PARAMETER_CORRECTION:
            tool = str(correction.tool or "").strip()
            if not current_tool or tool != current_tool or correction.parameters is None:
                continue
            plan.updates["current_params"] = dict(correction.parameters)
            plan.updates["retry_tool_call"] = True
            plan.applied.append(f"{kind.value}: {tool}")
        elif kind is CorrectionKind.PLAN_CORRECTION:
            revised = [step for step in list(correction.plan or []) if step]
            if not revised:
                continue
            plan.updates["plan"] = revised
            plan.updates["plan_cursor"] = 0
            plan.applied.append(f"{kind.value}: {len(revised)} step(s)")
        elif kind is CorrectionKind.CLARIFICATION_NEEDED or kind is CorrectionKind.UNRECOVERABLE:
            plan.terminal = correction
            break
        else:
            assert_never(kind)
    return plan


def _terminal_message(correction: Correction, errors: list[str]) -> str:
    if correction.kind is CorrectionKind.CLARIFICATION_NEEDED:
        lead = correction.message.strip() or "I need more information to continue."
    else:
        lead = correction.message.strip() or "I could not recover from an error."
    if not errors:
        return lead
    return f"{lead}\n\nDetails: {'; '.join(errors)}"


@track_node_timing(PHASE_VALIDATE)
async def validate_node(state: TurnState, components: TurnComponents) -> dict[str, Any]:
    chat_id = state_get_str(state, "chat_id")
    validation = state_validation(state)
    base: dict[str, Any] = {
        "phase": PHASE_VALIDATE,
        "outcome": "continue",
        "requires_validation": False,
    }
    if not validation.has_errors:
        return base

    visits = int(state_get_dict(state, "node_iterations").get(PHASE_VALIDATE, 0) or 0)
    ceiling = int(state_get_dict(state, "max_node_iterations").get(PHASE_VALIDATE, 1) or 1)
    if visits >= ceiling:
        logger.info("validation_budget_exhausted", chat_id=chat_id, visits=visits)
        return {
            **base,
            "validation": _retain(validation, ERROR_CODE_VALIDATION_BUDGET_EXHAUSTED),
        }

    context = node_context(
        state,
        components,
        planning_history=_recent_history(state),
    )
    try:
        output = await invoke_structured(components, "validate", context, CorrectionOutput)
    except LanguageModelError as exc:
        detail = _clip_text(str(exc), limit=ERROR_DETAIL_LIMIT)
        logger.warning("correction_parse_failed", chat_id=chat_id, error=detail)
        return {
            **base,
            "validation": _retain(validation, f"{ERROR_CODE_CORRECTION_PARSE_FAILED}: {detail}"),
        }

    plan = apply_corrections(state, output.corrections)
    if plan.terminal is not None:
        kind = plan.terminal.kind
        logger.info("validation_terminal", chat_id=chat_id, kind=kind.value)
        return {
            **base,
            "outcome": "complete",
            "is_completed": True,
            "final_output": _terminal_message(plan.terminal, validation.errors),
            "stop_reason": kind.value,
            "validation": ValidationState(
                errors=list(validation.errors),
                corrections=[*validation.corrections, kind.value],
            ),
        }

    if not plan.applied:
        return {
            **base,
            "validation": _retain(validation, ERROR_CODE_CORRECTIONS_NOT_APPLIED),
        }

    logger.info("validation_corrections_applied", chat_id=chat_id, corrections=plan.applied)
    return {
        **base,
        **plan.updates,
        "validation": ValidationState(),
        "planning_history": [
            PlanningHistoryEntry(
                action="corrections",
                step_name=PHASE_VALIDATE,
                status="completed",
                timestamp=time.time(),
                result={"applied": list(plan.applied), "resolved": list(validation.errors)},
                iteration=int(state.get("iteration") or 0),
            )
        ],
    }
