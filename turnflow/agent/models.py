from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, Field, field_validator


MessageRole = Literal["user", "assistant", "tool", "system"]
StepType = Literal["tool", "prompt"]
StepStatus = Literal["running", "completed", "failed", "skipped"]
NodeOutcome = Literal["continue", "complete", "fail"]
PlanStep = str | dict[str, Any]


@dataclass(frozen=True)
class TurnMessage:
    role: MessageRole
    content: str
    name: str | None = None
    call_id: str | None = None

    @property
    def dedup_key(self) -> tuple[str, str, str]:
        return (self.role, self.content, self.name or self.call_id or "")


@dataclass(frozen=True)
class PlanningHistoryEntry:
    action: str
    step_name: str
    status: str
    timestamp: float
    result: Any = None
    error: str = ""
    iteration: int = 0


@dataclass(frozen=True)
class ExecutionStepRecord:
    id: str
    trace_id: str
    chat_id: str
    step_name: str
    step_type: StepType
    target: str
    start_time: float
    params: dict[str, Any] = field(default_factory=dict)
    end_time: float | None = None
    status: StepStatus = "running"
    result: Any = None
    error: str = ""
    iteration: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str = ""
    required_params: tuple[str, ...] = ()


@dataclass(frozen=True)
class ToolInvocation:
    name: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolExecutionResult:
    success: bool
    data: Any = None
    error: str = ""


@dataclass(frozen=True)
class ValidationState:
    errors: list[str] = field(default_factory=list)
    corrections: list[str] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)


TurnEventKind = Literal[
    "phase_started",
    "phase_completed",
    "tool_started",
    "tool_completed",
    "error",
]


@dataclass(frozen=True)
class TurnEvent:
    kind: TurnEventKind
    chat_id: str
    iteration: int
    timestamp: float
    phase: str = ""
    duration_ms: float | None = None
    tool: str | None = None
    success: bool | None = None
    error: str = ""
    data: dict[str, Any] = field(default_factory=dict)


# --- Structured model output. Everything below comes from the language model
# --- and is validated before the engine acts on it.


class CorrectionKind(str, Enum):
    PARAMETER_CORRECTION = "parameter_correction"
    PLAN_CORRECTION = "plan_correction"
    CLARIFICATION_NEEDED = "clarification_needed"
    UNRECOVERABLE = "unrecoverable"


class AnalysisOutput(BaseModel):
    understanding: str
    initial_plan: list[PlanStep] = Field(
        default_factory=list,
        validation_alias=AliasChoices("initial_plan", "initialPlan", "plan"),
    )
    extracted_entities: dict[str, Any] | None = Field(
        default=None,
        validation_alias=AliasChoices("extracted_entities", "extractedEntities"),
    )


class ReasonOutput(BaseModel):
    next_action: Literal["respond", "use_tool"] = Field(
        validation_alias=AliasChoices("next_action", "nextAction", "action"),
    )
    reasoning: str = ""
    tool: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    response: str | None = None

    @field_validator("parameters", mode="before")
    @classmethod
    def _none_parameters(cls, value: Any) -> Any:
        return {} if value is None else value


class InterpretationOutput(BaseModel):
    next_action: Literal["respond", "continue"] = Field(
        default="continue",
        validation_alias=AliasChoices("next_action", "nextAction", "action"),
    )
    understanding: str = ""
    response: str | None = None

    @field_validator("next_action", mode="before")
    @classmethod
    def _tool_means_continue(cls, value: Any) -> Any:
        if value in ("use_tool", "reflect"):
            return "continue"
        return value


class Correction(BaseModel):
    kind: CorrectionKind = Field(validation_alias=AliasChoices("kind", "type"))
    tool: str | None = None
    parameters: dict[str, Any] | None = None
    plan: list[PlanStep] | None = None
    message: str = Field(
        default="",
        validation_alias=AliasChoices("message", "reason", "description"),
    )


class CorrectionOutput(BaseModel):
    corrections: list[Correction] = Field(default_factory=list)
    reasoning: str = ""


class ResponseOutput(BaseModel):
    response: str
