from datetime import datetime, timezone
from typing import List, Dict, Any, Optional, Literal
import uuid
from pydantic import BaseModel, Field, ConfigDict, StrictBool, StrictInt, field_validator, model_validator
from enum import Enum

from . import config
from .comparison import to_json_safe


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ==============================================================================
# TOOL CALLS
# ==============================================================================

class EvaluationParam(str, Enum):
    """ToolCall fields that may take part in equality besides the name."""
    INPUT_PARAMETERS = "INPUT_PARAMETERS"
    OUTPUT = "OUTPUT"


class ToolCall(BaseModel):
    """One tool invocation recorded for an agent interaction.

    Field values are kept as-is (``Any``) so that self-referential payloads
    survive ingestion; equality goes through ``comparison.deep_equals``.
    """
    model_config = ConfigDict(frozen=True)

    name: str = Field(default="", description="Tool name")
    input_parameters: Any = Field(default_factory=dict, description="Arguments the tool was invoked with")
    output: Any = Field(default=None, description="Value the tool returned")

    @model_validator(mode="before")
    @classmethod
    def accept_aliases(cls, data: Any) -> Any:
        """Accept ``tool_name``/``args``/``arguments``/``result`` as produced by some tracers."""
        if not isinstance(data, dict):
            return data
        name = data.get("name") or data.get("tool_name") or ""
        params = data.get("input_parameters")
        if params is None:
            params = data.get("args")
        if params is None:
            params = data.get("arguments")
        output = data.get("output")
        if output is None:
            output = data.get("result")
        return {
            "name": name if isinstance(name, str) else str(name),
            "input_parameters": params if params is not None else {},
            "output": output,
        }

    def as_json(self) -> Dict[str, Any]:
        """Plain-JSON copy safe to echo into results, with cycles replaced by a marker."""
        return {
            "name": self.name,
            "input_parameters": to_json_safe(self.input_parameters),
            "output": to_json_safe(self.output),
        }


# ==============================================================================
# EVALUATION PARAMETERS
# ==============================================================================
# Flags are StrictBool and the threshold is a strict float so that "true" or
# "0.5" strings are rejected before any run is created.
# ==============================================================================

class EvaluationParameters(BaseModel):
    threshold: float = Field(default=config.DEFAULT_THRESHOLD, ge=0.0, le=1.0, strict=True)
    strict_mode: StrictBool = False
    should_consider_ordering: StrictBool = False
    should_exact_match: StrictBool = False
    evaluation_params: List[EvaluationParam] = Field(default_factory=list)

    # Judge knobs, inert for the deterministic matcher
    include_reason: StrictBool = True
    verbose_mode: StrictBool = False
    async_mode: StrictBool = True
    batch_size: StrictInt = Field(default=config.DEFAULT_BATCH_SIZE, ge=1)
    temperature: float = Field(default=config.JUDGE_TEMPERATURE, ge=0.0, le=2.0, strict=True)
    max_tokens: StrictInt = Field(default=config.JUDGE_MAX_TOKENS, ge=1)
    model: Optional[str] = None

    @field_validator("evaluation_params", mode="before")
    @classmethod
    def require_list(cls, v):
        if not isinstance(v, (list, tuple)):
            raise ValueError("evaluation_params must be an array")
        return list(v)

    @property
    def threshold_used(self) -> float:
        """Threshold applied to pass/fail counts; strict mode requires a perfect score."""
        return 1.0 if self.strict_mode else self.threshold


class ArgumentCorrectnessParameters(EvaluationParameters):
    """Judge parameters plus optional overrides for the values taken from each item."""
    input: Optional[Any] = None
    actual_output: Optional[Any] = None
    tools_called: Optional[List[Dict[str, Any]]] = None


# ==============================================================================
# EVALUATION RUN LIFECYCLE
# ==============================================================================

class EvaluationRunStatus(str, Enum):
    pending = "pending"      # Created, items not fetched yet
    running = "running"      # Scoring items
    completed = "completed"  # Results written
    failed = "failed"        # Setup, fetch, finalize failure or cancellation

    @property
    def is_terminal(self) -> bool:
        return self in (EvaluationRunStatus.completed, EvaluationRunStatus.failed)

    def can_transition_to(self, target: "EvaluationRunStatus") -> bool:
        return target in _ALLOWED_TRANSITIONS[self]


_ALLOWED_TRANSITIONS = {
    EvaluationRunStatus.pending: {EvaluationRunStatus.running, EvaluationRunStatus.failed},
    EvaluationRunStatus.running: {EvaluationRunStatus.completed, EvaluationRunStatus.failed},
    EvaluationRunStatus.completed: set(),
    EvaluationRunStatus.failed: set(),
}


class EvaluationRun(BaseModel):
    id: str = Field(default_factory=lambda: f"run_{uuid.uuid4().hex[:16]}")
    dataset_id: str
    agent_id: str
    evaluation_method: str
    name: str = ""
    description: str = ""
    status: EvaluationRunStatus = EvaluationRunStatus.pending
    results: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class EvaluationRunCreate(BaseModel):
    """Payload handed to the storage connector to create a run."""
    dataset_id: str
    agent_id: str
    evaluation_method: str
    name: str
    description: str = ""
    status: EvaluationRunStatus = EvaluationRunStatus.pending
    metadata: Dict[str, Any] = Field(default_factory=dict)


class EvaluationRunUpdate(BaseModel):
    """Partial update; connectors apply only the fields that are set."""
    status: Optional[EvaluationRunStatus] = None
    results: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class EvaluationRequest(BaseModel):
    agent_id: str
    dataset_id: str
    evaluation_method: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    name: Optional[str] = None
    description: Optional[str] = None
    item_source: Optional[Literal["data_points", "logs"]] = Field(
        default=None, description="Overrides the method's default item family"
    )


# ==============================================================================
# SCORES AND RESULTS
# ==============================================================================

class PerToolJudgement(BaseModel):
    tool: str
    correct: bool
    reasoning: str = ""


class ScoreRecord(BaseModel):
    item_id: str
    score: float = Field(..., ge=0.0, le=1.0)
    reason: Optional[str] = None
    passed: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)
    tools_called: Optional[List[Dict[str, Any]]] = None
    expected_tools: Optional[List[Dict[str, Any]]] = None
    per_tool: Optional[List[PerToolJudgement]] = None

    @property
    def is_fallback(self) -> bool:
        return bool(self.metadata.get("fallback"))


class EvaluationResults(BaseModel):
    total_items: int = 0
    evaluated_items: int = 0
    average_score: float = 0.0
    passed_count: int = 0
    failed_count: int = 0
    fallback_count: int = 0
    threshold_used: float = config.DEFAULT_THRESHOLD
    scores: List[ScoreRecord] = Field(default_factory=list)
    evaluation_outputs: List[str] = Field(default_factory=list)

    @classmethod
    def from_scores(cls, scores: List[ScoreRecord], total_items: int, threshold_used: float,
                    evaluation_outputs: Optional[List[str]] = None) -> "EvaluationResults":
        """Aggregate per-item scores. Pass/fail is decided here, never during scoring."""
        graded = [s.model_copy(update={"passed": s.score >= threshold_used}) for s in scores]
        passed = sum(1 for s in graded if s.passed)
        average = sum(s.score for s in graded) / len(graded) if graded else 0.0
        return cls(
            total_items=total_items,
            evaluated_items=len(graded),
            average_score=average,
            passed_count=passed,
            failed_count=len(graded) - passed,
            fallback_count=sum(1 for s in graded if s.is_fallback),
            threshold_used=threshold_used,
            scores=graded,
            evaluation_outputs=evaluation_outputs or [],
        )

    def to_results(self, family: str) -> Dict[str, Any]:
        """Results payload as stored on the run, with family-specific count keys."""
        results = self.model_dump(mode="json")
        results[f"total_{family}"] = self.total_items
        results[f"evaluated_{family}"] = self.evaluated_items
        return results


# ==============================================================================
# LLM JUDGE
# ==============================================================================

class JudgeVerdict(BaseModel):
    """Schema the judge's JSON payload must satisfy."""
    model_config = ConfigDict(populate_by_name=True)

    score: float = Field(..., ge=0.0, le=1.0)
    reasoning: str
    per_tool: Optional[List[PerToolJudgement]] = Field(default=None, alias="perTool")


class JudgeResult(BaseModel):
    score: float = Field(..., ge=0.0, le=1.0)
    reasoning: str
    per_tool: Optional[List[PerToolJudgement]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_fallback(self) -> bool:
        return bool(self.metadata.get("fallback"))


# ==============================================================================
# PER-ITEM OUTPUTS
# ==============================================================================

class DataPointOutputCreate(BaseModel):
    data_point_id: str
    output: Dict[str, Any] = Field(default_factory=dict)
    score: float
    metadata: Dict[str, Any] = Field(default_factory=dict)


class LogOutputCreate(BaseModel):
    log_id: str
    output: Dict[str, Any] = Field(default_factory=dict)
    score: float
    metadata: Dict[str, Any] = Field(default_factory=dict)


# ==============================================================================
# METHOD DETAILS
# ==============================================================================

class EvaluationMethodName(str, Enum):
    tool_correctness = "tool_correctness"
    argument_correctness = "argument_correctness"


class EvaluationMethodDetails(BaseModel):
    method: EvaluationMethodName
    name: str
    description: str
    item_source: Literal["data_points", "logs"]
    scorer: Literal["matcher", "judge"]
