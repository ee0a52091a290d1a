"""
Evaluation method registry.

Each method declares its parameter model (which doubles as the parameter
schema), the item family it reads by default and whether it is scored by the
deterministic matcher or the LLM judge.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Type

from .items import DATA_POINTS, LOGS
from .models import (
    ArgumentCorrectnessParameters,
    EvaluationMethodDetails,
    EvaluationMethodName,
    EvaluationParameters,
)

MATCHER = "matcher"
JUDGE = "judge"


@dataclass(frozen=True)
class EvaluationMethodDefinition:
    method: EvaluationMethodName
    name: str
    description: str
    parameters_model: Type[EvaluationParameters]
    item_source: str
    scorer: str

    @property
    def details(self) -> EvaluationMethodDetails:
        return EvaluationMethodDetails(
            method=self.method,
            name=self.name,
            description=self.description,
            item_source=self.item_source,
            scorer=self.scorer,
        )


_REGISTRY: Dict[EvaluationMethodName, EvaluationMethodDefinition] = {
    EvaluationMethodName.tool_correctness: EvaluationMethodDefinition(
        method=EvaluationMethodName.tool_correctness,
        name="Tool Correctness",
        description=(
            "Deterministically compares the tools an agent called with the expected tools. "
            "Supports ordering-sensitive, exact-count and parameter/output-aware matching."
        ),
        parameters_model=EvaluationParameters,
        item_source=DATA_POINTS,
        scorer=MATCHER,
    ),
    EvaluationMethodName.argument_correctness: EvaluationMethodDefinition(
        method=EvaluationMethodName.argument_correctness,
        name="Argument Correctness",
        description=(
            "Uses an LLM judge to decide whether the arguments passed to each tool call "
            "are correct for the user's input."
        ),
        parameters_model=ArgumentCorrectnessParameters,
        item_source=LOGS,
        scorer=JUDGE,
    ),
}


def get_method_definition(method: str) -> EvaluationMethodDefinition:
    """Look up a method by name. Raises ValueError for unsupported methods."""
    try:
        return _REGISTRY[EvaluationMethodName(method)]
    except ValueError:
        supported = ", ".join(m.value for m in _REGISTRY)
        raise ValueError(f"Unsupported evaluation method '{method}'. Supported: {supported}") from None


def list_evaluation_methods() -> List[EvaluationMethodDetails]:
    return [definition.details for definition in _REGISTRY.values()]


def get_method_details(method: str) -> EvaluationMethodDetails:
    return get_method_definition(method).details


def get_parameter_schema(method: str) -> Type[EvaluationParameters]:
    """Pydantic model validating the parameters of ``method``."""
    return get_method_definition(method).parameters_model


def validate_parameters(method: str, raw: Dict[str, Any]) -> EvaluationParameters:
    """Validate raw parameters; raises pydantic.ValidationError (a ValueError) on bad input."""
    return get_parameter_schema(method).model_validate(raw or {})
