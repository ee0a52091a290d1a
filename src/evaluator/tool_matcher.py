"""
Deterministic Tool-Call Matcher

==============================================================================
FEATURES IMPLEMENTED IN THIS MODULE:
==============================================================================

1. MATCH POLICIES (Feature: tool-correctness)
   - MatchPolicy is picked once from should_consider_ordering and
     should_exact_match, then a single dispatch table scores the item:
       Basic               neither flag
       ExactUnordered      should_exact_match only
       OrderedPartial      should_consider_ordering only
       OrderedExactStrict  both flags
   - Two calls match when their names are equal and every field selected in
     evaluation_params (INPUT_PARAMETERS, OUTPUT) is deep-equal

2. REASONS THAT NAME THE FRACTION (Feature: tool-correctness)
   - Every reason reports "<matched>/<total>" so the UI can show partial
     credit without recomputing it

The matcher is pure and never looks at strict_mode or threshold. Pass/fail is
decided later by the aggregate.
==============================================================================
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from .comparison import deep_equals
from .models import EvaluationParam, EvaluationParameters, ToolCall


class MatchPolicy(str, Enum):
    BASIC = "basic"
    EXACT_UNORDERED = "exact_unordered"
    ORDERED_PARTIAL = "ordered_partial"
    ORDERED_EXACT_STRICT = "ordered_exact_strict"

    @classmethod
    def from_parameters(cls, params: EvaluationParameters) -> "MatchPolicy":
        if params.should_consider_ordering and params.should_exact_match:
            return cls.ORDERED_EXACT_STRICT
        if params.should_consider_ordering:
            return cls.ORDERED_PARTIAL
        if params.should_exact_match:
            return cls.EXACT_UNORDERED
        return cls.BASIC


@dataclass(frozen=True)
class MatchResult:
    score: float
    reason: str
    policy: MatchPolicy
    matched: int = 0
    total: int = 0


def tools_match(actual: ToolCall, expected: ToolCall, evaluation_params: Sequence[EvaluationParam]) -> bool:
    """Same name plus deep equality on each selected field."""
    if actual.name != expected.name:
        return False
    if EvaluationParam.INPUT_PARAMETERS in evaluation_params and not deep_equals(
            actual.input_parameters, expected.input_parameters):
        return False
    if EvaluationParam.OUTPUT in evaluation_params and not deep_equals(actual.output, expected.output):
        return False
    return True


def _names(tools: Sequence[ToolCall]) -> str:
    return ", ".join(t.name for t in tools) or "none"


def _reason(score: float, matched: int, total: int, actual: Sequence[ToolCall], expected: Sequence[ToolCall],
            policy: Optional[MatchPolicy] = None) -> str:
    if policy == MatchPolicy.ORDERED_PARTIAL:
        # Denominator is the longer sequence, not the expected count
        fraction = (f"{matched}/{total} positions matched in order "
                    f"({len(expected)} expected, {len(actual)} called)")
    else:
        fraction = f"{matched}/{total} expected tools were called correctly"
    if score >= 1.0:
        return f"Perfect match: {fraction} ({_names(expected)})."
    if score <= 0.0:
        return f"No match: {fraction}. Expected: {_names(expected)}, Called: {_names(actual)}."
    return f"Partial match: {fraction}. Expected: {_names(expected)}, Called: {_names(actual)}."


# ==============================================================================
# POLICY SCORERS
# ==============================================================================
# Each scorer returns (score, matched, total). Lengths were already checked for
# the exact policies before dispatch.
# ==============================================================================

def _score_basic(actual, expected, fields):
    if not expected:
        # Unexpected calls with nothing expected are penalized
        return 0.0, 0, 0
    matched = sum(1 for e in expected if any(tools_match(a, e, fields) for a in actual))
    return matched / len(expected), matched, len(expected)


def _score_ordered_partial(actual, expected, fields):
    total = max(len(actual), len(expected), 1)
    matched = sum(1 for a, e in zip(actual, expected) if tools_match(a, e, fields))
    return matched / total, matched, total


def _score_ordered_exact(actual, expected, fields):
    matched = sum(1 for a, e in zip(actual, expected) if tools_match(a, e, fields))
    return (1.0 if matched == len(expected) else 0.0), matched, len(expected)


def _score_exact_unordered(actual, expected, fields):
    # Multiset equality of signatures by one-to-one pairing
    unused = list(actual)
    matched = 0
    for e in expected:
        for index, a in enumerate(unused):
            if tools_match(a, e, fields):
                del unused[index]
                matched += 1
                break
    return (1.0 if matched == len(expected) and not unused else 0.0), matched, len(expected)


_SCORERS: Dict[MatchPolicy, Callable] = {
    MatchPolicy.BASIC: _score_basic,
    MatchPolicy.EXACT_UNORDERED: _score_exact_unordered,
    MatchPolicy.ORDERED_PARTIAL: _score_ordered_partial,
    MatchPolicy.ORDERED_EXACT_STRICT: _score_ordered_exact,
}


def score_tool_calls(actual: List[ToolCall], expected: List[ToolCall], params: EvaluationParameters) -> MatchResult:
    """Score one item's actual tool calls against its expected ones.

    Precedence: nothing expected or called is a perfect score; an exact-match
    length mismatch scores zero; otherwise the policy scorer decides.
    """
    policy = MatchPolicy.from_parameters(params)

    if not actual and not expected:
        return MatchResult(1.0, "Perfect match: nothing expected or called.", policy)

    if params.should_exact_match and len(actual) != len(expected):
        return MatchResult(
            0.0,
            f"No match: 0/{len(expected)} expected tools were called correctly. "
            f"Expected {len(expected)} tool call(s) but {len(actual)} were called "
            f"(Expected: {_names(expected)}, Called: {_names(actual)}).",
            policy, 0, len(expected),
        )

    if not actual:
        return MatchResult(0.0, _reason(0.0, 0, len(expected), actual, expected), policy, 0, len(expected))

    score, matched, total = _SCORERS[policy](actual, expected, params.evaluation_params)
    return MatchResult(score, _reason(score, matched, total, actual, expected, policy), policy, matched, total)
