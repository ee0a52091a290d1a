"""
LLM Judge Client

Grades one item with an external judge model speaking the OpenAI responses
API. Used by argument correctness and any other LLM-graded method.

==============================================================================
FEATURES IMPLEMENTED IN THIS MODULE:
==============================================================================

1. PROMPT BUILDING (Feature: llm-judge)
   - Embeds the request input, the agent's output, the tools called and the
     tool definitions offered to the model
   - Asks for {score, reasoning, perTool?} as JSON only

2. ROBUST RESPONSE PARSING (Feature: llm-judge)
   - Reads the first text block from output[].content[].text
   - Tolerates code fences, <think> blocks and prose around the JSON
   - Validates the payload against JudgeVerdict

3. RECOVERED FAILURES (Feature: judge-fallback)
   - Any failure returns score 0.5 with metadata.fallback = True
   - errorType: api_error (non-2xx or transport), parse_error, no_api_key
   - Nothing raised in here ever reaches the orchestrator

4. RETRIES (Feature: rate-limit-retry)
   - 429 and 5xx responses plus transport errors go through
     retry_with_backoff before falling back; retryInfo records how many

==============================================================================
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from . import config
from .comparison import to_json_safe
from .items import ValidItem
from .models import ArgumentCorrectnessParameters, EvaluationParameters, JudgeResult, JudgeVerdict
from .retry import RetriesExhausted, retry_with_backoff

logger = logging.getLogger(__name__)


class JudgeAPIError(Exception):
    """Judge endpoint answered with a non-2xx status."""

    def __init__(self, status_code: int, text: str):
        super().__init__(f"Judge API returned {status_code}: {text[:200]}")
        self.status_code = status_code
        self.text = text


class JudgeParseError(Exception):
    """Judge answered but the payload is unusable."""


def _is_retryable(error: Exception) -> bool:
    if isinstance(error, JudgeAPIError):
        return error.status_code == 429 or error.status_code >= 500
    return isinstance(error, httpx.TransportError)


# ==============================================================================
# PROMPTS
# ==============================================================================

JUDGE_SYSTEM_PROMPT = (
    "You are an expert evaluator for agentic systems. You judge whether an AI agent "
    "called its tools with correct arguments given the user's request. Be strict and "
    "consistent, and answer with JSON only."
)

ARGUMENT_CORRECTNESS_TEMPLATE = """Evaluate the arguments the agent passed to each tool call.

## User input
{input}

## Agent output
{actual_output}

## Tools called
{tools_called}

## Available tools
{declared_tools}

For every tool call decide whether its arguments are correct for the user's input.
Respond with a JSON object of this exact shape:
{{"score": <number between 0 and 1>, "reasoning": "<short explanation>",
  "perTool": [{{"tool": "<tool name>", "correct": <true|false>, "reasoning": "<why>"}}]}}
"""


def _render(value: Any) -> str:
    if value is None or value == "" or value == [] or value == {}:
        return "(none)"
    if isinstance(value, str):
        return value
    return json.dumps(to_json_safe(value), indent=2, ensure_ascii=False)


def build_judge_inputs(item: ValidItem, params: EvaluationParameters) -> Dict[str, Any]:
    """Values shown to the judge; explicit parameter overrides win over the item."""
    overrides = params if isinstance(params, ArgumentCorrectnessParameters) else None
    request_input = item.request_body.get("input")
    if request_input is None:
        request_input = item.request_body.get("messages")

    actual_output = item.response_body if item.response_body not in (None, "", {}) else item.ground_truth
    tools_called = [t.as_json() for t in item.tools_called]

    if overrides is not None:
        if overrides.input is not None:
            request_input = overrides.input
        if overrides.actual_output is not None:
            actual_output = overrides.actual_output
        if overrides.tools_called is not None:
            tools_called = overrides.tools_called

    return {
        "input": request_input,
        "actual_output": actual_output,
        "tools_called": tools_called,
        "declared_tools": item.declared_tools,
    }


def build_argument_correctness_prompt(item: ValidItem, params: EvaluationParameters) -> str:
    inputs = build_judge_inputs(item, params)
    return ARGUMENT_CORRECTNESS_TEMPLATE.format(**{key: _render(value) for key, value in inputs.items()})


# ==============================================================================
# RESPONSE PARSING
# ==============================================================================

def _extract_json(text: str) -> dict:
    """Extract JSON from LLM output that may contain extra text.

    Handles clean JSON, markdown code fences, <think>...</think> blocks from
    reasoning models, and prose around a single JSON object.
    """
    text = text.strip()

    # Strip <think>...</think> blocks, then any unclosed <think>
    text = re.sub(r'<think>.*?</think>', '', text, flags=re.DOTALL).strip()
    text = re.sub(r'<think>.*', '', text, flags=re.DOTALL).strip()

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    fence_match = re.search(r'```(?:json)?\s*\n?(.*?)\n?\s*```', text, re.DOTALL)
    if fence_match:
        try:
            return json.loads(fence_match.group(1).strip())
        except json.JSONDecodeError:
            pass

    brace_match = re.search(r'\{.*\}', text, re.DOTALL)
    if brace_match:
        try:
            return json.loads(brace_match.group(0))
        except json.JSONDecodeError:
            pass

    raise json.JSONDecodeError("No valid JSON found in LLM output", text, 0)


def extract_output_text(body: Any) -> str:
    """First non-empty ``output[].content[].text`` of a responses API body."""
    if isinstance(body, dict):
        for block in body.get("output") or []:
            if not isinstance(block, dict):
                continue
            for part in block.get("content") or []:
                if isinstance(part, dict) and isinstance(part.get("text"), str) and part["text"].strip():
                    return part["text"]
    raise JudgeParseError("No valid message output from judge")


def parse_verdict(body: Any) -> JudgeVerdict:
    text = extract_output_text(body)
    try:
        payload = _extract_json(text)
    except json.JSONDecodeError as e:
        raise JudgeParseError(f"Judge output is not JSON: {text[:200]}") from e
    if not isinstance(payload, dict):
        raise JudgeParseError("Judge output is not a JSON object")
    try:
        return JudgeVerdict.model_validate(payload)
    except ValidationError as e:
        raise JudgeParseError(f"Judge output failed validation: {e.error_count()} error(s): {str(e)[:300]}") from e


def score_verdict(verdict: JudgeVerdict) -> float:
    """Per-tool verdicts, when present, decide the score over the judge's own number."""
    if verdict.per_tool:
        return sum(1 for t in verdict.per_tool if t.correct) / len(verdict.per_tool)
    return verdict.score


# ==============================================================================
# CLIENT
# ==============================================================================

class LLMJudgeClient:
    """Async judge client. Construct once and share across runs; it holds no per-run state."""

    def __init__(self, base_url: str = config.LLM_BASE_URL, api_key: str = config.LLM_API_KEY,
                 default_model: str = config.LLM_MODEL, timeout: float = config.JUDGE_TIMEOUT_SECONDS,
                 max_attempts: int = config.RETRY_MAX_ATTEMPTS, retry_base_delay: float = config.RETRY_BASE_DELAY,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.default_model = default_model
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self._transport = transport

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/responses"

    def build_request_body(self, prompt: str, params: EvaluationParameters) -> Dict[str, Any]:
        return {
            "model": params.model or self.default_model,
            "temperature": params.temperature,
            "max_tokens": params.max_tokens,
            "input": [
                {"role": "system", "content": JUDGE_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
        }

    async def _post(self, body: Dict[str, Any]) -> Any:
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(self.endpoint, json=body, headers=headers)
        if response.status_code < 200 or response.status_code >= 300:
            raise JudgeAPIError(response.status_code, response.text)
        try:
            return response.json()
        except ValueError as e:
            raise JudgeParseError(f"Judge response is not JSON: {response.text[:200]}") from e

    async def judge(self, item: ValidItem, params: EvaluationParameters) -> JudgeResult:
        """Grade one item. Always returns; failures come back as fallback results."""
        if not self.api_key:
            return self._fallback("no_api_key", "Evaluation failed - no judge API key configured")

        body = self.build_request_body(build_argument_correctness_prompt(item, params), params)
        retry_count = 0

        async def _on_judge_retry(attempt: int, max_attempts: int, wait_time: float, error: str):
            logger.warning(
                f"Judge call for {item.item_id} failed (attempt {attempt}/{max_attempts}), "
                f"retrying in {wait_time:.1f}s: {error}"
            )

        try:
            outcome = await retry_with_backoff(
                self._post, body,
                max_attempts=self.max_attempts,
                base_delay=self.retry_base_delay,
                is_retryable=_is_retryable,
                on_retry=_on_judge_retry,
            )
            retry_count = outcome.retry_count
            verdict = parse_verdict(outcome.result)
        except RetriesExhausted as e:
            return self._from_error(e.last_error, retry_count=e.attempts - 1)
        except (JudgeAPIError, JudgeParseError, httpx.HTTPError) as e:
            return self._from_error(e, retry_count=retry_count)
        except Exception as e:
            logger.exception(f"Unexpected judge failure for {item.item_id}")
            return self._fallback("unknown_error", "Evaluation failed - unexpected judge error",
                                  f"{type(e).__name__}: {e}", retry_count)

        metadata: Dict[str, Any] = {"model": body["model"]}
        if retry_count:
            metadata["retryInfo"] = {"retryCount": retry_count, "maxRetries": self.max_attempts - 1}
        if params.verbose_mode:
            logger.info(f"Judge verdict for {item.item_id}: score={verdict.score} per_tool={verdict.per_tool}")
        return JudgeResult(
            score=score_verdict(verdict),
            reasoning=verdict.reasoning,
            per_tool=verdict.per_tool,
            metadata=metadata,
        )

    def _from_error(self, error: Exception, retry_count: int = 0) -> JudgeResult:
        if isinstance(error, JudgeParseError):
            return self._fallback("parse_error", "Evaluation failed - could not parse judge response",
                                  str(error), retry_count)
        if isinstance(error, JudgeAPIError):
            return self._fallback("api_error", "Evaluation failed - judge API error", error.text, retry_count)
        return self._fallback("api_error", "Evaluation failed - judge API unreachable",
                              f"{type(error).__name__}: {error}", retry_count)

    def _fallback(self, error_type: str, reasoning: str, details: Optional[str] = None,
                  retry_count: int = 0) -> JudgeResult:
        metadata: Dict[str, Any] = {"fallback": True, "errorType": error_type}
        if details:
            metadata["errorDetails"] = details
        if retry_count:
            metadata["retryInfo"] = {"retryCount": retry_count, "maxRetries": self.max_attempts - 1}
            reasoning = f"{reasoning} (retried {retry_count}/{self.max_attempts - 1} times)"
        logger.warning(f"Judge fallback ({error_type}): {(details or reasoning)[:200]}")
        return JudgeResult(score=config.FALLBACK_SCORE, reasoning=reasoning, metadata=metadata)


def get_judge_client(**kwargs) -> LLMJudgeClient:
    """Build a judge client from config, with keyword overrides."""
    return LLMJudgeClient(**kwargs)
