"""
Evaluation Orchestrator

Owns the lifecycle of one evaluation run: create it, fetch the dataset items,
score every item, persist per-item outputs, aggregate and finalize.

==============================================================================
FEATURES IMPLEMENTED IN THIS MODULE:
==============================================================================

1. RUN LIFECYCLE (Feature: run-lifecycle)
   - pending -> running -> completed | failed, checked on every write
   - Terminal states are never left; a failed re-read after completion is
     logged, never turned into a failure

2. FAILURE POLICY (Feature: partial-failure)
   - Run creation failure propagates untouched (nothing to roll back)
   - Fetch and finalize failures mark the run failed with results.error,
     best effort, then re-raise the ORIGINAL error
   - Unexpected ingestion or aggregation errors are treated the same way
   - Item scoring failures become fallback scores (0.5, metadata.fallback)
   - Output persistence failures are logged and skipped

3. BATCHED JUDGE SCORING (Feature: async-batches)
   - Judge methods with async_mode score batch_size items concurrently
   - Outputs are still written in fetch order

4. CANCELLATION (Feature: cancel-evaluation)
   - Optional asyncio.Event checked before each item/batch and before
     finalizing; the run ends failed with errorType "cancelled"

5. PER-ITEM AUDIT TRAIL (Feature: evaluation-outputs)
   - Each output records threshold, strict_mode, timing and evaluated_at,
     plus per-item verbose logs when verbose_mode is on
   - Judge outputs also keep the input, output and tool calls the judge saw
     and the judge metadata

==============================================================================
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from . import config
from .comparison import to_json_safe
from .items import DATA_POINTS, EvaluatableItem, MalformedItem, ValidItem, ingest_items
from .judge_client import LLMJudgeClient, build_judge_inputs
from .methods import (
    JUDGE,
    MATCHER,
    EvaluationMethodDefinition,
    get_method_definition,
    get_method_details,
    get_parameter_schema,
    list_evaluation_methods,
    validate_parameters,
)
from .models import (
    DataPointOutputCreate,
    EvaluationParameters,
    EvaluationRequest,
    EvaluationResults,
    EvaluationRun,
    EvaluationRunCreate,
    EvaluationRunStatus,
    EvaluationRunUpdate,
    LogOutputCreate,
    ScoreRecord,
)
from .storage import StorageConnector
from .tool_matcher import score_tool_calls

logger = logging.getLogger(__name__)


class EvaluationCancelledError(Exception):
    """The caller cancelled the run before it completed."""


class InvalidStatusTransition(Exception):
    """A lifecycle write would leave a terminal state or skip a step."""


# ==============================================================================
# IN-FLIGHT RUN STATE (NOT PERSISTED)
# ==============================================================================
# Tracks the status this orchestration last wrote successfully, so transition
# checks never depend on a storage round-trip.
# ==============================================================================
@dataclass
class _RunState:
    run_id: str
    status: EvaluationRunStatus
    family: str


@dataclass
class _ScoredItem:
    item: EvaluatableItem
    record: ScoreRecord
    execution_time_ms: int
    verbose_logs: List[str]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _error_message(error: BaseException) -> str:
    return str(error) or type(error).__name__


def _record_id(record: Any) -> Optional[str]:
    if isinstance(record, dict):
        value = record.get("id")
    else:
        value = getattr(record, "id", None)
    return str(value) if value is not None else None


class EvaluatorService:
    """Runs evaluation methods against a storage connector.

    The judge client is injected once; the storage connector is passed per
    call so one service can serve several backends.
    """

    def __init__(self, judge_client: Optional[LLMJudgeClient] = None):
        self.judge_client = judge_client if judge_client is not None else LLMJudgeClient()

    # ==========================================================================
    # Method registry passthroughs
    # ==========================================================================

    def list_methods(self):
        return list_evaluation_methods()

    def get_method_details(self, method: str):
        return get_method_details(method)

    def get_parameter_schema(self, method: str):
        return get_parameter_schema(method)

    # ==========================================================================
    # Orchestration
    # ==========================================================================

    def prepare(self, request: EvaluationRequest) -> Tuple[EvaluationMethodDefinition, EvaluationParameters]:
        """Resolve the method and validate its parameters. Raises ValueError on bad input."""
        definition = get_method_definition(request.evaluation_method)
        params = validate_parameters(request.evaluation_method, request.parameters)
        return definition, params

    async def evaluate(self, request: EvaluationRequest, storage: StorageConnector,
                       cancel_event: Optional[asyncio.Event] = None) -> EvaluationRun:
        """Execute one evaluation run end to end and return the stored run.

        Raises:
            ValueError: unknown method or invalid parameters (before any write)
            EvaluationCancelledError: cancel_event was set during the run
            Exception: setup, fetch or finalize errors from the connector
        """
        definition, params = self.prepare(request)
        family = request.item_source or definition.item_source

        created_at = _now()
        run = await storage.create_evaluation_run(EvaluationRunCreate(
            dataset_id=request.dataset_id,
            agent_id=request.agent_id,
            evaluation_method=definition.method.value,
            name=request.name or f"{definition.name} Evaluation - {created_at.isoformat()}",
            description=request.description or f"{definition.name} evaluation of dataset {request.dataset_id}",
            metadata={"parameters": params.model_dump(mode="json"), "item_source": family},
        ))
        state = _RunState(run_id=run.id, status=EvaluationRunStatus.pending, family=family)
        logger.info(f"Created evaluation run {run.id} ({definition.method.value}) for dataset {request.dataset_id}")

        try:
            await self._transition(storage, state, EvaluationRunStatus.running, started_at=_now())
            records = await self._fetch_items(storage, family, request.dataset_id)
        except Exception as e:
            logger.error(f"Evaluation run {run.id} failed before scoring: {_error_message(e)}")
            await self._mark_failed(storage, state, _error_message(e))
            raise

        try:
            items = ingest_items(records, family)
            logger.info(f"Evaluation run {run.id}: scoring {len(items)} {family}")
            scores, output_ids = await self._score_items(storage, state, definition, params, items, cancel_event)
            self._check_cancelled(cancel_event)
            results = EvaluationResults.from_scores(
                scores,
                total_items=len(items),
                threshold_used=params.threshold_used,
                evaluation_outputs=output_ids,
            )
        except EvaluationCancelledError as e:
            logger.warning(f"Evaluation run {run.id} cancelled")
            await self._mark_failed(storage, state, _error_message(e), error_type="cancelled")
            raise
        except Exception as e:
            logger.error(f"Evaluation run {run.id} failed while scoring: {_error_message(e)}")
            await self._mark_failed(storage, state, _error_message(e))
            raise

        try:
            final = await self._transition(
                storage, state, EvaluationRunStatus.completed,
                results=results.to_results(family),
                completed_at=_now(),
            )
        except Exception as e:
            logger.error(f"Evaluation run {run.id} could not be finalized: {_error_message(e)}")
            await self._mark_failed(storage, state, _error_message(e))
            raise

        logger.info(
            f"Evaluation run {run.id} completed: {results.evaluated_items} evaluated, "
            f"average {results.average_score:.3f}, {results.passed_count} passed, "
            f"{results.fallback_count} fallback"
        )
        return await self._reread(storage, run.id, final)

    # ==========================================================================
    # Lifecycle writes
    # ==========================================================================

    async def _transition(self, storage: StorageConnector, state: _RunState, target: EvaluationRunStatus,
                          **fields) -> EvaluationRun:
        if not state.status.can_transition_to(target):
            raise InvalidStatusTransition(
                f"Run {state.run_id} cannot move from {state.status.value} to {target.value}"
            )
        updated = await storage.update_evaluation_run(state.run_id, EvaluationRunUpdate(status=target, **fields))
        state.status = target
        logger.debug(f"Run {state.run_id} -> {target.value}")
        return updated

    async def _mark_failed(self, storage: StorageConnector, state: _RunState, message: str,
                           error_type: Optional[str] = None) -> None:
        """Best-effort FAILED write; never raises so the caller's error is the one that surfaces."""
        if state.status.is_terminal:
            logger.warning(f"Run {state.run_id} already {state.status.value}, not marking failed")
            return
        results: Dict[str, Any] = {"error": message}
        if error_type:
            results["errorType"] = error_type
        try:
            await self._transition(storage, state, EvaluationRunStatus.failed, results=results, completed_at=_now())
        except Exception as e:
            logger.error(f"Could not mark run {state.run_id} as failed: {_error_message(e)}")

    async def _fetch_items(self, storage: StorageConnector, family: str, dataset_id: str) -> Any:
        if family == DATA_POINTS:
            return await storage.get_data_points(dataset_id, {})
        return await storage.get_dataset_logs(dataset_id, {})

    async def _reread(self, storage: StorageConnector, run_id: str, final: EvaluationRun) -> EvaluationRun:
        """Storage-side fields are authoritative; fall back to the finalize result if the read fails."""
        try:
            runs = await storage.get_evaluation_runs({"id": run_id})
        except Exception as e:
            logger.warning(f"Could not re-read run {run_id} after completion: {_error_message(e)}")
            return final
        for candidate in runs or []:
            if _record_id(candidate) == run_id:
                return candidate
        logger.warning(f"Run {run_id} not returned by storage after completion")
        return final

    @staticmethod
    def _check_cancelled(cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise EvaluationCancelledError("Evaluation cancelled")

    # ==========================================================================
    # Scoring
    # ==========================================================================

    async def _score_items(self, storage: StorageConnector, state: _RunState,
                           definition: EvaluationMethodDefinition, params: EvaluationParameters,
                           items: Sequence[EvaluatableItem],
                           cancel_event: Optional[asyncio.Event]) -> Tuple[List[ScoreRecord], List[str]]:
        scores: List[ScoreRecord] = []
        output_ids: List[str] = []
        batch_size = params.batch_size if definition.scorer == JUDGE and params.async_mode else 1

        for start in range(0, len(items), batch_size):
            self._check_cancelled(cancel_event)
            batch = items[start:start + batch_size]
            if len(batch) == 1:
                scored_batch = [await self._timed_score(definition, params, batch[0])]
            else:
                scored_batch = await asyncio.gather(*(self._timed_score(definition, params, item) for item in batch))

            for scored in scored_batch:
                scores.append(scored.record)
                output_id = await self._persist_output(storage, state, definition, params, scored)
                if output_id:
                    output_ids.append(output_id)

        return scores, output_ids

    async def _timed_score(self, definition: EvaluationMethodDefinition, params: EvaluationParameters,
                           item: EvaluatableItem) -> _ScoredItem:
        verbose_logs: List[str] = []
        started = time.perf_counter()
        record = await self._score_item(definition, params, item, verbose_logs)
        elapsed_ms = int(round((time.perf_counter() - started) * 1000))
        return _ScoredItem(item=item, record=record, execution_time_ms=elapsed_ms, verbose_logs=verbose_logs)

    async def _score_item(self, definition: EvaluationMethodDefinition, params: EvaluationParameters,
                          item: EvaluatableItem, verbose_logs: Optional[List[str]] = None) -> ScoreRecord:
        """Score one item. Never raises: failures become fallback records."""
        notes = verbose_logs if verbose_logs is not None and params.verbose_mode else None

        if isinstance(item, MalformedItem):
            logger.warning(f"Malformed item {item.item_id}: {item.error}")
            if notes is not None:
                notes.append(f"Malformed item: {item.error}")
            return self._fallback_record(item.item_id, "malformed_item", item.error)

        if notes is not None:
            notes.append(f"Scoring {item.item_id} with {definition.method.value} ({definition.scorer})")
            notes.extend(f"Warning: {w}" for w in item.warnings)
        try:
            if definition.scorer == MATCHER:
                record = self._score_with_matcher(item, params)
            else:
                record = await self._score_with_judge(item, params)
        except Exception as e:
            logger.warning(f"Scoring failed for {item.item_id}, using fallback: {type(e).__name__}: {e}")
            if notes is not None:
                notes.append(f"Scoring failed: {type(e).__name__}: {e}")
            return self._fallback_record(item.item_id, "evaluation_error", f"{type(e).__name__}: {e}")

        message = f"Scored {item.item_id}: {record.score:.3f} ({record.reason or 'no reason'})"
        if notes is not None:
            notes.append(message)
            logger.info(message)
        else:
            logger.debug(message)
        return record

    def _score_with_matcher(self, item: ValidItem, params: EvaluationParameters) -> ScoreRecord:
        result = score_tool_calls(item.tools_called, item.expected_tools, params)
        metadata: Dict[str, Any] = {"policy": result.policy.value}
        if item.warnings:
            metadata["warnings"] = list(item.warnings)
        return ScoreRecord(
            item_id=item.item_id,
            score=result.score,
            reason=result.reason if params.include_reason else None,
            metadata=metadata,
            tools_called=[t.as_json() for t in item.tools_called],
            expected_tools=[t.as_json() for t in item.expected_tools],
        )

    async def _score_with_judge(self, item: ValidItem, params: EvaluationParameters) -> ScoreRecord:
        result = await self.judge_client.judge(item, params)
        return ScoreRecord(
            item_id=item.item_id,
            score=result.score,
            reason=result.reasoning if params.include_reason else None,
            metadata=dict(result.metadata),
            tools_called=[t.as_json() for t in item.tools_called],
            per_tool=result.per_tool,
        )

    @staticmethod
    def _fallback_record(item_id: str, error_type: str, details: str) -> ScoreRecord:
        return ScoreRecord(
            item_id=item_id,
            score=config.FALLBACK_SCORE,
            reason=f"Evaluation failed - {details}",
            metadata={"fallback": True, "errorType": error_type, "errorDetails": details},
        )

    # ==========================================================================
    # Per-item outputs
    # ==========================================================================

    def _build_output(self, state: _RunState, definition: EvaluationMethodDefinition,
                      params: EvaluationParameters, scored: _ScoredItem) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """The stored output and its audit metadata for one scored item."""
        record = scored.record
        elapsed_ms = scored.execution_time_ms

        output = record.model_dump(mode="json", exclude={"item_id", "metadata"}, exclude_none=True)
        output.update({
            "passed": record.score >= params.threshold_used,
            "threshold": params.threshold_used,
            "strict_mode": params.strict_mode,
            "execution_time": elapsed_ms,
            "execution_time_ms": elapsed_ms,
            "evaluated_at": _now().isoformat(),
        })

        metadata: Dict[str, Any] = {
            "evaluation_method": definition.method.value,
            "evaluation_run_id": state.run_id,
            "parameters": params.model_dump(mode="json"),
            "execution_time": elapsed_ms,
            "execution_time_ms": elapsed_ms,
            **record.metadata,
        }
        if definition.scorer == JUDGE and isinstance(scored.item, ValidItem):
            inputs = build_judge_inputs(scored.item, params)
            metadata["input"] = to_json_safe(inputs["input"])
            metadata["actual_output"] = to_json_safe(inputs["actual_output"])
            metadata["tools_called"] = to_json_safe(inputs["tools_called"])
            metadata["judge_metadata"] = dict(record.metadata)
        if params.verbose_mode:
            metadata["verbose_logs"] = list(scored.verbose_logs)
        return output, metadata

    async def _persist_output(self, storage: StorageConnector, state: _RunState,
                              definition: EvaluationMethodDefinition, params: EvaluationParameters,
                              scored: _ScoredItem) -> Optional[str]:
        """Write one per-item output. Failures are logged, never raised."""
        record = scored.record
        try:
            output, metadata = self._build_output(state, definition, params, scored)
            if state.family == DATA_POINTS:
                created = await storage.create_data_point_output(state.run_id, DataPointOutputCreate(
                    data_point_id=record.item_id, output=output, score=record.score, metadata=metadata,
                ))
            else:
                created = await storage.create_log_output(state.run_id, LogOutputCreate(
                    log_id=record.item_id, output=output, score=record.score, metadata=metadata,
                ))
        except Exception as e:
            logger.warning(f"Failed to persist output for {record.item_id} in run {state.run_id}: {_error_message(e)}")
            return None
        return _record_id(created)


def get_evaluator_service(judge_client: Optional[LLMJudgeClient] = None) -> EvaluatorService:
    """Build an evaluator service. Each call returns a fresh instance."""
    return EvaluatorService(judge_client=judge_client)
