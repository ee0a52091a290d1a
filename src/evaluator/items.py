"""
Ingestion boundary for evaluatable items.

Storage hands back data points and logs as loosely-shaped records (dicts or
pydantic models, with nullable or misshapen metadata). Everything is turned
into a ``ValidItem`` or a ``MalformedItem`` here, so the matcher and judge only
ever see well-formed sequences.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from .models import ToolCall

logger = logging.getLogger(__name__)

DATA_POINTS = "data_points"
LOGS = "logs"


@dataclass(frozen=True)
class ValidItem:
    item_id: str
    family: str
    tools_called: List[ToolCall] = field(default_factory=list)
    expected_tools: List[ToolCall] = field(default_factory=list)
    request_body: Dict[str, Any] = field(default_factory=dict)
    response_body: Any = None
    ground_truth: Any = None
    # Tool definitions offered to the model (request_body.tools)
    declared_tools: List[Any] = field(default_factory=list)
    # Field-level problems that were normalized away
    warnings: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class MalformedItem:
    item_id: str
    family: str
    error: str


EvaluatableItem = Union[ValidItem, MalformedItem]


def _as_dict(value: Any) -> Optional[Dict[str, Any]]:
    if isinstance(value, dict):
        return value
    if hasattr(value, "model_dump"):
        return value.model_dump()
    return None


def _mapping(value: Any) -> Dict[str, Any]:
    return _as_dict(value) or {}


def normalize_tool_calls(raw: Any, warnings: Optional[List[str]] = None, label: str = "tools") -> List[ToolCall]:
    """Coerce a recorded tool list into ToolCalls; anything unusable becomes empty."""
    if raw is None:
        return []
    if not isinstance(raw, list):
        if warnings is not None:
            warnings.append(f"{label} is not an array ({type(raw).__name__})")
        return []
    calls = []
    for entry in raw:
        if isinstance(entry, ToolCall):
            calls.append(entry)
        elif isinstance(entry, dict):
            calls.append(ToolCall.model_validate(entry))
        elif warnings is not None:
            warnings.append(f"{label} entry skipped ({type(entry).__name__})")
    return calls


def parse_tool_list(raw: Any, warnings: Optional[List[str]] = None, label: str = "tools") -> List[Any]:
    """A tool list stored as a JSON string, a list, or a single object."""
    if raw is None or raw == "":
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            if warnings is not None:
                warnings.append(f"{label} is not valid JSON")
            return []
    if isinstance(raw, list):
        return raw
    if isinstance(raw, dict):
        return [raw]
    return []


def _first_present(*candidates: Any) -> Any:
    for candidate in candidates:
        if candidate is not None:
            return candidate
    return None


def _item_id(record: Dict[str, Any]) -> Optional[str]:
    item_id = record.get("id")
    if item_id is None or item_id == "":
        return None
    return str(item_id)


def ingest_data_point(record: Any, index: int = 0) -> EvaluatableItem:
    data = _as_dict(record)
    if data is None:
        return MalformedItem(item_id=f"data_point_{index}", family=DATA_POINTS,
                             error=f"record is not an object ({type(record).__name__})")
    item_id = _item_id(data)
    if item_id is None:
        return MalformedItem(item_id=f"data_point_{index}", family=DATA_POINTS, error="record has no id")

    warnings: List[str] = []
    request_body = _mapping(data.get("request_body"))
    metadata = _mapping(data.get("metadata"))
    ground_truth = data.get("ground_truth")
    truth = _mapping(ground_truth)

    return ValidItem(
        item_id=item_id,
        family=DATA_POINTS,
        tools_called=normalize_tool_calls(
            _first_present(request_body.get("tools_called"), metadata.get("tools_called")),
            warnings, "tools_called"),
        expected_tools=normalize_tool_calls(
            _first_present(truth.get("expected_tools"), metadata.get("expected_tools")),
            warnings, "expected_tools"),
        request_body=request_body,
        response_body=_first_present(metadata.get("response_body"), data.get("response_body")),
        ground_truth=ground_truth,
        declared_tools=parse_tool_list(request_body.get("tools")),
        warnings=warnings,
    )


def ingest_log(record: Any, index: int = 0) -> EvaluatableItem:
    data = _as_dict(record)
    if data is None:
        return MalformedItem(item_id=f"log_{index}", family=LOGS,
                             error=f"record is not an object ({type(record).__name__})")
    item_id = _item_id(data)
    if item_id is None:
        return MalformedItem(item_id=f"log_{index}", family=LOGS, error="record has no id")

    warnings: List[str] = []
    provider_log = _mapping(data.get("ai_provider_request_log"))
    request_body = _mapping(provider_log.get("request_body"))
    metadata = _mapping(data.get("metadata"))

    tools_called = _first_present(request_body.get("tools_called"), metadata.get("tools_called"))
    if tools_called is None and metadata.get("tools") is not None:
        # Logs record the calls the agent made under metadata.tools
        tools_called = parse_tool_list(metadata.get("tools"), warnings, "metadata.tools")

    return ValidItem(
        item_id=item_id,
        family=LOGS,
        tools_called=normalize_tool_calls(tools_called, warnings, "tools_called"),
        expected_tools=normalize_tool_calls(metadata.get("expected_tools"), warnings, "expected_tools"),
        request_body=request_body,
        response_body=provider_log.get("response_body"),
        ground_truth=metadata.get("ground_truth"),
        declared_tools=parse_tool_list(request_body.get("tools")),
        warnings=warnings,
    )


def ingest_items(records: Any, family: str) -> List[EvaluatableItem]:
    """Normalize a fetched batch, keeping fetch order."""
    if not isinstance(records, list):
        logger.warning(f"Expected a list of {family}, got {type(records).__name__}; treating as empty")
        return []
    ingest = ingest_data_point if family == DATA_POINTS else ingest_log
    return [ingest(record, index) for index, record in enumerate(records)]
