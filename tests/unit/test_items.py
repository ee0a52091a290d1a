"""
Unit Tests for Item Ingestion

Tests how loosely-shaped data points and logs from storage are normalized
into ValidItem / MalformedItem.
"""

import json

from src.evaluator.items import (
    DATA_POINTS,
    LOGS,
    MalformedItem,
    ValidItem,
    ingest_data_point,
    ingest_items,
    ingest_log,
    normalize_tool_calls,
    parse_tool_list,
)


class TestNormalizeToolCalls:
    """Tool lists from traces."""

    def test_accepts_alias_fields(self):
        tools = normalize_tool_calls([{"tool_name": "WebSearch", "args": {"q": "x"}, "result": "ok"}])

        assert tools[0].name == "WebSearch"
        assert tools[0].input_parameters == {"q": "x"}
        assert tools[0].output == "ok"

    def test_missing_fields_get_defaults(self):
        tools = normalize_tool_calls([{}])

        assert tools[0].name == ""
        assert tools[0].input_parameters == {}
        assert tools[0].output is None

    def test_non_array_becomes_empty_with_warning(self):
        warnings = []

        assert normalize_tool_calls("WebSearch", warnings, "tools_called") == []
        assert warnings == ["tools_called is not an array (str)"]

    def test_non_object_entries_are_skipped(self):
        warnings = []
        tools = normalize_tool_calls([{"name": "A"}, None, 42], warnings)

        assert [t.name for t in tools] == ["A"]
        assert len(warnings) == 2


class TestIngestDataPoint:
    """Data point field sources and fallbacks."""

    def test_reads_request_body_and_ground_truth(self):
        item = ingest_data_point({
            "id": "dp_1",
            "request_body": {"tools_called": [{"name": "A"}]},
            "ground_truth": {"expected_tools": [{"name": "B"}]},
        })

        assert isinstance(item, ValidItem)
        assert item.family == DATA_POINTS
        assert [t.name for t in item.tools_called] == ["A"]
        assert [t.name for t in item.expected_tools] == ["B"]

    def test_falls_back_to_metadata(self):
        item = ingest_data_point({
            "id": "dp_1",
            "metadata": {"tools_called": [{"name": "A"}], "expected_tools": [{"name": "B"}]},
        })

        assert [t.name for t in item.tools_called] == ["A"]
        assert [t.name for t in item.expected_tools] == ["B"]

    def test_null_ground_truth_and_metadata_become_empty(self):
        item = ingest_data_point({"id": "dp_1", "request_body": None, "ground_truth": None, "metadata": None})

        assert isinstance(item, ValidItem)
        assert item.tools_called == []
        assert item.expected_tools == []

    def test_non_array_tools_are_recorded_as_warnings(self):
        item = ingest_data_point({"id": "dp_1", "request_body": {"tools_called": "oops"}})

        assert item.tools_called == []
        assert item.warnings

    def test_record_without_id_is_malformed(self):
        item = ingest_data_point({"request_body": {}}, index=4)

        assert isinstance(item, MalformedItem)
        assert item.item_id == "data_point_4"

    def test_non_object_record_is_malformed(self):
        item = ingest_data_point(None, index=0)

        assert isinstance(item, MalformedItem)
        assert "not an object" in item.error


class TestIngestLog:
    """Log field sources."""

    def test_reads_provider_log_and_metadata(self):
        item = ingest_log({
            "id": "log_1",
            "ai_provider_request_log": {
                "request_body": {
                    "input": "hi",
                    "tools_called": [{"name": "A"}],
                    "tools": [{"type": "function", "name": "A"}],
                },
                "response_body": {"text": "hello"},
            },
            "metadata": {
                "expected_tools": [{"name": "A"}],
                "ground_truth": "hello",
            },
        })

        assert item.family == LOGS
        assert [t.name for t in item.tools_called] == ["A"]
        assert [t.name for t in item.expected_tools] == ["A"]
        assert item.request_body["input"] == "hi"
        assert item.response_body == {"text": "hello"}
        assert item.declared_tools == [{"type": "function", "name": "A"}]
        assert item.ground_truth == "hello"

    def test_metadata_tools_json_string_are_the_calls_made(self):
        """Logs stored with only metadata.tools still expose their tool calls."""
        item = ingest_log({
            "id": "log_1",
            "metadata": {"tools": json.dumps([{"name": "get_weather", "arguments": {"city": "Paris"}}])},
        })

        assert [t.name for t in item.tools_called] == ["get_weather"]
        assert item.tools_called[0].input_parameters == {"city": "Paris"}
        assert item.declared_tools == []

    def test_metadata_tools_single_object(self):
        item = ingest_log({"id": "log_1", "metadata": {"tools": {"name": "get_weather"}}})

        assert [t.name for t in item.tools_called] == ["get_weather"]

    def test_explicit_tools_called_wins_over_metadata_tools(self):
        item = ingest_log({
            "id": "log_1",
            "metadata": {"tools_called": [{"name": "A"}], "tools": [{"name": "B"}]},
        })

        assert [t.name for t in item.tools_called] == ["A"]

    def test_invalid_metadata_tools_json_is_a_warning(self):
        item = ingest_log({"id": "log_1", "metadata": {"tools": "not json"}})

        assert item.tools_called == []
        assert item.warnings == ["metadata.tools is not valid JSON"]

    def test_missing_provider_log(self):
        item = ingest_log({"id": "log_1"})

        assert isinstance(item, ValidItem)
        assert item.tools_called == []
        assert item.response_body is None


class TestParseToolList:
    def test_json_string_list_or_object(self):
        assert parse_tool_list('[{"name": "A"}]') == [{"name": "A"}]
        assert parse_tool_list([{"name": "A"}]) == [{"name": "A"}]
        assert parse_tool_list({"name": "A"}) == [{"name": "A"}]

    def test_invalid_values_become_empty(self):
        assert parse_tool_list("not json") == []
        assert parse_tool_list(None) == []
        assert parse_tool_list(7) == []


class TestIngestItems:
    def test_keeps_fetch_order_and_tags_variants(self):
        items = ingest_items([{"id": "a"}, None, {"id": "c"}], DATA_POINTS)

        assert [i.item_id for i in items] == ["a", "data_point_1", "c"]
        assert isinstance(items[1], MalformedItem)

    def test_non_list_batch_is_empty(self):
        assert ingest_items(None, LOGS) == []
