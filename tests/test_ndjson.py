"""Tests for the stream-json line parser."""

import json

from codebox.models import AssistantEvent, ResultEvent, SystemEvent
from codebox.ndjson import parse_ndjson_line


class TestIgnoredLines:
    def test_empty_and_blank(self):
        assert parse_ndjson_line("") is None
        assert parse_ndjson_line("   \t ") is None

    def test_malformed_json(self):
        assert parse_ndjson_line("{not json") is None
        assert parse_ndjson_line('{"type": "result"') is None

    def test_non_object_json(self):
        assert parse_ndjson_line("[1, 2, 3]") is None
        assert parse_ndjson_line('"result"') is None
        assert parse_ndjson_line("42") is None

    def test_unknown_type(self):
        assert parse_ndjson_line('{"type": "user", "message": {}}') is None
        assert parse_ndjson_line('{"no_type": true}') is None


class TestSystem:
    def test_system_init(self):
        event = parse_ndjson_line('{"type": "system", "subtype": "init", "session_id": "x"}')
        assert isinstance(event, SystemEvent)
        assert event.subtype == "init"


class TestAssistant:
    def test_text_blocks_concatenated(self):
        line = json.dumps(
            {
                "type": "assistant",
                "message": {
                    "content": [
                        {"type": "text", "text": "Creating "},
                        {"type": "text", "text": "the app"},
                    ]
                },
            }
        )
        event = parse_ndjson_line(line)
        assert isinstance(event, AssistantEvent)
        assert event.text == "Creating the app"

    def test_tool_names_appended(self):
        line = json.dumps(
            {
                "type": "assistant",
                "message": {
                    "content": [
                        {"type": "text", "text": "Writing files"},
                        {"type": "tool_use", "name": "Write", "input": {}},
                        {"type": "tool_use", "name": "Bash", "input": {}},
                    ]
                },
            }
        )
        event = parse_ndjson_line(line)
        assert isinstance(event, AssistantEvent)
        assert event.text == "Writing files [Write, Bash]"

    def test_missing_content_gives_empty_text(self):
        event = parse_ndjson_line('{"type": "assistant", "message": "oops"}')
        assert isinstance(event, AssistantEvent)
        assert event.text == ""


class TestResult:
    def test_full_result(self):
        line = json.dumps(
            {
                "type": "result",
                "subtype": "success",
                "result": "Created index.html",
                "is_error": False,
                "duration_ms": 45000,
                "num_turns": 7,
                "total_cost_usd": 0.12,
            }
        )
        event = parse_ndjson_line(line)
        assert isinstance(event, ResultEvent)
        assert event.subtype == "success"
        assert event.text == "Created index.html"
        assert event.is_error is False
        assert event.duration_ms == 45000
        assert event.num_turns == 7
        assert event.cost_usd == 0.12

    def test_error_result(self):
        event = parse_ndjson_line(
            '{"type": "result", "subtype": "error_max_turns", "is_error": true}'
        )
        assert isinstance(event, ResultEvent)
        assert event.is_error is True
        assert event.text is None

    def test_wrongly_typed_fields_are_dropped(self):
        event = parse_ndjson_line(
            '{"type": "result", "result": 5, "is_error": "yes", '
            '"duration_ms": "long", "num_turns": true, "total_cost_usd": null}'
        )
        assert isinstance(event, ResultEvent)
        assert event.text is None
        assert event.is_error is False
        assert event.duration_ms is None
        assert event.num_turns is None
        assert event.cost_usd is None

    def test_non_finite_numbers_are_dropped(self):
        event = parse_ndjson_line(
            '{"type": "result", "subtype": "success", "result": "ok", "is_error": false, '
            '"duration_ms": 1e400, "num_turns": NaN, "total_cost_usd": Infinity}'
        )
        assert isinstance(event, ResultEvent)
        assert event.text == "ok"
        assert event.duration_ms is None
        assert event.num_turns is None
        assert event.cost_usd is None

    def test_huge_integer_cost_is_dropped(self):
        event = parse_ndjson_line('{"type": "result", "num_turns": 3, "total_cost_usd": ' + "9" * 400 + "}")
        assert isinstance(event, ResultEvent)
        assert event.num_turns == 3
        assert event.cost_usd is None
