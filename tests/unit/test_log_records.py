"""
Log record helper tests
Production code: services/log_store.py (reconstruct_json, render_records, children_done)
"""
from datetime import datetime, timezone

import pytest

from fargate_e2e.models.execution_models import LogRecord

TS = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def records(*messages):
    return [LogRecord(timestamp=TS, message=m, stream="s") for m in messages]


class TestReconstructJson:

    def test_multi_line_document_after_marker(self):
        from fargate_e2e.services.log_store import reconstruct_json

        lines = records(
            "Starting task",
            '{"noise": true}',
            "--- Task Output ---",
            "{",
            '  "status": "success",',
            '  "message": "Processed: Hello!",',
            '  "input": {"n": 1}',
            "}",
            "Task finished",
        )

        assert reconstruct_json(lines, "--- Task Output ---") == {
            "status": "success", "message": "Processed: Hello!", "input": {"n": 1},
        }

    def test_document_on_marker_line(self):
        from fargate_e2e.services.log_store import reconstruct_json

        lines = records('--- Task Output --- {"status": "success"}')
        assert reconstruct_json(lines, "--- Task Output ---") == {"status": "success"}

    @pytest.mark.parametrize("messages", [
        ("no marker here", '{"status": "success"}'),
        ("--- Task Output ---", "{", '  "status": "succ'),
        (),
    ])
    def test_incomplete_output(self, messages):
        from fargate_e2e.services.log_store import reconstruct_json

        assert reconstruct_json(records(*messages), "--- Task Output ---") is None

    def test_skips_unbalanced_prefix(self):
        from fargate_e2e.services.log_store import reconstruct_json

        assert reconstruct_json(records("{ broken", '{"ok": 1}')) == {"ok": 1}


class TestRendering:

    def test_json_records_are_indented(self):
        from fargate_e2e.services.log_store import render_records

        rendered = render_records(records('{"a": 1}', "plain text  "))

        assert rendered[0] == '{\n  "a": 1\n}'
        assert rendered[1] == "plain text"

    def test_log_record_from_event(self):
        record = LogRecord.from_event({"timestamp": 1714564800000, "message": "hi\n"}, stream="s1")

        assert record.timestamp == datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)
        assert record.render() == "[12:00:00] hi"


class TestChildrenDone:

    @pytest.mark.parametrize("outputs,expected", [
        ({}, False),
        ({0: records('{"status": "success"}'), 1: []}, False),
        ({0: records('{"status": "success"}'), 1: records('{"status":"success"}')}, True),
        ({0: records("Processed item[0]: a")}, False),
    ])
    def test_children_done(self, outputs, expected):
        from fargate_e2e.services.log_store import CloudWatchLogStore

        assert CloudWatchLogStore.children_done(outputs) is expected

    @pytest.mark.parametrize("payload,index,expected", [
        ({"items": ["item-A", "item-B"]}, 1, "Processed item[1]: item-B"),
        ({"items": ["item-A"]}, 3, "Array index 3 out of range (items: 1)"),
        ({"message": "hi"}, 0, "Processed: hi (index: 0)"),
        ({}, 2, "Processed successfully (array index: 2)"),
    ])
    def test_expected_child_message(self, payload, index, expected):
        from fargate_e2e.services.scenarios.batch_array import expected_child_message

        assert expected_child_message(payload, index) == expected
