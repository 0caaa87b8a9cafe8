"""
CloudWatch Logs integration tests (moto)
Production code: services/log_store.py

Covers the "no output yet" cases (missing group, group without streams),
token + success-marker search with reset on another message, tails and
array-child fan-out.
"""
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import boto3
import pytest
from botocore.exceptions import ClientError
from moto import mock_aws

REGION = "us-east-1"
GROUP = "/ecs/worker"


@pytest.fixture
def logs():
    with mock_aws():
        yield boto3.client("logs", region_name=REGION)


def now_ms() -> int:
    return int(time.time() * 1000)


def write(logs, stream, *messages, group=GROUP):
    try:
        logs.create_log_group(logGroupName=group)
    except logs.exceptions.ResourceAlreadyExistsException:
        pass
    logs.create_log_stream(logGroupName=group, logStreamName=stream)
    base = now_ms()
    logs.put_log_events(
        logGroupName=group,
        logStreamName=stream,
        logEvents=[{"timestamp": base + i, "message": m} for i, m in enumerate(messages)],
    )


def recently():
    return datetime.now(timezone.utc) - timedelta(seconds=5)


class TestFindOutput:

    def test_missing_group_is_not_found(self, logs, clock):
        from fargate_e2e.services.log_store import CloudWatchLogStore

        store = CloudWatchLogStore(client=logs)
        records, found = store.find_output(GROUP, token="tok", since=recently(), poll_interval=5,
                                           max_attempts=3, deadline=clock.deadline())

        assert (records, found) == ([], False)
        assert clock.sleeps == [5, 5]

    def test_group_without_streams_is_not_found(self, logs, clock):
        from fargate_e2e.services.log_store import CloudWatchLogStore

        logs.create_log_group(logGroupName=GROUP)
        records, found = CloudWatchLogStore(client=logs).find_output(
            GROUP, token="tok", since=recently(), poll_interval=5, max_attempts=2, deadline=clock.deadline()
        )

        assert found is False
        assert records == []

    def test_token_then_success_marker(self, logs, clock):
        from fargate_e2e.services.log_store import CloudWatchLogStore

        write(logs, "ecs/worker/task-1",
              'Processing message: {"job_id": "other-job"}',
              '{"status": "success", "job_id": "other-job"}',
              'Processing message: {"job_id": "tok-42", "action": "test"}',
              "Working on tok-42",
              '{"status": "success", "job_id": "tok-42"}')

        records, found = CloudWatchLogStore(client=logs).find_output(
            GROUP, token="tok-42", since=recently(), poll_interval=5, max_attempts=3, deadline=clock.deadline()
        )

        assert found
        assert records[0].message.startswith("Processing message:")
        assert "tok-42" in records[0].message
        assert records[-1].message == '{"status": "success", "job_id": "tok-42"}'
        assert clock.sleeps == []

    def test_another_message_resets_the_match(self, logs, clock):
        from fargate_e2e.services.log_store import CloudWatchLogStore

        write(logs, "ecs/worker/task-1",
              'Processing message: {"job_id": "tok-42"}',
              "Error: worker crashed",
              'Processing message: {"job_id": "other-job"}',
              '{"status": "success", "job_id": "other-job"}')

        records, found = CloudWatchLogStore(client=logs).find_output(
            GROUP, token="tok-42", since=recently(), poll_interval=5, max_attempts=2, deadline=clock.deadline()
        )

        assert not found
        assert records == []

    def test_expired_deadline_is_not_found(self, logs, clock):
        from fargate_e2e.services.log_store import CloudWatchLogStore

        write(logs, "ecs/worker/task-1", 'Processing message: {"job_id": "tok"}', '{"status": "success"}')

        records, found = CloudWatchLogStore(client=logs).find_output(
            GROUP, token="tok", since=recently(), poll_interval=5, max_attempts=3, deadline=clock.deadline(0)
        )
        assert not found

    def test_deadline_inside_a_retry_keeps_partial_output(self, clock):
        from fargate_e2e.services.log_store import CloudWatchLogStore

        throttled = ClientError({"Error": {"Code": "ThrottlingException", "Message": "Rate exceeded"}},
                                "DescribeLogStreams")
        client = MagicMock()
        client.describe_log_streams.side_effect = [
            {"logStreams": [{"logStreamName": "ecs/worker/task-1"}]}, throttled, throttled, throttled,
        ]
        client.get_log_events.return_value = {
            "events": [{"timestamp": now_ms(), "message": 'Processing message: {"job_id": "tok"}'}],
        }
        deadline = clock.deadline(6)

        with patch("fargate_e2e.common.retry_utils.random.random", return_value=1.0):
            records, found = CloudWatchLogStore(client=client, deadline=deadline).find_output(
                GROUP, token="tok", since=recently(), poll_interval=5, max_attempts=5, deadline=deadline
            )

        assert found is False
        assert [r.message for r in records] == ['Processing message: {"job_id": "tok"}']
        assert deadline.expired


class TestFetching:

    def test_fetch_output_by_prefix(self, logs):
        from fargate_e2e.services.log_store import CloudWatchLogStore

        write(logs, "ecs/app/abc123", "--- Task Output ---", "{", '  "status": "success"', "}")
        write(logs, "ecs/app/zzz999", "unrelated")

        messages = [r.message for r in CloudWatchLogStore(client=logs).fetch_output(GROUP, "ecs/app/abc123")]

        assert messages == ["--- Task Output ---", "{", '  "status": "success"', "}"]

    def test_fetch_output_missing_stream_is_empty(self, logs):
        from fargate_e2e.services.log_store import CloudWatchLogStore

        logs.create_log_group(logGroupName=GROUP)
        assert list(CloudWatchLogStore(client=logs).fetch_output(GROUP, "ecs/app/nothing")) == []

    def test_tail_is_bounded(self, logs):
        from fargate_e2e.services.log_store import CloudWatchLogStore

        write(logs, "ecs/worker/task-1", *[f"line {i}" for i in range(10)])

        tail = CloudWatchLogStore(client=logs).tail(GROUP, limit=4)

        assert len(tail) == 4
        assert all(r.message.startswith("line ") for r in tail)

    def test_tail_of_missing_group(self, logs):
        from fargate_e2e.services.log_store import CloudWatchLogStore

        assert CloudWatchLogStore(client=logs).tail(GROUP, limit=4) == []

    def test_fetch_children(self, logs):
        from fargate_e2e.services.log_store import CloudWatchLogStore

        group = "/aws/batch/jobs"
        write(logs, "batch/default/child-0", "Processed item[0]: item-A", '{"status": "success"}', group=group)
        write(logs, "batch/default/child-1", "Processed item[1]: item-B", group=group)
        store = CloudWatchLogStore(client=logs)

        outputs = store.fetch_children(group, {0: "batch/default/child-0", 1: "batch/default/child-1", 2: None})

        assert [r.message for r in outputs[0]] == ["Processed item[0]: item-A", '{"status": "success"}']
        assert outputs[2] == []
        assert not CloudWatchLogStore.children_done(outputs)
