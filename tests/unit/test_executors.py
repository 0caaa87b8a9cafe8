"""
Executor tests with mocked boto3 clients
Production code: services/executors/{ecs_task,stepfunctions,batch_jobs,eventbridge}.py

ECS, Step Functions and Batch state sequences are scripted with MagicMock;
the moto-backed SQS/EventBridge/Logs tests live in tests/integration.
"""
import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from fargate_e2e.common.exceptions import (
    NotFoundError,
    SubmissionError,
    TransientError,
)
from fargate_e2e.models.execution_models import ExecutionState, Submission

TASK_ARN = "arn:aws:ecs:us-east-1:123456789012:task/demo/abc123"
SM_ARN = "arn:aws:states:us-east-1:123456789012:stateMachine:demo"


def stopped_task(exit_code, reason="Essential container in task exited"):
    return {
        "taskArn": TASK_ARN,
        "lastStatus": "STOPPED",
        "desiredStatus": "STOPPED",
        "stoppedReason": reason,
        "containers": [{"name": "app", "exitCode": exit_code}],
    }


class TestEcsTaskExecutor:

    def _executor(self, client, clock):
        from fargate_e2e.services.executors.ecs_task import EcsTaskExecutor

        return EcsTaskExecutor(
            cluster="demo", container_name="app", subnets=["subnet-1"], security_group="sg-1",
            client=client, deadline=clock.deadline(),
        )

    def test_submit_injects_task_input(self, clock):
        client = MagicMock()
        client.run_task.return_value = {"tasks": [{"taskArn": TASK_ARN}], "failures": []}

        handle = self._executor(client, clock).submit(
            Submission(target="hello-task:3", payload={"message": "Hello!"})
        )

        assert handle == TASK_ARN
        kwargs = client.run_task.call_args.kwargs
        assert kwargs["launchType"] == "FARGATE"
        assert kwargs["networkConfiguration"]["awsvpcConfiguration"] == {
            "subnets": ["subnet-1"], "assignPublicIp": "ENABLED", "securityGroups": ["sg-1"],
        }
        override = kwargs["overrides"]["containerOverrides"][0]
        assert override["name"] == "app"
        assert json.loads(override["environment"][0]["value"]) == {"message": "Hello!"}

    def test_submit_failures_are_reported_verbatim(self, clock):
        client = MagicMock()
        client.run_task.return_value = {
            "tasks": [], "failures": [{"arn": "arn:task-def", "reason": "RESOURCE:MEMORY"}],
        }

        with pytest.raises(SubmissionError) as exc_info:
            self._executor(client, clock).submit(Submission(target="hello-task:3"))
        assert "RESOURCE:MEMORY" in str(exc_info.value)

    def test_submit_is_never_retried(self, clock):
        client = MagicMock()
        client.run_task.side_effect = ClientError(
            {"Error": {"Code": "ThrottlingException", "Message": "slow down"}}, "RunTask"
        )

        with pytest.raises(TransientError):
            self._executor(client, clock).submit(Submission(target="hello-task:3"))
        assert client.run_task.call_count == 1

    @pytest.mark.parametrize("task,expected_state,expected_reason", [
        ({"taskArn": TASK_ARN, "lastStatus": "PROVISIONING"}, ExecutionState.PENDING, None),
        ({"taskArn": TASK_ARN, "lastStatus": "RUNNING"}, ExecutionState.RUNNING, None),
        ({"taskArn": TASK_ARN, "lastStatus": "DEPROVISIONING"}, ExecutionState.RUNNING, None),
        (stopped_task(0), ExecutionState.SUCCEEDED, None),
        (stopped_task(1), ExecutionState.FAILED, "Essential container in task exited (exit code 1)"),
        (stopped_task(None, "CannotPullContainerError"), ExecutionState.FAILED, "CannotPullContainerError"),
    ])
    def test_describe_maps_status(self, clock, task, expected_state, expected_reason):
        client = MagicMock()
        client.describe_tasks.return_value = {"tasks": [task]}

        execution = self._executor(client, clock).describe(TASK_ARN)

        assert execution.state is expected_state
        assert execution.failure_reason == expected_reason

    def test_describe_unknown_task(self, clock):
        client = MagicMock()
        client.describe_tasks.return_value = {"tasks": [], "failures": [{"reason": "MISSING"}]}

        with pytest.raises(NotFoundError):
            self._executor(client, clock).describe(TASK_ARN)

    def test_describe_retries_throttling(self, clock):
        client = MagicMock()
        client.describe_tasks.side_effect = [
            ClientError({"Error": {"Code": "ThrottlingException", "Message": "slow"}}, "DescribeTasks"),
            {"tasks": [stopped_task(0)]},
        ]

        assert self._executor(client, clock).describe(TASK_ARN).succeeded
        assert client.describe_tasks.call_count == 2

    def test_log_stream_name(self, clock):
        executor = self._executor(MagicMock(), clock)
        assert executor.log_stream_name(TASK_ARN) == "ecs/app/abc123"


class TestEcsServiceProbe:

    def test_wait_until_running(self, clock):
        from fargate_e2e.services.executors.ecs_task import EcsServiceProbe

        client = MagicMock()
        client.describe_services.side_effect = [
            {"services": [{"runningCount": 0, "status": "ACTIVE"}]},
            {"services": [{"runningCount": 1, "status": "ACTIVE"}]},
        ]
        counts = EcsServiceProbe("demo", client=client).wait_until_running(
            {"worker": 1}, clock.deadline(60), poll_interval=5, require_active=True
        )

        assert counts == {"worker": 1}
        assert clock.sleeps == [5]

    def test_public_ip_from_attachment(self):
        from fargate_e2e.services.executors.ecs_task import EcsServiceProbe

        client = MagicMock()
        client.list_tasks.return_value = {"taskArns": [TASK_ARN]}
        client.describe_tasks.return_value = {"tasks": [{"attachments": [{
            "type": "ElasticNetworkInterface", "status": "ATTACHED",
            "details": [{"name": "networkInterfaceId", "value": "eni-1"},
                        {"name": "publicIPv4Address", "value": "54.1.2.3"}],
        }]}]}

        assert EcsServiceProbe("demo", client=client, ec2_client=MagicMock()).public_ip("frontend") == "54.1.2.3"

    def test_public_ip_falls_back_to_ec2(self):
        from fargate_e2e.services.executors.ecs_task import EcsServiceProbe

        client = MagicMock()
        client.list_tasks.return_value = {"taskArns": [TASK_ARN]}
        client.describe_tasks.return_value = {"tasks": [{"attachments": [{
            "type": "ElasticNetworkInterface", "status": "ATTACHED",
            "details": [{"name": "networkInterfaceId", "value": "eni-1"}],
        }]}]}
        ec2 = MagicMock()
        ec2.describe_network_interfaces.return_value = {
            "NetworkInterfaces": [{"Association": {"PublicIp": "3.3.3.3"}}]
        }

        assert EcsServiceProbe("demo", client=client, ec2_client=ec2).public_ip("frontend") == "3.3.3.3"
        ec2.describe_network_interfaces.assert_called_once_with(NetworkInterfaceIds=["eni-1"])


class TestStepFunctionsExecutor:

    def test_submit_names_execution_after_token(self):
        from fargate_e2e.services.executors.stepfunctions import StepFunctionsExecutor

        client = MagicMock()
        client.start_execution.return_value = {"executionArn": f"{SM_ARN}:e2e"}
        submission = Submission(target=SM_ARN, payload={"a": 1})

        assert StepFunctionsExecutor(client=client).submit(submission) == f"{SM_ARN}:e2e"
        kwargs = client.start_execution.call_args.kwargs
        assert kwargs["name"] == f"e2e-{submission.correlation_token}"
        assert json.loads(kwargs["input"]) == {"a": 1}

    @pytest.mark.parametrize("response,expected_state,output,reason", [
        ({"status": "RUNNING"}, ExecutionState.RUNNING, None, None),
        ({"status": "SUCCEEDED", "output": '{"result": 42}'}, ExecutionState.SUCCEEDED, {"result": 42}, None),
        ({"status": "SUCCEEDED", "output": "plain"}, ExecutionState.SUCCEEDED, "plain", None),
        ({"status": "FAILED", "error": "States.TaskFailed", "cause": "boom"},
         ExecutionState.FAILED, None, "States.TaskFailed: boom"),
        ({"status": "TIMED_OUT"}, ExecutionState.TIMED_OUT, None, "TIMED_OUT"),
        ({"status": "ABORTED", "error": "Aborted"}, ExecutionState.ABORTED, None, "Aborted"),
    ])
    def test_describe(self, response, expected_state, output, reason):
        from fargate_e2e.services.executors.stepfunctions import StepFunctionsExecutor

        client = MagicMock()
        client.describe_execution.return_value = {"executionArn": f"{SM_ARN}:x", **response}

        execution = StepFunctionsExecutor(client=client).describe(f"{SM_ARN}:x")

        assert execution.state is expected_state
        assert execution.output == output
        assert execution.failure_reason == reason

    def test_describe_unknown_execution(self):
        from fargate_e2e.services.executors.stepfunctions import StepFunctionsExecutor

        client = MagicMock()
        client.describe_execution.side_effect = ClientError(
            {"Error": {"Code": "ExecutionDoesNotExist", "Message": "no"}}, "DescribeExecution"
        )
        with pytest.raises(NotFoundError):
            StepFunctionsExecutor(client=client).describe(f"{SM_ARN}:x")

    def test_list_recent_and_mentions(self):
        from fargate_e2e.services.executors.stepfunctions import StepFunctionsExecutor

        start = datetime(2024, 5, 1, 12, 0, 5, tzinfo=timezone.utc)
        client = MagicMock()
        client.list_executions.return_value = {"executions": [
            {"executionArn": f"{SM_ARN}:a", "name": "a", "status": "SUCCEEDED", "startDate": start},
        ]}
        client.describe_execution.return_value = {"input": '{"correlationToken": "tok"}'}
        executor = StepFunctionsExecutor(client=client)

        listed = executor.list_recent(SM_ARN)
        assert [e.handle for e in listed] == [f"{SM_ARN}:a"]
        assert listed[0].started_at == start
        assert "statusFilter" not in client.list_executions.call_args.kwargs
        assert executor.execution_mentions(f"{SM_ARN}:a", "tok")
        assert not executor.execution_mentions(f"{SM_ARN}:a", "other")


class TestBatchArrayExecutor:

    def _executor(self, client):
        from fargate_e2e.services.executors.batch_jobs import BatchArrayExecutor

        return BatchArrayExecutor(job_queue="queue", client=client, clock=lambda: 1700000000)

    def test_submit_array_job(self):
        client = MagicMock()
        client.submit_job.return_value = {"jobId": "job-1"}

        handle = self._executor(client).submit(
            Submission(target="job-def", payload={"items": ["a", "b"]}, array_size=2)
        )

        assert handle == "job-1"
        kwargs = client.submit_job.call_args.kwargs
        assert kwargs["jobName"] == "e2e-test-job-1700000000"
        assert kwargs["arrayProperties"] == {"size": 2}
        assert json.loads(kwargs["containerOverrides"]["environment"][0]["value"]) == {"items": ["a", "b"]}

    @pytest.mark.parametrize("status,summary,expected_state,terminal", [
        ("PENDING", {"PENDING": 2}, ExecutionState.PENDING, False),
        ("RUNNING", {"RUNNING": 1, "SUCCEEDED": 1}, ExecutionState.RUNNING, False),
        ("RUNNING", {"FAILED": 1, "RUNNING": 1}, ExecutionState.FAILED, False),
        ("RUNNING", {"FAILED": 1, "SUCCEEDED": 1}, ExecutionState.FAILED, True),
        ("SUCCEEDED", {"SUCCEEDED": 2}, ExecutionState.SUCCEEDED, True),
    ])
    def test_describe_aggregates_children(self, status, summary, expected_state, terminal):
        client = MagicMock()
        client.describe_jobs.return_value = {"jobs": [{
            "jobId": "job-1", "status": status,
            "arrayProperties": {"size": 2, "statusSummary": summary},
        }]}

        execution = self._executor(client).describe("job-1")

        assert execution.state is expected_state
        assert execution.is_terminal is terminal
        assert set(execution.array_summary.raw_counts) == {"PENDING", "RUNNABLE", "RUNNING", "SUCCEEDED", "FAILED"}

    def test_failed_children_reason(self):
        client = MagicMock()
        client.describe_jobs.return_value = {"jobs": [{
            "jobId": "job-1", "status": "RUNNING",
            "arrayProperties": {"size": 2, "statusSummary": {"FAILED": 1, "SUCCEEDED": 1}},
        }]}

        assert self._executor(client).describe("job-1").failure_reason == "1 of 2 child job(s) failed"

    def test_child_log_streams(self):
        client = MagicMock()
        client.describe_jobs.return_value = {"jobs": [
            {"jobId": "job-1:0", "arrayProperties": {"index": 0}, "container": {"logStreamName": "s/0"}},
            {"jobId": "job-1:1", "attempts": [{"container": {"logStreamName": "s/1"}}]},
        ]}

        streams = self._executor(client).child_log_streams("job-1", 3)

        assert streams == {0: "s/0", 1: "s/1", 2: None}
        assert client.describe_jobs.call_args.kwargs["jobs"] == ["job-1:0", "job-1:1", "job-1:2"]

    def test_child_log_streams_in_chunks_of_100(self):
        def describe_jobs(jobs):
            if len(jobs) > 100:
                raise ClientError(
                    {"Error": {"Code": "ClientException", "Message": "jobs list must be <= 100"}}, "DescribeJobs"
                )
            return {"jobs": [
                {"jobId": job_id, "container": {"logStreamName": f"s/{job_id.rsplit(':', 1)[-1]}"}}
                for job_id in jobs
            ]}

        client = MagicMock()
        client.describe_jobs.side_effect = describe_jobs

        streams = self._executor(client).child_log_streams("job-1", 250)

        assert [len(c.kwargs["jobs"]) for c in client.describe_jobs.call_args_list] == [100, 100, 50]
        assert len(streams) == 250
        assert streams[0] == "s/0" and streams[249] == "s/249"

    def test_diagnostics(self):
        client = MagicMock()
        client.describe_jobs.return_value = {"jobs": [{
            "jobId": "job-1", "status": "RUNNABLE", "statusReason": None, "arrayProperties": {"size": 2},
        }]}
        client.describe_job_queues.return_value = {"jobQueues": [{
            "jobQueueName": "queue", "state": "ENABLED", "status": "VALID",
            "computeEnvironmentOrder": [{"order": 1, "computeEnvironment": "ce-1"}],
        }]}
        client.describe_compute_environments.return_value = {"computeEnvironments": [{
            "computeEnvironmentName": "ce-1", "state": "ENABLED", "status": "INVALID",
            "statusReason": "no subnets", "computeResources": {"type": "FARGATE", "maxvCpus": 4},
        }]}
        client.list_jobs.side_effect = ClientError(
            {"Error": {"Code": "ClientException", "Message": "nope"}}, "ListJobs"
        )

        result = self._executor(client).diagnostics("job-1")

        assert result["job"]["status"] == "RUNNABLE"
        assert result["jobQueue"]["status"] == "VALID"
        assert result["computeEnvironments"] == [{
            "name": "ce-1", "state": "ENABLED", "status": "INVALID", "statusReason": "no subnets",
            "type": "FARGATE", "maxvCpus": 4,
        }]
        assert "error" in result["childJobs"]


class TestScheduleHelpers:

    @pytest.mark.parametrize("now,delay,expected", [
        (datetime(2024, 5, 1, 12, 0, 10, tzinfo=timezone.utc), 1, datetime(2024, 5, 1, 12, 2, tzinfo=timezone.utc)),
        (datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc), 1, datetime(2024, 5, 1, 12, 1, tzinfo=timezone.utc)),
        (datetime(2024, 12, 31, 23, 58, 30, tzinfo=timezone.utc), 1, datetime(2025, 1, 1, 0, 0, tzinfo=timezone.utc)),
    ])
    def test_next_minute_after(self, now, delay, expected):
        from fargate_e2e.services.executors.eventbridge import next_minute_after

        assert next_minute_after(now, delay) == expected

    def test_cron_for(self):
        from fargate_e2e.services.executors.eventbridge import cron_for

        assert cron_for(datetime(2024, 5, 1, 12, 2, tzinfo=timezone.utc)) == "cron(2 12 1 5 ? 2024)"

    @pytest.mark.parametrize("payload,expected", [
        ({"a": 1}, {"a": 1, "correlationToken": "tok"}),
        ('{"a": 1}', {"a": 1, "correlationToken": "tok"}),
        ("hello", {"rawInput": "hello", "correlationToken": "tok"}),
        ([1, 2], {"rawInput": [1, 2], "correlationToken": "tok"}),
    ])
    def test_tokenized_input(self, payload, expected):
        from fargate_e2e.services.executors.eventbridge import tokenized_input

        assert tokenized_input(Submission(target="sm", payload=payload, correlation_token="tok")) == expected

    def test_event_submission_returns_no_handle(self):
        from fargate_e2e.services.executors.eventbridge import EventTriggerExecutor

        events = MagicMock()
        events.put_events.return_value = {"FailedEntryCount": 0, "Entries": [{"EventId": "1"}]}
        submission = Submission(target=SM_ARN, payload={"a": 1}, correlation_token="tok")

        executor = EventTriggerExecutor(
            client=events, sfn=MagicMock(),
            clock=lambda: datetime(2024, 5, 1, 12, 0, 10, tzinfo=timezone.utc),
        )
        assert executor.submit(submission) is None

        entry = events.put_events.call_args.kwargs["Entries"][0]
        assert entry["Source"] == "fargate.workflow.test"
        assert json.loads(entry["Detail"]) == {
            "stateMachineArn": SM_ARN,
            "timestamp": "2024-05-01T12:00:10Z",
            "testInput": {"a": 1, "correlationToken": "tok"},
        }

    def test_rejected_event_is_submission_error(self):
        from fargate_e2e.services.executors.eventbridge import EventTriggerExecutor

        events = MagicMock()
        events.put_events.return_value = {"FailedEntryCount": 1, "Entries": [{"ErrorMessage": "bus missing"}]}

        with pytest.raises(SubmissionError):
            EventTriggerExecutor(client=events, sfn=MagicMock()).submit(Submission(target=SM_ARN))
