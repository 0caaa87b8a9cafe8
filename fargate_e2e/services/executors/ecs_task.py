"""
ECS executors: one-off Fargate tasks and long-running service probes.

Usage:
    executor = EcsTaskExecutor(
        cluster="demo", container_name="task",
        subnets=["subnet-1"], security_group="sg-1"
    )
    arn = executor.submit(Submission(target="hello-task:3", payload={"message": "Hello!"}))
    execution = executor.describe(arn)
"""

from typing import Any, Dict, List, Optional

from fargate_e2e.common.aws_clients import get_ec2_client, get_ecs_client
from fargate_e2e.common.deadline import Deadline
from fargate_e2e.common.exceptions import (
    DeadlineExceeded,
    ExternalServiceError,
    NotFoundError,
    SubmissionError,
    TransientError,
)
from fargate_e2e.common.logging_utils import get_logger, log_external_service_call
from fargate_e2e.models.execution_models import Execution, ExecutionState, Submission
from fargate_e2e.services.executors.base import ECS_TASK_STATES, aws_call, map_state

logger = get_logger(__name__)


def task_id_from_arn(task_arn: str) -> str:
    """arn:aws:ecs:region:acct:task/cluster/abc123 -> abc123"""
    return task_arn.rsplit("/", 1)[-1]


class EcsTaskExecutor:
    """Runs a task definition once on Fargate and reports its lifecycle."""

    name = "ecs-task"

    def __init__(
        self,
        cluster: str,
        container_name: str,
        subnets: List[str],
        security_group: Optional[str] = None,
        input_env_var: str = "TASK_INPUT",
        assign_public_ip: bool = True,
        log_stream_prefix: str = "ecs",
        client=None,
        deadline: Optional[Deadline] = None,
        max_retries: int = 3,
    ):
        self.cluster = cluster
        self.container_name = container_name
        self.subnets = list(subnets)
        self.security_group = security_group
        self.input_env_var = input_env_var
        self.assign_public_ip = assign_public_ip
        self.log_stream_prefix = log_stream_prefix
        self.client = client or get_ecs_client()
        self.deadline = deadline
        self.max_retries = max_retries

    def log_stream_name(self, handle: str) -> str:
        return f"{self.log_stream_prefix}/{self.container_name}/{task_id_from_arn(handle)}"

    @log_external_service_call("ecs", "run_task")
    def submit(self, submission: Submission) -> str:
        vpc_config: Dict[str, Any] = {
            "subnets": self.subnets,
            "assignPublicIp": "ENABLED" if self.assign_public_ip else "DISABLED",
        }
        if self.security_group:
            vpc_config["securityGroups"] = [self.security_group]

        response = aws_call(
            self.client.run_task, "ecs", "run_task",
            submitting=True,
            identifier=submission.target,
            cluster=self.cluster,
            taskDefinition=submission.target,
            launchType="FARGATE",
            count=1,
            networkConfiguration={"awsvpcConfiguration": vpc_config},
            overrides={
                "containerOverrides": [{
                    "name": self.container_name,
                    "environment": [{"name": self.input_env_var, "value": submission.serialized_payload()}],
                }]
            },
        )

        failures = response.get("failures") or []
        if failures:
            reasons = "; ".join(f"{f.get('arn', '')} - {f.get('reason', '')}" for f in failures)
            raise SubmissionError(submission.target, reasons)

        tasks = response.get("tasks") or []
        if not tasks:
            raise SubmissionError(submission.target, "RunTask returned no tasks")

        task_arn = tasks[0]["taskArn"]
        logger.info(f"🚀 Task started: {task_arn}")
        return task_arn

    def describe(self, handle: str) -> Execution:
        response = aws_call(
            self.client.describe_tasks, "ecs", "describe_tasks",
            deadline=self.deadline, max_retries=self.max_retries, identifier=handle,
            cluster=self.cluster, tasks=[handle],
        )
        tasks = response.get("tasks") or []
        if not tasks:
            raise NotFoundError("ECS task", handle)
        return self._to_execution(tasks[0])

    def _container(self, task: Dict[str, Any]) -> Dict[str, Any]:
        containers = task.get("containers") or []
        for container in containers:
            if container.get("name") == self.container_name:
                return container
        return containers[0] if containers else {}

    def _to_execution(self, task: Dict[str, Any]) -> Execution:
        last_status = task.get("lastStatus")
        container = self._container(task)
        exit_code = container.get("exitCode")
        details = {
            "desiredStatus": task.get("desiredStatus"),
            "stopCode": task.get("stopCode"),
            "containerReason": container.get("reason"),
        }

        if last_status == "STOPPED":
            stopped_reason = task.get("stoppedReason") or container.get("reason")
            if exit_code == 0:
                state = ExecutionState.SUCCEEDED
                reason = None
            else:
                state = ExecutionState.FAILED
                reason = stopped_reason or "task stopped"
                if exit_code is not None:
                    reason = f"{reason} (exit code {exit_code})"
            return Execution(
                handle=task.get("taskArn"),
                state=state,
                raw_status=last_status,
                started_at=task.get("startedAt"),
                stopped_at=task.get("stoppedAt"),
                exit_code=exit_code,
                failure_reason=reason,
                details=details,
            )

        return Execution(
            handle=task.get("taskArn"),
            state=map_state(last_status, ECS_TASK_STATES),
            raw_status=last_status,
            started_at=task.get("startedAt"),
            details=details,
        )


class EcsServiceProbe:
    """Readiness and addressing checks for long-running ECS services."""

    def __init__(self, cluster: str, client=None, ec2_client=None, deadline: Optional[Deadline] = None):
        self.cluster = cluster
        self.client = client or get_ecs_client()
        self._ec2_client = ec2_client
        self.deadline = deadline

    @property
    def ec2_client(self):
        if self._ec2_client is None:
            self._ec2_client = get_ec2_client()
        return self._ec2_client

    def describe_service(self, service: str) -> Dict[str, Any]:
        response = aws_call(
            self.client.describe_services, "ecs", "describe_services",
            deadline=self.deadline, identifier=service,
            cluster=self.cluster, services=[service],
        )
        services = response.get("services") or []
        if not services:
            raise NotFoundError("ECS service", service)
        return services[0]

    def wait_until_running(
        self,
        services: Dict[str, int],
        deadline: Deadline,
        poll_interval: float = 5.0,
        require_active: bool = False,
    ) -> Dict[str, int]:
        """
        Block until every service in ``services`` (name -> minimum running count)
        is satisfied. Returns the last observed running counts.

        Raises:
            DeadlineExceeded: the services did not become ready in time
            NotFoundError: a service does not exist
        """
        counts: Dict[str, int] = {}
        while True:
            ready = True
            status_parts = []
            for service, minimum in services.items():
                try:
                    described = self.describe_service(service)
                except TransientError as e:
                    logger.warning(f"⚠️ Transient error describing {service}: {e}")
                    ready = False
                    continue
                running = int(described.get("runningCount", 0))
                counts[service] = running
                status = described.get("status")
                status_parts.append(f"{service}: {running}/{minimum} ({status})")
                if running < minimum or (require_active and status != "ACTIVE"):
                    ready = False

            logger.info(f"Service status - {', '.join(status_parts)}")
            if ready:
                return counts
            if deadline.expired:
                raise DeadlineExceeded("services to become ready", deadline.elapsed, last_observed=counts)
            deadline.sleep(poll_interval)

    def public_ip(self, service: str) -> str:
        """
        Public IPv4 address of the first task of ``service``.

        Looks at the task's ENI attachment details first, then asks EC2 for the
        interface's association when ECS does not report the address.
        """
        listed = aws_call(
            self.client.list_tasks, "ecs", "list_tasks",
            deadline=self.deadline, identifier=service,
            cluster=self.cluster, serviceName=service,
        )
        task_arns = listed.get("taskArns") or []
        if not task_arns:
            raise NotFoundError("ECS task for service", service)

        logger.info(f"Found {len(task_arns)} task(s) for service {service}")
        described = aws_call(
            self.client.describe_tasks, "ecs", "describe_tasks",
            deadline=self.deadline, identifier=task_arns[0],
            cluster=self.cluster, tasks=[task_arns[0]],
        )
        tasks = described.get("tasks") or []
        if not tasks:
            raise NotFoundError("ECS task", task_arns[0])

        eni_id = None
        for attachment in tasks[0].get("attachments") or []:
            if attachment.get("type") != "ElasticNetworkInterface":
                continue
            details = {d.get("name"): d.get("value") for d in attachment.get("details") or []}
            if details.get("publicIPv4Address"):
                return details["publicIPv4Address"]
            if attachment.get("status") != "ATTACHED":
                raise TransientError(
                    "ecs", "public_ip",
                    RuntimeError(f"ENI not yet attached (status: {attachment.get('status')})")
                )
            eni_id = details.get("networkInterfaceId") or eni_id

        if eni_id:
            logger.info(f"Public IP not in task details, querying EC2 for ENI {eni_id}")
            response = aws_call(
                self.ec2_client.describe_network_interfaces, "ec2", "describe_network_interfaces",
                deadline=self.deadline, identifier=eni_id,
                NetworkInterfaceIds=[eni_id],
            )
            for eni in response.get("NetworkInterfaces") or []:
                public_ip = (eni.get("Association") or {}).get("PublicIp")
                if public_ip:
                    return public_ip

        raise ExternalServiceError(
            "ecs",
            "no public IP found for task - check that assignPublicIp is enabled in the network configuration"
        )
