"""
fargate-e2e command line.

    fargate-e2e oneoff --cluster-arn ... --task-definition-arn ... --subnet-ids a,b
    fargate-e2e workflow --sm-arn ... --mode scheduled --role-arn ...
    fargate-e2e batch --job-queue ... --job-definition ... --array-size 3

Prints the scenario report and exits 0 (passed), 1 (failed) or 2 (bad parameters).
"""

import argparse
import sys
from typing import Any, Dict, List, Optional

from fargate_e2e.common.exceptions import ConfigurationError
from fargate_e2e.common.json_utils import dumps
from fargate_e2e.common.logging_utils import reset_loggers
from fargate_e2e.config import Settings
from fargate_e2e.handlers.scenario_handler import run_scenario
from fargate_e2e.services.scenarios import SCENARIOS, ScenarioDriver, render_report

# argparse bookkeeping that is not a scenario parameter
GLOBAL_DESTS = {"scenario", "aws_region", "poll_interval", "metric_namespace", "log_level", "json"}


def _add_oneoff(sub):
    p = sub.add_parser("oneoff", help=SCENARIOS["oneoff"].description)
    p.add_argument("--cluster-arn", help="ECS cluster ARN")
    p.add_argument("--task-definition-arn", help="Task definition ARN")
    p.add_argument("--subnet-ids", help="Comma-separated subnet IDs")
    p.add_argument("--security-group-id", help="Security group ID")
    p.add_argument("--container-name", help="Container to override (default: hello-fargate-oneoff-app-container)")
    p.add_argument("--input", help="JSON input passed to the task as TASK_INPUT")
    p.add_argument("--log-group")
    p.add_argument("--log-stream-prefix")
    return p


def _add_sqs(sub):
    p = sub.add_parser("sqs", help=SCENARIOS["sqs"].description)
    p.add_argument("--queue-url", help="SQS queue URL")
    p.add_argument("--log-group", help="CloudWatch log group of the worker service")
    p.add_argument("--cluster-arn", help="ECS cluster ARN")
    p.add_argument("--service-name", help="ECS service consuming the queue")
    p.add_argument("--message", help="Payload message (default: 'Hello from E2E test!')")
    p.add_argument("--action")
    return p


def _add_workflow(sub):
    p = sub.add_parser("workflow", help=SCENARIOS["workflow"].description)
    p.add_argument("--sm-arn", help="State machine ARN")
    p.add_argument("--input", help="JSON input for the execution")
    p.add_argument("--mode", choices=["direct", "event", "eventbridge", "scheduled"], help="Trigger mode")
    p.add_argument("--event-bus", help="Event bus name (event mode)")
    p.add_argument("--scheduled-delay", type=int, help="Minutes until the scheduled rule fires")
    p.add_argument("--role-arn", help="IAM role EventBridge assumes to start the execution (scheduled mode)")
    p.add_argument("--expected-output-keys", nargs="*", help="Keys the execution output must contain")
    return p


def _add_batch(sub):
    p = sub.add_parser("batch", help=SCENARIOS["batch"].description)
    p.add_argument("--job-queue", help="Batch job queue")
    p.add_argument("--job-definition", help="Batch job definition")
    p.add_argument("--input", help='JSON input, e.g. {"items": ["item-A", "item-B"]}')
    p.add_argument("--array-size", type=int, help="Number of child jobs (>= 2)")
    p.add_argument("--log-group")
    return p


def _add_webapi(sub):
    p = sub.add_parser("webapi", help=SCENARIOS["webapi"].description)
    p.add_argument("--alb-url", help="Load balancer base URL")
    p.add_argument("--token-endpoint", help="OAuth2 token endpoint")
    p.add_argument("--client-id")
    p.add_argument("--client-secret")
    p.add_argument("--scope")
    p.add_argument("--verify-tls", action="store_true", default=None)
    return p


def _add_webapp(sub):
    p = sub.add_parser("webapp", help=SCENARIOS["webapp"].description)
    p.add_argument("--alb-url", help="Load balancer base URL")
    p.add_argument("--cognito-domain", help="Hosted UI domain prefix")
    p.add_argument("--region", help="Region of the user pool (default: AWS region)")
    p.add_argument("--client-id")
    p.add_argument("--username")
    p.add_argument("--password")
    p.add_argument("--verify-tls", action="store_true", default=None)
    return p


def _add_service_connect(sub):
    p = sub.add_parser("service-connect", help=SCENARIOS["service-connect"].description)
    p.add_argument("--cluster-arn", help="ECS cluster ARN")
    p.add_argument("--frontend-service")
    p.add_argument("--backend-service")
    p.add_argument("--requests", type=int, help="Requests the frontend fans out (default: 20)")
    p.add_argument("--port", type=int)
    p.add_argument("--backend-count", type=int)
    p.add_argument("--frontend-count", type=int)
    p.add_argument("--min-unique-backends", type=int)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fargate-e2e", description="End-to-end checks for asynchronous jobs")
    parser.add_argument("--aws-region", help="AWS region (default: AWS_REGION)")
    parser.add_argument("--poll-interval", type=float, help="Seconds between status polls")
    parser.add_argument("--metric-namespace", help="Publish verdict metrics to this CloudWatch namespace")
    parser.add_argument("--log-level", help="Log level (default: LOG_LEVEL or INFO)")
    parser.add_argument("--json", action="store_true", help="Print the verdict as JSON instead of a report")

    sub = parser.add_subparsers(dest="scenario", metavar="scenario")
    sub.required = True
    for add in (_add_oneoff, _add_sqs, _add_workflow, _add_batch, _add_webapi, _add_webapp, _add_service_connect):
        p = add(sub)
        p.add_argument("--timeout", dest="timeout_seconds", type=float, help="Overall deadline in seconds")
    return parser


def params_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    return {k: v for k, v in vars(args).items() if k not in GLOBAL_DESTS and v is not None}


def settings_from_args(args: argparse.Namespace) -> Settings:
    settings = Settings.from_env()
    if args.aws_region:
        settings.region = args.aws_region
    if args.poll_interval:
        settings.polling.poll_interval_seconds = args.poll_interval
    if args.metric_namespace:
        settings.metric_namespace = args.metric_namespace
    return settings


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.log_level:
        reset_loggers(args.log_level)

    try:
        settings = settings_from_args(args)
    except (ConfigurationError, ValueError) as e:
        print(f"❌ Invalid settings: {e}", file=sys.stderr)
        return ConfigurationError.exit_code

    verdict = run_scenario(args.scenario, params_from_args(args), settings, ScenarioDriver(settings))
    if args.json:
        print(dumps(verdict.model_dump(mode="json"), indent=2))
    else:
        print(render_report(verdict))
    return verdict.exit_code


if __name__ == "__main__":
    sys.exit(main())
