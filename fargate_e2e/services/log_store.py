"""
CloudWatch Logs access for execution output.

Log streams appear only once a workload starts writing, and events lag a few
seconds behind real time. A missing group or stream is therefore "no output
yet", never an error; callers keep polling inside their own budget.

Usage:
    store = CloudWatchLogStore()
    records = list(store.fetch_output("/ecs/task", stream_prefix="ecs/task/abc123"))

    records, found = store.find_output(
        "/ecs/worker", token=job_id, since=submitted_at,
        poll_interval=5, max_attempts=24, deadline=deadline
    )
"""

import json
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from fargate_e2e.common.aws_clients import get_logs_client
from fargate_e2e.common.deadline import Deadline
from fargate_e2e.common.exceptions import DeadlineExceeded, NotFoundError, TransientError
from fargate_e2e.common.json_utils import pretty
from fargate_e2e.common.logging_utils import get_logger
from fargate_e2e.models.execution_models import LogRecord
from fargate_e2e.services.executors.base import aws_call

logger = get_logger(__name__)

DEFAULT_SUCCESS_MARKERS = ('"status": "success"', '"status":"success"')
DEFAULT_RESET_MARKER = "Processing message:"


def _millis(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def contains_any(text: str, markers: Sequence[str]) -> bool:
    return any(m in text for m in markers)


def render_records(records: Sequence[LogRecord]) -> List[str]:
    """Human-readable lines; JSON messages are re-indented."""
    return [pretty(r.message.strip()) for r in records]


def reconstruct_json(records: Sequence[LogRecord], after_marker: Optional[str] = None) -> Optional[Any]:
    """
    Rebuild a JSON document a workload printed across several log events
    (indented output arrives one line per event). Only text after the first
    record containing ``after_marker`` is considered, when given.
    """
    messages = [r.message for r in records]
    if after_marker is not None:
        for i, message in enumerate(messages):
            if after_marker in message:
                tail = message.split(after_marker, 1)[1]
                messages = ([tail] if tail.strip() else []) + messages[i + 1:]
                break
        else:
            return None

    text = "\n".join(messages)
    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            document, _ = decoder.raw_decode(text, start)
            return document
        except ValueError:
            start = text.find("{", start + 1)
    return None


class CloudWatchLogStore:

    def __init__(self, client=None, deadline: Optional[Deadline] = None,
                 stream_limit: int = 10, max_retries: int = 3):
        self.client = client or get_logs_client()
        self.deadline = deadline
        self.stream_limit = stream_limit
        self.max_retries = max_retries

    # =========================================================================
    # Streams
    # =========================================================================

    def list_streams(self, group: str, stream_prefix: Optional[str] = None,
                     max_streams: Optional[int] = None) -> Iterator[Dict[str, Any]]:
        """
        Streams of ``group``: those matching ``stream_prefix`` or, without a
        prefix, the most recently written first. Yields nothing for a group
        that does not exist yet.
        """
        kwargs: Dict[str, Any] = {"logGroupName": group, "limit": self.stream_limit}
        if stream_prefix:
            kwargs["logStreamNamePrefix"] = stream_prefix
        else:
            kwargs.update(orderBy="LastEventTime", descending=True)

        yielded = 0
        while True:
            try:
                response = aws_call(
                    self.client.describe_log_streams, "logs", "describe_log_streams",
                    deadline=self.deadline, max_retries=self.max_retries, identifier=group,
                    **kwargs,
                )
            except NotFoundError:
                logger.debug(f"Log group {group} does not exist yet")
                return

            for stream in response.get("logStreams") or []:
                yield stream
                yielded += 1
                if max_streams is not None and yielded >= max_streams:
                    return

            next_token = response.get("nextToken")
            if not next_token:
                return
            kwargs["nextToken"] = next_token

    def fetch_stream(self, group: str, stream: str, since: Optional[datetime] = None) -> Iterator[LogRecord]:
        """Every event of one stream from ``since`` on, oldest first."""
        kwargs: Dict[str, Any] = {"logGroupName": group, "logStreamName": stream, "startFromHead": True}
        if since is not None:
            kwargs["startTime"] = _millis(since)

        previous_token = None
        while True:
            try:
                response = aws_call(
                    self.client.get_log_events, "logs", "get_log_events",
                    deadline=self.deadline, max_retries=self.max_retries, identifier=stream,
                    **kwargs,
                )
            except NotFoundError:
                return

            events = response.get("events") or []
            for event in events:
                yield LogRecord.from_event(event, stream=stream)

            token = response.get("nextForwardToken")
            if not events or not token or token == previous_token:
                return
            previous_token = token
            kwargs["nextToken"] = token

    def fetch_output(self, group: str, stream_prefix: Optional[str] = None,
                     since: Optional[datetime] = None) -> Iterator[LogRecord]:
        """
        Records of every stream matching ``stream_prefix`` (lazy).

        Each call re-queries the store; an empty iterator means no output yet.
        """
        for stream in self.list_streams(group, stream_prefix):
            yield from self.fetch_stream(group, stream["logStreamName"], since)

    # =========================================================================
    # Token search
    # =========================================================================

    def scan_for_token(
        self,
        group: str,
        token: str,
        since: datetime,
        success_markers: Sequence[str] = DEFAULT_SUCCESS_MARKERS,
        reset_marker: Optional[str] = DEFAULT_RESET_MARKER,
        stream_prefix: Optional[str] = None,
    ) -> Tuple[List[LogRecord], bool]:
        """
        One pass over the recent streams.

        A record containing ``token`` opens this execution's output; a later
        record in the same stream containing a success marker closes it. A
        record announcing another message (``reset_marker`` without the token)
        discards what was opened.

        Returns the records of the best match and whether it completed.
        """
        partial: List[LogRecord] = []
        for stream in self.list_streams(group, stream_prefix):
            current: List[LogRecord] = []
            found = False
            for record in self.fetch_stream(group, stream["logStreamName"], since):
                message = record.message
                if token in message:
                    found = True
                if reset_marker and reset_marker in message and token not in message:
                    found = False
                    current = []
                    continue
                if found:
                    current.append(record)
                    if contains_any(message, success_markers):
                        return current, True
            if current and not partial:
                partial = current
        return partial, False

    def find_output(
        self,
        group: str,
        token: str,
        since: datetime,
        poll_interval: float,
        max_attempts: int,
        deadline: Optional[Deadline] = None,
        success_markers: Sequence[str] = DEFAULT_SUCCESS_MARKERS,
        reset_marker: Optional[str] = DEFAULT_RESET_MARKER,
        lookback_seconds: float = 60.0,
        stream_prefix: Optional[str] = None,
    ) -> Tuple[List[LogRecord], bool]:
        """
        Repeat scan_for_token() until the token and a success marker appear.

        Not finding the output is a normal outcome (``found=False``), as are an
        expired deadline and a log group with no streams yet. Transient
        failures count as an empty attempt.
        """
        deadline = deadline or self.deadline or Deadline.unbounded()
        start = since - timedelta(seconds=lookback_seconds)
        records: List[LogRecord] = []

        for attempt in range(1, max_attempts + 1):
            if deadline.expired:
                logger.warning(f"Deadline reached while searching {group} for {token}")
                break
            try:
                records, found = self.scan_for_token(
                    group, token, start, success_markers, reset_marker, stream_prefix
                )
            except TransientError as e:
                logger.warning(f"⚠️ Log search attempt {attempt}/{max_attempts} failed: {e}")
                found = False
            except DeadlineExceeded:
                logger.warning(f"Deadline reached while searching {group} for {token}")
                break
            if found:
                logger.info(f"✅ Output for {token} found in {group} (attempt {attempt})")
                return records, True

            logger.info(f"Job not yet completed, checking again in {poll_interval:.0f}s "
                        f"(attempt {attempt}/{max_attempts})")
            if attempt < max_attempts:
                deadline.sleep(poll_interval)

        return records, False

    # =========================================================================
    # Tails and fan-out
    # =========================================================================

    def tail(self, group: str, limit: int = 50, max_streams: int = 5) -> List[LogRecord]:
        """Up to ``limit`` of the latest records across the most recently written streams."""
        collected: List[LogRecord] = []
        if limit <= 0:
            return collected
        for stream in self.list_streams(group, max_streams=max_streams):
            remaining = limit - len(collected)
            if remaining <= 0:
                break
            try:
                response = aws_call(
                    self.client.get_log_events, "logs", "get_log_events",
                    deadline=self.deadline, max_retries=self.max_retries,
                    logGroupName=group, logStreamName=stream["logStreamName"],
                    startFromHead=False, limit=remaining,
                )
            except NotFoundError:
                continue
            collected.extend(
                LogRecord.from_event(e, stream=stream["logStreamName"]) for e in response.get("events") or []
            )
        return collected

    def fetch_children(self, group: str, streams: Dict[int, Optional[str]],
                       since: Optional[datetime] = None) -> Dict[int, List[LogRecord]]:
        """Records of each array child; children without a stream yet get an empty list."""
        return {
            index: list(self.fetch_stream(group, stream, since)) if stream else []
            for index, stream in sorted(streams.items())
        }

    @staticmethod
    def children_done(outputs: Dict[int, List[LogRecord]],
                      markers: Sequence[str] = DEFAULT_SUCCESS_MARKERS) -> bool:
        """True only when every child's output contains a success marker."""
        if not outputs:
            return False
        return all(
            any(contains_any(r.message, markers) for r in records)
            for records in outputs.values()
        )
