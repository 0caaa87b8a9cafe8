"""
Correlator: find the execution a handle-less submission started.

Event- and schedule-triggered submissions return no execution handle. The
correlator lists the target's recent executions, keeps those whose start
time falls inside the correlation window, optionally keeps only those whose
input carries the submission's correlation token, and picks the most
recently started one.

The pure time-window match can pick up an unrelated execution started
concurrently against the same target; token matching (the default) removes
that risk when the trigger forwards the token into the execution input.

Usage:
    correlator = Correlator(executor, deadline=deadline)
    handle = correlator.correlate(
        state_machine_arn, window,
        max_attempts=10, attempt_interval=3.0,
        token=submission.correlation_token
    )
"""

from typing import List, Optional

from fargate_e2e.common.deadline import Deadline
from fargate_e2e.common.exceptions import CorrelationTimeout, DeadlineExceeded, TransientError
from fargate_e2e.common.logging_utils import get_logger
from fargate_e2e.models.execution_models import CorrelationWindow, Execution
from fargate_e2e.services.executors.base import ListableExecutor

logger = get_logger(__name__)


def pick_latest(candidates: List[Execution]) -> Optional[Execution]:
    """Most recently started candidate; ties keep listing order."""
    best = None
    for candidate in candidates:
        if candidate.started_at is None:
            continue
        if best is None or candidate.started_at > best.started_at:
            best = candidate
    return best


class Correlator:

    def __init__(self, executor: ListableExecutor, deadline: Optional[Deadline] = None):
        self.executor = executor
        self.deadline = deadline or Deadline.unbounded()

    def correlate(
        self,
        target: str,
        window: CorrelationWindow,
        max_attempts: int,
        attempt_interval: float,
        token: Optional[str] = None,
    ) -> str:
        """
        Resolve the execution handle for a submission.

        Makes exactly ``max_attempts`` listing attempts, sleeping
        ``attempt_interval`` between them (never after the last one). A
        transient listing failure counts as a failed attempt.

        Raises:
            CorrelationTimeout: no candidate matched within the attempts
            DeadlineExceeded: the overall deadline ran out first
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        seen: List[Execution] = []
        for attempt in range(1, max_attempts + 1):
            if self.deadline.expired:
                raise DeadlineExceeded(f"correlation of {target}", self.deadline.elapsed, last_observed=seen)

            try:
                listed = self.executor.list_recent(target)
            except DeadlineExceeded as e:
                raise DeadlineExceeded(f"correlation of {target}", self.deadline.elapsed, last_observed=seen) from e
            except TransientError as e:
                logger.warning(f"⚠️ Correlation attempt {attempt}/{max_attempts}: listing failed ({e})")
                listed = None

            if listed is not None:
                seen = listed
                in_window = [e for e in listed if window.contains(e.started_at)]
                matched = in_window
                if token is not None:
                    try:
                        matched = [e for e in in_window if e.handle and self._mentions(e.handle, token)]
                    except DeadlineExceeded as e:
                        raise DeadlineExceeded(
                            f"correlation of {target}", self.deadline.elapsed, last_observed=seen
                        ) from e

                chosen = pick_latest(matched)
                if chosen is not None:
                    if len(matched) > 1:
                        logger.warning(
                            f"⚠️ {len(matched)} executions matched; choosing the most recent: {chosen.handle}"
                        )
                    logger.info(f"🔗 Correlated execution: {chosen.handle} (attempt {attempt}/{max_attempts})")
                    return chosen.handle

                logger.info(
                    f"Attempt {attempt}/{max_attempts}: {len(listed)} listed, "
                    f"{len(in_window)} in window, no match yet"
                )

            if attempt < max_attempts:
                self.deadline.sleep(attempt_interval)

        raise CorrelationTimeout(
            target,
            attempts=max_attempts,
            window=window,
            candidates=[f"{e.handle} started {e.started_at.isoformat() if e.started_at else '?'}" for e in seen],
        )

    def _mentions(self, handle: str, token: str) -> bool:
        try:
            return self.executor.execution_mentions(handle, token)
        except TransientError as e:
            logger.warning(f"⚠️ Could not read input of {handle}: {e}")
            return False
