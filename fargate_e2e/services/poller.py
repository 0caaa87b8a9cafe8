"""
Poller / Waiter: drive an execution handle to a terminal state under a deadline.

Usage:
    waiter = Waiter(executor)
    execution = waiter.wait_for_terminal(handle, poll_interval=5, deadline=Deadline(300))
    require_success(execution)

Loop contract:
    - describe(); return as soon as the execution is terminal
    - TransientError never ends the loop; it counts as a missed observation
    - NotFoundError is tolerated a few times right after submission
      (eventual consistency), then propagates
    - when the deadline runs out, DeadlineExceeded carries the last
      observed (non-terminal) execution
"""

from typing import Callable, Optional, TypeVar

from fargate_e2e.common.deadline import Deadline
from fargate_e2e.common.exceptions import DeadlineExceeded, NotFoundError, TerminalFailure, TransientError
from fargate_e2e.common.logging_utils import get_logger
from fargate_e2e.models.execution_models import Execution, ExecutionState
from fargate_e2e.services.executors.base import AsyncExecutor

logger = get_logger(__name__)

T = TypeVar("T")

ProgressCallback = Callable[[Execution], None]


def log_progress(execution: Execution) -> None:
    if execution.array_summary is not None:
        logger.info(f"Job status: {execution.raw_status} ({execution.array_summary.progress_line()})")
    else:
        logger.info(f"Status: {execution.raw_status or execution.state.value}")


class Waiter:

    def __init__(self, executor: AsyncExecutor, not_found_tolerance: int = 3):
        self.executor = executor
        self.not_found_tolerance = not_found_tolerance

    def wait_for_terminal(
        self,
        handle: str,
        poll_interval: float,
        deadline: Deadline,
        on_progress: Optional[ProgressCallback] = log_progress,
    ) -> Execution:
        """
        Poll ``handle`` every ``poll_interval`` seconds until terminal.

        Raises:
            DeadlineExceeded: the deadline ran out first (last_observed is the
                last non-terminal Execution, or None if none was observed)
            NotFoundError: the handle stayed unknown past the tolerance
        """
        last: Optional[Execution] = None
        misses = 0

        while True:
            if deadline.expired:
                raise DeadlineExceeded(f"execution {handle}", deadline.elapsed, last_observed=last)

            try:
                execution = self.executor.describe(handle)
            except DeadlineExceeded as e:
                # ran out between describe retries; report the last execution, not the API error
                raise DeadlineExceeded(f"execution {handle}", deadline.elapsed, last_observed=last) from e
            except TransientError as e:
                logger.warning(f"⚠️ Transient error while polling {handle}: {e}")
                execution = None
            except NotFoundError:
                misses += 1
                if misses > self.not_found_tolerance:
                    raise
                logger.info(f"{handle} not visible yet ({misses}/{self.not_found_tolerance})")
                execution = None

            if execution is not None:
                misses = 0
                if last is not None and execution.state.rank < last.state.rank:
                    # stale read from an eventually consistent API; keep the newer observation
                    logger.debug(f"Ignoring regressed state {execution.state.value} < {last.state.value}")
                else:
                    last = execution
                if on_progress is not None:
                    on_progress(last)
                if last.is_terminal:
                    return last

            deadline.sleep(poll_interval)


def poll_until(
    probe: Callable[[], Optional[T]],
    deadline: Deadline,
    interval: float,
    description: str,
) -> T:
    """
    Call ``probe`` until it returns something other than None.

    TransientError from the probe is logged and retried.

    Raises:
        DeadlineExceeded: the deadline ran out first
    """
    while True:
        if deadline.expired:
            raise DeadlineExceeded(description, deadline.elapsed)
        try:
            result = probe()
        except TransientError as e:
            logger.warning(f"⚠️ {description}: {e}")
            result = None
        if result is not None:
            return result
        deadline.sleep(interval)


def require_success(execution: Execution) -> Execution:
    """Raise TerminalFailure unless ``execution`` SUCCEEDED."""
    if execution.state is not ExecutionState.SUCCEEDED:
        raise TerminalFailure(
            handle=execution.handle,
            state=execution.raw_status or execution.state.value,
            reason=execution.failure_reason,
            execution=execution,
        )
    return execution
