"""
Executor backends. Each one implements the AsyncExecutor protocol
(submit / describe); those that can be correlated also implement
ListableExecutor (list_recent / execution_mentions).
"""

from fargate_e2e.services.executors.base import AsyncExecutor, ListableExecutor, map_state

__all__ = ["AsyncExecutor", "ListableExecutor", "map_state"]
