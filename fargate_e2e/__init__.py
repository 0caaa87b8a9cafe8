"""
fargate-e2e: end-to-end verification of asynchronous jobs on ECS/Fargate.

Submit work to an executor, wait for it to finish under a deadline, find the
execution a trigger started, read its output back from CloudWatch Logs and
turn the whole run into a verdict.
"""

__version__ = "0.4.0"
