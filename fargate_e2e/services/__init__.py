# -*- coding: utf-8 -*-
"""
Services package.
Executors, correlator, poller, log store, HTTP auth flows and scenarios.

Note: Services are imported lazily so importing the package never builds AWS clients.
"""


def get_scenario_driver():
    """Lazy load ScenarioDriver"""
    from fargate_e2e.services.scenarios.base import ScenarioDriver
    return ScenarioDriver


def get_log_store():
    """Lazy load CloudWatchLogStore"""
    from fargate_e2e.services.log_store import CloudWatchLogStore
    return CloudWatchLogStore


def get_correlator():
    """Lazy load Correlator"""
    from fargate_e2e.services.correlator import Correlator
    return Correlator


def get_waiter():
    """Lazy load Waiter"""
    from fargate_e2e.services.poller import Waiter
    return Waiter


__all__ = [
    "get_scenario_driver",
    "get_log_store",
    "get_correlator",
    "get_waiter",
]
