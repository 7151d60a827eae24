"""aimonitor: alert evaluation and notification pipeline.

Signal source -> rule evaluator -> alert state machine -> grouping/dedup
-> notification router -> delivery drivers.

Quick start:
    from aimonitor import Pipeline, load_config
    from aimonitor.sources import PrometheusSignalSource

    pipeline = Pipeline(load_config("aimonitor.yaml"),
                        PrometheusSignalSource("http://localhost:9090"))
    await pipeline.start()
    ...
    await pipeline.stop()
"""

from aimonitor.analysis import AnomalyClassifier, Classification, NoOpClassifier
from aimonitor.config import MonitorConfig, load_config, parse_config, parse_duration
from aimonitor.core import (
    AIMonitorError,
    AlertGroup,
    AlertInstance,
    AlertRule,
    AlertState,
    Condition,
    ConfigError,
    DeliveryError,
    InhibitionRule,
    Matcher,
    MetricSample,
    Notification,
    QueryError,
    Severity,
    StateInvariantError,
    SystemClock,
    VirtualClock,
    fingerprint,
)
from aimonitor.delivery import DeliveryManager, RetryPolicy
from aimonitor.evaluator import EvaluationResult, RuleEvaluator, RuleScheduler
from aimonitor.grouping import GroupingEngine, Inhibitor
from aimonitor.pipeline import Pipeline
from aimonitor.router import NotificationRouter
from aimonitor.routing import Route, RouteMatch, match_routes
from aimonitor.state import AlertStateMachine, Transition

__version__ = "0.1.0"

__all__ = [
    "AIMonitorError",
    "AlertGroup",
    "AlertInstance",
    "AlertRule",
    "AlertState",
    "AlertStateMachine",
    "AnomalyClassifier",
    "Classification",
    "Condition",
    "ConfigError",
    "DeliveryError",
    "DeliveryManager",
    "EvaluationResult",
    "GroupingEngine",
    "InhibitionRule",
    "Inhibitor",
    "Matcher",
    "MetricSample",
    "MonitorConfig",
    "NoOpClassifier",
    "Notification",
    "NotificationRouter",
    "Pipeline",
    "QueryError",
    "RetryPolicy",
    "Route",
    "RouteMatch",
    "RuleEvaluator",
    "RuleScheduler",
    "Severity",
    "StateInvariantError",
    "SystemClock",
    "Transition",
    "VirtualClock",
    "fingerprint",
    "load_config",
    "match_routes",
    "parse_config",
    "parse_duration",
]
