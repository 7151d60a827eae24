"""Rule evaluation and per-rule scheduling.

RuleEvaluator.evaluate() is a pure function of signal-source data and the
evaluation instant. It never retries: QueryError propagates to the caller.

RuleScheduler runs one asyncio loop per rule, each on the rule's own
interval. A tick that arrives while the same rule's previous evaluation is
still running is skipped and reported as EvaluationMissed, never queued.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import datetime

from aimonitor.core.clock import Clock, SystemClock
from aimonitor.core.errors import QueryError
from aimonitor.core.models import AlertRule, Labels
from aimonitor.observability import emit
from aimonitor.observability.events import EvaluationFailed, EvaluationMissed, RuleEvaluated
from aimonitor.observability.logging import get_logger
from aimonitor.sources.base import SignalSource, series_key


def _logger(**context):
    return get_logger("aimonitor.evaluator", **context)


@dataclass(frozen=True)
class Match:
    """One series for which the rule's condition holds."""

    labels: Labels
    value: float


@dataclass(frozen=True)
class EvaluationResult:
    rule: str
    evaluated_at: datetime
    matches: tuple[Match, ...]


class RuleEvaluator:
    """Evaluates a rule's expression and condition against a signal source."""

    def __init__(self, source: SignalSource) -> None:
        self._source = source

    async def evaluate(self, rule: AlertRule, now: datetime) -> EvaluationResult:
        """Return the ordered (labels, value) matches for rule at now.

        Raises:
            QueryError: the source failed, or two series collapse onto the
                same label set once rule labels are applied.
        """
        started = time.perf_counter()
        try:
            samples = await self._source.query(rule.expr, now)
        except QueryError:
            raise
        except Exception as exc:
            raise QueryError(f"query failed for rule {rule.name}: {exc}", expr=rule.expr) from exc

        matches: dict[tuple[tuple[str, str], ...], Match] = {}
        for sample in samples:
            if not rule.matches(sample.value):
                continue
            labels = {**sample.labels, **rule.labels}
            key = series_key(labels)
            if key in matches:
                raise QueryError(
                    f"rule {rule.name}: duplicate label set {dict(key)} after applying rule labels",
                    expr=rule.expr,
                )
            matches[key] = Match(labels=labels, value=sample.value)

        ordered = tuple(matches[k] for k in sorted(matches))
        emit(
            RuleEvaluated(
                rule=rule.name,
                matches=len(ordered),
                latency_ms=(time.perf_counter() - started) * 1000,
                timestamp=now.isoformat(),
            )
        )
        return EvaluationResult(rule=rule.name, evaluated_at=now, matches=ordered)


ResultHandler = Callable[[AlertRule, EvaluationResult], Awaitable[None] | None]


class RuleScheduler:
    """One evaluation loop per rule; same-rule evaluations never overlap."""

    def __init__(
        self,
        evaluator: RuleEvaluator,
        on_result: ResultHandler,
        clock: Clock | None = None,
    ) -> None:
        self._evaluator = evaluator
        self._on_result = on_result
        self._clock = clock or SystemClock()
        self._rules: dict[str, AlertRule] = {}
        self._loops: dict[str, asyncio.Task[None]] = {}
        self._inflight: dict[str, asyncio.Task[None]] = {}
        self.missed: dict[str, int] = {}

    @property
    def rules(self) -> list[AlertRule]:
        return list(self._rules.values())

    def start(self, rules: Iterable[AlertRule]) -> None:
        """Start a loop for every rule. Must be called inside a running loop."""
        self.update_rules(rules)

    def update_rules(self, rules: Iterable[AlertRule]) -> None:
        """Swap the rule set as a whole. Unchanged rules keep their timers."""
        incoming = {rule.name: rule for rule in rules}
        for name in list(self._rules):
            if name not in incoming or incoming[name] != self._rules[name]:
                self._stop_loop(name)
                del self._rules[name]
        for name, rule in incoming.items():
            if name not in self._rules:
                self._rules[name] = rule
                self._loops[name] = asyncio.create_task(self._loop(rule), name=f"rule:{name}")

    def _stop_loop(self, name: str) -> None:
        task = self._loops.pop(name, None)
        if task is not None:
            task.cancel()

    async def tick(self, rule: AlertRule, now: datetime) -> bool:
        """Start one evaluation of rule at now. False if skipped as overlapping."""
        running = self._inflight.get(rule.name)
        if running is not None and not running.done():
            self.missed[rule.name] = self.missed.get(rule.name, 0) + 1
            emit(EvaluationMissed(rule=rule.name, scheduled_at=now.isoformat()))
            _logger(rule=rule.name).warning("rule.evaluation_missed", scheduled_at=now.isoformat())
            return False
        self._inflight[rule.name] = asyncio.create_task(
            self._run_evaluation(rule, now), name=f"eval:{rule.name}"
        )
        return True

    async def _run_evaluation(self, rule: AlertRule, now: datetime) -> None:
        try:
            result = await self._evaluator.evaluate(rule, now)
        except QueryError as exc:
            emit(EvaluationFailed(rule=rule.name, error=str(exc), timestamp=now.isoformat()))
            _logger(rule=rule.name).warning("rule.evaluation_failed", error=str(exc))
            return
        try:
            outcome = self._on_result(rule, result)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            _logger(rule=rule.name).exception("rule.result_handler_failed")

    async def _loop(self, rule: AlertRule) -> None:
        interval = rule.interval.total_seconds()
        next_at = self._clock.now()
        while True:
            await self.tick(rule, self._clock.now())
            next_at = next_at + rule.interval
            delay = (next_at - self._clock.now()).total_seconds()
            if delay < -interval:
                # Fell more than a full interval behind: realign instead of bursting.
                next_at = self._clock.now()
                delay = 0.0
            await self._clock.sleep(delay)

    async def wait_idle(self) -> None:
        """Wait for every in-flight evaluation to finish."""
        pending = [t for t in self._inflight.values() if not t.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def stop(self, drain: bool = True) -> None:
        """Stop all loops. drain=True lets in-flight evaluations complete."""
        for name in list(self._loops):
            self._stop_loop(name)
        if drain:
            await self.wait_idle()
        else:
            for task in self._inflight.values():
                task.cancel()
            await asyncio.gather(*self._inflight.values(), return_exceptions=True)
        self._inflight.clear()
        self._rules.clear()
