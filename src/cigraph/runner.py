# runner.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from .conditions import ConditionalGate
from .dag import DependencyGraph
from .errors import DuplicateJobError
from .executor import JobExecutor
from .matrix import expand_all
from .model import Event, Pipeline
from .report import RunReport, not_triggered
from .scheduler import Scheduler
from .secrets import EnvSecretProvider, SecretProvider
from .settings import Settings, load_settings
from .triggers import TriggerDecision
from .ui.console import Console

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Plan:
    """Everything decided before the first job runs."""
    pipeline: Pipeline
    event: Event
    trigger: TriggerDecision
    graph: Optional[DependencyGraph]

    @property
    def levels(self) -> List[List[str]]:
        if self.graph is None:
            return []
        return [[str(n) for n in level] for level in self.graph.levels()]


def plan_pipeline(pipeline: Pipeline, event: Event) -> Plan:
    """
    Evaluate the trigger, expand matrices and build the graph.

    Configuration errors (unknown needs, cycles, duplicates) are raised
    even when the trigger does not fire, so a broken declaration is never
    silently accepted.
    """
    names = [j.name for j in pipeline.jobs]
    if len(set(names)) != len(names):
        raise DuplicateJobError([n for n in set(names) if names.count(n) > 1])

    graph = DependencyGraph.build(expand_all(pipeline.jobs))
    decision = pipeline.triggers.evaluate(event)
    return Plan(pipeline=pipeline, event=event, trigger=decision, graph=graph)


def run_pipeline(
    pipeline: Pipeline,
    event: Event,
    *,
    secrets: SecretProvider | None = None,
    settings: Settings | None = None,
    executor: JobExecutor | None = None,
    console: Console | None = None,
    workdir: str = ".",
) -> RunReport:
    """
    Run one pipeline invocation end to end and return its report.

    Raises ConfigurationError before anything executes when the declaration
    is invalid. Job and step failures never raise; they end up in the report.
    """
    settings = settings or load_settings()
    plan = plan_pipeline(pipeline, event)

    if console:
        console.print_trigger(plan.trigger.run, plan.trigger.reason)
    if not plan.trigger:
        logger.info("pipeline %s not triggered: %s", pipeline.name, plan.trigger.reason)
        return not_triggered(pipeline.name, event, plan.trigger.reason)

    if executor is None:
        executor = JobExecutor(
            secrets or EnvSecretProvider(),
            workdir=workdir,
            step_timeout=settings.step_timeout,
            output_limit=settings.output_limit,
            on_step=(lambda node, step: console.print_step(str(node), step.name)) if console else None,
        )
    executor.protect(pipeline.secret_names())

    gate = ConditionalGate(event, cancelled_satisfies_needs=settings.cancelled_satisfies_needs)
    scheduler = Scheduler(
        plan.graph,
        gate,
        executor,
        max_workers=settings.max_workers,
        fail_fast=settings.fail_fast,
        console=console,
    )
    builder = scheduler.run()
    report = builder.build(
        pipeline.name, event, order=plan.graph.ids, trigger_reason=plan.trigger.reason
    )
    logger.info("pipeline %s finished: %s", pipeline.name, report.outcome.value)
    return report
