# scheduler.py
from __future__ import annotations

import logging
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Deque, Dict, Optional, Tuple

from .conditions import ConditionalGate
from .dag import DependencyGraph
from .executor import JobExecutor
from .model import InstanceId, Outcome, Step
from .report import JobRecord, ReportBuilder, now_utc
from .ui.console import Console

logger = logging.getLogger(__name__)


class Scheduler:
    """
    Single coordinating loop over the dependency graph:

      ready() -> gate -> dispatchable queue -> worker pool -> mark_complete

    Only this loop (running in the caller's thread) mutates the graph and
    the report; workers just run a job and hand back its record.
    """

    def __init__(
        self,
        graph: DependencyGraph,
        gate: ConditionalGate,
        executor: JobExecutor,
        *,
        max_workers: int = 1,
        fail_fast: bool = False,
        console: Optional[Console] = None,
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.graph = graph
        self.gate = gate
        self.executor = executor
        self.max_workers = max_workers
        self.fail_fast = fail_fast
        self.console = console
        self._queue: Deque[Tuple[InstanceId, Tuple[Step, ...]]] = deque()
        self._stopped = False

    # ------------------------------------------------------------------

    def _upstream(self, node: InstanceId) -> Dict[InstanceId, Outcome]:
        states = self.graph.states()
        return {d: Outcome(states[d].value) for d in self.graph.dependencies(node)}

    def _complete(self, report: ReportBuilder, record: JobRecord) -> None:
        report.record(record)
        if self.console:
            self.console.print_job_result(record)

        for node in self.graph.mark_complete(record.id, record.outcome):
            cancelled = JobRecord(
                id=node,
                title=self.graph.instance(node).title,
                outcome=Outcome.CANCELLED,
                reason=f"upstream {record.id} ended {record.outcome.value}",
            )
            report.record(cancelled)
            if self.console:
                self.console.print_job_result(cancelled)

    def _gate_ready(self, report: ReportBuilder) -> None:
        """Run every newly ready instance through the gate until none are left."""
        while True:
            ready = self.graph.ready()
            if not ready:
                return
            for node in ready:
                instance = self.graph.instance(node)
                decision = self.gate.decide(instance, self._upstream(node))
                if decision.permitted:
                    self.graph.mark_dispatchable(node)
                    self._queue.append((node, decision.steps))
                else:
                    logger.info("%s %s: %s", node, decision.outcome.value, decision.reason)
                    ts = now_utc()
                    self._complete(
                        report,
                        JobRecord(
                            id=node,
                            title=instance.title,
                            outcome=decision.outcome,
                            started_at=ts,
                            finished_at=ts,
                            reason=decision.reason,
                        ),
                    )

    def _stop(self, report: ReportBuilder) -> None:
        self._stopped = True
        self._queue.clear()
        for node in self.graph.cancel_pending():
            rec = JobRecord(
                id=node,
                title=self.graph.instance(node).title,
                outcome=Outcome.CANCELLED,
                reason="fail-fast",
            )
            report.record(rec)
            if self.console:
                self.console.print_job_result(rec)

    # ------------------------------------------------------------------

    def run(self, report: Optional[ReportBuilder] = None) -> ReportBuilder:
        report = report or ReportBuilder()
        in_flight: Dict[Future, InstanceId] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            while True:
                if not self._stopped:
                    self._gate_ready(report)

                while self._queue and len(in_flight) < self.max_workers:
                    node, steps = self._queue.popleft()
                    self.graph.mark_running(node)
                    if self.console:
                        self.console.print_job_start(str(node))
                    fut = pool.submit(self.executor.run, self.graph.instance(node), steps)
                    in_flight[fut] = node

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in done:
                    node = in_flight.pop(fut)
                    try:
                        record = fut.result()
                    except Exception as e:
                        logger.exception("job %s crashed", node)
                        record = JobRecord(
                            id=node,
                            title=self.graph.instance(node).title,
                            outcome=Outcome.FAILURE,
                            finished_at=now_utc(),
                            reason=f"{type(e).__name__}: {e}",
                        )
                    self._complete(report, record)
                    if record.outcome is Outcome.FAILURE and self.fail_fast and not self._stopped:
                        self._stop(report)

        if not self.graph.is_finished():
            stuck = [str(n) for n, s in self.graph.states().items() if not s.terminal]
            raise RuntimeError(f"scheduler stopped with unfinished jobs: {stuck}")
        return report
