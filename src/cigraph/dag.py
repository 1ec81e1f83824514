# dag.py
from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Set

from .conditions import requires_success
from .errors import CycleError, DuplicateJobError, UnknownNeedError
from .model import InstanceId, JobInstance, JobState, Outcome

logger = logging.getLogger(__name__)


def _find_cycle(deps: Mapping[InstanceId, FrozenSet[InstanceId]]) -> Optional[List[InstanceId]]:
    """Depth-first search with a visiting set; returns the cycle path if any."""
    visiting: Set[InstanceId] = set()
    done: Set[InstanceId] = set()
    path: List[InstanceId] = []

    def visit(node: InstanceId) -> Optional[List[InstanceId]]:
        visiting.add(node)
        path.append(node)
        for dep in sorted(deps[node]):
            if dep in visiting:
                return path[path.index(dep):] + [dep]
            if dep not in done:
                cycle = visit(dep)
                if cycle:
                    return cycle
        visiting.discard(node)
        path.pop()
        done.add(node)
        return None

    for node in sorted(deps):
        if node not in done:
            cycle = visit(node)
            if cycle:
                return cycle
    return None


class DependencyGraph:
    """
    Instance-level DAG plus the per-instance run state.

    Edges point from a job to the jobs it needs. All state transitions go
    through one lock, so completions arriving from worker threads are
    serialized.
    """

    def __init__(
        self,
        instances: Sequence[JobInstance],
        deps: Mapping[InstanceId, FrozenSet[InstanceId]],
    ):
        self._instances: Dict[InstanceId, JobInstance] = {i.id: i for i in instances}
        self._order: List[InstanceId] = [i.id for i in instances]
        self._deps: Dict[InstanceId, FrozenSet[InstanceId]] = dict(deps)
        self._dependents: Dict[InstanceId, Set[InstanceId]] = {n: set() for n in self._order}
        for node, needs in self._deps.items():
            for d in needs:
                self._dependents[d].add(node)
        self._strict: Dict[InstanceId, bool] = {
            i.id: requires_success(i.when) for i in instances
        }
        self._state: Dict[InstanceId, JobState] = {n: JobState.PENDING for n in self._order}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def build(
        cls,
        instances: Iterable[JobInstance],
        needs: Optional[Mapping[str, Sequence[str]]] = None,
    ) -> "DependencyGraph":
        """
        Resolve template-level `needs` into instance-level edges: every
        instance of T depends on every instance of each template T needs.

        Raises UnknownNeedError / DuplicateJobError / CycleError before any
        state exists, so nothing can be dispatched from a bad declaration.
        """
        instances = list(instances)

        ids = [i.id for i in instances]
        if len(set(ids)) != len(ids):
            raise DuplicateJobError(sorted({str(n) for n in ids if ids.count(n) > 1}))

        by_template: Dict[str, List[InstanceId]] = {}
        for inst in instances:
            by_template.setdefault(inst.id.template, []).append(inst.id)

        deps: Dict[InstanceId, FrozenSet[InstanceId]] = {}
        for inst in instances:
            template_needs = (
                needs.get(inst.id.template, ()) if needs is not None else inst.template.needs
            )
            resolved: Set[InstanceId] = set()
            for need in template_needs:
                if need not in by_template:
                    raise UnknownNeedError(inst.id.template, need, list(by_template))
                resolved.update(by_template[need])
            deps[inst.id] = frozenset(resolved)

        cycle = _find_cycle(deps)
        if cycle:
            raise CycleError([str(n) for n in cycle])

        logger.debug(
            "graph built: %d instances, %d edges",
            len(instances),
            sum(len(d) for d in deps.values()),
        )
        return cls(instances, deps)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._order)

    def __contains__(self, node: object) -> bool:
        return node in self._instances

    @property
    def ids(self) -> List[InstanceId]:
        return list(self._order)

    def instance(self, node: InstanceId) -> JobInstance:
        return self._instances[node]

    def dependencies(self, node: InstanceId) -> FrozenSet[InstanceId]:
        return self._deps[node]

    def dependents(self, node: InstanceId) -> FrozenSet[InstanceId]:
        return frozenset(self._dependents[node])

    def state(self, node: InstanceId) -> JobState:
        with self._lock:
            return self._state[node]

    def states(self) -> Dict[InstanceId, JobState]:
        with self._lock:
            return dict(self._state)

    def ready(self) -> List[InstanceId]:
        """Pending instances whose dependencies have all reached a terminal state."""
        with self._lock:
            return [
                n for n in self._order
                if self._state[n] is JobState.PENDING
                and all(self._state[d].terminal for d in self._deps[n])
            ]

    def is_finished(self) -> bool:
        with self._lock:
            return all(s.terminal for s in self._state.values())

    def levels(self) -> List[List[InstanceId]]:
        """
        Topological "stages": each level only needs earlier levels, so
        everything inside one level may run in parallel.
        """
        indeg = {n: len(self._deps[n]) for n in self._order}
        q = deque(n for n in self._order if indeg[n] == 0)

        levels: List[List[InstanceId]] = []
        while q:
            level: List[InstanceId] = []
            for _ in range(len(q)):
                node = q.popleft()
                level.append(node)
                for child in sorted(self._dependents[node]):
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        q.append(child)
            levels.append(level)
        return levels

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(self, node: InstanceId, expected: JobState, new: JobState) -> None:
        with self._lock:
            current = self._state[node]
            if current is not expected:
                raise ValueError(f"{node}: cannot move {current.value} -> {new.value}")
            self._state[node] = new

    def mark_dispatchable(self, node: InstanceId) -> None:
        self._transition(node, JobState.PENDING, JobState.DISPATCHABLE)

    def mark_running(self, node: InstanceId) -> None:
        self._transition(node, JobState.DISPATCHABLE, JobState.RUNNING)

    def mark_complete(self, node: InstanceId, outcome: Outcome) -> List[InstanceId]:
        """
        Record a terminal outcome. Idempotent: completing an already
        terminal node changes nothing.

        Any non-success outcome cancels pending dependents that require
        strict success, transitively. Returns the instances cancelled by
        this call.
        """
        with self._lock:
            if self._state[node].terminal:
                return []
            self._state[node] = JobState.of(outcome)
            if outcome is Outcome.SUCCESS:
                return []

            cancelled: List[InstanceId] = []
            q = deque([node])
            while q:
                current = q.popleft()
                for child in sorted(self._dependents[current]):
                    if self._state[child] is JobState.PENDING and self._strict[child]:
                        self._state[child] = JobState.CANCELLED
                        cancelled.append(child)
                        q.append(child)

        if cancelled:
            logger.info(
                "%s ended %s; cancelled %s",
                node, outcome.value, ", ".join(str(c) for c in cancelled),
            )
        return cancelled

    def cancel_pending(self) -> List[InstanceId]:
        """Cancel everything not yet running (fail-fast)."""
        with self._lock:
            cancelled = [
                n for n in self._order
                if self._state[n] in (JobState.PENDING, JobState.DISPATCHABLE)
            ]
            for n in cancelled:
                self._state[n] = JobState.CANCELLED
        return cancelled
