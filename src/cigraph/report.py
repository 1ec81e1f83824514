# report.py
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .model import Event, InstanceId, Outcome


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts else None


@dataclass(frozen=True)
class StepRecord:
    """What happened to one step. `output` is already redacted."""
    name: str
    outcome: Outcome
    exit_code: int | None = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    output: str = ""
    error: str | None = None

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "outcome": self.outcome.value,
            "exit_code": self.exit_code,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "output": self.output,
            "error": self.error,
        }


@dataclass(frozen=True)
class JobRecord:
    id: InstanceId
    outcome: Outcome
    steps: Tuple[StepRecord, ...] = ()
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    reason: str = ""
    title: str = ""

    @property
    def name(self) -> str:
        return str(self.id)

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    @property
    def failed_step(self) -> Optional[StepRecord]:
        for s in self.steps:
            if s.outcome is Outcome.FAILURE:
                return s
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job": self.id.template,
            "name": self.title or self.name,
            "matrix": dict(self.id.coordinate),
            "outcome": self.outcome.value,
            "reason": self.reason,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass(frozen=True)
class RunReport:
    """
    Read-only snapshot of one pipeline invocation.

    Overall outcome is success iff every job that was neither skipped nor
    cancelled succeeded. A run whose trigger did not fire is SKIPPED and
    still exits 0.
    """
    pipeline: str
    event: Event
    triggered: bool
    jobs: Mapping[InstanceId, JobRecord] = field(default_factory=lambda: MappingProxyType({}))
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    trigger_reason: str = ""

    @property
    def outcome(self) -> Outcome:
        if not self.triggered:
            return Outcome.SKIPPED
        for rec in self.jobs.values():
            if rec.outcome in (Outcome.SKIPPED, Outcome.CANCELLED):
                continue
            if rec.outcome is not Outcome.SUCCESS:
                return Outcome.FAILURE
        return Outcome.SUCCESS

    @property
    def exit_code(self) -> int:
        return 1 if self.outcome is Outcome.FAILURE else 0

    @property
    def outcomes(self) -> Dict[InstanceId, Outcome]:
        return {k: r.outcome for k, r in self.jobs.items()}

    def __getitem__(self, key: InstanceId | str) -> JobRecord:
        if isinstance(key, str):
            for node, rec in self.jobs.items():
                if str(node) == key:
                    return rec
            raise KeyError(key)
        return self.jobs[key]

    def by_template(self, template: str) -> List[JobRecord]:
        return [r for k, r in self.jobs.items() if k.template == template]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pipeline": self.pipeline,
            "event": {
                "kind": self.event.kind.value,
                "ref": self.event.ref,
                "base_ref": self.event.base_ref,
                "action": self.event.action,
            },
            "triggered": self.triggered,
            "trigger_reason": self.trigger_reason,
            "outcome": self.outcome.value,
            "exit_code": self.exit_code,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "jobs": {str(k): r.to_dict() for k, r in self.jobs.items()},
        }


class ReportBuilder:
    """Collects job records while the scheduler runs."""

    def __init__(self):
        self._records: Dict[InstanceId, JobRecord] = {}
        self._lock = threading.Lock()
        self.started_at = now_utc()

    def record(self, rec: JobRecord) -> None:
        with self._lock:
            self._records.setdefault(rec.id, rec)

    def outcomes(self) -> Dict[InstanceId, Outcome]:
        with self._lock:
            return {k: r.outcome for k, r in self._records.items()}

    def build(
        self,
        pipeline: str,
        event: Event,
        *,
        order: Iterable[InstanceId] = (),
        trigger_reason: str = "",
    ) -> RunReport:
        with self._lock:
            records = dict(self._records)
        ordered: Dict[InstanceId, JobRecord] = {}
        for node in order:
            if node in records:
                ordered[node] = records.pop(node)
        ordered.update(records)
        return RunReport(
            pipeline=pipeline,
            event=event,
            triggered=True,
            jobs=MappingProxyType(ordered),
            started_at=self.started_at,
            finished_at=now_utc(),
            trigger_reason=trigger_reason,
        )


def not_triggered(pipeline: str, event: Event, reason: str) -> RunReport:
    ts = now_utc()
    return RunReport(
        pipeline=pipeline,
        event=event,
        triggered=False,
        started_at=ts,
        finished_at=ts,
        trigger_reason=reason,
    )
