# model.py
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

if TYPE_CHECKING:
    from .conditions import Condition
    from .triggers import TriggerRules


TAG_PREFIX = "refs/tags/"
BRANCH_PREFIX = "refs/heads/"


class EventKind(str, enum.Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    MANUAL = "manual"


class Outcome(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class JobState(str, enum.Enum):
    PENDING = "pending"
    DISPATCHABLE = "dispatchable"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL_STATES

    @classmethod
    def of(cls, outcome: Outcome) -> "JobState":
        return cls(outcome.value)


_TERMINAL_STATES = frozenset(
    {JobState.SUCCESS, JobState.FAILURE, JobState.SKIPPED, JobState.CANCELLED}
)


@dataclass(frozen=True)
class Event:
    """
    The action that triggered a pipeline invocation.

    `ref` may be fully qualified (refs/tags/1.2.3, refs/heads/main) or bare.
    `ref_type` ("tag" / "branch") disambiguates bare refs when known.
    For pull requests, `base_ref` is the target branch and `action` the
    PR action (opened, synchronize, ...).
    """
    kind: EventKind
    ref: str
    base_ref: Optional[str] = None
    action: Optional[str] = None
    ref_type: Optional[str] = None

    @property
    def is_tag(self) -> bool:
        return self.ref.startswith(TAG_PREFIX) or self.ref_type == "tag"

    @property
    def is_branch(self) -> bool:
        return self.ref.startswith(BRANCH_PREFIX) or self.ref_type == "branch"

    @property
    def short_ref(self) -> str:
        for prefix in (TAG_PREFIX, BRANCH_PREFIX):
            if self.ref.startswith(prefix):
                return self.ref[len(prefix):]
        return self.ref


@dataclass(frozen=True)
class Step:
    """
    A single command inside a CI job.

    `secrets` maps environment variable names to secret names resolved
    through the secret provider at dispatch time.
    """
    name: str
    run: str
    cwd: str | None = None
    env: Dict[str, str] = field(default_factory=dict)
    secrets: Dict[str, str] = field(default_factory=dict)
    when: Optional["Condition"] = None
    timeout: float | None = None


@dataclass(frozen=True)
class MatrixAxis:
    name: str
    values: Tuple[str, ...]


@dataclass(frozen=True)
class JobTemplate:
    """A declared job: steps + dependencies + matrix axes + run-condition."""
    name: str
    steps: Tuple[Step, ...]
    needs: Tuple[str, ...] = ()
    axes: Tuple[MatrixAxis, ...] = ()
    exclude: Tuple[Dict[str, str], ...] = ()
    when: Optional["Condition"] = None
    env: Dict[str, str] = field(default_factory=dict)
    display_name: str | None = None


Coordinate = Tuple[Tuple[str, str], ...]


@dataclass(frozen=True, order=True)
class InstanceId:
    """Identity of one job instance: template name + matrix coordinate."""
    template: str
    coordinate: Coordinate = ()

    def __str__(self) -> str:
        if not self.coordinate:
            return self.template
        coords = ", ".join(f"{k}={v}" for k, v in self.coordinate)
        return f"{self.template} ({coords})"


@dataclass(frozen=True)
class JobInstance:
    """
    One concretization of a JobTemplate at a single matrix coordinate.

    Steps are already interpolated with the coordinate values. Runtime state
    lives in the DependencyGraph, which is the only place it is mutated.
    """
    id: InstanceId
    template: JobTemplate
    steps: Tuple[Step, ...]
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return str(self.id)

    @property
    def title(self) -> str:
        """The declared display name with the matrix coordinate, else the id."""
        if not self.template.display_name:
            return self.name
        return str(InstanceId(self.template.display_name, self.id.coordinate))

    @property
    def when(self) -> Optional["Condition"]:
        return self.template.when

    @property
    def matrix(self) -> Dict[str, str]:
        return dict(self.id.coordinate)


@dataclass(frozen=True)
class Pipeline:
    """A full declaration: trigger rules plus job templates."""
    name: str
    triggers: "TriggerRules"
    jobs: Tuple[JobTemplate, ...]

    def job(self, name: str) -> JobTemplate:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)

    def secret_names(self) -> List[str]:
        """Every secret any step of any job declares, in declaration order."""
        names: List[str] = []
        for j in self.jobs:
            for step in j.steps:
                for name in step.secrets.values():
                    if name not in names:
                        names.append(name)
        return names
