# src/cigraph/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from .conditions import Condition, parse_condition
from .errors import DuplicateJobError
from .model import JobTemplate, MatrixAxis, Pipeline, Step
from .triggers import (
    PullRequestTrigger,
    PushTrigger,
    TriggerRules,
    pull_request_trigger,
    push_trigger,
)

ConditionLike = Union[Condition, str, None]


def _condition(value: ConditionLike) -> Optional[Condition]:
    if value is None or isinstance(value, Condition):
        return value
    return parse_condition(value)


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, Any]] = None,
    secrets: Optional[Dict[str, str]] = None,
    when: ConditionLike = None,
    timeout: float | None = None,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        # force values to str for env compatibility
        env={k: str(v) for k, v in (env or {}).items()},
        secrets=dict(secrets or {}),
        when=_condition(when),
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    matrix: Optional[Mapping[str, Iterable[Any]]] = None,
    exclude: Optional[List[Mapping[str, Any]]] = None,
    when: ConditionLike = None,
    env: Optional[Dict[str, Any]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
    display_name: str | None = None,
) -> JobTemplate:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    axes = tuple(
        MatrixAxis(name=axis, values=tuple(str(v) for v in values))
        for axis, values in (matrix or {}).items()
    )
    for axis in axes:
        if not axis.values:
            raise ValueError(f"job({name!r}) matrix axis {axis.name!r} has no values")

    return JobTemplate(
        name=name,
        steps=tuple(steps_final),
        needs=tuple(needs or ()),
        axes=axes,
        exclude=tuple({k: str(v) for k, v in e.items()} for e in (exclude or [])),
        when=_condition(when),
        env={k: str(v) for k, v in (env or {}).items()},
        display_name=display_name,
    )


# ---------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------

def on_push(
    tags: Optional[Iterable[str]] = None,
    branches: Optional[Iterable[str]] = None,
) -> PushTrigger:
    return push_trigger(tags=tags, branches=branches)


def on_pull_request(
    branches: Optional[Iterable[str]] = None,
    types: Optional[Iterable[str]] = None,
) -> PullRequestTrigger:
    return pull_request_trigger(branches=branches, types=types)


# ---------------------------------------------------------------------
# Pipeline helper (single-file story)
# ---------------------------------------------------------------------

def pipeline(
    *jobs: JobTemplate,
    name: str = "pipeline",
    push: Optional[PushTrigger] = None,
    pull_request: Optional[PullRequestTrigger] = None,
    manual: bool = False,
) -> Pipeline:
    """
    Workflow definition helper.

    Users can write:
        from cigraph.dsl import pipeline, job, sh, on_push

        def workflow():
            return pipeline(
                job("lint", sh("Ruff", "ruff check .")),
                job("test", sh("Pytest", "pytest -q"), needs=["lint"]),
                push=on_push(branches=["main"]),
            )
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        raise DuplicateJobError([n for n in set(names) if names.count(n) > 1])

    return Pipeline(
        name=name,
        triggers=TriggerRules(push=push, pull_request=pull_request, manual=manual),
        jobs=tuple(jobs),
    )
