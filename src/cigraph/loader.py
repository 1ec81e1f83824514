"""Loading pipeline declarations.

Two sources are supported:

* YAML documents shaped like the usual hosted-CI workflow files
  (``on`` / ``jobs`` / ``steps``), validated with pydantic models;
* Python workflow files that build a :class:`~cigraph.model.Pipeline` with
  the :mod:`cigraph.dsl` helpers and expose ``workflow()`` or ``PIPELINE``.
"""

from __future__ import annotations

import logging
import runpy
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .dsl import job, on_pull_request, on_push, pipeline, sh
from .errors import DeclarationError
from .model import Pipeline

logger = logging.getLogger(__name__)



def _stringify(values: Dict[str, Any]) -> Dict[str, str]:
    return {str(k): str(v) for k, v in (values or {}).items()}


# ── Document schema ──────────────────────────────────────────────────────────


class StepDoc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: Optional[str] = None
    run: str
    if_: Optional[str] = Field(default=None, alias="if")
    cwd: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    secrets: Dict[str, str] = Field(default_factory=dict)
    timeout: Optional[float] = Field(default=None, gt=0)

    @field_validator("env", "secrets", mode="before")
    @classmethod
    def _coerce(cls, v: Any) -> Dict[str, str]:
        return _stringify(v) if isinstance(v, dict) else v

    @property
    def label(self) -> str:
        return self.name or self.run.strip().splitlines()[0]


class JobDoc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: Optional[str] = None
    needs: List[str] = Field(default_factory=list)
    if_: Optional[str] = Field(default=None, alias="if")
    env: Dict[str, str] = Field(default_factory=dict)
    matrix: Dict[str, List[Any]] = Field(default_factory=dict)
    steps: List[StepDoc] = Field(min_length=1)

    @field_validator("needs", mode="before")
    @classmethod
    def _single_need(cls, v: Any) -> Any:
        return [v] if isinstance(v, str) else v

    @field_validator("env", mode="before")
    @classmethod
    def _coerce_env(cls, v: Any) -> Any:
        return _stringify(v) if isinstance(v, dict) else v

    @field_validator("matrix")
    @classmethod
    def _check_matrix(cls, v: Dict[str, List[Any]]) -> Dict[str, List[Any]]:
        for axis, values in v.items():
            if axis == "exclude":
                if not all(isinstance(e, dict) for e in values):
                    raise ValueError("matrix.exclude entries must be mappings")
                continue
            if not values:
                raise ValueError(f"matrix axis {axis!r} has no values")
            if not all(isinstance(x, (str, int, float, bool)) for x in values):
                raise ValueError(f"matrix axis {axis!r} values must be scalars")
        return v


class PushDoc(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tags: Optional[List[str]] = None
    branches: Optional[List[str]] = None


class PullRequestDoc(BaseModel):
    model_config = ConfigDict(extra="forbid")

    branches: Optional[List[str]] = None
    types: Optional[List[str]] = None


class OnDoc(BaseModel):
    model_config = ConfigDict(extra="forbid")

    push: Optional[PushDoc] = None
    pull_request: Optional[PullRequestDoc] = None
    manual: bool = False

    @model_validator(mode="before")
    @classmethod
    def _bare_events(cls, data: Any) -> Any:
        # `on: [push, pull_request]` and `push:` with no body both mean "no filters"
        if isinstance(data, str):
            data = [data]
        if isinstance(data, list):
            data = {name: {} for name in data}
        if isinstance(data, dict):
            data = dict(data)
            for key in ("push", "pull_request"):
                if key in data and data[key] is None:
                    data[key] = {}
            if "manual" in data and data["manual"] in (None, {}):
                data["manual"] = True
        return data


class PipelineDoc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: str = "pipeline"
    on: OnDoc = Field(default_factory=OnDoc)
    jobs: Dict[str, JobDoc] = Field(min_length=1)


# ── Conversion ───────────────────────────────────────────────────────────────


def to_pipeline(doc: PipelineDoc) -> Pipeline:
    templates = []
    for job_id, jd in doc.jobs.items():
        axes = {k: v for k, v in jd.matrix.items() if k != "exclude"}
        exclude = jd.matrix.get("exclude", [])
        steps = [
            sh(
                s.label,
                s.run,
                cwd=s.cwd,
                env=s.env,
                secrets=s.secrets,
                when=s.if_,
                timeout=s.timeout,
            )
            for s in jd.steps
        ]
        templates.append(
            job(
                job_id,
                *steps,
                needs=jd.needs,
                matrix=axes,
                exclude=exclude,
                when=jd.if_,
                env=jd.env,
                display_name=jd.name,
            )
        )

    on = doc.on
    return pipeline(
        *templates,
        name=doc.name,
        push=on_push(on.push.tags, on.push.branches) if on.push else None,
        pull_request=(
            on_pull_request(on.pull_request.branches, on.pull_request.types)
            if on.pull_request else None
        ),
        manual=on.manual,
    )


def parse_pipeline(data: Any) -> Pipeline:
    """Validate an already-decoded document and build the Pipeline."""
    if not isinstance(data, dict):
        raise DeclarationError("Pipeline document must be a mapping")
    data = dict(data)
    # YAML 1.1 reads a bare `on` key as boolean True
    if True in data and "on" not in data:
        data["on"] = data.pop(True)

    try:
        doc = PipelineDoc.model_validate(data)
    except ValidationError as e:
        raise DeclarationError(f"Invalid pipeline declaration:\n{e}") from e
    try:
        return to_pipeline(doc)
    except ValueError as e:
        raise DeclarationError(str(e)) from e


def load_yaml(path: Path) -> Pipeline:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise DeclarationError(f"Could not parse {path.name}: {e}") from e
    return parse_pipeline(data)


def load_python(path: Path) -> Pipeline:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> Pipeline
      - PIPELINE = Pipeline(...)
    """
    module_name = f"cigraph_workflow_{path.stem}"
    globals_dict = runpy.run_path(str(path), run_name=module_name)

    result = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        result = globals_dict["workflow"]()
    elif "PIPELINE" in globals_dict:
        result = globals_dict["PIPELINE"]

    if not isinstance(result, Pipeline):
        raise DeclarationError(
            "Workflow must return/define a Pipeline. "
            "Define workflow() -> Pipeline or PIPELINE = pipeline(...)."
        )
    return result


def load_workflow(path: str | Path) -> Pipeline:
    """Load a pipeline from a .yml/.yaml document or a .py workflow file."""
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise DeclarationError(f"Workflow file not found: {wf_path}")

    logger.debug("loading workflow %s", wf_path)
    if wf_path.suffix in (".yml", ".yaml"):
        return load_yaml(wf_path)
    if wf_path.suffix == ".py":
        return load_python(wf_path)
    raise DeclarationError(f"Workflow must be a .yml, .yaml or .py file, got: {wf_path.name}")
