# matrix.py
from __future__ import annotations

import itertools
import re
from dataclasses import replace
from typing import Dict, Iterable, List, Mapping

from .errors import DeclarationError
from .model import Coordinate, InstanceId, JobInstance, JobTemplate, Step

_MATRIX_REF = re.compile(r"\$\{\{\s*matrix\.([A-Za-z0-9_-]+)\s*\}\}")


def matrix_env(coordinate: Coordinate) -> Dict[str, str]:
    """MATRIX_<AXIS> variables for one coordinate."""
    return {
        "MATRIX_" + re.sub(r"[^A-Za-z0-9]", "_", name).upper(): value
        for name, value in coordinate
    }


def interpolate(text: str, values: Mapping[str, str]) -> str:
    """Replace ${{ matrix.<axis> }} references; unknown axes become empty."""
    return _MATRIX_REF.sub(lambda m: values.get(m.group(1), ""), text)


def _excluded(coordinate: Coordinate, exclude: Iterable[Mapping[str, str]]) -> bool:
    values = dict(coordinate)
    for rule in exclude:
        if rule and all(values.get(k) == str(v) for k, v in rule.items()):
            return True
    return False


def coordinates(template: JobTemplate) -> List[Coordinate]:
    """
    Cartesian product of the template's axes in declaration order.
    No axes -> a single empty coordinate.
    """
    names = [axis.name for axis in template.axes]
    products = itertools.product(*(axis.values for axis in template.axes))
    out: List[Coordinate] = []
    for combo in products:
        coord = tuple(zip(names, combo))
        if not _excluded(coord, template.exclude):
            out.append(coord)
    return out


def _resolve_step(step: Step, values: Mapping[str, str], env: Mapping[str, str]) -> Step:
    return replace(
        step,
        name=interpolate(step.name, values),
        run=interpolate(step.run, values),
        env={**env, **{k: interpolate(v, values) for k, v in step.env.items()}},
    )


def expand(template: JobTemplate) -> List[JobInstance]:
    """
    Turn one template into its concrete instances. Pure: the template is
    left untouched and the order is stable across runs.

    Raises DeclarationError when the axes or `exclude` leave no coordinate.
    """
    coords = coordinates(template)
    if not coords:
        raise DeclarationError(f"job '{template.name}' has an empty matrix: no combination is left to run")

    instances: List[JobInstance] = []
    for coord in coords:
        values = dict(coord)
        env = {
            **{k: interpolate(v, values) for k, v in template.env.items()},
            **matrix_env(coord),
        }
        steps = tuple(_resolve_step(s, values, env) for s in template.steps)
        instances.append(
            JobInstance(
                id=InstanceId(template=template.name, coordinate=coord),
                template=template,
                steps=steps,
                env=env,
            )
        )
    return instances


def expand_all(templates: Iterable[JobTemplate]) -> List[JobInstance]:
    out: List[JobInstance] = []
    for t in templates:
        out.extend(expand(t))
    return out
