# errors.py
from __future__ import annotations

from dataclasses import dataclass
from typing import List


class ConfigurationError(Exception):
    """
    A declaration problem detected before any job is dispatched.

    Raising one of these aborts the whole run with zero jobs executed.
    """


class CycleError(ConfigurationError):
    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__("Dependency cycle detected: " + " -> ".join(self.cycle))


class UnknownNeedError(ConfigurationError):
    def __init__(self, job: str, need: str, known: List[str]):
        self.job = job
        self.need = need
        super().__init__(
            f"Job '{job}' needs missing job '{need}'. Known jobs: {sorted(known)}"
        )


class DuplicateJobError(ConfigurationError):
    def __init__(self, names: List[str]):
        self.names = sorted(names)
        super().__init__(f"Duplicate job names found: {self.names}")


class PatternError(ConfigurationError):
    def __init__(self, pattern: str, reason: str):
        self.pattern = pattern
        super().__init__(f"Malformed pattern {pattern!r}: {reason}")


class ConditionSyntaxError(ConfigurationError):
    def __init__(self, expression: str, reason: str):
        self.expression = expression
        super().__init__(f"Invalid condition {expression!r}: {reason}")


class DeclarationError(ConfigurationError):
    """The pipeline document itself could not be read or validated."""


@dataclass
class StepFailure(Exception):
    """
    A step's command reported failure. Local to its job instance; recorded,
    never retried.
    """
    job: str
    step: str
    exit_code: int | None
    message: str = ""

    def __str__(self) -> str:
        code = "n/a" if self.exit_code is None else self.exit_code
        line = f"[{self.job}] step '{self.step}' failed (exit={code})"
        if self.message:
            line += f": {self.message}"
        return line


class MissingSecretError(KeyError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(name)

    def __str__(self) -> str:
        return f"secret {self.name!r} is not available"
