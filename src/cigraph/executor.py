# executor.py
from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

from .errors import MissingSecretError, StepFailure
from .model import InstanceId, JobInstance, Outcome, Step
from .report import JobRecord, StepRecord, now_utc
from .secrets import MappingSecretProvider, Redactor, SecretProvider, scrub_env

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    output: str


class CommandRunner(Protocol):
    def __call__(
        self,
        cmd: str,
        *,
        cwd: str,
        env: Mapping[str, str],
        timeout: float | None,
    ) -> CommandResult:
        ...


def subprocess_runner(
    cmd: str,
    *,
    cwd: str,
    env: Mapping[str, str],
    timeout: float | None,
) -> CommandResult:
    """Run a shell command, merging stderr into stdout."""
    proc = subprocess.run(
        cmd,
        shell=True,
        cwd=cwd,
        env=dict(env),
        text=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        timeout=timeout,
    )
    return CommandResult(exit_code=proc.returncode, output=proc.stdout or "")


def _as_text(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


class JobExecutor:
    """
    Runs one job instance: its selected steps strictly in order, stopping at
    the first failure. Secret values are masked in captured output before
    anything is stored, logged or handed to the console.
    """

    def __init__(
        self,
        secrets: SecretProvider | None = None,
        *,
        runner: CommandRunner = subprocess_runner,
        workdir: str | Path = ".",
        base_env: Mapping[str, str] | None = None,
        step_timeout: float | None = None,
        output_limit: int = 4000,
        on_step: Optional[Callable[[InstanceId, Step], None]] = None,
        secret_names: Iterable[str] = (),
    ):
        self.secrets = secrets or MappingSecretProvider()
        self.runner = runner
        self.workdir = Path(workdir).resolve()
        self.base_env = dict(os.environ if base_env is None else base_env)
        self.step_timeout = step_timeout
        self.output_limit = output_limit
        self.on_step = on_step
        self._protected: List[str] = []
        self.protect(secret_names)

    def protect(self, names: Iterable[str]) -> None:
        """
        Treat `names` as secrets for every job: their values are masked in
        all output, and they are removed from the inherited environment.
        A step only sees a secret it declares.
        """
        names = list(names)
        for name in names:
            try:
                value = self.secrets.get(name)
            except MissingSecretError:
                continue
            if value and value not in self._protected:
                self._protected.append(value)
        self.base_env = scrub_env(self.base_env, self._protected, names)

    def _redactor_for(self, steps: Sequence[Step]) -> Redactor:
        redactor = Redactor(self._protected)
        for step in steps:
            for secret_name in step.secrets.values():
                try:
                    redactor.add(self.secrets.get(secret_name))
                except MissingSecretError:
                    continue
        return redactor

    def _trim(self, text: str) -> str:
        if self.output_limit and len(text) > self.output_limit:
            return text[-self.output_limit:]
        return text

    def _run_step(self, instance: JobInstance, step: Step, redactor: Redactor) -> StepRecord:
        started = now_utc()

        def failed(exit_code: int | None, error: str, output: str = "") -> StepRecord:
            failure = StepFailure(
                job=instance.name, step=step.name, exit_code=exit_code, message=redactor(error)
            )
            logger.info("%s", failure)
            return StepRecord(
                name=step.name,
                outcome=Outcome.FAILURE,
                exit_code=exit_code,
                started_at=started,
                finished_at=now_utc(),
                output=self._trim(redactor(output)),
                error=str(failure),
            )

        env: Dict[str, str] = dict(self.base_env)
        env.update(step.env)
        try:
            for env_name, secret_name in step.secrets.items():
                value = self.secrets.get(secret_name)
                redactor.add(value)
                env[env_name] = value
        except MissingSecretError as e:
            return failed(None, str(e))

        cwd = (self.workdir / (step.cwd or ".")).resolve()
        if not cwd.is_dir():
            return failed(None, f"cwd not found: {cwd}")

        timeout = step.timeout if step.timeout is not None else self.step_timeout
        try:
            result = self.runner(step.run, cwd=str(cwd), env=env, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            return failed(TIMEOUT_EXIT_CODE, f"timed out after {timeout}s", _as_text(e.output))
        except OSError as e:
            return failed(None, f"{type(e).__name__}: {e}")

        output = self._trim(redactor(result.output))
        if result.exit_code != 0:
            return failed(result.exit_code, f"command exited with {result.exit_code}", result.output)

        logger.debug("[%s] %s ok\n%s", instance.name, step.name, output)
        return StepRecord(
            name=step.name,
            outcome=Outcome.SUCCESS,
            exit_code=0,
            started_at=started,
            finished_at=now_utc(),
            output=output,
        )

    def run(self, instance: JobInstance, steps: Optional[Sequence[Step]] = None) -> JobRecord:
        """
        Execute `steps` (default: all of the instance's steps). Steps of the
        instance that were not selected are recorded as skipped.
        """
        selected: List[Step] = list(instance.steps if steps is None else steps)
        redactor = self._redactor_for(selected)
        started = now_utc()

        records: List[StepRecord] = []
        outcome = Outcome.SUCCESS
        remaining = list(selected)
        for step in instance.steps:
            if step not in remaining:
                records.append(StepRecord(name=step.name, outcome=Outcome.SKIPPED))
                continue
            remaining.remove(step)
            if outcome is Outcome.FAILURE:
                records.append(StepRecord(name=step.name, outcome=Outcome.SKIPPED))
                continue

            if self.on_step:
                self.on_step(instance.id, step)
            logger.info("[%s] step %s", instance.name, step.name)
            rec = self._run_step(instance, step, redactor)
            records.append(rec)
            if rec.outcome is Outcome.FAILURE:
                outcome = Outcome.FAILURE

        broken = next((r for r in records if r.outcome is Outcome.FAILURE), None)
        return JobRecord(
            id=instance.id,
            title=instance.title,
            outcome=outcome,
            steps=tuple(records),
            started_at=started,
            finished_at=now_utc(),
            reason=(broken.error or "") if broken else "",
        )
