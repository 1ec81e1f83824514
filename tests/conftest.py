from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, List, Mapping, Tuple, Union

import pytest

from cigraph.executor import CommandResult, JobExecutor
from cigraph.model import Event, EventKind
from cigraph.secrets import MappingSecretProvider

Scripted = Union[int, CommandResult, Callable[[str, Mapping[str, str]], CommandResult]]


class FakeRunner:
    """Command runner double: records every call and returns scripted results."""

    def __init__(self, results: Dict[str, Scripted] | None = None, delay: float = 0.0):
        self.results = results or {}
        self.delay = delay
        self.calls: List[Tuple[str, Dict[str, str]]] = []
        self._lock = threading.Lock()

    def __call__(self, cmd: str, *, cwd: str, env: Mapping[str, str], timeout: float | None) -> CommandResult:
        with self._lock:
            self.calls.append((cmd, dict(env)))
        if self.delay:
            time.sleep(self.delay)
        scripted = self.results.get(cmd, 0)
        if callable(scripted):
            return scripted(cmd, env)
        if isinstance(scripted, CommandResult):
            return scripted
        return CommandResult(exit_code=scripted, output=f"ran {cmd}\n")

    @property
    def commands(self) -> List[str]:
        return [c for c, _ in self.calls]


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def make_executor(tmp_path):
    def factory(runner: Any, secrets: Dict[str, str] | None = None, **kwargs) -> JobExecutor:
        return JobExecutor(
            MappingSecretProvider(secrets or {}),
            runner=runner,
            workdir=tmp_path,
            base_env={},
            **kwargs,
        )

    return factory


@pytest.fixture
def tag_push() -> Event:
    return Event(kind=EventKind.PUSH, ref="refs/tags/1.2.3")


@pytest.fixture
def branch_push() -> Event:
    return Event(kind=EventKind.PUSH, ref="refs/heads/main")
