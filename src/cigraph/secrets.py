# secrets.py
from __future__ import annotations

import logging
import os
from typing import Dict, Iterable, List, Mapping, Optional, Protocol

from .errors import MissingSecretError

logger = logging.getLogger(__name__)

MASK = "***"


class SecretProvider(Protocol):
    def get(self, name: str) -> str:
        """Return the secret value or raise MissingSecretError."""
        ...


class MappingSecretProvider:
    """Secrets from an in-memory mapping (secrets file, tests)."""

    def __init__(self, values: Mapping[str, str] | None = None):
        self._values = {k: str(v) for k, v in (values or {}).items()}

    def get(self, name: str) -> str:
        try:
            return self._values[name]
        except KeyError:
            raise MissingSecretError(name) from None


class EnvSecretProvider:
    """Secrets from environment variables, optionally namespaced by a prefix."""

    def __init__(self, prefix: str = "", environ: Mapping[str, str] | None = None):
        self.prefix = prefix
        self._environ = os.environ if environ is None else environ

    def get(self, name: str) -> str:
        value = self._environ.get(self.prefix + name)
        if value is None:
            raise MissingSecretError(name)
        return value


class ChainSecretProvider:
    """First provider that knows the secret wins."""

    def __init__(self, *providers: SecretProvider):
        self.providers = providers

    def get(self, name: str) -> str:
        for p in self.providers:
            try:
                return p.get(name)
            except MissingSecretError:
                continue
        raise MissingSecretError(name)


class Redactor:
    """
    Masks known secret values in text. Longer values are replaced first so a
    secret containing another secret is never partially revealed.
    """

    def __init__(self, values: Optional[Iterable[str]] = None):
        self._values: List[str] = []
        for v in values or ():
            self.add(v)

    def add(self, value: str) -> None:
        if value and value not in self._values:
            self._values.append(value)
            self._values.sort(key=len, reverse=True)

    def __call__(self, text: str) -> str:
        for v in self._values:
            text = text.replace(v, MASK)
        return text


def scrub_env(
    environ: Mapping[str, str],
    values: Iterable[str],
    names: Iterable[str] = (),
) -> Dict[str, str]:
    """
    Copy of `environ` without the named variables and without any variable
    whose value is one of the secret `values`. Never mutates `environ`.
    """
    strip = set(names)
    secret_values = {v for v in values if v}
    env: Dict[str, str] = {}
    stripped: List[str] = []
    for key, value in environ.items():
        if key in strip or value in secret_values:
            stripped.append(key)
            continue
        env[key] = value
    if stripped:
        logger.debug("scrubbed %d secret variable(s) from the job environment", len(stripped))
    return env
