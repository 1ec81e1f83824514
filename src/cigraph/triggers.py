# triggers.py
# Decides whether an event starts a pipeline run at all.
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, List, Optional, Tuple

from .errors import PatternError
from .model import BRANCH_PREFIX, Event, EventKind

logger = logging.getLogger(__name__)

DEFAULT_PR_TYPES = frozenset({"opened", "synchronize", "reopened"})


# ---------------------------------------------------------------------
# Ref patterns
# ---------------------------------------------------------------------

def _compile_class(pattern: str, body: str) -> str:
    if not body:
        raise PatternError(pattern, "empty character class")
    parts: List[str] = []
    j = 0
    while j < len(body):
        if j + 2 < len(body) and body[j + 1] == "-":
            lo, hi = body[j], body[j + 2]
            if lo > hi:
                raise PatternError(pattern, f"reversed range {lo}-{hi}")
            parts.append(f"{re.escape(lo)}-{re.escape(hi)}")
            j += 3
        else:
            parts.append(re.escape(body[j]))
            j += 1
    return "[" + "".join(parts) + "]"


def compile_pattern(pattern: str) -> "re.Pattern[str]":
    """
    Translate a ref filter glob into an anchored regex.

    Supported: `*` (anything but `/`), `**` (anything), `?` and `+`
    quantifying the preceding literal or class, `[a-z0-9]` classes and
    `\\x` escapes. Everything else is literal, so `.` means a dot.
    Quantifiers only ever attach to a single atom, which keeps the
    resulting regex free of nested repetition.
    """
    if not pattern:
        raise PatternError(pattern, "empty pattern")

    out: List[str] = []
    quantifiable = False
    i = 0
    n = len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            if pattern.startswith("**", i):
                out.append(".*")
                i += 2
            else:
                out.append("[^/]*")
                i += 1
            quantifiable = False
        elif c in "+?":
            if not quantifiable:
                raise PatternError(pattern, f"'{c}' at position {i} has nothing to repeat")
            out.append(c)
            quantifiable = False
            i += 1
        elif c == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                raise PatternError(pattern, "unclosed character class")
            out.append(_compile_class(pattern, pattern[i + 1:end]))
            quantifiable = True
            i = end + 1
        elif c == "\\":
            if i + 1 >= n:
                raise PatternError(pattern, "dangling escape")
            out.append(re.escape(pattern[i + 1]))
            quantifiable = True
            i += 2
        else:
            out.append(re.escape(c))
            quantifiable = True
            i += 1

    try:
        return re.compile("".join(out))
    except re.error as e:
        raise PatternError(pattern, str(e)) from e


@dataclass(frozen=True)
class RefFilter:
    """
    Ordered list of patterns; a leading `!` negates. The last pattern that
    matches decides, and a name nothing matches is rejected.
    """
    patterns: Tuple[str, ...]
    _compiled: Tuple[Tuple[bool, "re.Pattern[str]"], ...] = field(
        default=(), repr=False, compare=False
    )

    @classmethod
    def of(cls, patterns: Iterable[str]) -> "RefFilter":
        pats = tuple(str(p) for p in patterns)
        compiled = []
        for p in pats:
            negated = p.startswith("!")
            compiled.append((negated, compile_pattern(p[1:] if negated else p)))
        return cls(patterns=pats, _compiled=tuple(compiled))

    def matches(self, name: str) -> bool:
        result = False
        for negated, rx in self._compiled:
            if rx.fullmatch(name):
                result = not negated
        return result


# ---------------------------------------------------------------------
# Trigger rules
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class PushTrigger:
    tags: Optional[RefFilter] = None
    branches: Optional[RefFilter] = None


@dataclass(frozen=True)
class PullRequestTrigger:
    branches: Optional[RefFilter] = None
    types: FrozenSet[str] = DEFAULT_PR_TYPES


@dataclass(frozen=True)
class TriggerDecision:
    run: bool
    reason: str

    def __bool__(self) -> bool:
        return self.run


@dataclass(frozen=True)
class TriggerRules:
    """
    Which events start a run. Anything not explicitly allowed is refused.
    """
    push: Optional[PushTrigger] = None
    pull_request: Optional[PullRequestTrigger] = None
    manual: bool = False

    def should_run(self, event: Event) -> bool:
        return self.evaluate(event).run

    def evaluate(self, event: Event) -> TriggerDecision:
        if event.kind == EventKind.PUSH:
            decision = self._evaluate_push(event)
        elif event.kind == EventKind.PULL_REQUEST:
            decision = self._evaluate_pull_request(event)
        elif event.kind == EventKind.MANUAL:
            decision = TriggerDecision(
                self.manual, "manual runs enabled" if self.manual else "manual runs not declared"
            )
        else:
            decision = TriggerDecision(False, f"unsupported event {event.kind!r}")

        logger.debug("trigger %s %s: %s", event.kind.value, event.ref, decision.reason)
        return decision

    def _evaluate_push(self, event: Event) -> TriggerDecision:
        rule = self.push
        if rule is None:
            return TriggerDecision(False, "push events not declared")
        if rule.tags is None and rule.branches is None:
            return TriggerDecision(True, "push declared without filters")

        name = event.short_ref
        if event.is_tag:
            candidates = [("tag", rule.tags)]
        elif event.is_branch:
            candidates = [("branch", rule.branches)]
        else:
            candidates = [("tag", rule.tags), ("branch", rule.branches)]

        for what, flt in candidates:
            if flt is not None and flt.matches(name):
                return TriggerDecision(True, f"{what} {name!r} matches {list(flt.patterns)}")
        return TriggerDecision(False, f"ref {name!r} matches no push filter")

    def _evaluate_pull_request(self, event: Event) -> TriggerDecision:
        rule = self.pull_request
        if rule is None:
            return TriggerDecision(False, "pull_request events not declared")
        if event.action not in rule.types:
            return TriggerDecision(
                False, f"action {event.action!r} not in {sorted(rule.types)}"
            )
        if not event.base_ref:
            return TriggerDecision(False, "pull request has no target branch")

        target = event.base_ref
        if target.startswith(BRANCH_PREFIX):
            target = target[len(BRANCH_PREFIX):]
        if rule.branches is not None and not rule.branches.matches(target):
            return TriggerDecision(False, f"target {target!r} matches no branch filter")
        return TriggerDecision(True, f"pull request {event.action} into {target!r}")


def push_trigger(
    tags: Optional[Iterable[str]] = None,
    branches: Optional[Iterable[str]] = None,
) -> PushTrigger:
    return PushTrigger(
        tags=RefFilter.of(tags) if tags is not None else None,
        branches=RefFilter.of(branches) if branches is not None else None,
    )


def pull_request_trigger(
    branches: Optional[Iterable[str]] = None,
    types: Optional[Iterable[str]] = None,
) -> PullRequestTrigger:
    return PullRequestTrigger(
        branches=RefFilter.of(branches) if branches is not None else None,
        types=frozenset(types) if types is not None else DEFAULT_PR_TYPES,
    )
