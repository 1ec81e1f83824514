"""Run-conditions for jobs and steps, and the gate that applies them.

Conditions are small predicate objects that can be combined with ``&``,
``|`` and ``~`` or parsed from expressions such as::

    is_tag() && ref_matches('v[0-9]+.[0-9]+.[0-9]+')
    always()
    !is_tag()

A job condition that does not mention any status function (``success()``,
``failure()``, ``always()``, ``cancelled()``) is implicitly
``success() && <condition>``: it only runs when every upstream job
succeeded.

Jobs gated on ``always()``, ``failure()`` and the like still wait for
every dependency to finish. By default a cancelled dependency cancels
them too, unless the condition mentions ``cancelled()`` or the gate is
built with ``cancelled_satisfies_needs=True``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import FrozenSet, List, Mapping, Optional, Tuple

from .errors import ConditionSyntaxError
from .model import Event, EventKind, InstanceId, JobInstance, Outcome, Step
from .triggers import RefFilter

logger = logging.getLogger(__name__)

STATUS_FUNCTIONS = frozenset({"success", "failure", "always", "cancelled"})


@dataclass(frozen=True)
class ConditionContext:
    event: Event
    upstream: Mapping[InstanceId, Outcome]


class Condition:
    def evaluate(self, ctx: ConditionContext) -> bool:
        raise NotImplementedError

    def status_functions(self) -> FrozenSet[str]:
        return frozenset()

    def __and__(self, other: "Condition") -> "Condition":
        return And(self, other)

    def __or__(self, other: "Condition") -> "Condition":
        return Or(self, other)

    def __invert__(self) -> "Condition":
        return Not(self)


@dataclass(frozen=True)
class Status(Condition):
    name: str

    def evaluate(self, ctx: ConditionContext) -> bool:
        outcomes = list(ctx.upstream.values())
        if self.name == "success":
            return all(o is Outcome.SUCCESS for o in outcomes)
        if self.name == "failure":
            return any(o is Outcome.FAILURE for o in outcomes)
        if self.name == "cancelled":
            return any(o is Outcome.CANCELLED for o in outcomes)
        return True

    def status_functions(self) -> FrozenSet[str]:
        return frozenset({self.name})

    def __str__(self) -> str:
        return f"{self.name}()"


@dataclass(frozen=True)
class IsTag(Condition):
    def evaluate(self, ctx: ConditionContext) -> bool:
        return ctx.event.is_tag

    def __str__(self) -> str:
        return "is_tag()"


@dataclass(frozen=True)
class IsBranch(Condition):
    def evaluate(self, ctx: ConditionContext) -> bool:
        return ctx.event.is_branch

    def __str__(self) -> str:
        return "is_branch()"


@dataclass(frozen=True)
class RefMatches(Condition):
    """Short ref (tag or branch name) matches a ref filter pattern."""
    pattern: str
    branch_only: bool = False

    def __post_init__(self):
        object.__setattr__(self, "_filter", RefFilter.of([self.pattern]))

    def evaluate(self, ctx: ConditionContext) -> bool:
        if self.branch_only and ctx.event.is_tag:
            return False
        return self._filter.matches(ctx.event.short_ref)

    def __str__(self) -> str:
        fn = "branch" if self.branch_only else "ref_matches"
        return f"{fn}('{self.pattern}')"


@dataclass(frozen=True)
class StartsWith(Condition):
    prefix: str

    def evaluate(self, ctx: ConditionContext) -> bool:
        return ctx.event.ref.startswith(self.prefix)

    def __str__(self) -> str:
        return f"starts_with('{self.prefix}')"


@dataclass(frozen=True)
class EventIs(Condition):
    kind: EventKind

    def evaluate(self, ctx: ConditionContext) -> bool:
        return ctx.event.kind == self.kind

    def __str__(self) -> str:
        return f"event('{self.kind.value}')"


@dataclass(frozen=True)
class And(Condition):
    left: Condition
    right: Condition

    def evaluate(self, ctx: ConditionContext) -> bool:
        return self.left.evaluate(ctx) and self.right.evaluate(ctx)

    def status_functions(self) -> FrozenSet[str]:
        return self.left.status_functions() | self.right.status_functions()

    def __str__(self) -> str:
        return f"({self.left} && {self.right})"


@dataclass(frozen=True)
class Or(Condition):
    left: Condition
    right: Condition

    def evaluate(self, ctx: ConditionContext) -> bool:
        return self.left.evaluate(ctx) or self.right.evaluate(ctx)

    def status_functions(self) -> FrozenSet[str]:
        return self.left.status_functions() | self.right.status_functions()

    def __str__(self) -> str:
        return f"({self.left} || {self.right})"


@dataclass(frozen=True)
class Not(Condition):
    inner: Condition

    def evaluate(self, ctx: ConditionContext) -> bool:
        return not self.inner.evaluate(ctx)

    def status_functions(self) -> FrozenSet[str]:
        return self.inner.status_functions()

    def __str__(self) -> str:
        return f"!{self.inner}"


# ---------------------------------------------------------------------
# Helpers (DSL)
# ---------------------------------------------------------------------

def success() -> Condition:
    return Status("success")


def failure() -> Condition:
    return Status("failure")


def always() -> Condition:
    return Status("always")


def cancelled() -> Condition:
    return Status("cancelled")


def is_tag() -> Condition:
    return IsTag()


def is_branch() -> Condition:
    return IsBranch()


def ref_matches(pattern: str) -> Condition:
    return RefMatches(pattern)


def branch(pattern: str) -> Condition:
    return RefMatches(pattern, branch_only=True)


def starts_with(prefix: str) -> Condition:
    return StartsWith(prefix)


def event(kind: str) -> Condition:
    return EventIs(EventKind(kind))


def not_(condition: Condition) -> Condition:
    return Not(condition)


def _conjuncts(condition: Condition) -> List[Condition]:
    if isinstance(condition, And):
        return _conjuncts(condition.left) + _conjuncts(condition.right)
    return [condition]


def requires_success(condition: Optional[Condition]) -> bool:
    """
    True when the condition can only hold after every upstream job
    succeeded: no status function at all, or ``success()`` as one of its
    top-level ``&&`` terms. Negated or ``||``-joined ``success()`` leaves the
    decision to the expression itself.
    """
    if condition is None or not condition.status_functions():
        return True
    return any(c == Status("success") for c in _conjuncts(condition))


def _status_of(condition: Optional[Condition]) -> FrozenSet[str]:
    return condition.status_functions() if condition is not None else frozenset()


def effective(condition: Optional[Condition]) -> Condition:
    if condition is None:
        return success()
    if not condition.status_functions():
        return success() & condition
    return condition


# ---------------------------------------------------------------------
# Expression parser
# ---------------------------------------------------------------------

_TOKEN = re.compile(
    r"\s*(?:(?P<op>&&|\|\||!|\(|\)|,)|(?P<str>'[^']*'|\"[^\"]*\")|(?P<ident>[A-Za-z_][A-Za-z0-9_]*))"
)

_NULLARY = {
    "success": success,
    "failure": failure,
    "always": always,
    "cancelled": cancelled,
    "is_tag": is_tag,
    "is_branch": is_branch,
}

_UNARY = {
    "ref_matches": ref_matches,
    "branch": branch,
    "starts_with": starts_with,
    "event": event,
}


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens: List[Tuple[str, str]] = self._tokenize(text)
        self.pos = 0

    def _tokenize(self, text: str) -> List[Tuple[str, str]]:
        tokens: List[Tuple[str, str]] = []
        i = 0
        while i < len(text):
            if text[i:].strip() == "":
                break
            m = _TOKEN.match(text, i)
            if not m or m.end() == i:
                raise ConditionSyntaxError(text, f"unexpected character at {i}")
            kind = m.lastgroup
            value = m.group(kind)
            if kind == "str":
                value = value[1:-1]
            tokens.append((kind, value))
            i = m.end()
        return tokens

    def _peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self, value: Optional[str] = None, kind: Optional[str] = None) -> Tuple[str, str]:
        tok = self._peek()
        if tok is None:
            raise ConditionSyntaxError(self.text, "unexpected end of expression")
        if (value is not None and tok[1] != value) or (kind is not None and tok[0] != kind):
            raise ConditionSyntaxError(self.text, f"unexpected {tok[1]!r}")
        self.pos += 1
        return tok

    def parse(self) -> Condition:
        if not self.tokens:
            raise ConditionSyntaxError(self.text, "empty expression")
        cond = self._or()
        if self._peek() is not None:
            raise ConditionSyntaxError(self.text, f"unexpected {self._peek()[1]!r}")
        return cond

    def _or(self) -> Condition:
        cond = self._and()
        while self._peek() == ("op", "||"):
            self._take()
            cond = Or(cond, self._and())
        return cond

    def _and(self) -> Condition:
        cond = self._unary()
        while self._peek() == ("op", "&&"):
            self._take()
            cond = And(cond, self._unary())
        return cond

    def _unary(self) -> Condition:
        if self._peek() == ("op", "!"):
            self._take()
            return Not(self._unary())
        return self._primary()

    def _primary(self) -> Condition:
        if self._peek() == ("op", "("):
            self._take()
            cond = self._or()
            self._take(")")
            return cond

        _, name = self._take(kind="ident")
        self._take("(")
        if name in _NULLARY:
            self._take(")")
            return _NULLARY[name]()
        if name in _UNARY:
            _, arg = self._take(kind="str")
            self._take(")")
            try:
                return _UNARY[name](arg)
            except ValueError as e:
                raise ConditionSyntaxError(self.text, str(e)) from e
        raise ConditionSyntaxError(self.text, f"unknown function {name!r}")


def parse_condition(text: str) -> Condition:
    return _Parser(text).parse()


# ---------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class GateDecision:
    outcome: Optional[Outcome]  # None -> dispatch
    steps: Tuple[Step, ...]
    reason: str

    @property
    def permitted(self) -> bool:
        return self.outcome is None


class ConditionalGate:
    """
    Decides, once all of a job's dependencies are terminal, whether it runs
    and which of its steps are selected for this event.
    """

    def __init__(self, event: Event, *, cancelled_satisfies_needs: bool = False):
        self.event = event
        self.cancelled_satisfies_needs = cancelled_satisfies_needs

    def permits(self, instance: JobInstance, upstream: Mapping[InstanceId, Outcome]) -> bool:
        return self.decide(instance, upstream).permitted

    def decide(
        self, instance: JobInstance, upstream: Mapping[InstanceId, Outcome]
    ) -> GateDecision:
        not_ok = sorted(d for d, o in upstream.items() if o is not Outcome.SUCCESS)

        if requires_success(instance.when) and not_ok:
            blame = ", ".join(f"{d} ({upstream[d].value})" for d in not_ok)
            return GateDecision(Outcome.CANCELLED, (), f"needs {blame}")

        if not self.cancelled_satisfies_needs and "cancelled" not in _status_of(instance.when):
            gone = [d for d in not_ok if upstream[d] is Outcome.CANCELLED]
            if gone:
                return GateDecision(
                    Outcome.CANCELLED, (), "needs " + ", ".join(f"{d} (cancelled)" for d in gone)
                )

        ctx = ConditionContext(event=self.event, upstream=dict(upstream))
        cond = effective(instance.when)
        if not cond.evaluate(ctx):
            return GateDecision(Outcome.SKIPPED, (), f"condition {cond} is false")

        steps = self.select_steps(instance, ctx)
        logger.debug("%s: %d/%d steps selected", instance.id, len(steps), len(instance.steps))
        return GateDecision(None, steps, "ok")

    def select_steps(self, instance: JobInstance, ctx: ConditionContext) -> Tuple[Step, ...]:
        return tuple(s for s in instance.steps if s.when is None or s.when.evaluate(ctx))
