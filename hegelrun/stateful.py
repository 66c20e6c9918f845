"""Stateful (model-based) testing.

Methods of a StateMachine subclass decorated with @rule are actions applied
to the machine; methods decorated with @invariant are checked after every
rule that completes. Call run() inside a property test to drive a machine.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from hegelrun.test_case import AssumptionRejected, StopTest, TestCase, generate_raw

T = TypeVar("T")

_KIND_ATTR = "_hegel_stateful_kind"
_MAX_STEPS = 50
_I64_MAX = (1 << 63) - 1


@dataclass(frozen=True)
class Rule:
    """An action that can be applied to a state machine."""

    name: str
    apply: Callable[[Any, TestCase], None]


@dataclass(frozen=True)
class Invariant:
    """A check run after each successful rule."""

    name: str
    check: Callable[[Any, TestCase], None]


def _expect_int(response: Any, what: str) -> int:
    if isinstance(response, bool) or not isinstance(response, int):
        raise TypeError(f"Expected integer response for {what}, got {response!r}")
    return response


class Variables(Generic[T]):
    """A pool of previously generated values, managed by the server."""

    def __init__(self, tc: TestCase) -> None:
        self._tc = tc
        self._pool_id = _expect_int(tc.send_request("new_pool", {}), "pool id")
        self._values: dict[int, T] = {}

    def __len__(self) -> int:
        return len(self._values)

    def _pool_generate(self, consume: bool) -> int:
        response = self._tc.send_request(
            "pool_generate", {"pool_id": self._pool_id, "consume": consume}
        )
        return _expect_int(response, "variable id")

    def empty(self) -> bool:
        """True if the pool holds no values."""
        return not self._values

    def add(self, value: T) -> None:
        """Add a value to the pool."""
        response = self._tc.send_request("pool_add", {"pool_id": self._pool_id})
        variable_id = _expect_int(response, "variable id")
        if variable_id in self._values:
            raise RuntimeError("unexpected variable id in map")
        self._values[variable_id] = value

    def draw(self) -> T:
        """Pick a value from the pool without removing it; rejects if empty."""
        self._tc.assume(not self.empty())
        return self._values[self._pool_generate(False)]

    def consume(self) -> T:
        """Remove and return a value from the pool; rejects if empty."""
        self._tc.assume(not self.empty())
        return self._values.pop(self._pool_generate(True))


def variables(tc: TestCase) -> Variables[Any]:
    """Create a new variable pool."""
    return Variables(tc)


def rule(func: Callable[..., Any]) -> Callable[..., Any]:
    """Mark a method as a rule of its state machine."""
    setattr(func, _KIND_ATTR, "rule")
    return func


def invariant(func: Callable[..., Any]) -> Callable[..., Any]:
    """Mark a method as an invariant of its state machine."""
    setattr(func, _KIND_ATTR, "invariant")
    return func


def _marked(cls: type, kind: str) -> list[tuple[str, Callable[..., Any]]]:
    members: dict[str, Any] = {}
    for klass in reversed(cls.__mro__):
        members.update(vars(klass))
    return [
        (name, member)
        for name, member in members.items()
        if getattr(member, _KIND_ATTR, None) == kind
    ]


class StateMachine:
    """Base class whose decorated methods become rules and invariants."""

    def rules(self) -> list[Rule]:
        """Rules in definition order."""
        return [Rule(name, func) for name, func in _marked(type(self), "rule")]

    def invariants(self) -> list[Invariant]:
        """Invariants in definition order."""
        return [Invariant(name, func) for name, func in _marked(type(self), "invariant")]


def _integers(min_value: int, max_value: int) -> Callable[[TestCase], int]:
    schema = {"type": "integer", "min_value": min_value, "max_value": max_value}

    def draw(tc: TestCase) -> int:
        return generate_raw(tc, schema)

    return draw


def _check_invariants(machine: Any, tc: TestCase) -> None:
    for inv in machine.invariants():
        inv.check(machine, tc.child(2))


def run(machine: Any, tc: TestCase) -> None:
    """Apply randomly chosen rules to the machine, checking invariants after each."""
    rules = machine.rules()
    if not rules:
        raise ValueError("Cannot run a machine with no rules.")

    rule_index = _integers(0, len(rules) - 1)

    tc.note("Initial invariant check.")
    _check_invariants(machine, tc)

    # An unbounded cap nearly always runs the maximum number of steps, yet
    # still lets the server shrink towards fewer steps.
    step_cap = min(tc.draw_silent(_integers(1, _I64_MAX)), _MAX_STEPS)

    succeeded = 0
    attempted = 0
    step = 0
    while succeeded < step_cap and (
        attempted < 10 * step_cap or (succeeded == 0 and attempted < 1000)
    ):
        step += 1
        chosen = rules[tc.draw_silent(rule_index)]
        tc.note(f"Step {step}: {chosen.name}")

        attempted += 1
        try:
            chosen.apply(machine, tc.child(2))
        except StopTest:
            break
        except AssumptionRejected:
            continue
        except BaseException:
            tc.note("Rule stopped early due to violated assumption.")
            raise
        succeeded += 1
        _check_invariants(machine, tc)