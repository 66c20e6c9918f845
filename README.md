# hegelrun

Property-based testing driven by a Hegel server. `hegelrun` starts the
server as a subprocess, runs your test function against many test cases
whose values the server generates, and, when a case fails, lets the server
shrink it and replays the shrunk cases with their draws and notes printed
to standard error.

## Installation

```bash
pip install hegelrun
```

The server executable is found in one of two ways:

* If the `HEGEL_SERVER_COMMAND` environment variable is set, its value is
  used as the path of the server executable.
* Otherwise `uv` must be on the `PATH`; `hegel-core` is then installed with
  `uv` into a local `.hegel/venv` directory on first use
  (`hegelrun.server.ensure_hegel_installed`). An existing installation of
  the expected version is reused; the install output goes to
  `.hegel/install.log`.

The server is started with `--stdio --verbosity normal`, its standard error
is appended to `.hegel/server.log`, and a handshake checks that it speaks a
supported protocol version (0.6 to 0.7); otherwise `HandshakeError` is
raised. Installation problems raise `InstallError`.

## Writing a test

A test is a function that takes a `TestCase`. Draw values with
`tc.draw(...)`, reject unsuitable inputs with `tc.assume(...)` and attach
debugging output with `tc.note(...)`.

Something to draw from is either a callable taking the `TestCase` or an
object with a `do_draw(tc)` method. The usual way to get a value is to send
a schema to the server with `generate_raw`:

```python
from hegelrun.runner import hegel
from hegelrun.settings import Settings
from hegelrun.test_case import generate_raw


def integers(tc):
    return generate_raw(tc, {"type": "integer", "min_value": -1000, "max_value": 1000})


def check_addition_commutes(tc):
    x = tc.draw(integers)
    y = tc.draw(integers)
    tc.note(f"x + y = {x + y}")
    assert x + y == y + x


hegel(check_addition_commutes, Settings(test_cases=500))
```

`tc.draw` records each value ("Draw 1: ...") and `tc.note` prints its
message, but only while a failing case is being replayed. `tc.draw_silent`
draws without recording.

If any case fails, `hegel` raises `PropertyTestFailed` (a subclass of
`AssertionError`) carrying the message of the shrunk failure. A server
error, a health-check failure and a flaky test raise `ServerReportedError`,
`HealthCheckFailed` and `FlakyTestError` from `hegelrun.runner`; a server
that exits mid-run raises `hegelrun.connection.ServerCrashedError`.

`hegel` uses one server session per process, started on first use
(`hegelrun.server.get_session`) and stopped at exit. To pick a server or a
database key yourself, use `Hegel` and `HegelSession` directly:

```python
from hegelrun.runner import Hegel
from hegelrun.server import HegelSession

with HegelSession("/path/to/hegel") as session:
    Hegel(check_addition_commutes, database_key="addition").run(session)
```

Setting `HEGEL_PROTOCOL_DEBUG=1` (or `Verbosity.DEBUG`) prints every request
and response on the test-case channels.

## Settings

`Settings` is a frozen dataclass holding the number of test cases
(default 100), the `Verbosity` (`QUIET`, `NORMAL`, `VERBOSE`, `DEBUG`), an
optional seed, derandomisation, the failure database and the health checks
to suppress:

```python
from hegelrun.settings import HealthCheck, Settings, Verbosity

settings = Settings().with_options(verbosity=Verbosity.VERBOSE, seed=1234)
settings = settings.suppress(HealthCheck.all())
```

`database` is a path, `None` to disable the database, or `UNSET` to leave
the choice to the server. In CI environments (detected from common CI
variables by `is_in_ci`) the database is disabled and runs are
derandomised by default.

## Stateful testing

Subclass `StateMachine`, mark methods with `@rule` and `@invariant`, and
call `run` inside a test. Invariants are checked first, then rules are
applied in a server-chosen order for up to 50 steps, with the invariants
checked after every rule that completes. A rule rejected by `tc.assume`
does not count as a step; a machine without rules raises `ValueError`.

```python
from hegelrun.stateful import StateMachine, invariant, rule, run


class Counter(StateMachine):
    def __init__(self):
        self.value = 0

    @rule
    def increment(self, tc):
        self.value += 1

    @rule
    def reset(self, tc):
        tc.assume(self.value > 0)
        self.value = 0

    @invariant
    def non_negative(self, tc):
        assert self.value >= 0


def check_counter(tc):
    run(Counter(), tc)
```

`variables(tc)` creates a server-managed pool of values: `add` puts a value
in, `draw` picks one without removing it, `consume` removes and returns
one. Drawing or consuming from an empty pool rejects the test case.

## Protocol modules

`hegelrun.packet` reads and writes the framed, CRC-32-checked packets
(`Packet`, `read_packet`, `write_packet`, `PacketError`).
`hegelrun.connection` multiplexes request/reply `Channel`s over one
`Connection`, with CBOR requests via `Channel.request_cbor`.

## What it does not do

`hegelrun` provides no ready-made generators (integers, text, lists and
so on): values come from schemas you send with `generate_raw`. There is no
test decorator or pytest plugin and no command-line tool; you call `hegel`
or `Hegel.run` yourself.