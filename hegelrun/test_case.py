"""The handle a test function uses to draw values and talk to the server."""

from __future__ import annotations

import copy
import os
import sys
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from hegelrun.connection import RemoteError, ServerCrashedError
from hegelrun.settings import Verbosity

_PROTOCOL_DEBUG_ENV = "HEGEL_PROTOCOL_DEBUG"
_STOP_MARKERS = ("overflow", "StopTest", "channel is closed")
_FLAKY_MARKERS = ("FlakyStrategyDefinition", "FlakyReplay")


class StopTest(BaseException):
    """The server ran out of data for this test case."""

    def __init__(self, message: str = "Server ran out of data (StopTest)") -> None:
        super().__init__(message)


class AssumptionRejected(BaseException):
    """The test case was rejected by a failed assumption."""


def _protocol_debug() -> bool:
    return os.environ.get(_PROTOCOL_DEBUG_ENV, "").lower() in ("1", "true")


def _log(message: str) -> None:
    print(message, file=sys.stderr)


@dataclass
class _Shared:
    connection: Any
    channel: Any
    verbosity: Verbosity
    is_last_run: bool
    test_aborted: bool = False


class TestCase:
    """A single test case: draws values, records notes, checks assumptions."""

    __test__ = False

    def __init__(self, connection: Any, channel: Any, verbosity: Verbosity, is_last_run: bool) -> None:
        self._shared = _Shared(connection, channel, Verbosity(verbosity), is_last_run)
        self._draw_count = 0
        self._indent = 0

    def __repr__(self) -> str:
        return "TestCase(...)"

    @property
    def test_aborted(self) -> bool:
        """True once the server has ended this test case early."""
        return self._shared.test_aborted

    def _produce(self, generator: Any) -> Any:
        do_draw = getattr(generator, "do_draw", None)
        if do_draw is not None:
            return do_draw(self)
        if callable(generator):
            return generator(self)
        raise TypeError(f"cannot draw from {generator!r}")

    def draw(self, generator: Any) -> Any:
        """Draw a value and record it for the failing-example report."""
        value = self._produce(generator)
        self._draw_count += 1
        if self._shared.is_last_run:
            _log(f"{' ' * self._indent}Draw {self._draw_count}: {value!r}")
        return value

    def draw_silent(self, generator: Any) -> Any:
        """Draw a value without recording it."""
        return self._produce(generator)

    def assume(self, condition: bool) -> None:
        """Reject the current test case unless the condition holds."""
        if not condition:
            raise AssumptionRejected()

    def note(self, message: str) -> None:
        """Print a message, but only while replaying the failing example."""
        if self._shared.is_last_run:
            _log(f"{' ' * self._indent}{message}")

    def child(self, extra_indent: int) -> TestCase:
        """A handle on the same test case with deeper indentation and a fresh draw count."""
        sub = copy.copy(self)
        sub._draw_count = 0
        sub._indent = self._indent + extra_indent
        return sub

    def _abort(self) -> None:
        self._shared.channel.mark_closed()
        self._shared.test_aborted = True

    def send_request(self, command: str, payload: Mapping[str, Any] | None = None) -> Any:
        """Send a command on the test-case channel and return the result.

        Raises StopTest when the server has ended the test case.
        """
        shared = self._shared
        if shared.test_aborted:
            raise StopTest()
        debug = _protocol_debug() or shared.verbosity is Verbosity.DEBUG

        request: dict[str, Any] = {"command": command}
        if payload:
            request.update(payload)
        if debug:
            _log(f"REQUEST: {request!r}")

        try:
            response = shared.channel.request_cbor(request)
        except (OSError, RemoteError, ValueError) as exc:
            message = str(exc)
            if any(marker in message for marker in _STOP_MARKERS):
                if debug:
                    _log("RESPONSE: StopTest/overflow")
                self._abort()
                raise StopTest() from exc
            if any(marker in message for marker in _FLAKY_MARKERS):
                # The server reports the flakiness in its final results.
                self._abort()
                raise StopTest() from exc
            if shared.connection.server_has_exited():
                raise ServerCrashedError() from exc
            raise ConnectionError(f"Failed to communicate with Hegel: {exc}") from exc

        if debug:
            _log(f"RESPONSE: {response!r}")
        return response

    def send_mark_complete(self, message: Any) -> None:
        """Report the test case's outcome and close its channel, ignoring failures."""
        channel = self._shared.channel
        try:
            channel.request_cbor(message)
        except (OSError, RemoteError, ValueError):
            pass
        try:
            channel.close()
        except (OSError, ValueError):
            pass


def generate_raw(tc: TestCase, schema: Any) -> Any:
    """Ask the server to generate a value for a schema."""
    return tc.send_request("generate", {"schema": schema})