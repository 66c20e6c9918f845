"""Running a property test against the hegel server."""

from __future__ import annotations

import enum
import sys
import traceback
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import cbor2

from hegelrun.connection import ServerCrashedError
from hegelrun.settings import Settings, Verbosity
from hegelrun.test_case import AssumptionRejected, StopTest, TestCase

TestFunction = Callable[[TestCase], Any]

_ACK_NULL = cbor2.dumps({"result": None})
_ACK_TRUE = cbor2.dumps({"result": True})


class TestStatus(enum.Enum):
    """The outcome of one test case, as reported to the server."""

    __test__ = False

    VALID = "VALID"
    INVALID = "INVALID"
    INTERESTING = "INTERESTING"


@dataclass(frozen=True)
class TestCaseResult:
    """The outcome of running the test function once."""

    __test__ = False

    status: TestStatus
    message: str | None = None
    origin: str | None = None


class PropertyTestFailed(AssertionError):
    """The property did not hold for some generated input."""

    def __init__(self, message: str, result: TestCaseResult | None = None) -> None:
        super().__init__(message)
        self.result = result


class HealthCheckFailed(Exception):
    """The server reported a failed health check."""


class FlakyTestError(Exception):
    """The server found that the test does not behave consistently."""


class ServerReportedError(RuntimeError):
    """The server reported an error for the run."""


def build_run_test_message(
    settings: Settings, channel_id: int, database_key: str | bytes | None = None
) -> dict[str, Any]:
    """The run_test command asking the server to drive a test on a channel."""
    if isinstance(database_key, str):
        database_key = database_key.encode()
    message: dict[str, Any] = {
        "command": "run_test",
        "test_cases": settings.test_cases,
        "seed": settings.seed,
        "channel_id": channel_id,
        "database_key": database_key,
        "derandomize": settings.derandomize,
    }
    message.update(settings.run_test_fields())
    return message


def _describe(exc: BaseException) -> str:
    return "".join(traceback.format_exception_only(type(exc), exc)).strip()


def _origin(exc: BaseException) -> str:
    frames = traceback.extract_tb(exc.__traceback__)
    location = f"{frames[-1].filename}:{frames[-1].lineno}" if frames else "<unknown>"
    return f"{type(exc).__name__} at {location}"


def run_test_case(
    connection: Any,
    channel: Any,
    test_fn: TestFunction,
    is_final: bool,
    verbosity: Verbosity,
) -> TestCaseResult:
    """Run the test function once on a server-provided test-case channel."""
    tc = TestCase(connection, channel, verbosity, is_final)
    try:
        try:
            test_fn(tc)
        except (AssumptionRejected, StopTest):
            result = TestCaseResult(TestStatus.INVALID)
        except Exception as exc:
            result = TestCaseResult(TestStatus.INTERESTING, _describe(exc), _origin(exc))
            if is_final:
                sys.stderr.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
        else:
            result = TestCaseResult(TestStatus.VALID)

        # An aborted test case has already been closed by the server.
        if not tc.test_aborted:
            tc.send_mark_complete(
                {
                    "command": "mark_complete",
                    "status": result.status.value,
                    "origin": result.origin,
                }
            )
    finally:
        connection.unregister_channel(channel.channel_id)
    return result


def _decode_event(payload: bytes) -> dict[str, Any]:
    event = cbor2.loads(payload)
    if not isinstance(event, dict):
        raise RuntimeError(f"Expected a map as event payload, got {event!r}")
    return event


def _event_type(event: dict[str, Any]) -> str:
    kind = event.get("event")
    if not isinstance(kind, str):
        raise RuntimeError("Expected event in payload")
    return kind


def _channel_id(event: dict[str, Any]) -> int:
    channel_id = event.get("channel_id")
    if isinstance(channel_id, bool) or not isinstance(channel_id, int):
        raise RuntimeError("Missing channel id")
    return channel_id


def _text(results: dict[str, Any], key: str) -> str | None:
    value = results.get(key)
    return value if isinstance(value, str) else None


class Hegel:
    """A property test: a function run against many server-generated test cases."""

    def __init__(
        self,
        test_fn: TestFunction,
        settings: Settings | None = None,
        database_key: str | bytes | None = None,
    ) -> None:
        self.test_fn = test_fn
        self.settings = settings if settings is not None else Settings()
        self.database_key = database_key

    def _run_one(self, connection: Any, test_channel: Any, event_id: int, event: dict[str, Any], is_final: bool) -> TestCaseResult:
        case_channel = connection.connect_channel(_channel_id(event))
        # Acknowledge before running the test, or the server would wait on us.
        test_channel.write_reply(event_id, _ACK_NULL)
        result = run_test_case(
            connection, case_channel, self.test_fn, is_final, self.settings.verbosity
        )
        if connection.server_has_exited():
            raise ServerCrashedError()
        return result

    def run(self, session: Any = None) -> None:
        """Run the test, raising PropertyTestFailed if any test case fails."""
        if session is None:
            from hegelrun.server import get_session

            session = get_session()
        connection = session.connection
        debug = self.settings.verbosity is Verbosity.DEBUG
        test_channel = connection.new_channel()
        try:
            message = build_run_test_message(
                self.settings, test_channel.channel_id, self.database_key
            )
            cbor2.loads(session.send_control(cbor2.dumps(message)))
            if debug:
                print("run_test response received", file=sys.stderr)

            got_interesting = False
            while True:
                event_id, payload = test_channel.receive_request()
                event = _decode_event(payload)
                kind = _event_type(event)
                if debug:
                    print(f"Received event: {event!r}", file=sys.stderr)
                if kind == "test_case":
                    result = self._run_one(connection, test_channel, event_id, event, False)
                    if result.status is TestStatus.INTERESTING:
                        got_interesting = True
                elif kind == "test_done":
                    test_channel.write_reply(event_id, _ACK_TRUE)
                    results = event.get("results")
                    if not isinstance(results, dict):
                        results = {}
                    break
                else:
                    raise RuntimeError(f"unknown event: {kind}")

            error = _text(results, "error")
            if error is not None:
                raise ServerReportedError(f"Server error: {error}")
            health = _text(results, "health_check_failure")
            if health is not None:
                raise HealthCheckFailed(f"Health check failure:\n{health}")
            flaky = _text(results, "flaky")
            if flaky is not None:
                raise FlakyTestError(f"Flaky test detected: {flaky}")

            n_interesting = results.get("interesting_test_cases", 0)
            if isinstance(n_interesting, bool) or not isinstance(n_interesting, int):
                n_interesting = 0
            if debug:
                print(f"Test done. interesting_test_cases={n_interesting}", file=sys.stderr)

            final_result: TestCaseResult | None = None
            for _ in range(n_interesting):
                event_id, payload = test_channel.receive_request()
                event = _decode_event(payload)
                kind = event.get("event")
                if kind != "test_case":
                    raise RuntimeError(f"Expected a final test_case event, got {kind!r}")
                result = self._run_one(connection, test_channel, event_id, event, True)
                if result.status is TestStatus.INTERESTING:
                    got_interesting = True
                    final_result = result

            passed = results.get("passed", True)
            if not isinstance(passed, bool):
                passed = True

            if not passed or got_interesting:
                detail = final_result.message if final_result is not None else "unknown"
                raise PropertyTestFailed(f"Property test failed: {detail}", final_result)
        finally:
            connection.unregister_channel(test_channel.channel_id)


def hegel(test_fn: TestFunction, settings: Settings | None = None) -> None:
    """Run a property test with the process-wide server session."""
    Hegel(test_fn, settings).run()