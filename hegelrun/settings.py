"""Configuration for a property-test run."""

from __future__ import annotations

import enum
import os
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any

_CI_VARS: tuple[tuple[str, str | None], ...] = (
    ("CI", None),
    ("TF_BUILD", "true"),
    ("BUILDKITE", "true"),
    ("CIRCLECI", "true"),
    ("CIRRUS_CI", "true"),
    ("CODEBUILD_BUILD_ID", None),
    ("GITHUB_ACTIONS", "true"),
    ("GITLAB_CI", None),
    ("HEROKU_TEST_RUN_ID", None),
    ("TEAMCITY_VERSION", None),
    ("bamboo.buildKey", None),
)


def is_in_ci(environ: Mapping[str, str] | None = None) -> bool:
    """Return True if the environment looks like a CI system."""
    env = os.environ if environ is None else environ
    for key, expected in _CI_VARS:
        if expected is None:
            if key in env:
                return True
        elif env.get(key) == expected:
            return True
    return False


class HealthCheck(enum.Enum):
    """Health checks that can be suppressed during a run."""

    FILTER_TOO_MUCH = "filter_too_much"
    TOO_SLOW = "too_slow"
    TEST_CASES_TOO_LARGE = "test_cases_too_large"
    LARGE_INITIAL_TEST_CASE = "large_initial_test_case"

    @classmethod
    def all(cls) -> list[HealthCheck]:
        """Every health check, handy for suppressing them all at once."""
        return list(cls)


class Verbosity(enum.Enum):
    """How much output a run produces."""

    QUIET = "quiet"
    NORMAL = "normal"
    VERBOSE = "verbose"
    DEBUG = "debug"


class Unset(enum.Enum):
    """Marker for a database setting left to the server's default."""

    UNSET = "unset"


UNSET = Unset.UNSET


def _default_database() -> str | None | Unset:
    return None if is_in_ci() else UNSET


@dataclass(frozen=True)
class Settings:
    """Settings for a run.

    In CI the database is disabled and runs are derandomized by default.
    A database of None disables it; UNSET leaves the choice to the server.
    """

    test_cases: int = 100
    verbosity: Verbosity = Verbosity.NORMAL
    seed: int | None = None
    derandomize: bool = field(default_factory=lambda: is_in_ci())
    database: str | None | Unset = field(default_factory=_default_database)
    suppress_health_check: tuple[HealthCheck, ...] = ()

    def __post_init__(self) -> None:
        if self.test_cases < 0:
            raise ValueError(f"test_cases must be non-negative, got {self.test_cases}")
        if self.seed is not None and self.seed < 0:
            raise ValueError(f"seed must be non-negative, got {self.seed}")
        object.__setattr__(self, "verbosity", Verbosity(self.verbosity))
        object.__setattr__(
            self,
            "suppress_health_check",
            tuple(HealthCheck(check) for check in self.suppress_health_check),
        )

    def with_options(self, **kwargs: Any) -> Settings:
        """Return a copy with the given fields replaced."""
        return replace(self, **kwargs)

    def suppress(self, checks: Iterable[HealthCheck]) -> Settings:
        """Return a copy that also suppresses the given health checks."""
        return replace(
            self, suppress_health_check=self.suppress_health_check + tuple(checks)
        )

    def run_test_fields(self) -> dict[str, Any]:
        """The fields these settings contribute to a run_test command."""
        fields: dict[str, Any] = {
            "test_cases": self.test_cases,
            "seed": self.seed,
            "derandomize": self.derandomize,
        }
        if self.database is not UNSET:
            fields["database"] = self.database
        if self.suppress_health_check:
            fields["suppress_health_check"] = [
                check.value for check in self.suppress_health_check
            ]
        return fields