from __future__ import annotations

from dataclasses import dataclass


class ScrError(Exception):
    """Base error. ``transient`` errors are requeued, the rest are not.

    ``repeated`` is set when the same failure was already reported on an
    earlier pass and nothing new needs to be said about it.
    """

    transient = False
    repeated = False


class NotFound(ScrError):
    pass


class Conflict(ScrError):
    """Optimistic-concurrency mismatch: someone else wrote first."""

    transient = True


class AlreadyExists(Conflict):
    pass


class Unavailable(ScrError):
    transient = True


@dataclass(frozen=True)
class Problem:
    field: str
    message: str

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


class ValidationError(ScrError):
    """Malformed ClusterSpec. Carries every problem found, not just the first."""

    def __init__(self, problems: list[Problem]):
        self.problems = list(problems)
        super().__init__("; ".join(str(p) for p in self.problems))


class InvariantViolation(ScrError):
    pass
