"""Error classification for investigation runs.

Every failure observed by a decision tree is tagged at its origin:

- Infrastructure: an external platform call failed. The whole run is retried.
- Finding: the investigation reached an invalid-data or inconclusive state.
  It is written to the notes and escalated, never retried.

Errors that carry no tag are treated as Infrastructure (see `classify`).
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    INFRASTRUCTURE = "infrastructure"
    FINDING = "finding"


class ClassifiedError(Exception):
    """Base class for tagged errors. Use the subclasses, not this one."""

    kind: ErrorKind
    _label = "classified error"

    def __init__(self, err: BaseException, context: str = "") -> None:
        super().__init__(str(err))
        self.err = err
        self.context = context

    def __str__(self) -> str:
        if self.context:
            return f"{self._label} ({self.context}): {self.err}"
        return f"{self._label}: {self.err}"


class InfrastructureError(ClassifiedError):
    kind = ErrorKind.INFRASTRUCTURE
    _label = "infrastructure error"


class FindingError(ClassifiedError):
    kind = ErrorKind.FINDING
    _label = "investigation finding"


def _as_exception(err: BaseException | str) -> BaseException:
    if isinstance(err, BaseException):
        return err
    return Exception(err)


def as_infrastructure(err: Optional[BaseException | str], context: str = "") -> Optional[InfrastructureError]:
    """Tag `err` as an infrastructure failure. Returns None when err is None."""
    if err is None:
        return None
    wrapped = InfrastructureError(_as_exception(err), context)
    wrapped.__cause__ = wrapped.err
    return wrapped


def as_finding(err: Optional[BaseException | str], context: str = "") -> Optional[FindingError]:
    """Tag `err` as an investigation finding. Returns None when err is None."""
    if err is None:
        return None
    wrapped = FindingError(_as_exception(err), context)
    wrapped.__cause__ = wrapped.err
    return wrapped


def find_classified(err: Optional[BaseException]) -> Optional[ClassifiedError]:
    """Return the first ClassifiedError in the exception chain, if any."""
    seen = set()
    current = err
    while current is not None and id(current) not in seen:
        if isinstance(current, ClassifiedError):
            return current
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return None


def is_infrastructure(err: Optional[BaseException]) -> bool:
    found = find_classified(err)
    return found is not None and found.kind is ErrorKind.INFRASTRUCTURE


def is_finding(err: Optional[BaseException]) -> bool:
    found = find_classified(err)
    return found is not None and found.kind is ErrorKind.FINDING


def classify(err: BaseException) -> ErrorKind:
    """
    Return the kind of `err`.

    Untagged errors default to INFRASTRUCTURE so that an unknown failure causes
    a retry instead of being reported as a conclusion.
    """
    found = find_classified(err)
    if found is None:
        return ErrorKind.INFRASTRUCTURE
    return found.kind


def should_retry(err: BaseException) -> bool:
    return classify(err) is ErrorKind.INFRASTRUCTURE


class RetriesExhaustedError(Exception):
    """Raised by `with_retries` once every attempt has failed."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class ClusterNotFoundError(Exception):
    pass


class AmbiguousClusterError(Exception):
    pass


class ProviderError(Exception):
    """An external platform returned an unusable response."""
