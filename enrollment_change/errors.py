"""Exceptions and warnings raised while building the enrollment change tables."""

from __future__ import annotations

from typing import Iterable, Sequence


class EnrollmentChangeError(Exception):
    """Base class for errors that abort a pipeline run."""


class SchemaError(EnrollmentChangeError, ValueError):
    """An input table does not have the shape the normaliser expects."""

    def __init__(self, message: str, missing: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.missing = list(missing)


class UnknownGradeLabelError(EnrollmentChangeError, ValueError):
    """One or more grade labels fall outside ``GRADE_LEVELS``."""

    def __init__(self, labels: Iterable[str]) -> None:
        self.labels = sorted({str(label) for label in labels})
        super().__init__(f"Unknown grade label(s): {', '.join(self.labels)}")


class UndefinedRateError(EnrollmentChangeError, ZeroDivisionError):
    """A rate of change would divide by a zero first-year count."""

    def __init__(self, keys: Sequence[tuple[str, str]]) -> None:
        self.keys = list(keys)
        shown = ", ".join(f"{code}/{grade}" for code, grade in self.keys[:5])
        super().__init__(
            f"Rate of change is undefined for {len(self.keys)} row(s) with a zero "
            f"first-year count: {shown}"
        )


class AmbiguousIdentityWarning(UserWarning):
    """Identity resolution fell back to its default for an unclear case.

    Two situations are reported: one display name observed under several
    entity codes (``entity_codes``), and a code with more than one name in its
    most recent year (``names``).
    """

    def __init__(
        self,
        message: str,
        *,
        entity_name: str | None = None,
        entity_codes: Sequence[str] = (),
        entity_code: str | None = None,
        names: Sequence[str] = (),
    ) -> None:
        super().__init__(message)
        self.entity_name = entity_name
        self.entity_codes = list(entity_codes)
        self.entity_code = entity_code
        self.names = list(names)


__all__ = [
    "AmbiguousIdentityWarning",
    "EnrollmentChangeError",
    "SchemaError",
    "UndefinedRateError",
    "UnknownGradeLabelError",
]
