"""Closed, ordered grade taxonomy shared by both snapshot layouts.

Source files label grades inconsistently ("Grade 9", "9", "x9", "PK3
Enrolled", "K").  Everything is normalised to a member of ``GRADE_LEVELS``
before counts are combined; a label that does not map stops the run because a
dropped or misplaced grade would silently change every sum built on top of it.
"""

from __future__ import annotations

import math
import re
from typing import Iterable

import pandas as pd

from .errors import UnknownGradeLabelError

GRADE_LEVELS: tuple[str, ...] = (
    "total",
    "pk3",
    "pk4",
    "kg",
    *(str(n) for n in range(1, 13)),
    "adult",
    "ungraded",
)
GRADE_INDEX: dict[str, int] = {grade: i for i, grade in enumerate(GRADE_LEVELS)}
GRADE_DTYPE = pd.CategoricalDtype(categories=list(GRADE_LEVELS), ordered=True)

HIGH_SCHOOL_GRADES: tuple[str, ...] = ("9", "10", "11", "12")

GRADE_PREFIX = re.compile(r"^grade[\s_]*")
GRADE_SUFFIX = re.compile(r"[\s_]*(?:enrolled|enrollment)$")
# janitor-style headers turn a bare "9" into "x9"
POSITIONAL_PREFIX = re.compile(r"^x(?=\d)")

GRADE_ALIASES = {
    "k": "kg",
    "kindergarten": "kg",
    "pk 3": "pk3",
    "pk-3": "pk3",
    "pk_3": "pk3",
    "pre-k 3": "pk3",
    "pre_k_3": "pk3",
    "prek3": "pk3",
    "pk 4": "pk4",
    "pk-4": "pk4",
    "pk_4": "pk4",
    "pre-k 4": "pk4",
    "pre_k_4": "pk4",
    "prek4": "pk4",
    "un-graded": "ungraded",
    "ug": "ungraded",
}


def normalise_grade_label(value: object) -> str:
    """Return the cleaned text of a grade label without validating it."""

    if value is None or value is pd.NA or (isinstance(value, float) and math.isnan(value)):
        return ""
    text = " ".join(str(value).strip().lower().split())
    text = GRADE_PREFIX.sub("", text)
    text = GRADE_SUFFIX.sub("", text)
    text = POSITIONAL_PREFIX.sub("", text)
    text = text.strip(" _")
    text = GRADE_ALIASES.get(text, text)
    if text.isdigit():
        text = str(int(text))
    return text


def is_grade_label(value: object) -> bool:
    return normalise_grade_label(value) in GRADE_INDEX


def map_grade_label(value: object) -> str:
    """Map a raw label onto ``GRADE_LEVELS`` or raise ``UnknownGradeLabelError``."""

    label = normalise_grade_label(value)
    if label not in GRADE_INDEX:
        raise UnknownGradeLabelError([value])
    return label


def map_grade_series(series: pd.Series) -> pd.Series:
    """Vectorised ``map_grade_label`` returning an ordered categorical.

    Every unmapped label is collected so the error lists them all at once.
    """

    raw = pd.Series(series, copy=False)
    cleaned = raw.map(normalise_grade_label)
    unknown = ~cleaned.isin(GRADE_LEVELS)
    if unknown.any():
        raise UnknownGradeLabelError(raw[unknown].astype("string").fillna("<NA>").unique())
    return cleaned.astype(GRADE_DTYPE)


def validate_grades(grades: Iterable[object]) -> tuple[str, ...]:
    """Normalise a caller-supplied grade subset, keeping taxonomy order."""

    mapped = {map_grade_label(grade) for grade in grades}
    return tuple(sorted(mapped, key=GRADE_INDEX.__getitem__))


__all__ = [
    "GRADE_DTYPE",
    "GRADE_INDEX",
    "GRADE_LEVELS",
    "HIGH_SCHOOL_GRADES",
    "is_grade_label",
    "map_grade_label",
    "map_grade_series",
    "normalise_grade_label",
    "validate_grades",
]
