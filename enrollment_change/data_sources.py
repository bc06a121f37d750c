"""Shared helpers for loading and normalising the yearly enrollment snapshots.

The two source years do not share a layout.  The earlier audit file is *wide*
(one count column per grade plus an ``audited_enrollment`` total), while the
later file is already *long* (one row per school and grade with a free-text
grade label).  Keeping both conversions in this module means every builder
works from the same canonical record shape:

    year, group_code, group_name, entity_code, entity_name, grade, n_enrolled

Codes are zero-padded strings, grades are an ordered categorical over
``GRADE_LEVELS`` and counts are non-negative integers.  Missing counts are
dropped rather than stored as zero.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Sequence

import pandas as pd
import pyarrow.parquet as pq

from .errors import SchemaError
from .grades import GRADE_DTYPE, GRADE_PREFIX, is_grade_label, map_grade_label, map_grade_series


def _resolve_project_root() -> Path:
    """Return the directory that holds ``data-stage/`` and ``outputs/``."""

    env_root = os.environ.get("ENROLLMENT_CHANGE_ROOT")
    if env_root:
        return Path(env_root).expanduser().resolve()
    return Path.cwd().resolve()


PROJECT_ROOT = _resolve_project_root()
DATA_STAGE = PROJECT_ROOT / "data-stage"

GROUP_CODE_WIDTH = 3
ENTITY_CODE_WIDTH = 4

IDENTITY_COLUMNS = {
    "lea_code": "group_code",
    "lea_name": "group_name",
    "school_code": "entity_code",
    "school_name": "entity_name",
}
AUDITED_COLUMN = "audited_enrollment"
LONG_GRADE_COLUMN = "grade"
LONG_COUNT_COLUMNS = ("enrolled", "n_enrolled")

RECORD_COLUMNS: List[str] = [
    "year",
    "group_code",
    "group_name",
    "entity_code",
    "entity_name",
    "grade",
    "n_enrolled",
]
RECORD_KEY = ["year", "entity_code", "grade"]


@dataclass(frozen=True)
class Snapshot:
    """One year of raw enrollment data as handed over by the loader.

    ``layout`` is ``"wide"`` or ``"long"``; ``None`` detects it from the
    presence of a ``grade`` column.
    """

    year: int
    frame: pd.DataFrame
    layout: str | None = None


_QUOTES = re.compile(r"['\"]")
_SEPARATORS = re.compile(r"[^0-9a-z]+")


def clean_columns(columns: Iterable[object]) -> List[str]:
    """Lower-case headers with every run of punctuation or space as one ``_``.

    ``"School Code"``, ``"school-code"`` and ``" SCHOOL_CODE "`` all become
    ``school_code``; ``"Grade 9"`` becomes ``grade_9``.
    """

    cleaned: List[str] = []
    for col in columns:
        col = _QUOTES.sub("", str(col).strip().lower())
        cleaned.append(_SEPARATORS.sub("_", col).strip("_"))
    return cleaned


def require_columns(frame: pd.DataFrame, required: Sequence[str], label: str) -> None:
    missing = [c for c in required if c not in frame.columns]
    if missing:
        raise SchemaError(
            f"{label} is missing required column(s): {', '.join(missing)}. "
            f"Found: {', '.join(map(str, frame.columns))}",
            missing=missing,
        )


def normalise_codes(series: pd.Series, width: int) -> pd.Series:
    """Return codes as stripped, zero-padded strings.

    Numeric parsing upstream can turn ``"0452"`` into ``452`` or ``452.0``;
    both come back as ``"0452"``.
    """

    codes = series.astype("string").str.strip()
    codes = codes.str.replace(r"\.0+$", "", regex=True)
    return codes.str.zfill(width)


def coerce_counts(series: pd.Series) -> pd.Series:
    text = series.astype("string").str.strip().str.replace(",", "", regex=False)
    return pd.to_numeric(text, errors="coerce")


def _prepare_identity(frame: pd.DataFrame, label: str) -> pd.DataFrame:
    output = frame.copy()
    output.columns = clean_columns(output.columns)
    require_columns(output, list(IDENTITY_COLUMNS), label)
    output = output.rename(columns=IDENTITY_COLUMNS)
    output["group_code"] = normalise_codes(output["group_code"], GROUP_CODE_WIDTH)
    output["entity_code"] = normalise_codes(output["entity_code"], ENTITY_CODE_WIDTH)
    for column in ("group_name", "entity_name"):
        output[column] = output[column].astype("string").str.strip()
    return output


def _finalise_records(frame: pd.DataFrame, year: int, label: str) -> pd.DataFrame:
    """Coerce counts, enforce the record invariants and order the columns."""

    records = frame.copy()
    records["year"] = int(year)
    records["n_enrolled"] = coerce_counts(records["n_enrolled"])
    records = records.loc[records["n_enrolled"].notna()].copy()
    negative = records["n_enrolled"] < 0
    if negative.any():
        codes = ", ".join(sorted(records.loc[negative, "entity_code"].unique()))
        raise SchemaError(f"{label} has negative enrollment counts for: {codes}")
    fractional = records["n_enrolled"] % 1 != 0
    if fractional.any():
        codes = ", ".join(sorted(records.loc[fractional, "entity_code"].unique()))
        raise SchemaError(f"{label} has non-integer enrollment counts for: {codes}")
    records["n_enrolled"] = records["n_enrolled"].astype("int64")
    records["grade"] = records["grade"].astype(GRADE_DTYPE)

    duplicated = records.duplicated(subset=RECORD_KEY, keep=False)
    if duplicated.any():
        keys = (
            records.loc[duplicated, ["entity_code", "grade"]]
            .astype(str)
            .agg("/".join, axis=1)
            .unique()
        )
        raise SchemaError(
            f"{label} has more than one record for entity/grade: {', '.join(sorted(keys))}"
        )

    return records[RECORD_COLUMNS].reset_index(drop=True)


def wide_grade_columns(columns: Iterable[str]) -> dict[str, str]:
    """Map wide-format count columns to grade levels.

    ``audited_enrollment`` becomes ``total``.  A header that carries a
    ``grade`` prefix must map or ``UnknownGradeLabelError`` is raised; any
    other non-grade header is left alone.
    """

    mapping: dict[str, str] = {}
    for column in columns:
        if column in IDENTITY_COLUMNS or column in IDENTITY_COLUMNS.values():
            continue
        if column == AUDITED_COLUMN:
            mapping[column] = "total"
        elif is_grade_label(column) or GRADE_PREFIX.match(column):
            mapping[column] = map_grade_label(column)
    return mapping


def normalise_wide(frame: pd.DataFrame, year: int) -> pd.DataFrame:
    """Melt a one-column-per-grade snapshot into canonical records."""

    label = f"{year} snapshot"
    prepared = _prepare_identity(frame, label)
    grade_columns = wide_grade_columns(prepared.columns)
    if not grade_columns:
        raise SchemaError(f"{label} has no grade count columns", missing=[AUDITED_COLUMN])
    targets = pd.Series(grade_columns)
    clashes = targets[targets.duplicated(keep=False)]
    if not clashes.empty:
        raise SchemaError(
            f"{label} has several columns for the same grade: {', '.join(clashes.index)}"
        )

    long = prepared.melt(
        id_vars=list(IDENTITY_COLUMNS.values()),
        value_vars=list(grade_columns),
        var_name="grade_column",
        value_name="n_enrolled",
    )
    long["grade"] = long["grade_column"].map(grade_columns)
    return _finalise_records(long, year, label)


def normalise_long(frame: pd.DataFrame, year: int) -> pd.DataFrame:
    """Rename an already-long snapshot onto the canonical record shape."""

    label = f"{year} snapshot"
    prepared = _prepare_identity(frame, label)
    count_column = next((c for c in LONG_COUNT_COLUMNS if c in prepared.columns), None)
    if count_column is None:
        raise SchemaError(
            f"{label} is missing the enrolled count column",
            missing=[LONG_COUNT_COLUMNS[0]],
        )
    require_columns(prepared, [LONG_GRADE_COLUMN], label)
    prepared = prepared.rename(columns={count_column: "n_enrolled"})
    prepared["grade"] = map_grade_series(prepared[LONG_GRADE_COLUMN])
    return _finalise_records(prepared, year, label)


def detect_layout(frame: pd.DataFrame) -> str:
    return "long" if LONG_GRADE_COLUMN in clean_columns(frame.columns) else "wide"


def normalise_snapshot(snapshot: Snapshot) -> pd.DataFrame:
    layout = snapshot.layout or detect_layout(snapshot.frame)
    if layout == "wide":
        return normalise_wide(snapshot.frame, snapshot.year)
    if layout == "long":
        return normalise_long(snapshot.frame, snapshot.year)
    raise ValueError(f"Unknown snapshot layout: {layout!r}")


def combine_snapshots(snapshots: Sequence[Snapshot]) -> pd.DataFrame:
    """Normalise each snapshot and stack them into one long table."""

    frames = [normalise_snapshot(snapshot) for snapshot in snapshots]
    combined = pd.concat(frames, ignore_index=True)
    combined["grade"] = combined["grade"].astype(GRADE_DTYPE)
    duplicated = combined.duplicated(subset=RECORD_KEY)
    if duplicated.any():
        years = sorted(combined.loc[duplicated, "year"].unique())
        raise SchemaError(f"Snapshot year(s) supplied more than once: {years}")
    return combined.sort_values(RECORD_KEY).reset_index(drop=True)


def read_snapshot(path: Path | str, year: int, layout: str | None = None) -> Snapshot:
    """Load a CSV or parquet snapshot without touching its values.

    CSV columns are read as strings so codes keep their leading zeros.
    """

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Snapshot file not found: {path.resolve()}")
    suffix = path.suffix.lower()
    if suffix in {".csv", ".txt"}:
        frame = pd.read_csv(path, dtype="string")
    elif suffix == ".parquet":
        frame = pq.read_table(path).to_pandas()
    else:
        raise SchemaError(f"Unsupported snapshot file type: {path.suffix}")
    return Snapshot(year=int(year), frame=frame, layout=layout)


__all__ = [
    "DATA_STAGE",
    "PROJECT_ROOT",
    "RECORD_COLUMNS",
    "Snapshot",
    "clean_columns",
    "combine_snapshots",
    "normalise_long",
    "normalise_snapshot",
    "normalise_wide",
    "read_snapshot",
]
