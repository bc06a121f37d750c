"""Group rollups, year-over-year change, and the per-grade median baseline.

The functions here run on the identity-resolved long table produced by
``data_sources`` and ``identity``.  Each one returns a new frame; nothing is
modified in place.

The change table keeps one row per entity and grade with enough students in
*both* years (``min_count``).  Small programmes are dropped from the change
table only; they still count towards the group rollup, which is derived from
the full long table before any exclusion.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import List, Sequence

import numpy as np
import pandas as pd

from .data_sources import RECORD_COLUMNS
from .errors import SchemaError, UndefinedRateError
from .grades import GRADE_DTYPE

DEFAULT_MIN_COUNT = 10
OVERALL_LABEL = "Overall"
MEDIAN_LABEL = "Median"

ROLLUP_COLUMNS: List[str] = RECORD_COLUMNS + ["is_rollup"]
CHANGE_KEY = ["entity_code", "is_rollup", "grade"]


def count_columns(years: Sequence[int]) -> list[str]:
    return [f"n_enrolled_{int(year)}" for year in years]


def change_columns(years: Sequence[int]) -> list[str]:
    return (
        ["entity_code", "entity_name", "grade"]
        + count_columns(years)
        + ["n_enrolled_change", "rate_enrolled_change"]
    )


@dataclass(frozen=True)
class ChangeRecord:
    """One row of the reporting table.

    Median rows only carry ``grade`` and ``rate_enrolled_change``.
    """

    entity_code: str | None
    entity_name: str
    grade: str
    n_enrolled_y1: int | None
    n_enrolled_y2: int | None
    n_enrolled_change: int | None
    rate_enrolled_change: float | None

    def to_dict(self, years: Sequence[int]) -> dict[str, object]:
        data = asdict(self)
        y1_col, y2_col = count_columns(years)
        data[y1_col] = data.pop("n_enrolled_y1")
        data[y2_col] = data.pop("n_enrolled_y2")
        return data


def round_rate(values: pd.Series, digits: int = 3) -> pd.Series:
    """Round each rate once with ``round`` on the stored value.

    ``Series.round`` scales before rounding and so misses ties such as
    1/2000.  Adding ``0.0`` turns a rounded ``-0.0`` into ``0.0``.
    """

    return values.map(lambda v: v if pd.isna(v) else round(float(v), digits) + 0.0).astype(float)


def snapshot_years(frame: pd.DataFrame) -> tuple[int, int]:
    years = sorted(int(y) for y in frame["year"].unique())
    if len(years) != 2:
        raise SchemaError(f"Expected exactly two snapshot years, found {years}")
    return years[0], years[1]


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

def add_group_rollups(frame: pd.DataFrame) -> pd.DataFrame:
    """Append one summed record per (year, group, grade) flagged ``is_rollup``.

    The rollup reuses the group's own code and name as its entity identity.
    """

    real = frame[RECORD_COLUMNS].copy()
    real["is_rollup"] = False
    rollups = (
        real.groupby(["year", "group_code", "grade"], observed=True, as_index=False)
        .agg(
            group_name=("group_name", "first"),
            n_enrolled=("n_enrolled", "sum"),
        )
    )
    rollups["entity_code"] = rollups["group_code"]
    rollups["entity_name"] = rollups["group_name"]
    rollups["is_rollup"] = True

    combined = pd.concat([rollups[ROLLUP_COLUMNS], real[ROLLUP_COLUMNS]], ignore_index=True)
    combined["grade"] = combined["grade"].astype(GRADE_DTYPE)
    combined["n_enrolled"] = combined["n_enrolled"].astype("int64")
    return combined.sort_values(
        ["year", "is_rollup", "entity_code", "grade"],
        ascending=[True, False, True, True],
    ).reset_index(drop=True)


# ---------------------------------------------------------------------------
# Change metrics
# ---------------------------------------------------------------------------

def pivot_years(frame: pd.DataFrame, years: Sequence[int]) -> pd.DataFrame:
    """Reshape to one row per entity and grade with a count column per year.

    Entity/grade pairs missing from a year get an explicit zero.
    """

    counts = (
        frame.set_index(CHANGE_KEY + ["year"])["n_enrolled"]
        .unstack("year", fill_value=0)
        .reindex(columns=list(years), fill_value=0)
    )
    counts.columns = count_columns(years)
    counts = counts.astype("int64").reset_index()
    counts["grade"] = counts["grade"].astype(GRADE_DTYPE)

    latest_names = (
        frame.sort_values("year")
        .groupby(["entity_code", "is_rollup"], as_index=False)["entity_name"]
        .last()
    )
    return counts.merge(latest_names, on=["entity_code", "is_rollup"], how="left")


def compute_change_records(
    frame: pd.DataFrame,
    min_count: int = DEFAULT_MIN_COUNT,
    years: Sequence[int] | None = None,
) -> pd.DataFrame:
    """Absolute and relative change for pairs counted ``>= min_count`` both years.

    ``years`` defaults to the two years present in ``frame``.
    """

    years = tuple(years) if years is not None else snapshot_years(frame)
    y1_col, y2_col = count_columns(years)
    wide = pivot_years(frame, years)
    wide["n_enrolled_change"] = wide[y2_col] - wide[y1_col]

    kept = wide.loc[(wide[y1_col] >= min_count) & (wide[y2_col] >= min_count)].copy()
    zero_base = kept[y1_col] == 0
    if zero_base.any():
        keys = list(
            zip(
                kept.loc[zero_base, "entity_code"].astype(str),
                kept.loc[zero_base, "grade"].astype(str),
            )
        )
        raise UndefinedRateError(keys)

    kept["rate_enrolled_change"] = round_rate(kept["n_enrolled_change"] / kept[y1_col])
    kept.loc[kept["is_rollup"], "entity_name"] = OVERALL_LABEL
    return kept[change_columns(years) + ["is_rollup"]].reset_index(drop=True)


def compute_median_baseline(change: pd.DataFrame) -> pd.DataFrame:
    """Median rate per grade over real entities, labelled ``Median``."""

    real = change.loc[~change["is_rollup"].astype(bool)]
    medians = real.groupby("grade", observed=True)["rate_enrolled_change"].median().reset_index()
    medians["rate_enrolled_change"] = round_rate(medians["rate_enrolled_change"])
    medians["entity_code"] = pd.NA
    medians["entity_name"] = MEDIAN_LABEL
    medians["grade"] = medians["grade"].astype(GRADE_DTYPE)
    return medians[["entity_code", "entity_name", "grade", "rate_enrolled_change"]]


# ---------------------------------------------------------------------------
# Output assembly
# ---------------------------------------------------------------------------

def assemble_change_table(
    change: pd.DataFrame, medians: pd.DataFrame, years: Sequence[int]
) -> pd.DataFrame:
    """Stack entity, Overall and Median rows into the reporting order."""

    columns = change_columns(years)
    entities = change.loc[~change["is_rollup"].astype(bool)].assign(row_order=2)
    overall = change.loc[change["is_rollup"].astype(bool)].assign(row_order=0)
    median = medians.assign(row_order=1)

    table = pd.concat(
        [overall[columns + ["row_order"]], median, entities[columns + ["row_order"]]],
        ignore_index=True,
    )
    for column in count_columns(years) + ["n_enrolled_change"]:
        table[column] = table[column].astype("Int64")
    table["rate_enrolled_change"] = table["rate_enrolled_change"].astype(float)
    table["entity_code"] = table["entity_code"].astype("string")
    table["entity_name"] = table["entity_name"].astype("string")
    table["grade"] = table["grade"].astype(GRADE_DTYPE)

    table = table.sort_values(
        ["row_order", "entity_name", "entity_code", "grade"],
        kind="mergesort",
        na_position="first",
    )
    return table[columns].reset_index(drop=True)


def change_records(table: pd.DataFrame, years: Sequence[int]) -> list[ChangeRecord]:
    """Convert the assembled table into ``ChangeRecord`` values."""

    y1_col, y2_col = count_columns(years)

    def _int(value: object) -> int | None:
        return None if pd.isna(value) else int(value)

    def _float(value: object) -> float | None:
        return None if pd.isna(value) else float(value)

    records: list[ChangeRecord] = []
    for row in table.to_dict(orient="records"):
        records.append(
            ChangeRecord(
                entity_code=None if pd.isna(row["entity_code"]) else str(row["entity_code"]),
                entity_name=str(row["entity_name"]),
                grade=str(row["grade"]),
                n_enrolled_y1=_int(row[y1_col]),
                n_enrolled_y2=_int(row[y2_col]),
                n_enrolled_change=_int(row["n_enrolled_change"]),
                rate_enrolled_change=_float(row["rate_enrolled_change"]),
            )
        )
    return records


def summarise_change(change: pd.DataFrame, medians: pd.DataFrame) -> pd.DataFrame:
    """Per-grade comparison of the Overall rate with the entity distribution.

    Takes the ``compute_change_records`` and ``compute_median_baseline``
    frames, so rollup rows are picked by ``is_rollup`` and never by name.
    A large gap between ``overall_rate`` and ``median_rate`` means the
    group trend is driven by a few entities rather than a broad shift.
    """

    is_rollup = change["is_rollup"].astype(bool)
    overall = (
        change.loc[is_rollup]
        .groupby("grade", observed=True)["rate_enrolled_change"]
        .first()
        .rename("overall_rate")
    )
    median = (
        medians.groupby("grade", observed=True)["rate_enrolled_change"]
        .first()
        .rename("median_rate")
    )
    entities = change.loc[~is_rollup].copy()
    entities["declined"] = entities["n_enrolled_change"] < 0
    entities["grew"] = entities["n_enrolled_change"] > 0
    spread = entities.groupby("grade", observed=True).agg(
        n_entities=("entity_code", "size"),
        n_declined=("declined", "sum"),
        n_grew=("grew", "sum"),
    )

    summary = pd.concat([overall, median, spread], axis=1)
    summary.index = summary.index.astype(GRADE_DTYPE)
    summary = summary.sort_index()
    for column in ("n_entities", "n_declined", "n_grew"):
        summary[column] = summary[column].fillna(0).astype("int64")
    summary["gap_vs_median"] = round_rate(summary["overall_rate"] - summary["median_rate"])
    summary["share_declined"] = round_rate(
        summary["n_declined"] / summary["n_entities"].replace({0: np.nan})
    )
    summary.index.name = "grade"
    return summary.reset_index()


__all__ = [
    "DEFAULT_MIN_COUNT",
    "MEDIAN_LABEL",
    "OVERALL_LABEL",
    "ChangeRecord",
    "add_group_rollups",
    "assemble_change_table",
    "change_columns",
    "change_records",
    "compute_change_records",
    "compute_median_baseline",
    "count_columns",
    "pivot_years",
    "round_rate",
    "snapshot_years",
    "summarise_change",
]
