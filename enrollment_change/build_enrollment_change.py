"""Build the enrollment change tables from two yearly snapshots.

The pipeline reconciles the two source years into one long table, resolves
schools whose names changed while their code stayed the same, adds the
district rollup, and compares the years entity by entity.  Two tables come
out of it:

- the change table (per-school rows, the "Overall" rollup and a per-grade
  "Median" baseline), and
- the reconciled long table before the minimum-count exclusion.

Run as a script to read the snapshots from ``data-stage/`` (or explicit
paths) and write CSV, parquet and JSON outputs under ``outputs/``.
"""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional, Sequence

import numpy as np
import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from .change_metrics import (
    DEFAULT_MIN_COUNT,
    add_group_rollups,
    assemble_change_table,
    change_records,
    compute_change_records,
    compute_median_baseline,
    snapshot_years,
    summarise_change,
)
from .data_sources import DATA_STAGE, PROJECT_ROOT, Snapshot, combine_snapshots, read_snapshot
from .errors import AmbiguousIdentityWarning, EnrollmentChangeError
from .grades import GRADE_LEVELS, HIGH_SCHOOL_GRADES
from .identity import reconcile_identities, restrict_scope

OUTPUT_DIR = PROJECT_ROOT / "outputs"
DEFAULT_GROUP_CODE = "001"
DEFAULT_Y1 = (2019, DATA_STAGE / "enrollment_2019.csv")
DEFAULT_Y2 = (2022, DATA_STAGE / "enrollment_2022.csv")

CHANGE_CSV_NAME = "enrollment_change.csv"
LONG_CSV_NAME = "enrollment_long.csv"
LONG_PARQUET_NAME = "enrollment_long.parquet"
JSON_NAME = "enrollment_change.json"


@dataclass(frozen=True)
class PipelineResult:
    """Outputs of one pipeline run."""

    change_table: pd.DataFrame
    long_table: pd.DataFrame
    years: tuple[int, int]
    summary: pd.DataFrame
    identity_mapping: dict[str, str] = field(default_factory=dict)
    warnings: list[AmbiguousIdentityWarning] = field(default_factory=list)


def run_pipeline(
    snapshot_y1: Snapshot,
    snapshot_y2: Snapshot,
    group_code: str,
    grades: Iterable[object] = HIGH_SCHOOL_GRADES,
    *,
    min_count: int = DEFAULT_MIN_COUNT,
) -> PipelineResult:
    """Reconcile two snapshots and compute the change and median tables."""

    combined = combine_snapshots([snapshot_y1, snapshot_y2])
    years = snapshot_years(combined)
    scoped = restrict_scope(combined, group_code, grades)
    resolution = reconcile_identities(scoped)
    long_table = add_group_rollups(resolution.frame)

    change = compute_change_records(long_table, min_count=min_count, years=years)
    medians = compute_median_baseline(change)
    change_table = assemble_change_table(change, medians, years)
    return PipelineResult(
        change_table=change_table,
        long_table=long_table,
        years=years,
        summary=summarise_change(change, medians),
        identity_mapping=resolution.mapping,
        warnings=resolution.warnings,
    )


# ---------------------------------------------------------------------------
# Serialisation helpers
# ---------------------------------------------------------------------------

def sanitise_for_json(value):
    """Recursively convert NaN-like values into None so JSON is valid."""

    if isinstance(value, dict):
        return {key: sanitise_for_json(item) for key, item in value.items()}

    if isinstance(value, list):
        return [sanitise_for_json(item) for item in value]

    if value is pd.NA or value is None:
        return None

    if isinstance(value, (float, np.floating)) and np.isnan(value):
        return None

    if isinstance(value, np.integer):
        return int(value)

    if isinstance(value, np.floating):
        return float(value)

    return value


def build_payload(result: PipelineResult, group_code: str, min_count: int) -> dict[str, object]:
    years = result.years
    summary = result.summary.copy()
    summary["grade"] = summary["grade"].astype(str)
    return {
        "meta": {
            "years": list(years),
            "group_code": group_code,
            "min_count": min_count,
            "grades": [g for g in GRADE_LEVELS if g in set(summary["grade"])],
        },
        "summary": summary.to_dict(orient="records"),
        "records": [rec.to_dict(years) for rec in change_records(result.change_table, years)],
        "identity_mapping": result.identity_mapping,
        "warnings": [str(w) for w in result.warnings],
    }


def write_outputs(
    result: PipelineResult, output_dir: Path, group_code: str, min_count: int
) -> list[Path]:
    output_dir.mkdir(parents=True, exist_ok=True)
    change_path = output_dir / CHANGE_CSV_NAME
    long_path = output_dir / LONG_CSV_NAME
    parquet_path = output_dir / LONG_PARQUET_NAME
    json_path = output_dir / JSON_NAME

    result.change_table.to_csv(change_path, index=False)
    result.long_table.to_csv(long_path, index=False)
    long_arrow = result.long_table.assign(grade=result.long_table["grade"].astype(str))
    pq.write_table(pa.Table.from_pandas(long_arrow, preserve_index=False), parquet_path)

    payload = build_payload(result, group_code, min_count)
    json_path.write_text(
        json.dumps(sanitise_for_json(payload), indent=2, allow_nan=False),
        encoding="utf-8",
    )
    return [change_path, long_path, parquet_path, json_path]


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--y1-path", type=Path, default=DEFAULT_Y1[1],
                        help="First-year snapshot (CSV or parquet).")
    parser.add_argument("--y1-year", type=int, default=DEFAULT_Y1[0])
    parser.add_argument("--y2-path", type=Path, default=DEFAULT_Y2[1],
                        help="Second-year snapshot (CSV or parquet).")
    parser.add_argument("--y2-year", type=int, default=DEFAULT_Y2[0])
    parser.add_argument(
        "--group-code",
        default=DEFAULT_GROUP_CODE,
        help="Parent group (LEA) code that scopes the analysis.",
    )
    parser.add_argument(
        "--grades",
        nargs="+",
        default=list(HIGH_SCHOOL_GRADES),
        help="Grades to analyse (default: 9 10 11 12).",
    )
    parser.add_argument(
        "--min-count",
        type=int,
        default=DEFAULT_MIN_COUNT,
        help="Minimum enrollment required in both years for a change row.",
    )
    parser.add_argument("--output-dir", type=Path, default=OUTPUT_DIR)
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    try:
        snapshot_y1 = read_snapshot(args.y1_path, args.y1_year)
        snapshot_y2 = read_snapshot(args.y2_path, args.y2_year)
        print(f"Loaded {len(snapshot_y1.frame)} rows for {args.y1_year} from {args.y1_path}")
        print(f"Loaded {len(snapshot_y2.frame)} rows for {args.y2_year} from {args.y2_path}")
        result = run_pipeline(
            snapshot_y1,
            snapshot_y2,
            args.group_code,
            args.grades,
            min_count=args.min_count,
        )
    except (EnrollmentChangeError, FileNotFoundError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc

    for warning in result.warnings:
        print(f"Warning: {warning}", file=sys.stderr)
    if result.identity_mapping:
        print(f"Renamed {len(result.identity_mapping)} school(s) to their latest name")

    for path in write_outputs(result, args.output_dir, args.group_code, args.min_count):
        print(f"Wrote {path}")


if __name__ == "__main__":
    main()
