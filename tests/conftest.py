from __future__ import annotations

import pandas as pd
import pytest

from enrollment_change.data_sources import RECORD_COLUMNS, Snapshot
from enrollment_change.grades import GRADE_DTYPE


@pytest.fixture
def wide_2019() -> pd.DataFrame:
    """Audit-style snapshot: one count column per grade, numeric codes."""

    return pd.DataFrame(
        {
            "LEA Code": [1, 1, 1, 102],
            "LEA Name": ["District Public Schools"] * 3 + ["Charter Prep PCS"],
            "School Code": [101, 202, 404, 1001],
            "School Name": [
                "Eastern High School",
                "Roosevelt Senior High School",
                "Phoenix Academy",
                "Charter Prep Academy",
            ],
            "Audited Enrollment": [2100, 1600, 5, 400],
            "PK3": [None, None, None, 40],
            "KG": [None, None, None, 60],
            "Grade 9": [1000, 800, 5, 150],
            "Grade 10": [900, 700, None, 150],
            "Ward": [7, 4, 8, 1],
        }
    )


@pytest.fixture
def long_2022() -> pd.DataFrame:
    """Already-long snapshot with free-text grade labels."""

    rows = [
        ("001", "District Public Schools", "0101", "Eastern High School", "Grade 9", 1100),
        ("001", "District Public Schools", "0101", "Eastern High School", "Grade 10", 990),
        ("001", "District Public Schools", "0101", "Eastern High School", "Total Enrolled", 2090),
        ("001", "District Public Schools", "0202", "Roosevelt High School", "Grade 9", 600),
        ("001", "District Public Schools", "0202", "Roosevelt High School", "Grade 10", 700),
        ("001", "District Public Schools", "0404", "Phoenix Academy", "Grade 9", 20),
        ("001", "District Public Schools", "0404", "Phoenix Academy", "Grade 10", 15),
        ("102", "Charter Prep PCS", "1001", "Charter Prep Academy", "Grade 9", 160),
    ]
    return pd.DataFrame(
        rows,
        columns=["lea_code", "lea_name", "school_code", "school_name", "grade", "enrolled"],
    )


@pytest.fixture
def snapshots(wide_2019, long_2022) -> tuple[Snapshot, Snapshot]:
    return Snapshot(2019, wide_2019), Snapshot(2022, long_2022)


def make_records(rows) -> pd.DataFrame:
    """Build a canonical long table from (year, code, name, grade, count) tuples."""

    frame = pd.DataFrame(
        [
            {
                "year": year,
                "group_code": "001",
                "group_name": "District Public Schools",
                "entity_code": code,
                "entity_name": name,
                "grade": grade,
                "n_enrolled": count,
            }
            for year, code, name, grade, count in rows
        ],
        columns=RECORD_COLUMNS,
    )
    frame["entity_code"] = frame["entity_code"].astype("string")
    frame["entity_name"] = frame["entity_name"].astype("string")
    frame["grade"] = frame["grade"].astype(GRADE_DTYPE)
    frame["n_enrolled"] = frame["n_enrolled"].astype("int64")
    return frame


@pytest.fixture
def record_factory():
    return make_records
