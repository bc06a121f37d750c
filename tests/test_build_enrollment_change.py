import json

import pandas as pd
import pytest

from enrollment_change.build_enrollment_change import main, run_pipeline, write_outputs
from enrollment_change.change_metrics import (
    MEDIAN_LABEL,
    OVERALL_LABEL,
    add_group_rollups,
    assemble_change_table,
    compute_change_records,
    compute_median_baseline,
)
from enrollment_change.data_sources import Snapshot, combine_snapshots
from enrollment_change.errors import SchemaError, UnknownGradeLabelError
from enrollment_change.identity import reconcile_identities, restrict_scope


def _lookup(table, name, grade):
    match = table.loc[(table["entity_name"] == name) & (table["grade"].astype(str) == grade)]
    assert len(match) == 1
    return match.iloc[0]


def test_pipeline_end_to_end(snapshots):
    result = run_pipeline(*snapshots, group_code="001")
    table = result.change_table

    assert result.years == (2019, 2022)
    assert result.identity_mapping == {"0202": "Roosevelt"}
    assert result.warnings == []

    assert list(table["entity_name"].unique()) == [
        OVERALL_LABEL,
        MEDIAN_LABEL,
        "Eastern High School",
        "Roosevelt",
    ]
    overall = _lookup(table, OVERALL_LABEL, "9")
    assert overall["n_enrolled_2019"] == 1805
    assert overall["n_enrolled_2022"] == 1720
    assert overall["rate_enrolled_change"] == -0.047
    assert _lookup(table, MEDIAN_LABEL, "9")["rate_enrolled_change"] == -0.075
    assert _lookup(table, "Roosevelt", "9")["n_enrolled_change"] == -200
    # excluded: 5 students in 2019
    assert "Phoenix Academy" not in set(table["entity_name"])


def test_long_table_is_pre_exclusion_and_scoped(snapshots):
    result = run_pipeline(*snapshots, group_code="001")
    long = result.long_table

    assert set(long["group_code"]) == {"001"}
    assert set(long["grade"].astype(str)) == {"9", "10"}
    assert "Phoenix Academy" in set(long["entity_name"])
    assert set(long.loc[long["entity_code"] == "0202", "entity_name"]) == {"Roosevelt"}

    real = long.loc[~long["is_rollup"]]
    rollup = long.loc[long["is_rollup"]].set_index(["year", "grade"])["n_enrolled"]
    for (year, grade), total in real.groupby(["year", "grade"], observed=True)["n_enrolled"].sum().items():
        assert rollup[(year, grade)] == total


def test_pipeline_is_idempotent(snapshots):
    first = run_pipeline(*snapshots, group_code="001")
    second = run_pipeline(*snapshots, group_code="001")

    pd.testing.assert_frame_equal(first.change_table, second.change_table)
    pd.testing.assert_frame_equal(first.long_table, second.long_table)
    assert first.change_table.to_csv(index=False) == second.change_table.to_csv(index=False)


def test_filter_order_does_not_change_results(snapshots):
    years = (2019, 2022)
    grades = ["9", "10", "11", "12"]
    combined = combine_snapshots(list(snapshots))

    def finish(frame):
        change = compute_change_records(add_group_rollups(frame), years=years)
        return assemble_change_table(change, compute_median_baseline(change), years)

    before = finish(reconcile_identities(restrict_scope(combined, "001", grades)).frame)
    after = finish(restrict_scope(reconcile_identities(combined).frame, "001", grades))

    pd.testing.assert_frame_equal(before, after)


def test_out_of_scope_group_is_ignored(snapshots):
    result = run_pipeline(*snapshots, group_code="102")
    names = set(result.change_table["entity_name"])
    assert "Charter Prep Academy" in names
    assert "Eastern High School" not in names


def test_shared_name_produces_warning(wide_2019, long_2022):
    renamed = long_2022.copy()
    renamed.loc[renamed["school_code"] == "0404", "school_name"] = "Eastern High School"
    result = run_pipeline(Snapshot(2019, wide_2019), Snapshot(2022, renamed), "001")

    assert [w.entity_name for w in result.warnings] == ["Eastern High School"]
    assert "0404" in result.warnings[0].entity_codes


def test_unknown_grade_aborts_run(wide_2019, long_2022):
    broken = long_2022.copy()
    broken.loc[0, "grade"] = "Grade 13"
    with pytest.raises(UnknownGradeLabelError):
        run_pipeline(Snapshot(2019, wide_2019), Snapshot(2022, broken), "001")


def test_same_year_twice_is_rejected(long_2022):
    with pytest.raises(SchemaError):
        run_pipeline(Snapshot(2022, long_2022), Snapshot(2022, long_2022), "001")


def test_write_outputs(tmp_path, snapshots):
    result = run_pipeline(*snapshots, group_code="001")
    paths = write_outputs(result, tmp_path, "001", 10)

    assert all(path.exists() for path in paths)
    payload = json.loads((tmp_path / "enrollment_change.json").read_text(encoding="utf-8"))
    assert payload["meta"]["years"] == [2019, 2022]
    assert payload["meta"]["grades"] == ["9", "10"]
    assert payload["identity_mapping"] == {"0202": "Roosevelt"}
    assert payload["records"][0]["entity_name"] == OVERALL_LABEL
    assert payload["records"][0]["n_enrolled_2019"] == 1805
    median = next(r for r in payload["records"] if r["entity_name"] == MEDIAN_LABEL)
    assert median["n_enrolled_2019"] is None

    written = pd.read_csv(tmp_path / "enrollment_change.csv", dtype={"entity_code": "string"})
    assert len(written) == len(result.change_table)
    long = pd.read_parquet(tmp_path / "enrollment_long.parquet")
    assert len(long) == len(result.long_table)


def test_main_reads_files_and_writes_outputs(tmp_path, wide_2019, long_2022, capsys):
    y1_path = tmp_path / "enrollment_2019.csv"
    y2_path = tmp_path / "enrollment_2022.parquet"
    wide_2019.to_csv(y1_path, index=False)
    long_2022.to_parquet(y2_path, index=False)
    out_dir = tmp_path / "outputs"

    main(
        [
            "--y1-path", str(y1_path), "--y1-year", "2019",
            "--y2-path", str(y2_path), "--y2-year", "2022",
            "--group-code", "001",
            "--output-dir", str(out_dir),
        ]
    )

    captured = capsys.readouterr()
    assert "Wrote" in captured.out
    assert (out_dir / "enrollment_change.csv").exists()


def test_main_exits_on_schema_error(tmp_path, long_2022, capsys):
    y1_path = tmp_path / "enrollment_2019.csv"
    y2_path = tmp_path / "enrollment_2022.csv"
    long_2022.drop(columns=["school_code"]).to_csv(y1_path, index=False)
    long_2022.to_csv(y2_path, index=False)

    with pytest.raises(SystemExit) as excinfo:
        main(["--y1-path", str(y1_path), "--y2-path", str(y2_path),
              "--output-dir", str(tmp_path / "out")])

    assert excinfo.value.code == 1
    assert "school_code" in capsys.readouterr().err
