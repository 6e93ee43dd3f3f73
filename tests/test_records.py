from datetime import datetime, timezone

from cfbprice.records import (
    CalibrationResult,
    ConsensusLine,
    ResidualBucket,
    TeamGameAdjustedFeature,
    from_record,
    parse_timestamp,
    to_record,
)


def test_timestamps_are_utc():
    assert parse_timestamp("2024-09-14T19:30:00Z") == datetime(2024, 9, 14, 19, 30, tzinfo=timezone.utc)
    assert parse_timestamp("2024-09-14T15:30:00-04:00") == datetime(2024, 9, 14, 19, 30, tzinfo=timezone.utc)
    assert parse_timestamp("") is None
    assert parse_timestamp("not a date") is None


def test_consensus_record_round_trip():
    line = ConsensusLine(
        "g1", "spread", -3.5, 3, 4, 1, "pre_kick",
        window_start=datetime(2024, 9, 14, 18, 30, tzinfo=timezone.utc),
        favored_side="home", books=("cz", "dk", "fd"), version="c1",
    )
    record = to_record(line)
    assert record["window_start"] == "2024-09-14T18:30:00Z"
    assert record["books"] == ["cz", "dk", "fd"]
    assert from_record(ConsensusLine, record) == line


def test_calibration_result_buckets_round_trip():
    result = CalibrationResult(
        "v_sos5_shr25", "A", "v_sos5_shr25", 0.05, 0.25, 10.0, "converged", 32,
        buckets=(ResidualBucket("0-7", 10, 0.1, 1.0), ResidualBucket(">28", 0, None, None)),
        gates={"r2": True}, passed=True,
    )
    assert from_record(CalibrationResult, to_record(result)) == result


def test_feature_row_flattens_values():
    feature = TeamGameAdjustedFeature(
        "g1", "A", "f1", 2024, 5, "B", values={"edge_epa": 0.4, "off_adj_sr": None}, is_home=True,
    )
    row = feature.to_row()
    assert row["edge_epa"] == 0.4
    assert "values" not in row
    assert TeamGameAdjustedFeature.from_row(row) == feature
