from __future__ import annotations

import pandas as pd

from pipelines.common.integrate import RAW_COLUMNS, integrate_observations


def _raw(rows: list[tuple], source: str) -> pd.DataFrame:
    return pd.DataFrame(
        [
            {
                "municipality_key": key,
                "indicator_id": indicator_id,
                "raw_value": value,
                "source": source,
                "period": period,
                "name": None,
            }
            for key, indicator_id, value, period in rows
        ],
        columns=RAW_COLUMNS,
    )


def _values(frame: pd.DataFrame) -> dict[tuple[str, str], float]:
    return {(row.municipality_key, row.indicator_id): row.raw_value for row in frame.itertuples()}


def test_fetched_rows_win_over_static_rows() -> None:
    fetched = _raw([("0101", "ind_a", 1.0, "2022")], "INE")
    static = _raw([("0101", "ind_a", 99.0, None), ("0101", "ind_b", 7.0, None)], "static")

    result = integrate_observations(fetched, static)

    assert _values(result) == {("0101", "ind_a"): 1.0, ("0101", "ind_b"): 7.0}
    assert result.set_index("indicator_id").loc["ind_a", "source"] == "INE"


def test_most_recent_period_wins_within_a_source() -> None:
    fetched = _raw(
        [("1106", "ind_a", 1.0, "2020"), ("1106", "ind_a", 3.0, "2023"), ("1106", "ind_a", 2.0, "2021")],
        "INE",
    )

    result = integrate_observations(fetched, _raw([], "static"))

    assert _values(result) == {("1106", "ind_a"): 3.0}


def test_keys_are_standardized_and_invalid_keys_dropped() -> None:
    fetched = _raw([("1111605", "ind_a", 1.0, "2022"), ("110A", "ind_a", 2.0, "2022")], "INE")

    result = integrate_observations(fetched, _raw([], "static"))

    assert result["municipality_key"].tolist() == ["1605"]
    assert list(result.columns) == RAW_COLUMNS


def test_non_numeric_raw_values_become_missing() -> None:
    static = _raw([("0101", "ind_a", "n/a", None), ("0102", "ind_a", "4.5", None)], "static")

    result = integrate_observations(_raw([], "INE"), static)

    assert result["raw_value"].isna().tolist() == [True, False]
    assert result["raw_value"].iloc[1] == 4.5


def test_no_inputs_yields_empty_frame() -> None:
    result = integrate_observations(_raw([], "INE"), _raw([], "static"))

    assert result.empty
    assert list(result.columns) == RAW_COLUMNS
