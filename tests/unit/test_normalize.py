from __future__ import annotations

import math

import pandas as pd
import pytest

from pipelines.common import normalize
from pipelines.common.indicator_mappings import HIGHER_IS_BETTER, LOWER_IS_BETTER, build_mapping_table
from pipelines.common.normalize import NORMALIZED_COLUMNS, normalize_indicator_values, normalize_observations


def _table():
    def row(indicator_id: str, direction: str, unit: str) -> dict[str, str]:
        return {
            "indicator_id": indicator_id,
            "indicator_name": indicator_id,
            "dimension": "coesao_territorial",
            "sub_dimension": "demografia",
            "category_group": "populacao",
            "code": "0000001",
            "unit": unit,
            "direction": direction,
            "year": "",
            "source": "INE",
        }

    return build_mapping_table(
        [row("ind_up", HIGHER_IS_BETTER, "%"), row("ind_down", LOWER_IS_BETTER, "EUR")]
    )


def _raw(rows: list[tuple[str, str, float | None]]) -> pd.DataFrame:
    return pd.DataFrame(
        [
            {"municipality_key": key, "indicator_id": indicator_id, "raw_value": value, "source": "INE"}
            for key, indicator_id, value in rows
        ]
    )


def test_higher_is_better_scales_min_to_zero_and_max_to_hundred() -> None:
    result = normalize_indicator_values(pd.Series([10.0, 50.0, 90.0]), HIGHER_IS_BETTER)

    assert result.tolist() == [0.0, 50.0, 100.0]


def test_lower_is_better_inverts_the_scale() -> None:
    values = pd.Series({"A": 10.0, "B": 50.0, "C": 90.0})

    result = normalize_indicator_values(values, LOWER_IS_BETTER)

    assert result.to_dict() == {"A": 100.0, "B": 50.0, "C": 0.0}


def test_constant_indicator_maps_present_values_to_fifty() -> None:
    result = normalize_indicator_values(pd.Series([7.0, None, 7.0]), LOWER_IS_BETTER)

    assert result.iloc[0] == 50.0
    assert math.isnan(result.iloc[1])
    assert result.iloc[2] == 50.0


def test_missing_and_non_finite_values_stay_missing() -> None:
    result = normalize_indicator_values(pd.Series([0.0, None, math.inf, 20.0]), HIGHER_IS_BETTER)

    assert result.iloc[0] == 0.0
    assert math.isnan(result.iloc[1])
    assert math.isnan(result.iloc[2])
    assert result.iloc[3] == 100.0


def test_all_missing_indicator_yields_all_missing() -> None:
    result = normalize_indicator_values(pd.Series([None, None], dtype=float), HIGHER_IS_BETTER)

    assert result.isna().all()


def test_unset_direction_uses_higher_is_better_formula() -> None:
    result = normalize_indicator_values(pd.Series([10.0, 20.0]), None)

    assert result.tolist() == [0.0, 100.0]


def test_normalize_observations_attaches_units_and_reports_defaults() -> None:
    raw = _raw(
        [
            ("0101", "ind_up", 1.0),
            ("0102", "ind_up", 3.0),
            ("0101", "ind_down", 100.0),
            ("0102", "ind_down", 300.0),
            ("0101", "ind_unmapped", 5.0),
            ("0102", "ind_unmapped", 15.0),
        ]
    )

    result = normalize_observations(raw, _table())

    assert list(result.frame.columns) == NORMALIZED_COLUMNS
    scores = {(row.municipality_key, row.indicator_id): row.normalized_value for row in result.frame.itertuples()}
    assert scores[("0102", "ind_up")] == 100.0
    assert scores[("0101", "ind_down")] == 100.0
    assert scores[("0102", "ind_unmapped")] == 100.0
    units = result.frame.drop_duplicates("indicator_id").set_index("indicator_id")["unit"]
    assert units["ind_up"] == "%"
    assert units["ind_down"] == "EUR"
    assert units["ind_unmapped"] is None
    assert result.defaulted_directions == ["ind_unmapped"]
    assert result.failed_indicators == {}
    assert result.frame["normalized_value"].between(0, 100).all()


def test_invariant_violation_excludes_only_that_indicator(monkeypatch: pytest.MonkeyPatch) -> None:
    original = normalize.normalize_indicator_values

    def broken(values: pd.Series, direction: str | None) -> pd.Series:
        scored = original(values, direction)
        if direction == LOWER_IS_BETTER:
            return scored + 1000
        return scored

    monkeypatch.setattr(normalize, "normalize_indicator_values", broken)
    raw = _raw([("0101", "ind_up", 1.0), ("0102", "ind_up", 2.0), ("0101", "ind_down", 1.0), ("0102", "ind_down", 2.0)])

    result = normalize_observations(raw, _table())

    assert set(result.failed_indicators) == {"ind_down"}
    assert "outside [0, 100]" in result.failed_indicators["ind_down"]
    assert set(result.frame["indicator_id"]) == {"ind_up"}


def test_normalize_observations_on_empty_input() -> None:
    result = normalize_observations(
        pd.DataFrame(columns=["municipality_key", "indicator_id", "raw_value", "source"]), _table()
    )

    assert result.frame.empty
    assert list(result.frame.columns) == NORMALIZED_COLUMNS
