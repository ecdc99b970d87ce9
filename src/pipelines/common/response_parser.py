from __future__ import annotations

import math
import re
from typing import Any

import pandas as pd

from datah.errors import ParseError
from pipelines.common.geo_keys import standardize_municipality_keys
from pipelines.common.payloads import IneRecord, decode_ine_data

RESULT_COLUMNS = ["municipality_key", "value", "period", "name"]
RECORD_COLUMNS = list(IneRecord.model_fields.keys())
GROUP_KEYS = ["dim_2", "period"]
TOTAL_LABEL = "Total"
MULTI_LABEL_SEPARATOR = "|"

_YEAR_PATTERN = re.compile(r"(19|20)\d{2}")


def parse_numeric(value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else None

    token = str(value).strip()
    if not token or token in {"...", "-", "x", "nan", "None", "NA"}:
        return None
    normalized = token.replace(" ", "")
    if "," in normalized and "." in normalized:
        normalized = normalized.replace(".", "").replace(",", ".")
    elif "," in normalized:
        normalized = normalized.replace(",", ".")
    try:
        number = float(normalized)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def period_sort_value(period: Any) -> float:
    """Numeric rank of a period label; NaN when the label carries no year."""
    if period is None or (isinstance(period, float) and math.isnan(period)):
        return math.nan
    token = str(period).strip()
    number = parse_numeric(token)
    if number is not None:
        return number
    match = _YEAR_PATTERN.search(token)
    if match:
        return float(match.group(0))
    return math.nan


def is_label_filter(token: str) -> bool:
    return any(character.isalpha() for character in token)


def keep_latest_period(frame: pd.DataFrame, key_columns: list[str]) -> pd.DataFrame:
    """Collapse to one row per key, preferring the most recent period label."""
    if frame.empty:
        return frame
    ranked = frame.assign(
        _period_rank=frame["period"].map(period_sort_value),
        _period_label=frame["period"].fillna("").astype(str),
    )
    ranked = ranked.sort_values(
        ["_period_rank", "_period_label"],
        ascending=False,
        na_position="last",
        kind="mergesort",
    )
    ranked = ranked.drop_duplicates(subset=key_columns, keep="first")
    return ranked.drop(columns=["_period_rank", "_period_label"])


def _records_frame(records: list[IneRecord]) -> pd.DataFrame:
    frame = pd.DataFrame([record.model_dump() for record in records], columns=RECORD_COLUMNS)
    frame = frame.astype("object").where(frame.notna(), None)
    frame["value"] = frame["valor"].map(parse_numeric).astype(float)
    frame["period"] = frame["dim_1_t"].where(frame["dim_1_t"].notna(), frame["dim_1"])
    frame["name"] = frame["dim_2_t"]
    return frame[frame["dim_2"].notna()]


def _require_dimension(frame: pd.DataFrame, column: str, token: str, indicator_id: str | None) -> None:
    if frame[column].notna().any() or frame[f"{column}_t"].notna().any():
        return
    raise ParseError(
        f"Filter '{token}' configured for {column} but the response has no {column} dimension.",
        indicator_id=indicator_id,
    )


def _select(frame: pd.DataFrame, column: str, token: str) -> pd.DataFrame:
    if is_label_filter(token):
        return frame[frame[f"{column}_t"] == token]
    return frame[frame[column] == token]


def _proportion_of_total(
    frame: pd.DataFrame,
    selected: pd.DataFrame,
    column: str,
    indicator_id: str | None,
) -> pd.DataFrame:
    label_column = f"{column}_t"
    totals = frame[frame[label_column] == TOTAL_LABEL]
    if totals.empty:
        raise ParseError(
            f"Proportion filter on {column} needs a '{TOTAL_LABEL}' row but none was found.",
            indicator_id=indicator_id,
        )

    numerators = selected.groupby(GROUP_KEYS, dropna=False, as_index=False, sort=False).agg(
        value_filtered=("value", lambda values: values.sum(min_count=1)),
        name=("name", "first"),
    )
    denominators = totals.groupby(GROUP_KEYS, dropna=False, as_index=False, sort=False).agg(
        value_total=("value", "first"),
    )
    merged = numerators.merge(denominators, on=GROUP_KEYS, how="left")
    valid_total = merged["value_total"].notna() & (merged["value_total"] > 0)
    merged["value"] = (merged["value_filtered"] / merged["value_total"].where(valid_total)) * 100
    return merged[GROUP_KEYS + ["name", "value"]]


def _apply_first_filter(frame: pd.DataFrame, token: str, indicator_id: str | None) -> pd.DataFrame:
    _require_dimension(frame, "dim_3", token, indicator_id)
    selected = _select(frame, "dim_3", token)
    if is_label_filter(token):
        return selected
    return _proportion_of_total(frame, selected, "dim_3", indicator_id)


def _apply_second_filter(frame: pd.DataFrame, token: str, indicator_id: str | None) -> pd.DataFrame:
    _require_dimension(frame, "dim_4", token, indicator_id)
    if MULTI_LABEL_SEPARATOR in token:
        parts = [part.strip() for part in token.split(MULTI_LABEL_SEPARATOR) if part.strip()]
        labels = [part for part in parts if is_label_filter(part)]
        codes = [part for part in parts if not is_label_filter(part)]
        selected = frame[frame["dim_4_t"].isin(labels) | frame["dim_4"].isin(codes)]
        return _proportion_of_total(frame, selected, "dim_4", indicator_id)

    selected = _select(frame, "dim_4", token)
    if is_label_filter(token):
        return selected
    return _proportion_of_total(frame, selected, "dim_4", indicator_id)


def parse_ine_response(
    payload: Any,
    *,
    indicator_id: str | None = None,
    first_filter: str | None = None,
    second_filter: str | None = None,
) -> pd.DataFrame:
    """Turn an INE data payload into one row per municipality.

    ``first_filter`` targets ``dim_3`` and ``second_filter`` targets
    ``dim_4``. A filter containing letters selects rows by label; a numeric
    filter is a category code and yields ``100 * category / Total`` for the
    same geography and period. ``second_filter`` may list several labels
    separated by ``|``; those categories are summed before dividing by the
    Total. When both filters are set, the first one only narrows the rows and
    the proportion is computed on the second.

    Returns columns ``municipality_key``, ``value``, ``period``, ``name``.
    """
    decoded = decode_ine_data(payload, indicator_id=indicator_id)
    frame = _records_frame(decoded.records)

    if second_filter:
        if first_filter:
            _require_dimension(frame, "dim_3", first_filter, indicator_id)
            frame = _select(frame, "dim_3", first_filter)
        frame = _apply_second_filter(frame, second_filter, indicator_id)
    elif first_filter:
        frame = _apply_first_filter(frame, first_filter, indicator_id)

    if frame.empty:
        return pd.DataFrame(columns=RESULT_COLUMNS)

    result = frame.assign(municipality_key=standardize_municipality_keys(frame["dim_2"]))
    result = result[result["municipality_key"].notna() & result["value"].notna()]
    result = keep_latest_period(result, ["municipality_key"])
    return result[RESULT_COLUMNS].reset_index(drop=True)
