from __future__ import annotations

from pathlib import Path

import pandas as pd

from pipelines.common.atomic_io import write_csv_atomic

ID_COLUMNS = ["municipality_code", "municipality_name"]


def _with_names(normalized: pd.DataFrame, names: pd.DataFrame) -> pd.DataFrame:
    lookup = names[["municipality_key", "name"]].drop_duplicates("municipality_key")
    merged = normalized.merge(lookup, on="municipality_key", how="left", suffixes=("_observed", ""))
    return merged.rename(columns={"municipality_key": "municipality_code", "name": "municipality_name"})


def long_projection(normalized: pd.DataFrame, names: pd.DataFrame, *, value_columns: list[str]) -> pd.DataFrame:
    frame = _with_names(normalized, names)
    columns = ID_COLUMNS + ["indicator_id"] + value_columns + ["source"]
    return frame[columns].sort_values(["municipality_code", "indicator_id"]).reset_index(drop=True)


def wide_projection(normalized: pd.DataFrame, names: pd.DataFrame, *, value_column: str) -> pd.DataFrame:
    """One row per municipality, one column per indicator."""
    if normalized.empty:
        return pd.DataFrame(columns=ID_COLUMNS)
    wide = normalized.pivot_table(
        index="municipality_key",
        columns="indicator_id",
        values=value_column,
        aggfunc="first",
        dropna=False,
    )
    wide.columns.name = None
    wide = wide.reset_index()
    frame = _with_names(wide, names)
    indicator_columns = [column for column in frame.columns if column not in ID_COLUMNS]
    return frame[ID_COLUMNS + indicator_columns].sort_values("municipality_code").reset_index(drop=True)


def write_downloads(normalized: pd.DataFrame, names: pd.DataFrame, downloads_dir: Path) -> list[Path]:
    return [
        write_csv_atomic(
            downloads_dir / "raw-data.csv",
            long_projection(normalized, names, value_columns=["raw_value"]),
        ),
        write_csv_atomic(
            downloads_dir / "normalized-data.csv",
            long_projection(normalized, names, value_columns=["normalized_value", "raw_value"]),
        ),
        write_csv_atomic(
            downloads_dir / "raw-data-wide.csv",
            wide_projection(normalized, names, value_column="raw_value"),
        ),
        write_csv_atomic(
            downloads_dir / "normalized-data-wide.csv",
            wide_projection(normalized, names, value_column="normalized_value"),
        ),
    ]
