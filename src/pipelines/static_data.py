from __future__ import annotations

from pathlib import Path

import pandas as pd

from datah.errors import ConfigurationError
from datah.logging import get_logger
from pipelines.common.geo_keys import standardize_municipality_keys

SOURCE = "static"
KEY_COLUMN = "DICO"
NAME_COLUMN = "Localizacao"
RAW_COLUMNS = ["municipality_key", "indicator_id", "raw_value", "source", "period", "name"]


def _read_static_csv(path: Path) -> pd.DataFrame:
    # Semicolon separated, decimal comma and dot thousands, as exported by spreadsheet tools.
    frame = pd.read_csv(
        path,
        sep=";",
        decimal=",",
        thousands=".",
        dtype={KEY_COLUMN: str, NAME_COLUMN: str},
        encoding="utf-8",
    )
    if KEY_COLUMN not in frame.columns:
        raise ConfigurationError(f"Static data file {path} has no '{KEY_COLUMN}' column.")
    # Spreadsheets drop the leading zero of district 01..09 keys.
    keys = frame[KEY_COLUMN].fillna("").astype(str).str.strip()
    short = keys.str.fullmatch(r"\d{1,3}")
    keys = keys.where(~short, keys.str.zfill(4))
    frame["municipality_key"] = standardize_municipality_keys(keys)
    return frame


def load_static_observations(path: Path | str) -> pd.DataFrame:
    """Melt the wide static indicator sheet into raw observations.

    A missing file is not an error: the run simply carries fetched data only.
    """
    logger = get_logger("static_data")
    path = Path(path)
    if not path.exists():
        logger.warning("static_data_missing", path=path.as_posix())
        return pd.DataFrame(columns=RAW_COLUMNS)

    frame = _read_static_csv(path)
    indicator_columns = [
        column for column in frame.columns if column not in {KEY_COLUMN, NAME_COLUMN, "municipality_key"}
    ]
    dropped_keys = int(frame["municipality_key"].isna().sum())
    if dropped_keys:
        logger.warning("static_data_invalid_keys", path=path.as_posix(), rows=dropped_keys)

    names = frame[NAME_COLUMN] if NAME_COLUMN in frame.columns else None
    base = frame.assign(name=names)
    long = base.melt(
        id_vars=["municipality_key", "name"],
        value_vars=indicator_columns,
        var_name="indicator_id",
        value_name="raw_value",
    )
    long = long[long["municipality_key"].notna()].copy()
    long["raw_value"] = pd.to_numeric(long["raw_value"], errors="coerce")
    long["source"] = SOURCE
    long["period"] = None

    logger.info(
        "static_data_loaded",
        path=path.as_posix(),
        indicators=len(indicator_columns),
        municipalities=int(long["municipality_key"].nunique()),
    )
    return long[RAW_COLUMNS].reset_index(drop=True)


def load_municipality_names(path: Path | str) -> pd.DataFrame:
    path = Path(path)
    if not path.exists():
        return pd.DataFrame(columns=["municipality_key", "name"])
    frame = _read_static_csv(path)
    if NAME_COLUMN not in frame.columns:
        return pd.DataFrame(columns=["municipality_key", "name"])
    names = frame[["municipality_key", NAME_COLUMN]].rename(columns={NAME_COLUMN: "name"})
    return names.dropna(subset=["municipality_key"]).drop_duplicates("municipality_key").reset_index(drop=True)
