from __future__ import annotations

import pandas as pd

from datah.logging import get_logger
from pipelines.common.geo_keys import standardize_municipality_keys
from pipelines.common.response_parser import keep_latest_period

RAW_COLUMNS = ["municipality_key", "indicator_id", "raw_value", "source", "period", "name"]
OBSERVATION_KEY = ["municipality_key", "indicator_id"]


def integrate_observations(fetched: pd.DataFrame, static: pd.DataFrame) -> pd.DataFrame:
    """Union fetched and static observations into one row per (municipality, indicator).

    Fetched rows win over static rows for the same pair; within a source the
    most recent period wins.
    """
    logger = get_logger("integrate")
    parts = [frame.reindex(columns=RAW_COLUMNS) for frame in (fetched, static) if not frame.empty]
    if not parts:
        logger.warning("integration_empty")
        return pd.DataFrame(columns=RAW_COLUMNS)

    combined = pd.concat(parts, ignore_index=True)
    combined["municipality_key"] = standardize_municipality_keys(combined["municipality_key"])
    dropped = int(combined["municipality_key"].isna().sum())
    if dropped:
        logger.warning("integration_invalid_keys_dropped", rows=dropped)
    combined = combined[combined["municipality_key"].notna()].copy()
    combined["raw_value"] = pd.to_numeric(combined["raw_value"], errors="coerce")
    combined["_static"] = (combined["source"] == "static").astype(int)

    before = int(len(combined))
    latest = keep_latest_period(combined, OBSERVATION_KEY + ["_static"])
    preferred = latest.sort_values("_static", kind="mergesort").drop_duplicates(
        subset=OBSERVATION_KEY, keep="first"
    )
    result = preferred.drop(columns=["_static"]).sort_values(OBSERVATION_KEY).reset_index(drop=True)

    municipalities = int(result["municipality_key"].nunique())
    indicators = int(result["indicator_id"].nunique())
    expected_rows = municipalities * indicators
    logger.info(
        "integration_finished",
        rows=int(len(result)),
        collapsed=before - int(len(result)),
        municipalities=municipalities,
        indicators=indicators,
        by_source=result["source"].value_counts().to_dict(),
    )
    if len(result) < expected_rows:
        coverage = result.groupby("indicator_id")["municipality_key"].nunique()
        gaps = (municipalities - coverage)[lambda counts: counts > 0].sort_values(ascending=False)
        logger.warning(
            "integration_missing_combinations",
            missing=expected_rows - int(len(result)),
            by_indicator=gaps.head(20).to_dict(),
        )
    return result[RAW_COLUMNS]
