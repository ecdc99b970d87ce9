"""Min-max normalization of raw indicator values onto a common [0, 100] scale.

Each indicator is scaled independently over its non-missing values:

* ``higher_is_better``: ``(v - min) / (max - min) * 100``
* ``lower_is_better``: ``(max - v) / (max - min) * 100``
* a constant indicator (``max == min``) maps every present value to 50

An unset or unrecognized direction falls back to the ``higher_is_better``
formula. That default is historical and is reported once per run.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field

import pandas as pd

from datah.errors import NormalizationInvariantError
from datah.logging import get_logger
from pipelines.common.indicator_mappings import LOWER_IS_BETTER, VALID_DIRECTIONS, MappingTable

NORMALIZED_MIN = 0.0
NORMALIZED_MAX = 100.0
CONSTANT_SCORE = 50.0
NORMALIZED_COLUMNS = ["municipality_key", "indicator_id", "raw_value", "normalized_value", "unit", "source"]


@dataclass
class NormalizationResult:
    frame: pd.DataFrame
    failed_indicators: dict[str, str] = field(default_factory=dict)
    defaulted_directions: list[str] = field(default_factory=list)


def normalize_indicator_values(values: pd.Series, direction: str | None) -> pd.Series:
    raw = pd.to_numeric(values, errors="coerce").astype(float)
    raw = raw.where(~raw.isin([math.inf, -math.inf]))
    present = raw.dropna()
    if present.empty:
        return pd.Series(math.nan, index=raw.index, dtype=float)

    low = present.min()
    high = present.max()
    spread = high - low
    if spread == 0:
        return pd.Series(CONSTANT_SCORE, index=raw.index, dtype=float).where(raw.notna())
    if direction == LOWER_IS_BETTER:
        return (high - raw) / spread * 100
    return (raw - low) / spread * 100


def _assert_in_range(indicator_id: str, frame: pd.DataFrame) -> None:
    values = frame["normalized_value"]
    offending = frame[values.notna() & ((values < NORMALIZED_MIN) | (values > NORMALIZED_MAX))]
    if not offending.empty:
        raise NormalizationInvariantError(
            indicator_id,
            dict(zip(offending["municipality_key"], offending["normalized_value"])),
        )


def normalize_observations(raw: pd.DataFrame, table: MappingTable) -> NormalizationResult:
    """Normalize every indicator in ``raw``; a broken indicator never takes the others down."""
    logger = get_logger("normalize")
    frames: list[pd.DataFrame] = []
    failed: dict[str, str] = {}
    defaulted: list[str] = []

    for indicator_id, group in raw.groupby("indicator_id", sort=True):
        mapping = table.get(indicator_id)
        direction = mapping.direction if mapping is not None else None
        if direction not in VALID_DIRECTIONS:
            defaulted.append(indicator_id)

        scored = group.assign(
            normalized_value=normalize_indicator_values(group["raw_value"], direction),
            unit=mapping.unit if mapping is not None else None,
        )
        try:
            _assert_in_range(indicator_id, scored)
        except NormalizationInvariantError as exc:
            failed[indicator_id] = str(exc)
            logger.error("normalization_invariant_violated", indicator_id=indicator_id, offending=len(exc.offending))
            continue
        frames.append(scored[NORMALIZED_COLUMNS])

    if defaulted:
        logger.warning(
            "normalization_direction_defaulted",
            count=len(defaulted),
            indicator_ids=defaulted,
            applied="higher_is_better",
        )

    frame = pd.concat(frames, ignore_index=True) if frames else pd.DataFrame(columns=NORMALIZED_COLUMNS)
    logger.info(
        "normalization_finished",
        rows=int(len(frame)),
        indicators=int(frame["indicator_id"].nunique()) if not frame.empty else 0,
        missing=int(frame["normalized_value"].isna().sum()) if not frame.empty else 0,
        failed=len(failed),
    )
    return NormalizationResult(frame=frame, failed_indicators=failed, defaulted_directions=defaulted)
