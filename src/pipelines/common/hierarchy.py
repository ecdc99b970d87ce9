from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

import pandas as pd

from datah.logging import get_logger
from pipelines.common.geo_keys import standardize_municipality_keys
from pipelines.common.indicator_mappings import MappingTable

FLAT_COLUMNS = ["municipality_key", "indicator_id", "normalized_value", "raw_value", "unit"]


@dataclass
class HierarchyResult:
    records: dict[str, dict[str, Any]]
    index: list[dict[str, str]]
    unmapped_indicators: dict[str, int] = field(default_factory=dict)
    excluded_municipalities: list[str] = field(default_factory=list)


def _leaf_value(value: Any) -> float | None:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _name_lookup(municipality_names: pd.DataFrame | None) -> dict[str, str]:
    if municipality_names is None or municipality_names.empty:
        return {}
    names = municipality_names.assign(
        municipality_key=standardize_municipality_keys(municipality_names["municipality_key"])
    ).dropna(subset=["municipality_key", "name"])
    return dict(zip(names["municipality_key"], names["name"].astype(str)))


def _is_placeable(table: MappingTable, indicator_id: Any) -> bool:
    mapping = table.get(indicator_id) if isinstance(indicator_id, str) else None
    if mapping is None:
        return False
    return all(part.strip() for part in (mapping.dimension, mapping.sub_dimension, mapping.category_group))


def municipality_url(key: str, base_url_path: str = "/v1") -> str:
    return f"{base_url_path.rstrip('/')}/municipalities/{key}.json"


def build_municipality_records(
    normalized: pd.DataFrame,
    table: MappingTable,
    municipality_names: pd.DataFrame | None = None,
    *,
    last_updated: str,
    schema_version: str,
    base_url_path: str = "/v1",
) -> HierarchyResult:
    """Assemble one dimension > sub-dimension > category-group > indicator tree per municipality.

    Every municipality known from ``municipality_names`` or present in
    ``normalized`` gets a record. Observations whose indicator is not in
    ``table``, or is mapped without a full dimension/sub-dimension/category
    group placement, are counted and left out; a municipality left with no placed
    indicator keeps an empty ``dimensions`` object and is excluded from the
    index.
    """
    logger = get_logger("hierarchy")
    names = _name_lookup(municipality_names)

    frame = normalized.assign(municipality_key=standardize_municipality_keys(normalized["municipality_key"]))
    frame = frame[frame["municipality_key"].notna()]

    mapped_mask = frame["indicator_id"].map(lambda indicator_id: _is_placeable(table, indicator_id)).astype(bool)
    unmapped = frame.loc[~mapped_mask, "indicator_id"].value_counts().sort_index()
    unmapped_indicators = {str(key): int(count) for key, count in unmapped.items()}
    if unmapped_indicators:
        logger.warning(
            "hierarchy_unmapped_indicators",
            count=len(unmapped_indicators),
            rows=int(unmapped.sum()),
            indicator_ids=sorted(unmapped_indicators),
        )
    placed = frame[mapped_mask]

    keys = sorted(set(names) | set(frame["municipality_key"]))
    records: dict[str, dict[str, Any]] = {}
    for key in keys:
        records[key] = {
            "metadata": {
                "key": key,
                "name": names.get(key, f"Municipality {key}"),
                "last_updated": last_updated,
                "schema_version": schema_version,
            },
            "dimensions": {},
        }

    for row in placed.itertuples(index=False):
        mapping = table.get(row.indicator_id)
        dimensions = records[row.municipality_key]["dimensions"]
        sub_dimensions = dimensions.setdefault(mapping.dimension, {"sub_dimensions": {}})["sub_dimensions"]
        groups = sub_dimensions.setdefault(mapping.sub_dimension, {"category_groups": {}})["category_groups"]
        indicators = groups.setdefault(mapping.category_group, {"indicators": {}})["indicators"]
        indicators[row.indicator_id] = {
            "normalized": _leaf_value(row.normalized_value),
            "raw": _leaf_value(row.raw_value),
            "unit": mapping.unit,
        }

    excluded = [key for key, record in records.items() if not record["dimensions"]]
    if excluded:
        logger.warning("hierarchy_empty_municipalities", count=len(excluded), keys=excluded[:20])

    index = [
        {
            "key": key,
            "name": record["metadata"]["name"],
            "url": municipality_url(key, base_url_path),
        }
        for key, record in records.items()
        if record["dimensions"]
    ]
    logger.info(
        "hierarchy_built",
        municipalities=len(records),
        indexed=len(index),
        excluded=len(excluded),
        placed_rows=int(len(placed)),
    )
    return HierarchyResult(
        records=records,
        index=index,
        unmapped_indicators=unmapped_indicators,
        excluded_municipalities=excluded,
    )


def iter_leaves(record: dict[str, Any]):
    for dimension, dimension_node in record.get("dimensions", {}).items():
        for sub_dimension, sub_node in dimension_node.get("sub_dimensions", {}).items():
            for category_group, group_node in sub_node.get("category_groups", {}).items():
                for indicator_id, leaf in group_node.get("indicators", {}).items():
                    yield (dimension, sub_dimension, category_group, indicator_id, leaf)


def flatten_records(records: dict[str, dict[str, Any]]) -> pd.DataFrame:
    rows = [
        {
            "municipality_key": key,
            "indicator_id": indicator_id,
            "normalized_value": leaf.get("normalized"),
            "raw_value": leaf.get("raw"),
            "unit": leaf.get("unit"),
        }
        for key, record in records.items()
        for _, _, _, indicator_id, leaf in iter_leaves(record)
    ]
    return pd.DataFrame(rows, columns=FLAT_COLUMNS)
