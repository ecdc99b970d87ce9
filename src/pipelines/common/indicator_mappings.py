from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterator

import pandas as pd
import yaml

from datah.errors import ConfigurationError
from datah.settings import Settings

HIGHER_IS_BETTER = "higher_is_better"
LOWER_IS_BETTER = "lower_is_better"
VALID_DIRECTIONS = (HIGHER_IS_BETTER, LOWER_IS_BETTER)

REQUIRED_COLUMNS = (
    "indicator_id",
    "indicator_name",
    "dimension",
    "sub_dimension",
    "category_group",
    "code",
    "unit",
    "direction",
    "year",
    "source",
)
UNSET_CODES = {"", "todo", "unset", "na", "none", "nan"}
_BLANK_TOKENS = {"", "na", "nan", "none", "null"}


class Source(str, Enum):
    INE = "INE"
    DGT = "DGT"


_SOURCE_ALIASES: dict[str, Source] = {
    "ine": Source.INE,
    "statoffice": Source.INE,
    "stat_office": Source.INE,
    "dgt": Source.DGT,
    "territoryobservatory": Source.DGT,
    "territory_observatory": Source.DGT,
}


@dataclass(frozen=True)
class IndicatorMapping:
    indicator_id: str
    indicator_name: str
    dimension: str
    sub_dimension: str
    category_group: str
    source: Source
    code: str | None
    unit: str | None
    direction: str
    year: int | None = None
    first_filter: str | None = None
    second_filter: str | None = None
    source_url: str | None = None

    @property
    def is_fetchable(self) -> bool:
        return self.code is not None

    @property
    def inverted(self) -> bool:
        return self.direction == LOWER_IS_BETTER


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, float) and pd.isna(value):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    token = str(value).strip()
    if token.casefold() in _BLANK_TOKENS:
        return None
    return token


def _parse_code(value: Any) -> str | None:
    token = _clean(value)
    if token is None or token.casefold() in UNSET_CODES:
        return None
    return token


def _parse_year(value: Any, indicator_id: str, problems: list[str]) -> int | None:
    token = _clean(value)
    if token is None:
        return None
    try:
        return int(float(token))
    except ValueError:
        problems.append(f"{indicator_id}: invalid year '{token}'")
        return None


def _parse_source(value: Any, indicator_id: str, problems: list[str]) -> Source:
    token = _clean(value)
    if token is None:
        return Source.INE
    resolved = _SOURCE_ALIASES.get(token.casefold().replace(" ", ""))
    if resolved is None:
        problems.append(f"{indicator_id}: invalid source '{token}' (expected INE or DGT)")
        return Source.INE
    return resolved


class MappingTable:
    """Read-only view over every configured indicator, built once per run."""

    def __init__(self, mappings: list[IndicatorMapping]):
        self._mappings = tuple(mappings)
        self._by_id = {item.indicator_id: item for item in self._mappings}

    def __iter__(self) -> Iterator[IndicatorMapping]:
        return iter(self._mappings)

    def __len__(self) -> int:
        return len(self._mappings)

    def __contains__(self, indicator_id: object) -> bool:
        return indicator_id in self._by_id

    def get(self, indicator_id: str) -> IndicatorMapping | None:
        return self._by_id.get(indicator_id)

    def fetchable(self) -> list[IndicatorMapping]:
        return [item for item in self._mappings if item.is_fetchable]

    def pending(self) -> list[IndicatorMapping]:
        return [item for item in self._mappings if not item.is_fetchable]

    def direction_for(self, indicator_id: str) -> str | None:
        mapping = self._by_id.get(indicator_id)
        return mapping.direction if mapping is not None else None

    def count_by_source(self) -> dict[str, int]:
        counts = Counter(item.source.value for item in self._mappings)
        return {source.value: counts.get(source.value, 0) for source in Source}

    def placement_frame(self) -> pd.DataFrame:
        columns = ["indicator_id", "dimension", "sub_dimension", "category_group", "unit", "direction"]
        rows = [
            {
                "indicator_id": item.indicator_id,
                "dimension": item.dimension,
                "sub_dimension": item.sub_dimension,
                "category_group": item.category_group,
                "unit": item.unit,
                "direction": item.direction,
            }
            for item in self._mappings
        ]
        return pd.DataFrame(rows, columns=columns)

    def hierarchy_shape(self) -> dict[str, dict[str, list[str]]]:
        shape: dict[str, dict[str, list[str]]] = {}
        for item in self._mappings:
            groups = shape.setdefault(item.dimension, {}).setdefault(item.sub_dimension, [])
            if item.category_group not in groups:
                groups.append(item.category_group)
        return shape


def _read_rows(path: Path) -> list[dict[str, Any]]:
    if not path.exists():
        raise ConfigurationError(f"Mapping table not found: {path}")
    if path.suffix.casefold() == ".csv":
        frame = pd.read_csv(path, dtype=str, keep_default_na=False)
        return frame.to_dict(orient="records")

    payload = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    indicators = payload.get("indicators", []) if isinstance(payload, dict) else payload
    if not isinstance(indicators, list):
        raise ConfigurationError("Invalid mapping table format: 'indicators' must be a list.")
    return [item for item in indicators if isinstance(item, dict)]


def build_mapping_table(
    rows: list[dict[str, Any]],
    *,
    valid_dimensions: list[str] | None = None,
) -> MappingTable:
    """Validate raw mapping rows and freeze them into a ``MappingTable``.

    Every problem is collected before raising so one run reports the whole
    list instead of failing on the first bad row.
    """
    problems: list[str] = []
    present_columns = set().union(*(row.keys() for row in rows)) if rows else set()
    missing_columns = [column for column in REQUIRED_COLUMNS if column not in present_columns]
    if rows and missing_columns:
        raise ConfigurationError(
            f"Missing required columns in mapping table: {', '.join(missing_columns)}",
            problems=[f"missing column: {column}" for column in missing_columns],
        )

    mappings: list[IndicatorMapping] = []
    seen: Counter[str] = Counter()
    for position, row in enumerate(rows, start=1):
        indicator_id = _clean(row.get("indicator_id"))
        if indicator_id is None:
            problems.append(f"row {position}: empty indicator_id")
            continue
        seen[indicator_id] += 1

        direction = _clean(row.get("direction")) or ""
        if direction not in VALID_DIRECTIONS:
            problems.append(f"{indicator_id}: invalid direction '{direction}'")

        dimension = _clean(row.get("dimension")) or ""
        if valid_dimensions and dimension not in valid_dimensions:
            problems.append(f"{indicator_id}: invalid dimension '{dimension}'")

        source = _parse_source(row.get("source"), indicator_id, problems)
        mappings.append(
            IndicatorMapping(
                indicator_id=indicator_id,
                indicator_name=_clean(row.get("indicator_name")) or indicator_id,
                dimension=dimension,
                sub_dimension=_clean(row.get("sub_dimension")) or "",
                category_group=_clean(row.get("category_group")) or "",
                source=source,
                code=_parse_code(row.get("code")),
                unit=_clean(row.get("unit")),
                direction=direction,
                year=_parse_year(row.get("year"), indicator_id, problems),
                first_filter=_clean(row.get("first_filter")),
                second_filter=_clean(row.get("second_filter")),
                source_url=_clean(row.get("source_url")),
            )
        )

    duplicates = sorted(indicator_id for indicator_id, count in seen.items() if count > 1)
    if duplicates:
        problems.append(f"Duplicate indicator IDs found: {', '.join(duplicates)}")

    if problems:
        raise ConfigurationError(
            f"Invalid mapping table ({len(problems)} problems): " + "; ".join(problems),
            problems=problems,
        )
    return MappingTable(mappings)


def load_mapping_table(path: Path | str | None = None, settings: Settings | None = None) -> MappingTable:
    resolved_path = Path(path) if path is not None else None
    if resolved_path is None:
        if settings is None:
            raise ConfigurationError("Either a mapping path or settings must be provided.")
        resolved_path = settings.mapping_path
    valid_dimensions = settings.valid_dimensions_list if settings is not None else None
    return build_mapping_table(_read_rows(resolved_path), valid_dimensions=valid_dimensions)
