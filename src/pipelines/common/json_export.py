from __future__ import annotations

import copy
from pathlib import Path
from typing import Any

from datah.logging import get_logger
from pipelines.common.atomic_io import write_json_atomic
from pipelines.common.hierarchy import HierarchyResult, iter_leaves
from pipelines.common.indicator_mappings import MappingTable, Source
from pipelines.common.validate import MUNICIPALITY_FILE_PATTERN

LEAF_DIGITS = 2
NORMALIZATION_METHOD = "min-max"
NORMALIZATION_RANGE = [0, 100]

SOURCE_DESCRIPTORS = {
    Source.INE: {
        "name": "INE",
        "full_name": "Instituto Nacional de Estatística",
        "url": "https://www.ine.pt",
    },
    Source.DGT: {
        "name": "DGT",
        "full_name": "Direção-Geral do Território",
        "url": "https://observatorioindicadores.dgterritorio.gov.pt",
    },
}


def _round(value: float | None) -> float | None:
    return None if value is None else round(value, LEAF_DIGITS)


def municipality_document(record: dict[str, Any]) -> dict[str, Any]:
    """Copy of ``record`` with every leaf rounded for publication."""
    document = copy.deepcopy(record)
    for _, _, _, _, leaf in iter_leaves(document):
        leaf["normalized"] = _round(leaf.get("normalized"))
        leaf["raw"] = _round(leaf.get("raw"))
    return document


def build_index_document(index: list[dict[str, str]], *, last_updated: str) -> dict[str, Any]:
    return {"total": len(index), "last_updated": last_updated, "municipalities": index}


def build_indicators_document(table: MappingTable, *, schema_version: str, last_updated: str) -> dict[str, Any]:
    indicators = [
        {
            "indicator_id": item.indicator_id,
            "indicator_name": item.indicator_name,
            "dimension": item.dimension,
            "sub_dimension": item.sub_dimension,
            "category_group": item.category_group,
            "unit": item.unit,
            "direction": item.direction,
            "source": item.source.value,
            "source_url": item.source_url,
            "normalization": {
                "method": NORMALIZATION_METHOD,
                "range": NORMALIZATION_RANGE,
                "inverted": item.inverted,
            },
        }
        for item in table
    ]
    return {"schema_version": schema_version, "last_updated": last_updated, "indicators": indicators}


def build_hierarchy_document(table: MappingTable, *, schema_version: str) -> dict[str, Any]:
    structure = {
        dimension: {
            sub_dimension: {"category_groups": groups}
            for sub_dimension, groups in sub_dimensions.items()
        }
        for dimension, sub_dimensions in table.hierarchy_shape().items()
    }
    return {"schema_version": schema_version, "structure": structure}


def build_sources_document(table: MappingTable, *, schema_version: str, last_updated: str) -> dict[str, Any]:
    counts = table.count_by_source()
    sources = [
        {**descriptor, "indicators_count": counts.get(source.value, 0)}
        for source, descriptor in SOURCE_DESCRIPTORS.items()
    ]
    return {"schema_version": schema_version, "last_updated": last_updated, "sources": sources}


def build_bulk_document(
    documents: dict[str, dict[str, Any]],
    *,
    last_updated: str,
    schema_version: str,
    total_indicators: int,
) -> dict[str, Any]:
    return {
        "metadata": {
            "last_updated": last_updated,
            "schema_version": schema_version,
            "total_municipalities": len(documents),
            "total_indicators": total_indicators,
        },
        "municipalities": documents,
    }


def build_last_update_document(
    *,
    last_updated: str,
    schema_version: str,
    municipality_count: int,
    indicator_count: int,
) -> dict[str, Any]:
    return {
        "last_updated": last_updated,
        "schema_version": schema_version,
        "municipality_count": municipality_count,
        "indicator_count": indicator_count,
    }


def remove_stale_municipality_files(municipalities_dir: Path, *, keep: set[str]) -> list[Path]:
    """Delete ``<key>.json`` files whose key is not among ``keep``."""
    if not municipalities_dir.exists():
        return []
    stale = [
        path
        for path in sorted(municipalities_dir.glob("*.json"))
        if MUNICIPALITY_FILE_PATTERN.match(path.name) and path.stem not in keep
    ]
    for path in stale:
        path.unlink()
    return stale


def write_api_documents(
    result: HierarchyResult,
    table: MappingTable,
    *,
    api_root: Path,
    last_update_path: Path,
    last_updated: str,
    schema_version: str,
    indicator_count: int,
) -> list[Path]:
    """Write every JSON document of the static API and return the written paths.

    Each file is swapped in atomically; a failure part-way leaves earlier
    runs' files whole.
    """
    logger = get_logger("json_export")
    written: list[Path] = []
    documents = {key: municipality_document(record) for key, record in result.records.items()}

    municipalities_dir = api_root / "municipalities"
    for key, document in documents.items():
        written.append(write_json_atomic(municipalities_dir / f"{key}.json", document))
    written.append(
        write_json_atomic(
            municipalities_dir / "index.json",
            build_index_document(result.index, last_updated=last_updated),
        )
    )

    metadata_dir = api_root / "metadata"
    written.append(
        write_json_atomic(
            metadata_dir / "indicators.json",
            build_indicators_document(table, schema_version=schema_version, last_updated=last_updated),
        )
    )
    written.append(
        write_json_atomic(
            metadata_dir / "hierarchy.json",
            build_hierarchy_document(table, schema_version=schema_version),
        )
    )
    written.append(
        write_json_atomic(
            metadata_dir / "sources.json",
            build_sources_document(table, schema_version=schema_version, last_updated=last_updated),
        )
    )
    written.append(
        write_json_atomic(
            api_root / "bulk" / "all-municipalities.json",
            build_bulk_document(
                documents,
                last_updated=last_updated,
                schema_version=schema_version,
                total_indicators=indicator_count,
            ),
            indent=None,
        )
    )
    removed = remove_stale_municipality_files(municipalities_dir, keep=set(documents))
    if removed:
        logger.info("api_stale_municipality_files_removed", count=len(removed), keys=[p.stem for p in removed][:20])
    written.append(
        write_json_atomic(
            last_update_path,
            build_last_update_document(
                last_updated=last_updated,
                schema_version=schema_version,
                municipality_count=len(documents),
                indicator_count=indicator_count,
            ),
        )
    )
    logger.info("api_documents_written", files=len(written), municipalities=len(documents))
    return written
