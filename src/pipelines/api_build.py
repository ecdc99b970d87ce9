from __future__ import annotations

import time
from pathlib import Path
from typing import Any
from uuid import uuid4

import pandas as pd

from datah.errors import DatahError
from datah.logging import bind_run_context, clear_run_context, get_logger
from datah.settings import Settings, get_settings
from pipelines.common.atomic_io import write_csv_atomic
from pipelines.common.csv_export import write_downloads
from pipelines.common.hierarchy import build_municipality_records
from pipelines.common.indicator_mappings import load_mapping_table
from pipelines.common.integrate import RAW_COLUMNS, integrate_observations
from pipelines.common.json_export import write_api_documents
from pipelines.common.manifest import build_manifest, manifest_path_for, utc_now_iso, write_manifest
from pipelines.common.normalize import normalize_observations
from pipelines.common.validate import ValidationReport, validate_api_directory, validate_records
from pipelines.indicators_fetch import FETCHED_FILENAME, MUNICIPALITIES_FILENAME
from pipelines.static_data import load_municipality_names, load_static_observations

JOB_NAME = "api_build"
RAW_FILENAME = "all-indicators-raw.csv"
NORMALIZED_FILENAME = "all-indicators-normalized.csv"
_TEXT_COLUMNS = {"municipality_key": str, "indicator_id": str, "period": str, "name": str}


def _read_cached_csv(path: Path, columns: list[str]) -> pd.DataFrame:
    if not path.exists():
        return pd.DataFrame(columns=columns)
    frame = pd.read_csv(path, dtype={column: str for column in columns if column in _TEXT_COLUMNS})
    return frame.reindex(columns=columns)


def _municipality_names(settings: Settings) -> pd.DataFrame:
    static_names = load_municipality_names(settings.static_data_path)
    fetched_names = _read_cached_csv(settings.data_cache_root / MUNICIPALITIES_FILENAME, ["municipality_key", "name"])
    names = pd.concat([static_names, fetched_names], ignore_index=True)
    return names.dropna(subset=["municipality_key"]).drop_duplicates("municipality_key", keep="first")


def _result(
    *,
    run_id: str,
    status: str,
    started_at: float,
    rows_extracted: int = 0,
    rows_written: int = 0,
    warnings: list[str] | None = None,
    errors: list[str] | None = None,
    **extra: Any,
) -> dict[str, Any]:
    return {
        "job": JOB_NAME,
        "status": status,
        "run_id": run_id,
        "duration_seconds": round(time.perf_counter() - started_at, 2),
        "rows_extracted": rows_extracted,
        "rows_written": rows_written,
        "warnings": warnings or [],
        "errors": errors or [],
        **extra,
    }


def _report_messages(report: ValidationReport) -> tuple[list[str], list[str]]:
    errors = [f"{item.name}: {item.details}" for item in report.failures]
    warnings = [f"{item.name}: {item.details}" for item in report.warnings]
    return errors, warnings


def validate_only(settings: Settings | None = None) -> dict[str, Any]:
    """Re-validate an already written API tree without rebuilding it."""
    settings = settings or get_settings()
    logger = get_logger(JOB_NAME)
    run_id = str(uuid4())
    started_at = time.perf_counter()
    report = validate_api_directory(
        settings.api_root,
        expected_municipality_count=settings.expected_municipality_count,
        last_update_path=settings.output_root / "LAST_UPDATE.json",
    )
    errors, warnings = _report_messages(report)
    logger.info("api_validation_finished", run_id=run_id, failures=len(errors), warnings=len(warnings))
    return _result(
        run_id=run_id,
        status="success" if report.passed else "failed",
        started_at=started_at,
        warnings=warnings,
        errors=errors,
        validation=report.as_dicts(),
    )


def run(
    *,
    dry_run: bool = False,
    settings: Settings | None = None,
    last_updated: str | None = None,
) -> dict[str, Any]:
    settings = settings or get_settings()
    logger = get_logger(JOB_NAME)
    run_id = str(uuid4())
    started_at = time.perf_counter()
    last_updated = last_updated or utc_now_iso()
    bind_run_context(job=JOB_NAME, run_id=run_id)
    warnings: list[str] = []

    try:
        table = load_mapping_table(settings=settings)

        fetched_path = settings.data_cache_root / FETCHED_FILENAME
        if not fetched_path.exists():
            warnings.append(f"{fetched_path.as_posix()} not found; building from static data only.")
            logger.warning("fetched_indicators_missing", path=fetched_path.as_posix())
        fetched = _read_cached_csv(fetched_path, RAW_COLUMNS)
        static = load_static_observations(settings.static_data_path)
        raw = integrate_observations(fetched, static)
        if raw.empty:
            logger.warning("api_build_blocked", reason="no raw observations")
            return _result(
                run_id=run_id,
                status="blocked",
                started_at=started_at,
                warnings=warnings + ["No raw observations available; previous artifacts left untouched."],
            )

        normalization = normalize_observations(raw, table)
        for indicator_id, detail in normalization.failed_indicators.items():
            warnings.append(f"{indicator_id}: normalization failed ({detail}).")
        if normalization.defaulted_directions:
            warnings.append(
                "Direction defaulted to higher_is_better for: "
                + ", ".join(normalization.defaulted_directions)
            )
        normalized = normalization.frame

        names = _municipality_names(settings)
        hierarchy = build_municipality_records(
            normalized,
            table,
            names,
            last_updated=last_updated,
            schema_version=settings.schema_version,
            base_url_path=settings.base_url_path,
        )
        if hierarchy.unmapped_indicators:
            warnings.append(
                f"{len(hierarchy.unmapped_indicators)} indicators have data but no mapping: "
                + ", ".join(sorted(hierarchy.unmapped_indicators))
            )
        if hierarchy.excluded_municipalities:
            warnings.append(
                f"{len(hierarchy.excluded_municipalities)} municipalities have no mapped indicators "
                "and were left out of the index."
            )

        report = validate_records(hierarchy.records, expected_municipality_count=settings.expected_municipality_count)
        indicator_count = int(normalized["indicator_id"].nunique()) if not normalized.empty else 0
        counts = {
            "raw_rows": int(len(raw)),
            "normalized_rows": int(len(normalized)),
            "municipalities": len(hierarchy.records),
            "indexed_municipalities": len(hierarchy.index),
            "excluded_municipalities": len(hierarchy.excluded_municipalities),
            "indicators": indicator_count,
            "failed_indicators": len(normalization.failed_indicators),
        }

        if dry_run:
            errors, check_warnings = _report_messages(report)
            return _result(
                run_id=run_id,
                status="success" if report.passed else "failed",
                started_at=started_at,
                rows_extracted=int(len(raw)),
                warnings=warnings + check_warnings,
                errors=errors,
                preview={"counts": counts, "validation": report.as_dicts()},
            )

        written = [
            write_csv_atomic(settings.data_cache_root / RAW_FILENAME, raw),
            write_csv_atomic(settings.data_cache_root / NORMALIZED_FILENAME, normalized),
        ]
        written.extend(
            write_api_documents(
                hierarchy,
                table,
                api_root=settings.api_root,
                last_update_path=settings.output_root / "LAST_UPDATE.json",
                last_updated=last_updated,
                schema_version=settings.schema_version,
                indicator_count=indicator_count,
            )
        )
        written.extend(write_downloads(normalized, names, settings.api_root / "downloads"))

        report.extend(
            validate_api_directory(
                settings.api_root,
                expected_municipality_count=settings.expected_municipality_count,
                last_update_path=settings.output_root / "LAST_UPDATE.json",
            ).results
        )
        errors, check_warnings = _report_messages(report)
        status = "success" if report.passed else "failed"

        manifest = build_manifest(
            settings=settings,
            job=JOB_NAME,
            outputs=[path.as_posix() for path in written],
            counts=counts,
            checks=report.as_dicts(),
            status=status,
            generated_at_utc=last_updated,
            run_id=run_id,
            notes="Static API build from fetched and static indicator observations.",
        )
        manifest_path = write_manifest(manifest, manifest_path_for(settings, last_updated))

        if report.passed:
            logger.info("API build finished.", files_written=len(written), **counts)
        else:
            logger.error("API build finished with validation failures.", failures=errors)
        return _result(
            run_id=run_id,
            status=status,
            started_at=started_at,
            rows_extracted=int(len(raw)),
            rows_written=len(written),
            warnings=warnings + check_warnings,
            errors=errors,
            details={
                "counts": counts,
                "failed_indicators": normalization.failed_indicators,
                "manifest_path": manifest_path.as_posix(),
            },
            validation=report.as_dicts(),
        )
    except (DatahError, OSError) as exc:
        logger.exception("API build failed.")
        return _result(
            run_id=run_id,
            status="failed",
            started_at=started_at,
            warnings=warnings,
            errors=[str(exc)],
        )
    finally:
        clear_run_context()
