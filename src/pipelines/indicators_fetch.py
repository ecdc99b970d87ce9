from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

import pandas as pd

from datah.errors import ConfigurationError, DatahError
from datah.logging import bind_run_context, clear_run_context, get_logger
from datah.settings import Settings, get_settings
from pipelines import dgt_indicators, ine_indicators
from pipelines.common.atomic_io import write_csv_atomic
from pipelines.common.fetch_cache import Cached, FetchCache, Failed, Live, fetch_with_fallback
from pipelines.common.http_client import HttpClient
from pipelines.common.indicator_mappings import IndicatorMapping, MappingTable, Source, load_mapping_table
from pipelines.static_data import load_municipality_names

JOB_NAME = "indicators_fetch"
FETCHED_FILENAME = "fetched-indicators.csv"
MUNICIPALITIES_FILENAME = "municipalities.csv"
RAW_COLUMNS = ["municipality_key", "indicator_id", "raw_value", "source", "period", "name"]
MAX_MISSING_RATIO = 0.10
MIN_DISTINCT_MUNICIPALITIES = 300

OUTCOME_STATUSES = ("live", "cached", "fallback", "failed", "skipped")


@dataclass(frozen=True)
class IndicatorOutcome:
    indicator_id: str
    source: str
    status: str
    rows: int = 0
    detail: str | None = None


@dataclass
class FetchSummary:
    observations: pd.DataFrame
    outcomes: list[IndicatorOutcome] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def counts(self) -> dict[str, int]:
        counter = Counter(outcome.status for outcome in self.outcomes)
        return {status: counter.get(status, 0) for status in OUTCOME_STATUSES}

    @property
    def failed_indicators(self) -> list[str]:
        return [outcome.indicator_id for outcome in self.outcomes if outcome.status == "failed"]


def fetch_indicator(
    mapping: IndicatorMapping,
    *,
    ine_client: ine_indicators.IneClient,
    dgt_client: dgt_indicators.DgtClient,
) -> pd.DataFrame:
    """Route one mapped indicator to its source client and return raw observations."""
    if not mapping.is_fetchable:
        raise ConfigurationError(f"Indicator {mapping.indicator_id} has no source code yet.")
    if mapping.source is Source.DGT:
        frame = dgt_client.fetch_indicator_data(mapping.code, label=mapping.indicator_id)
        return dgt_indicators.to_raw_observations(frame, mapping.indicator_id)
    frame = ine_client.fetch_indicator_data(
        mapping.code,
        year=mapping.year,
        first_filter=mapping.first_filter,
        second_filter=mapping.second_filter,
        indicator_id=mapping.indicator_id,
    )
    return ine_indicators.to_raw_observations(frame, mapping.indicator_id)


def _cache_args(mapping: IndicatorMapping) -> dict[str, Any]:
    return {
        "indicator_id": mapping.indicator_id,
        "source": mapping.source.value,
        "code": mapping.code,
        "year": mapping.year,
        "first_filter": mapping.first_filter,
        "second_filter": mapping.second_filter,
    }


def fetch_all_indicators(
    table: MappingTable,
    *,
    cache: FetchCache,
    ine_client: ine_indicators.IneClient,
    dgt_client: dgt_indicators.DgtClient,
    refresh: bool = False,
    min_municipalities: int = 100,
) -> FetchSummary:
    logger = get_logger(JOB_NAME)
    frames: list[pd.DataFrame] = []
    outcomes: list[IndicatorOutcome] = []
    warnings: list[str] = []

    for mapping in table.pending():
        outcomes.append(IndicatorOutcome(mapping.indicator_id, mapping.source.value, "skipped"))
    if outcomes:
        warnings.append(f"{len(outcomes)} indicators skipped: source code not mapped yet.")
        logger.warning(
            "indicators_not_mapped",
            count=len(outcomes),
            indicator_ids=[outcome.indicator_id for outcome in outcomes],
        )

    fetchable = table.fetchable()
    logger.info("indicators_fetch_started", indicators=len(fetchable), by_source=table.count_by_source())

    for mapping in fetchable:
        outcome = fetch_with_fallback(
            cache,
            "fetch_indicator",
            _cache_args(mapping),
            lambda mapping=mapping: fetch_indicator(mapping, ine_client=ine_client, dgt_client=dgt_client),
            refresh=refresh,
        )

        if isinstance(outcome, Failed):
            detail = str(outcome.error)
            warnings.append(f"{mapping.indicator_id}: fetch failed ({detail}).")
            logger.warning(
                "indicator_fetch_failed",
                indicator_id=mapping.indicator_id,
                source=mapping.source.value,
                error=detail,
                error_type=outcome.error.__class__.__name__,
            )
            outcomes.append(IndicatorOutcome(mapping.indicator_id, mapping.source.value, "failed", detail=detail))
            continue

        frame = outcome.data
        if isinstance(outcome, Live):
            status = "live"
            detail = None
        elif isinstance(outcome, Cached) and outcome.is_fallback:
            status = "fallback"
            detail = f"served cache from {outcome.stored_at.isoformat()}: {outcome.fallback_error}"
            warnings.append(f"{mapping.indicator_id}: live fetch failed, {detail}.")
        else:
            status = "cached"
            detail = None

        rows = int(frame["municipality_key"].nunique()) if not frame.empty else 0
        if rows < min_municipalities:
            warnings.append(
                f"{mapping.indicator_id}: only {rows} municipalities found (expected at least {min_municipalities})."
            )
            logger.warning(
                "indicator_low_coverage",
                indicator_id=mapping.indicator_id,
                municipalities=rows,
                threshold=min_municipalities,
            )
        frames.append(frame)
        outcomes.append(IndicatorOutcome(mapping.indicator_id, mapping.source.value, status, rows=rows, detail=detail))

    observations = (
        pd.concat(frames, ignore_index=True)[RAW_COLUMNS] if frames else pd.DataFrame(columns=RAW_COLUMNS)
    )
    summary = FetchSummary(observations=observations, outcomes=outcomes, warnings=warnings)
    logger.info("indicators_fetch_finished", rows=int(len(observations)), **summary.counts())
    return summary


def check_fetched_data(frame: pd.DataFrame, *, expected_municipality_count: int) -> list[dict[str, Any]]:
    total = int(len(frame))
    missing = int(frame["raw_value"].isna().sum()) if total else 0
    missing_ratio = (missing / total) if total else 0.0
    municipalities = int(frame["municipality_key"].nunique()) if total else 0
    indicators = int(frame["indicator_id"].nunique()) if total else 0
    min_municipalities = min(MIN_DISTINCT_MUNICIPALITIES, expected_municipality_count)
    return [
        {
            "name": "fetched_rows",
            "status": "pass" if total > 0 else "fail",
            "details": f"{total} raw observations across {indicators} indicators.",
        },
        {
            "name": "fetched_missing_ratio",
            "status": "pass" if missing_ratio < MAX_MISSING_RATIO else "warn",
            "details": f"{round(missing_ratio * 100, 2)}% of raw values are missing.",
        },
        {
            "name": "fetched_municipality_coverage",
            "status": "pass" if municipalities >= min_municipalities else "warn",
            "details": f"{municipalities} distinct municipalities (expected ~{expected_municipality_count}).",
        },
    ]


def run(
    *,
    refresh: bool = False,
    dry_run: bool = False,
    max_retries: int | None = None,
    timeout_seconds: int | None = None,
    settings: Settings | None = None,
    ine_client: ine_indicators.IneClient | None = None,
    dgt_client: dgt_indicators.DgtClient | None = None,
    cache: FetchCache | None = None,
) -> dict[str, Any]:
    settings = settings or get_settings()
    logger = get_logger(JOB_NAME)
    run_id = str(uuid4())
    started_at = time.perf_counter()
    bind_run_context(job=JOB_NAME, run_id=run_id)

    client = HttpClient.from_settings(settings, timeout_seconds=timeout_seconds, max_retries=max_retries)
    try:
        table = load_mapping_table(settings=settings)
        ine_client = ine_client or ine_indicators.IneClient.from_settings(settings, client)
        dgt_client = dgt_client or dgt_indicators.DgtClient.from_settings(settings, client)
        cache = cache or FetchCache.from_settings(settings)

        municipalities = ine_client.fetch_municipalities_reference(
            fallback_names=load_municipality_names(settings.static_data_path)
        )
        summary = fetch_all_indicators(
            table,
            cache=cache,
            ine_client=ine_client,
            dgt_client=dgt_client,
            refresh=refresh,
            min_municipalities=settings.min_municipalities_per_indicator,
        )
        observations = summary.observations
        checks = check_fetched_data(observations, expected_municipality_count=settings.expected_municipality_count)
        status = "success" if not observations.empty else "blocked"
        elapsed = time.perf_counter() - started_at

        if dry_run:
            return {
                "job": JOB_NAME,
                "status": status,
                "run_id": run_id,
                "duration_seconds": round(elapsed, 2),
                "rows_extracted": int(len(observations)),
                "rows_written": 0,
                "warnings": summary.warnings,
                "errors": [],
                "preview": {
                    "mapped_indicators": len(table),
                    "outcomes": summary.counts(),
                    "municipalities": int(len(municipalities)),
                    "checks": checks,
                },
            }

        fetched_path = write_csv_atomic(settings.data_cache_root / FETCHED_FILENAME, observations)
        municipalities_path = write_csv_atomic(settings.data_cache_root / MUNICIPALITIES_FILENAME, municipalities)

        elapsed = time.perf_counter() - started_at
        logger.info(
            "Indicators fetch job finished.",
            status=status,
            rows_extracted=int(len(observations)),
            duration_seconds=round(elapsed, 2),
            **summary.counts(),
        )
        return {
            "job": JOB_NAME,
            "status": status,
            "run_id": run_id,
            "duration_seconds": round(elapsed, 2),
            "rows_extracted": int(len(observations)),
            "rows_written": int(len(observations)),
            "warnings": summary.warnings,
            "errors": [],
            "details": {
                "outcomes": summary.counts(),
                "failed_indicators": summary.failed_indicators,
                "checks": checks,
                "fetched_path": fetched_path.as_posix(),
                "municipalities_path": municipalities_path.as_posix(),
            },
        }
    except (DatahError, OSError) as exc:
        elapsed = time.perf_counter() - started_at
        logger.exception("Indicators fetch job failed.", duration_seconds=round(elapsed, 2))
        return {
            "job": JOB_NAME,
            "status": "failed",
            "run_id": run_id,
            "duration_seconds": round(elapsed, 2),
            "rows_extracted": 0,
            "rows_written": 0,
            "warnings": [],
            "errors": [str(exc)],
        }
    finally:
        client.close()
        clear_run_context()
