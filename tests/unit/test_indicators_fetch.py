from __future__ import annotations

from pathlib import Path
from typing import Any
from uuid import uuid4

import pandas as pd
import pytest

from datah.errors import ConfigurationError, FetchError, ParseError
from datah.settings import Settings
from pipelines import indicators_fetch
from pipelines.common.fetch_cache import FetchCache
from pipelines.common.indicator_mappings import build_mapping_table


def _local_test_dir() -> Path:
    path = Path("tests/_tmp") / str(uuid4())
    path.mkdir(parents=True, exist_ok=True)
    return path


def _mapping_row(indicator_id: str, *, source: str = "INE", code: str = "0008273", **extra: Any) -> dict[str, Any]:
    return {
        "indicator_id": indicator_id,
        "indicator_name": indicator_id.replace("_", " ").title(),
        "dimension": "coesao_territorial",
        "sub_dimension": "demografia",
        "category_group": "populacao",
        "code": code,
        "unit": "%",
        "direction": "higher_is_better",
        "year": "",
        "source": source,
        **extra,
    }


class _FakeIneClient:
    def __init__(self, responses: dict[str, Any]):
        self.responses = responses
        self.calls: list[dict[str, Any]] = []

    def fetch_indicator_data(self, code: str, **kwargs: Any) -> pd.DataFrame:
        self.calls.append({"code": code, **kwargs})
        response = self.responses[code]
        if isinstance(response, Exception):
            raise response
        return response

    def fetch_municipalities_reference(self, fallback_names: pd.DataFrame | None = None) -> pd.DataFrame:
        return pd.DataFrame({"municipality_key": ["0101", "1106"], "name": ["Águeda", "Lisboa"]})


class _FakeDgtClient:
    def __init__(self, response: Any):
        self.response = response
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def fetch_indicator_data(self, indicator_id: str, **kwargs: Any) -> pd.DataFrame:
        self.calls.append((indicator_id, kwargs))
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


def _ine_frame(values: dict[str, float], period: str = "2022") -> pd.DataFrame:
    return pd.DataFrame(
        {
            "municipality_key": list(values),
            "value": list(values.values()),
            "period": [period] * len(values),
            "name": [f"Municipality {key}" for key in values],
        }
    )


def _dgt_frame(values: dict[str, float]) -> pd.DataFrame:
    return pd.DataFrame(
        {"municipality_key": list(values), "value": list(values.values()), "name": [None] * len(values)}
    )


def test_fetch_indicator_routes_by_source() -> None:
    table = build_mapping_table(
        [
            _mapping_row("ind_ine", first_filter="Total", year="2021"),
            _mapping_row("ind_dgt", source="DGT", code="552"),
            _mapping_row("ind_todo", code="TODO"),
        ]
    )
    ine = _FakeIneClient({"0008273": _ine_frame({"0101": 1.0})})
    dgt = _FakeDgtClient(_dgt_frame({"1106": 2.0}))

    ine_rows = indicators_fetch.fetch_indicator(table.get("ind_ine"), ine_client=ine, dgt_client=dgt)
    dgt_rows = indicators_fetch.fetch_indicator(table.get("ind_dgt"), ine_client=ine, dgt_client=dgt)

    assert ine.calls == [
        {
            "code": "0008273",
            "year": 2021,
            "first_filter": "Total",
            "second_filter": None,
            "indicator_id": "ind_ine",
        }
    ]
    assert dgt.calls == [("552", {"label": "ind_dgt"})]
    assert ine_rows.iloc[0]["source"] == "INE"
    assert dgt_rows.iloc[0]["source"] == "DGT"
    with pytest.raises(ConfigurationError):
        indicators_fetch.fetch_indicator(table.get("ind_todo"), ine_client=ine, dgt_client=dgt)


def test_fetch_all_indicators_isolates_failures_and_counts_outcomes() -> None:
    table = build_mapping_table(
        [
            _mapping_row("ind_ine"),
            _mapping_row("ind_broken", code="9999999"),
            _mapping_row("ind_unparseable", code="8888888"),
            _mapping_row("ind_dgt", source="DGT", code="552"),
            _mapping_row("ind_todo", code="TODO"),
        ]
    )
    ine = _FakeIneClient(
        {
            "0008273": _ine_frame({"0101": 1.0, "1106": 2.0}),
            "9999999": FetchError("HTTP error 500", indicator_id="ind_broken"),
            "8888888": ParseError("Column 'dim_3' missing", indicator_id="ind_unparseable"),
        }
    )
    dgt = _FakeDgtClient(_dgt_frame({"0101": 5.0}))

    summary = indicators_fetch.fetch_all_indicators(
        table,
        cache=FetchCache(_local_test_dir()),
        ine_client=ine,
        dgt_client=dgt,
        min_municipalities=2,
    )

    assert summary.counts() == {"live": 2, "cached": 0, "fallback": 0, "failed": 2, "skipped": 1}
    assert summary.failed_indicators == ["ind_broken", "ind_unparseable"]
    assert list(summary.observations.columns) == indicators_fetch.RAW_COLUMNS
    assert sorted(summary.observations["indicator_id"].unique()) == ["ind_dgt", "ind_ine"]
    assert any("skipped" in warning for warning in summary.warnings)
    assert any("ind_dgt: only 1 municipalities" in warning for warning in summary.warnings)


def test_fetch_all_indicators_serves_cache_then_falls_back() -> None:
    table = build_mapping_table([_mapping_row("ind_ine")])
    cache = FetchCache(_local_test_dir())
    dgt = _FakeDgtClient(_dgt_frame({}))

    first = indicators_fetch.fetch_all_indicators(
        table,
        cache=cache,
        ine_client=_FakeIneClient({"0008273": _ine_frame({"0101": 1.0})}),
        dgt_client=dgt,
        min_municipalities=1,
    )
    offline = _FakeIneClient({"0008273": FetchError("timeout")})
    second = indicators_fetch.fetch_all_indicators(
        table, cache=cache, ine_client=offline, dgt_client=dgt, min_municipalities=1
    )
    third = indicators_fetch.fetch_all_indicators(
        table, cache=cache, ine_client=offline, dgt_client=dgt, refresh=True, min_municipalities=1
    )

    assert first.counts()["live"] == 1
    assert second.counts()["cached"] == 1
    assert offline.calls[0]["code"] == "0008273"
    assert len(offline.calls) == 1
    assert third.counts()["fallback"] == 1
    assert third.observations["municipality_key"].tolist() == ["0101"]
    assert any("live fetch failed" in warning for warning in third.warnings)


def test_check_fetched_data_flags_missing_ratio_and_coverage() -> None:
    frame = pd.DataFrame(
        {
            "municipality_key": ["0101", "0102", "0103", "1106"],
            "indicator_id": ["ind_a"] * 4,
            "raw_value": [1.0, None, 3.0, 4.0],
        }
    )

    checks = {item["name"]: item for item in indicators_fetch.check_fetched_data(frame, expected_municipality_count=308)}
    empty_checks = indicators_fetch.check_fetched_data(
        pd.DataFrame(columns=indicators_fetch.RAW_COLUMNS), expected_municipality_count=308
    )

    assert checks["fetched_rows"]["status"] == "pass"
    assert checks["fetched_missing_ratio"]["status"] == "warn"
    assert checks["fetched_municipality_coverage"]["status"] == "warn"
    assert empty_checks[0]["status"] == "fail"


def _write_mappings(path: Path, rows: list[dict[str, Any]]) -> None:
    lines = ["indicators:"]
    for row in rows:
        lines.append(f"  - indicator_id: {row['indicator_id']}")
        for key, value in row.items():
            if key != "indicator_id":
                lines.append(f"    {key}: '{value}'")
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def _settings(tmp_path: Path) -> Settings:
    mapping_path = tmp_path / "mappings.yml"
    _write_mappings(mapping_path, [_mapping_row("ind_ine"), _mapping_row("ind_dgt", source="DGT", code="552")])
    return Settings(
        mapping_path=mapping_path,
        data_cache_root=tmp_path / "data-cache",
        fetch_cache_root=tmp_path / "cache",
        static_data_path=tmp_path / "missing-static.csv",
        min_municipalities_per_indicator=1,
        request_delay_seconds=0,
    )


def test_run_writes_fetched_observations_and_reference() -> None:
    tmp_path = _local_test_dir()
    settings = _settings(tmp_path)

    result = indicators_fetch.run(
        settings=settings,
        ine_client=_FakeIneClient({"0008273": _ine_frame({"0101": 1.0, "1106": 2.0})}),
        dgt_client=_FakeDgtClient(_dgt_frame({"0101": 5.0})),
        cache=FetchCache(settings.fetch_cache_root),
    )

    assert result["job"] == "indicators_fetch"
    assert result["status"] == "success"
    assert result["rows_written"] == 3
    assert result["details"]["outcomes"]["live"] == 2
    fetched = pd.read_csv(settings.data_cache_root / "fetched-indicators.csv", dtype={"municipality_key": str})
    assert set(fetched["municipality_key"]) == {"0101", "1106"}
    assert (settings.data_cache_root / "municipalities.csv").exists()


def test_run_dry_run_writes_nothing_and_blocks_without_data() -> None:
    tmp_path = _local_test_dir()
    settings = _settings(tmp_path)

    result = indicators_fetch.run(
        dry_run=True,
        settings=settings,
        ine_client=_FakeIneClient({"0008273": FetchError("HTTP error 500")}),
        dgt_client=_FakeDgtClient(FetchError("HTTP error 500")),
        cache=FetchCache(settings.fetch_cache_root),
    )

    assert result["status"] == "blocked"
    assert result["rows_written"] == 0
    assert result["preview"]["outcomes"]["failed"] == 2
    assert not (settings.data_cache_root / "fetched-indicators.csv").exists()


def test_run_reports_configuration_error_as_failed() -> None:
    tmp_path = _local_test_dir()
    settings = Settings(mapping_path=tmp_path / "absent.yml", fetch_cache_root=tmp_path / "cache")

    result = indicators_fetch.run(settings=settings, cache=FetchCache(settings.fetch_cache_root))

    assert result["status"] == "failed"
    assert "Mapping table not found" in result["errors"][0]
