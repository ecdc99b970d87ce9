from __future__ import annotations

from pathlib import Path
from typing import Any
from uuid import uuid4

import pytest

from datah.errors import ConfigurationError
from datah.settings import Settings
from pipelines.common.indicator_mappings import (
    HIGHER_IS_BETTER,
    LOWER_IS_BETTER,
    Source,
    build_mapping_table,
    load_mapping_table,
)

VALID_DIMENSIONS = ["coesao_territorial", "sustentabilidade_ambiental"]


def _local_test_dir() -> Path:
    path = Path("tests/_tmp") / str(uuid4())
    path.mkdir(parents=True, exist_ok=True)
    return path


def _row(**overrides: Any) -> dict[str, Any]:
    row = {
        "indicator_id": "ind_a",
        "indicator_name": "Indicator A",
        "dimension": "coesao_territorial",
        "sub_dimension": "demografia",
        "category_group": "populacao",
        "code": "0011292",
        "unit": "%",
        "direction": HIGHER_IS_BETTER,
        "year": "",
        "source": "INE",
    }
    row.update(overrides)
    return row


def test_build_mapping_table_parses_rows() -> None:
    table = build_mapping_table(
        [
            _row(year="2021", first_filter="Total"),
            _row(indicator_id="ind_b", source="TerritoryObservatory", code="552", year="NA"),
            _row(indicator_id="ind_c", code="TODO", direction=LOWER_IS_BETTER),
            _row(indicator_id="ind_d", source="", code=""),
        ],
        valid_dimensions=VALID_DIMENSIONS,
    )

    assert len(table) == 4
    assert table.get("ind_a").year == 2021
    assert table.get("ind_a").first_filter == "Total"
    assert table.get("ind_b").source is Source.DGT
    assert table.get("ind_b").year is None
    assert table.get("ind_d").source is Source.INE
    assert [item.indicator_id for item in table.fetchable()] == ["ind_a", "ind_b"]
    assert [item.indicator_id for item in table.pending()] == ["ind_c", "ind_d"]
    assert table.direction_for("ind_c") == LOWER_IS_BETTER
    assert table.get("ind_c").inverted is True
    assert table.count_by_source() == {"INE": 3, "DGT": 1}
    assert "ind_a" in table
    assert "missing" not in table


def test_build_mapping_table_collects_every_problem() -> None:
    with pytest.raises(ConfigurationError) as exc_info:
        build_mapping_table(
            [
                _row(),
                _row(),
                _row(indicator_id="ind_b", direction="sideways"),
                _row(indicator_id="ind_c", dimension="governanca"),
                _row(indicator_id="ind_d", source="Eurostat"),
            ],
            valid_dimensions=VALID_DIMENSIONS,
        )

    problems = exc_info.value.problems
    assert len(problems) == 4
    assert any("Duplicate indicator IDs found: ind_a" in problem for problem in problems)
    assert any("invalid direction 'sideways'" in problem for problem in problems)
    assert any("invalid dimension 'governanca'" in problem for problem in problems)
    assert any("invalid source 'Eurostat'" in problem for problem in problems)


def test_build_mapping_table_rejects_missing_columns() -> None:
    row = _row()
    del row["direction"]
    with pytest.raises(ConfigurationError, match="direction"):
        build_mapping_table([row])


def test_placement_frame_and_hierarchy_shape() -> None:
    table = build_mapping_table(
        [
            _row(),
            _row(indicator_id="ind_b", category_group="envelhecimento"),
            _row(indicator_id="ind_c", dimension="sustentabilidade_ambiental", sub_dimension="recursos"),
        ]
    )

    frame = table.placement_frame()
    assert list(frame.columns) == [
        "indicator_id",
        "dimension",
        "sub_dimension",
        "category_group",
        "unit",
        "direction",
    ]
    assert len(frame) == 3
    assert table.hierarchy_shape() == {
        "coesao_territorial": {"demografia": ["populacao", "envelhecimento"]},
        "sustentabilidade_ambiental": {"recursos": ["populacao"]},
    }


def test_load_mapping_table_reads_yaml_and_csv() -> None:
    tmp_path = _local_test_dir()
    yaml_path = tmp_path / "mappings.yml"
    yaml_path.write_text(
        "indicators:\n"
        "  - indicator_id: ind_a\n"
        "    indicator_name: Indicator A\n"
        "    dimension: coesao_territorial\n"
        "    sub_dimension: demografia\n"
        "    category_group: populacao\n"
        "    code: '0011292'\n"
        "    unit: '%'\n"
        "    direction: higher_is_better\n"
        "    year:\n"
        "    source: INE\n",
        encoding="utf-8",
    )
    csv_path = tmp_path / "mappings.csv"
    csv_path.write_text(
        "indicator_id,indicator_name,dimension,sub_dimension,category_group,code,unit,direction,year,source\n"
        "ind_a,Indicator A,coesao_territorial,demografia,populacao,0011292,%,higher_is_better,NA,INE\n",
        encoding="utf-8",
    )

    from_yaml = load_mapping_table(yaml_path)
    from_csv = load_mapping_table(csv_path)

    assert from_yaml.get("ind_a").code == "0011292"
    assert from_csv.get("ind_a").code == "0011292"
    assert from_csv.get("ind_a").year is None


def test_load_mapping_table_missing_file_is_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        load_mapping_table(Path("tests/_tmp/does-not-exist.yml"))


def test_shipped_mapping_table_is_valid() -> None:
    table = load_mapping_table(settings=Settings())

    assert len(table) > 0
    assert table.count_by_source()["DGT"] >= 1
    assert all(item.code != "TODO" for item in table.fetchable())
