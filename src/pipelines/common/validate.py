"""Post-assembly invariant checks over municipality records and the written API tree.

Checks never short-circuit: every violation is collected into one
``ValidationReport`` so a single run enumerates everything that is wrong.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from datah.errors import ValidationError
from pipelines.common.hierarchy import iter_leaves

REQUIRED_METADATA_FIELDS = ("key", "name", "last_updated", "schema_version")
REQUIRED_API_FILES = (
    "municipalities/index.json",
    "metadata/indicators.json",
    "metadata/hierarchy.json",
    "metadata/sources.json",
)
REQUIRED_DOCUMENT_KEYS = {
    "municipalities/index.json": ("total", "last_updated", "municipalities"),
    "metadata/indicators.json": ("schema_version", "last_updated", "indicators"),
    "metadata/hierarchy.json": ("schema_version", "structure"),
    "metadata/sources.json": ("schema_version", "sources"),
}
LAST_UPDATE_KEYS = ("last_updated", "schema_version", "municipality_count", "indicator_count")
MIN_FILE_BYTES = 1_000
MAX_FILE_BYTES = 50_000
MUNICIPALITY_FILE_PATTERN = re.compile(r"^\d{4}\.json$")
_SAMPLE_SIZE = 10


@dataclass(frozen=True)
class CheckResult:
    name: str
    status: str
    details: str
    observed_value: Any
    threshold_value: Any | None = None


@dataclass
class ValidationReport:
    results: list[CheckResult] = field(default_factory=list)

    def add(self, result: CheckResult) -> None:
        self.results.append(result)

    def extend(self, results: list[CheckResult]) -> None:
        self.results.extend(results)

    @property
    def failures(self) -> list[CheckResult]:
        return [result for result in self.results if result.status == "fail"]

    @property
    def warnings(self) -> list[CheckResult]:
        return [result for result in self.results if result.status == "warn"]

    @property
    def passed(self) -> bool:
        return not self.failures

    def raise_for_failures(self) -> None:
        if self.failures:
            raise ValidationError(self)

    def as_dicts(self) -> list[dict[str, Any]]:
        return [
            {
                "name": result.name,
                "status": result.status,
                "details": result.details,
                "observed_value": result.observed_value,
                "threshold_value": result.threshold_value,
            }
            for result in self.results
        ]


def _is_in_range(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return 0 <= value <= 100


def check_normalized_range(records: dict[str, dict[str, Any]]) -> CheckResult:
    offending = [
        f"{key}/{indicator_id}={leaf.get('normalized')}"
        for key, record in records.items()
        for _, _, _, indicator_id, leaf in iter_leaves(record)
        if not _is_in_range(leaf.get("normalized"))
    ]
    return CheckResult(
        name="normalized_values_in_range",
        status="pass" if not offending else "fail",
        details=(
            "Every normalized value lies in [0, 100]."
            if not offending
            else f"{len(offending)} values outside [0, 100]: {offending[:_SAMPLE_SIZE]}"
        ),
        observed_value=len(offending),
        threshold_value=0,
    )


def check_metadata_fields(records: dict[str, dict[str, Any]]) -> CheckResult:
    missing: list[str] = []
    for key, record in records.items():
        metadata = record.get("metadata")
        if not isinstance(metadata, dict):
            missing.append(f"{key}:metadata")
            continue
        missing.extend(f"{key}:{name}" for name in REQUIRED_METADATA_FIELDS if metadata.get(name) in (None, ""))
        if "dimensions" not in record:
            missing.append(f"{key}:dimensions")
    return CheckResult(
        name="required_metadata_fields",
        status="pass" if not missing else "fail",
        details=(
            "Every record carries key, name, last_updated and schema_version."
            if not missing
            else f"{len(missing)} missing fields: {missing[:_SAMPLE_SIZE]}"
        ),
        observed_value=len(missing),
        threshold_value=0,
    )


def check_municipality_count(observed: int, expected: int, *, name: str = "municipality_count") -> CheckResult:
    return CheckResult(
        name=name,
        status="pass" if observed == expected else "fail",
        details=f"{observed} municipality records (expected {expected}).",
        observed_value=observed,
        threshold_value=expected,
    )


def check_non_empty_records(records: dict[str, dict[str, Any]]) -> CheckResult:
    empty = sorted(key for key, record in records.items() if not record.get("dimensions"))
    return CheckResult(
        name="non_empty_records",
        status="pass" if not empty else "fail",
        details=(
            "Every record has at least one dimension."
            if not empty
            else f"{len(empty)} records have no dimensions: {empty[:_SAMPLE_SIZE]}"
        ),
        observed_value=len(empty),
        threshold_value=0,
    )


def validate_records(
    records: dict[str, dict[str, Any]],
    *,
    expected_municipality_count: int,
) -> ValidationReport:
    report = ValidationReport()
    report.add(check_normalized_range(records))
    report.add(check_metadata_fields(records))
    report.add(check_municipality_count(len(records), expected_municipality_count))
    report.add(check_non_empty_records(records))
    return report


def _read_json(path: Path) -> tuple[Any, str | None]:
    try:
        return json.loads(path.read_text(encoding="utf-8")), None
    except (OSError, ValueError) as exc:
        return None, str(exc)


def _check_document_keys(relative: str, document: Any, required: tuple[str, ...]) -> CheckResult:
    missing = [key for key in required if not isinstance(document, dict) or key not in document]
    return CheckResult(
        name=f"document_keys:{relative}",
        status="pass" if not missing else "fail",
        details="All required keys present." if not missing else f"Missing keys: {missing}",
        observed_value=len(missing),
        threshold_value=0,
    )


def validate_api_directory(
    api_root: Path,
    *,
    expected_municipality_count: int,
    last_update_path: Path | None = None,
) -> ValidationReport:
    """Re-read the written API tree and check it the way a consumer would see it."""
    report = ValidationReport()
    api_root = Path(api_root)

    documents: dict[str, Any] = {}
    for relative in REQUIRED_API_FILES:
        path = api_root / relative
        if not path.exists():
            report.add(CheckResult(f"file_exists:{relative}", "fail", "Required file is missing.", False, True))
            continue
        document, error = _read_json(path)
        if error is not None:
            report.add(CheckResult(f"json_parses:{relative}", "fail", f"Invalid JSON: {error}", False, True))
            continue
        documents[relative] = document
        report.add(_check_document_keys(relative, document, REQUIRED_DOCUMENT_KEYS[relative]))

    last_update_path = last_update_path or api_root.parent / "LAST_UPDATE.json"
    if not last_update_path.exists():
        report.add(CheckResult("file_exists:LAST_UPDATE.json", "fail", "Required file is missing.", False, True))
    else:
        document, error = _read_json(last_update_path)
        if error is not None:
            report.add(CheckResult("json_parses:LAST_UPDATE.json", "fail", f"Invalid JSON: {error}", False, True))
        else:
            report.add(_check_document_keys("LAST_UPDATE.json", document, LAST_UPDATE_KEYS))

    municipalities_dir = api_root / "municipalities"
    files = sorted(
        path
        for path in (municipalities_dir.glob("*.json") if municipalities_dir.exists() else [])
        if MUNICIPALITY_FILE_PATTERN.match(path.name)
    )
    records: dict[str, dict[str, Any]] = {}
    unreadable: list[str] = []
    size_outliers: list[str] = []
    for path in files:
        document, error = _read_json(path)
        if error is not None or not isinstance(document, dict):
            unreadable.append(path.name)
            continue
        records[path.stem] = document
        size = path.stat().st_size
        if size < MIN_FILE_BYTES or size > MAX_FILE_BYTES:
            size_outliers.append(f"{path.name}={size}")

    report.add(
        CheckResult(
            name="municipality_files_parse",
            status="pass" if not unreadable else "fail",
            details="All municipality files parse." if not unreadable else f"Unreadable: {unreadable[:_SAMPLE_SIZE]}",
            observed_value=len(unreadable),
            threshold_value=0,
        )
    )
    report.add(check_normalized_range(records))
    report.add(check_metadata_fields(records))
    report.add(check_municipality_count(len(files), expected_municipality_count, name="municipality_file_count"))
    report.add(check_non_empty_records(records))
    report.add(
        CheckResult(
            name="municipality_file_sizes",
            status="pass" if not size_outliers else "warn",
            details=(
                f"All files between {MIN_FILE_BYTES} and {MAX_FILE_BYTES} bytes."
                if not size_outliers
                else f"{len(size_outliers)} files outside the usual size range: {size_outliers[:_SAMPLE_SIZE]}"
            ),
            observed_value=len(size_outliers),
            threshold_value=[MIN_FILE_BYTES, MAX_FILE_BYTES],
        )
    )

    index = documents.get("municipalities/index.json")
    if isinstance(index, dict):
        indexed = [
            entry.get("key") for entry in index.get("municipalities", []) if isinstance(entry, dict)
        ]
        non_empty_files = sum(1 for record in records.values() if record.get("dimensions"))
        missing_files = sorted(str(key) for key in indexed if str(key) not in records)
        consistent = index.get("total") == len(indexed) == non_empty_files and not missing_files
        report.add(
            CheckResult(
                name="index_matches_files",
                status="pass" if consistent else "fail",
                details=(
                    f"index total={index.get('total')}, entries={len(indexed)}, "
                    f"non-empty files={non_empty_files}, entries without file={missing_files[:_SAMPLE_SIZE]}"
                ),
                observed_value=index.get("total"),
                threshold_value=non_empty_files,
            )
        )

    indicators = documents.get("metadata/indicators.json")
    if isinstance(indicators, dict):
        entries = indicators.get("indicators") or []
        report.add(
            CheckResult(
                name="indicator_metadata_present",
                status="pass" if entries else "fail",
                details=f"{len(entries)} indicator descriptors.",
                observed_value=len(entries),
                threshold_value=1,
            )
        )
    return report
