from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

import yaml

from datah.settings import Settings
from pipelines.common.atomic_io import write_text_atomic

_REQUIRED_TOP_LEVEL = {
    "job",
    "generated_at_utc",
    "ingestion",
    "inputs",
    "outputs",
    "counts",
    "validation",
}
_REQUIRED_INGESTION = {"tool", "orchestrator", "pipeline_version", "run_id"}


def utc_now_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def build_manifest(
    *,
    settings: Settings,
    job: str,
    inputs: dict[str, str] | None = None,
    outputs: list[str] | None = None,
    counts: dict[str, int] | None = None,
    checks: list[dict[str, Any]] | None = None,
    status: str = "success",
    notes: str = "",
    generated_at_utc: str | None = None,
    run_id: str | None = None,
) -> dict[str, Any]:
    return {
        "job": job,
        "generated_at_utc": generated_at_utc or utc_now_iso(),
        "ingestion": {
            "tool": "python",
            "orchestrator": "prefect",
            "pipeline_version": settings.pipeline_version,
            "run_id": run_id or str(uuid4()),
        },
        "inputs": {
            "mapping_path": Path(settings.mapping_path).as_posix(),
            "static_data_path": Path(settings.static_data_path).as_posix(),
            **(inputs or {}),
        },
        "outputs": outputs or [],
        "counts": counts or {},
        "validation": {
            "schema_version": settings.schema_version,
            "status": status,
            "checks": checks or [],
        },
        "notes": notes,
    }


def validate_manifest(manifest: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    missing = _REQUIRED_TOP_LEVEL - set(manifest.keys())
    if missing:
        errors.append(f"Missing top-level keys: {sorted(missing)}")

    ingestion = manifest.get("ingestion", {})
    if isinstance(ingestion, dict):
        ingestion_missing = _REQUIRED_INGESTION - set(ingestion.keys())
        if ingestion_missing:
            errors.append(f"Missing ingestion keys: {sorted(ingestion_missing)}")
    else:
        errors.append("Field 'ingestion' must be a mapping.")

    return errors


def manifest_path_for(settings: Settings, generated_at_utc: str) -> Path:
    stamp = generated_at_utc.replace("-", "").replace(":", "")
    return settings.manifests_root / f"build_{stamp}.yml"


def write_manifest(manifest: dict[str, Any], path: Path) -> Path:
    errors = validate_manifest(manifest)
    if errors:
        raise ValueError("; ".join(errors))

    return write_text_atomic(path, yaml.safe_dump(manifest, sort_keys=False, allow_unicode=True))
