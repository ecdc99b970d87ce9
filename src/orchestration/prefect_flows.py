from __future__ import annotations

import os
from pathlib import Path
from tempfile import gettempdir
from typing import Any

# Ensure Prefect metadata storage is writable in local/dev environments.
if "PREFECT_HOME" not in os.environ:
    default_prefect_home = Path(gettempdir()) / "prefect-home"
    default_prefect_home.mkdir(parents=True, exist_ok=True)
    os.environ["PREFECT_HOME"] = str(default_prefect_home)

# Ensure ephemeral Prefect API DB is also placed on a writable local-temp path.
if "PREFECT_API_DATABASE_CONNECTION_URL" not in os.environ:
    default_prefect_db = Path(gettempdir()) / "prefect-home" / "orion.db"
    default_prefect_db.parent.mkdir(parents=True, exist_ok=True)
    os.environ["PREFECT_API_DATABASE_CONNECTION_URL"] = (
        f"sqlite+aiosqlite:///{default_prefect_db.as_posix()}"
    )

from prefect import flow

from datah.logging import configure_logging
from datah.settings import get_settings
from pipelines.api_build import run as run_api_build
from pipelines.api_build import validate_only as run_api_validation
from pipelines.indicators_fetch import run as run_indicators_fetch

settings = get_settings()
configure_logging(settings.log_level)


@flow(name="indicators_fetch")
def indicators_fetch(
    refresh: bool = False,
    dry_run: bool = False,
    max_retries: int | None = None,
    timeout_seconds: int | None = None,
) -> dict[str, Any]:
    return run_indicators_fetch(
        refresh=refresh,
        dry_run=dry_run,
        max_retries=max_retries,
        timeout_seconds=timeout_seconds,
    )


@flow(name="api_build")
def api_build(dry_run: bool = False) -> dict[str, Any]:
    return run_api_build(dry_run=dry_run)


@flow(name="datah_static_api")
def run_static_api(
    skip_fetch: bool = False,
    validate_only: bool = False,
    refresh: bool = False,
    dry_run: bool = False,
    max_retries: int | None = None,
    timeout_seconds: int | None = None,
) -> dict[str, Any]:
    if validate_only:
        return {"api_validation": run_api_validation()}

    results: dict[str, Any] = {}
    if not skip_fetch:
        results["indicators_fetch"] = run_indicators_fetch(
            refresh=refresh,
            dry_run=dry_run,
            max_retries=max_retries,
            timeout_seconds=timeout_seconds,
        )
        if results["indicators_fetch"].get("status") == "failed":
            return results
    results["api_build"] = run_api_build(dry_run=dry_run)
    return results
