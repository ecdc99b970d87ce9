from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if SRC_PATH.exists():
    src_str = str(SRC_PATH)
    if src_str not in sys.path:
        sys.path.insert(0, src_str)

from datah.logging import configure_logging  # noqa: E402
from datah.settings import get_settings  # noqa: E402
from pipelines.api_build import run as run_api_build  # noqa: E402
from pipelines.api_build import validate_only as run_api_validation  # noqa: E402
from pipelines.indicators_fetch import run as run_indicators_fetch  # noqa: E402


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Fetch municipal indicators, normalize them and build the static JSON API.",
    )
    parser.add_argument("--skip-fetch", action="store_true", help="Reuse data-cache/ instead of calling INE/DGT.")
    parser.add_argument("--validate-only", action="store_true", help="Only validate the already written API tree.")
    parser.add_argument("--refresh", action="store_true", help="Ignore fresh fetch-cache entries.")
    parser.add_argument("--dry-run", action="store_true", help="Run every stage without writing outputs.")
    parser.add_argument("--max-retries", type=int, default=None)
    parser.add_argument("--timeout-seconds", type=int, default=None)
    parser.add_argument("--console-logs", action="store_true", help="Human readable logs instead of JSON.")
    return parser.parse_args(argv)


def run_pipeline(args: argparse.Namespace) -> dict[str, Any]:
    if args.validate_only:
        return {"api_validation": run_api_validation()}

    results: dict[str, Any] = {}
    if not args.skip_fetch:
        results["indicators_fetch"] = run_indicators_fetch(
            refresh=args.refresh,
            dry_run=args.dry_run,
            max_retries=args.max_retries,
            timeout_seconds=args.timeout_seconds,
        )
        if results["indicators_fetch"]["status"] == "failed":
            return results
    results["api_build"] = run_api_build(dry_run=args.dry_run)
    return results


def exit_code(results: dict[str, Any]) -> int:
    """Non-zero when a job failed or the build had nothing to publish."""
    if any(result.get("status") == "failed" for result in results.values()):
        return 1
    if results.get("api_build", {}).get("status") == "blocked":
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    configure_logging(get_settings().log_level, json_output=not args.console_logs)
    results = run_pipeline(args)
    print(json.dumps(results, ensure_ascii=False, indent=2, default=str))
    return exit_code(results)


if __name__ == "__main__":
    raise SystemExit(main())
