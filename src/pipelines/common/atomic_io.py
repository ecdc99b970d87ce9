from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pandas as pd


def write_text_atomic(path: Path, text: str) -> Path:
    """Write ``text`` next to ``path`` and swap it in, so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    with tmp_path.open("w", encoding="utf-8", newline="") as handle:
        handle.write(text)
    tmp_path.replace(path)
    return path


def write_json_atomic(path: Path, payload: Any, *, indent: int | None = 2) -> Path:
    return write_text_atomic(path, json.dumps(payload, ensure_ascii=False, indent=indent, allow_nan=False))


def write_csv_atomic(path: Path, frame: pd.DataFrame) -> Path:
    return write_text_atomic(path, frame.to_csv(index=False))
