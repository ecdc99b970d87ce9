"""Municipality key normalization.

Two upstreams, two rules. INE emits either the legacy 4-digit municipality
code or the 7-digit NUTS 2024 code whose last four digits are the legacy
code. The DGT observatory emits 4-digit codes, 6-digit parish codes whose
first four digits are the municipality, or integers that lost their leading
zero. The rules truncate from opposite ends, so they stay separate.
"""
from __future__ import annotations

from typing import Any

import pandas as pd

MUNICIPALITY_KEY_LENGTH = 4
REGIONAL_REVISION_KEY_LENGTH = 7
OBSERVATORY_PARISH_KEY_LENGTH = 6


def _as_token(code: Any) -> str | None:
    if code is None:
        return None
    if isinstance(code, float):
        if pd.isna(code) or not code.is_integer():
            return None
        code = int(code)
    token = str(code).strip()
    return token or None


def standardize_municipality_key(code: Any) -> str | None:
    """Map a 4- or 7-digit geographic code onto the canonical 4-digit key.

    Returns ``None`` for anything that is not a municipality (parish codes
    with letters, regions, country totals).
    """
    token = _as_token(code)
    if token is None:
        return None
    if len(token) == REGIONAL_REVISION_KEY_LENGTH:
        token = token[-MUNICIPALITY_KEY_LENGTH:]
    if len(token) != MUNICIPALITY_KEY_LENGTH or not token.isdigit():
        return None
    return token


def standardize_municipality_keys(codes: pd.Series) -> pd.Series:
    return pd.Series([standardize_municipality_key(code) for code in codes], index=codes.index, dtype="object")


def pad_observatory_key(code: Any) -> str | None:
    token = _as_token(code)
    if token is None or not token.isdigit():
        return None
    if len(token) == OBSERVATORY_PARISH_KEY_LENGTH:
        return token[:MUNICIPALITY_KEY_LENGTH]
    if len(token) > MUNICIPALITY_KEY_LENGTH:
        return None
    return token.zfill(MUNICIPALITY_KEY_LENGTH)
