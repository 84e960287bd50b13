"""Alias string helpers shared by import execution and node merges."""

import re
from typing import Iterable, List, Optional

ALIAS_SPLIT_PATTERN = re.compile(r"[,|;]")


def parse_aliases(raw: Optional[str]) -> List[str]:
    """Split a `,`/`|`/`;` delimited alias string into trimmed, non-empty parts."""
    if not raw:
        return []
    return [part.strip() for part in ALIAS_SPLIT_PATTERN.split(str(raw)) if part.strip()]


def merge_aliases(*groups: Iterable[str]) -> str:
    """Join alias groups in order, keeping the first occurrence of each value."""
    merged: List[str] = []
    for group in groups:
        for alias in group:
            value = str(alias).strip()
            if value and value not in merged:
                merged.append(value)
    return ",".join(merged)
