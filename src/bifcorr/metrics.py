"""Quality metrics for a correlated row table."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

import numpy as np
import pandas as pd


@dataclass(frozen=True)
class MetricSummary:
    rows: int
    kind_counts: Dict[str, int]
    match_fraction: float
    cycles: int
    longest_unmatched_run: int
    mean_matched_spacing: float


def compute_metrics(rows: pd.DataFrame) -> MetricSummary:
    kinds = rows["kind"].astype(str).to_numpy() if len(rows) else np.array([], dtype=str)
    kind_counts = {
        kind: int(np.count_nonzero(kinds == kind)) for kind in ("matched", "bif_only", "ahcal_only")
    }
    total = int(kinds.size)
    match_fraction = kind_counts["matched"] / total if total else float("nan")
    cycles = int(rows["cycle"].nunique()) if total else 0
    return MetricSummary(
        rows=total,
        kind_counts=kind_counts,
        match_fraction=float(match_fraction),
        cycles=cycles,
        longest_unmatched_run=_longest_unmatched_run(kinds),
        mean_matched_spacing=_mean_matched_spacing(rows),
    )


def _longest_unmatched_run(kinds: np.ndarray) -> int:
    longest = 0
    current = 0
    for kind in kinds:
        if kind == "matched":
            current = 0
            continue
        current += 1
        longest = max(longest, current)
    return longest


def _mean_matched_spacing(rows: pd.DataFrame) -> float:
    """Mean tick distance between consecutive matched triggers."""

    if not len(rows):
        return float("nan")
    matched = rows[rows["kind"].astype(str) == "matched"]
    times = matched["bif_time"].to_numpy(dtype=np.float64)
    if times.size < 2:
        return float("nan")
    return float(np.diff(times).mean())
