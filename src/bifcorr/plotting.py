"""Plotting helpers for correlation outputs."""
from __future__ import annotations

from pathlib import Path
from typing import Any

import numpy as np

from .pipeline import CorrelationResult

KIND_STYLE = {
    "matched": ("tab:green", "o"),
    "bif_only": ("tab:blue", "^"),
    "ahcal_only": ("tab:red", "v"),
}


def generate_plots(result: CorrelationResult, output_dir: Path) -> Path:
    plt = _require_matplotlib()
    output_dir.mkdir(parents=True, exist_ok=True)
    fig, axes = plt.subplots(1, 2, figsize=(14, 5))

    _plot_spacing(result, axes[0])
    _plot_cycles(result, axes[1])

    fig.tight_layout()
    out_path = output_dir / "correlation.png"
    fig.savefig(out_path, dpi=150)
    plt.close(fig)
    return out_path


def _plot_spacing(result: CorrelationResult, ax) -> None:
    df = result.rows
    times = df["bif_time"].to_numpy(dtype=np.float64)
    spacing = np.diff(times, prepend=times[0]) if times.size else times
    index = np.arange(times.size)
    kinds = df["kind"].astype(str).to_numpy()
    for kind, (color, marker) in KIND_STYLE.items():
        mask = kinds == kind
        if not mask.any():
            continue
        ax.scatter(index[mask], spacing[mask], color=color, marker=marker, s=12, label=kind)
    ax.set_title("Trigger spacing by row")
    ax.set_xlabel("Row")
    ax.set_ylabel("Ticks since previous row")
    ax.legend(loc="best")


def _plot_cycles(result: CorrelationResult, ax) -> None:
    df = result.rows
    index = np.arange(len(df))
    ax.step(index, df["cycle"].to_numpy(dtype=np.float64), where="post", color="black")
    ax.set_title("Readout cycle progression")
    ax.set_xlabel("Row")
    ax.set_ylabel("Cycle")


def _require_matplotlib() -> Any:
    home_cache = Path.home() / ".cache" / "fontconfig"
    try:
        home_cache.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise RuntimeError("matplotlib cannot write font cache in this environment") from exc

    try:
        import matplotlib
        matplotlib.use("Agg", force=True)
        import matplotlib.pyplot as plt  # type: ignore
    except ImportError as exc:  # pragma: no cover - optional dependency
        raise RuntimeError("matplotlib is required for plotting; install bifcorr[plot]") from exc
    except Exception as exc:  # pragma: no cover - environment issues
        raise RuntimeError(f"matplotlib initialisation failed: {exc}") from exc
    return plt
