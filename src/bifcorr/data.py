"""Loading of the supplementary delay wire chamber (DWC) event table."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

import numpy as np
import pandas as pd
import uproot

from .streams.config import SupplementaryConfig

CSV_COLUMN_ALIASES = {
    "event": "event_id",
    "timeSinceStart": "time_since_start",
}
REQUIRED_COLUMNS = {"event_id", "time_since_start"}


@dataclass(frozen=True)
class SupplementarySeries:
    """Time-ordered `(event_id, time_since_start)` rows, indexed by output row."""

    dataframe: pd.DataFrame
    event_id: np.ndarray
    time_since_start: np.ndarray

    def __len__(self) -> int:
        return int(self.event_id.size)

    def __getitem__(self, index: int) -> Tuple[int, int]:
        return int(self.event_id[index]), int(self.time_since_start[index])

    @staticmethod
    def from_dataframe(df: pd.DataFrame) -> "SupplementarySeries":
        missing = REQUIRED_COLUMNS - set(df.columns)
        if missing:
            raise ValueError(f"Missing required columns: {sorted(missing)}")
        df = df[["event_id", "time_since_start"]].reset_index(drop=True)
        df = df.astype({"event_id": np.uint32, "time_since_start": np.int64})
        return SupplementarySeries(
            dataframe=df,
            event_id=df["event_id"].to_numpy(),
            time_since_start=df["time_since_start"].to_numpy(),
        )


def load_supplementary(path: str | Path, config: SupplementaryConfig | None = None) -> SupplementarySeries:
    """Load the DWC table from *path*.

    Parameters
    ----------
    path:
        A ROOT file holding the configured tree (``DelayWireChambers`` with
        ``event`` and ``timeSinceStart`` branches by default), or a CSV file
        with either those column names or ``event_id``/``time_since_start``.
    config:
        Tree and branch names used for ROOT input.

    Returns
    -------
    SupplementarySeries
        Rows in file order.
    """

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(path)
    config = config or SupplementaryConfig()
    if path.suffix.lower() == ".csv":
        df = pd.read_csv(path).rename(columns=CSV_COLUMN_ALIASES)
    else:
        df = _read_root_tree(path, config)
    return SupplementarySeries.from_dataframe(df)


def _read_root_tree(path: Path, config: SupplementaryConfig) -> pd.DataFrame:
    with uproot.open(path) as root_file:
        if config.tree not in root_file:
            raise ValueError(f"{path} has no tree named '{config.tree}'")
        tree = root_file[config.tree]
        branches = [config.event_branch, config.time_branch]
        missing = [name for name in branches if name not in tree.keys()]
        if missing:
            raise ValueError(f"Tree '{config.tree}' lacks branches {missing}")
        arrays = tree.arrays(branches, library="np")
    return pd.DataFrame(
        {
            "event_id": arrays[config.event_branch],
            "time_since_start": arrays[config.time_branch],
        }
    )
