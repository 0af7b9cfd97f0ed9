"""Row sinks and report writers for correlation results."""
from __future__ import annotations

import csv
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, TextIO

import numpy as np
import pandas as pd
import uproot

from .metrics import MetricSummary
from .streams.correlation import MergedRow, RowSink

if TYPE_CHECKING:
    from .pipeline import CorrelationResult

ROW_COLUMNS = [
    "cycle",
    "bif_trigger",
    "ahcal_trigger",
    "bif_time",
    "kind",
    "event_id",
    "time_since_start",
]

ROOT_BRANCHES = {
    "ROC": np.int32,
    "bif_Trig": np.uint32,
    "ahc_Trig": np.uint32,
    "bif_Time": np.uint64,
    "dwc_Trig": np.uint32,
    "dwc_Time": np.int64,
}

ABSENT_TRIGGER = 0xFFFFFFFF


def row_to_dict(row: MergedRow) -> Dict[str, object]:
    return {
        "cycle": row.cycle,
        "bif_trigger": row.bif_trigger,
        "ahcal_trigger": row.ahcal_trigger,
        "bif_time": row.bif_time,
        "kind": row.kind.value,
        "event_id": row.event_id,
        "time_since_start": row.time_since_start,
    }


def rows_to_dataframe(rows: Iterable[MergedRow]) -> pd.DataFrame:
    """Tabulate rows with nullable integer columns for the optional fields."""

    df = pd.DataFrame([row_to_dict(row) for row in rows], columns=ROW_COLUMNS)
    return df.astype(
        {
            "cycle": "Int32",
            "bif_trigger": "UInt32",
            "ahcal_trigger": "UInt32",
            "bif_time": "UInt64",
            "kind": "string",
            "event_id": "UInt32",
            "time_since_start": "Int64",
        }
    )


class DataFrameSink:
    """Keeps emitted rows in memory."""

    def __init__(self) -> None:
        self.rows: List[MergedRow] = []

    def append(self, row: MergedRow) -> None:
        self.rows.append(row)

    def reset(self) -> None:
        self.rows.clear()

    def close(self) -> None:
        pass

    def to_dataframe(self) -> pd.DataFrame:
        return rows_to_dataframe(self.rows)


class CsvRowSink:
    """
    Streams rows to CSV. The file is created when the first row arrives and
    truncated back to its header when the engine discards its rows.
    Absent trigger numbers are written as empty cells.
    """

    def __init__(self, path: Path):
        self.path = path
        self._writer: Optional[csv.DictWriter[str]] = None
        self._file_handle: Optional[TextIO] = None

    def append(self, row: MergedRow) -> None:
        if self._writer is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._file_handle = self.path.open("w", newline="", encoding="utf-8")
            self._writer = csv.DictWriter(self._file_handle, fieldnames=ROW_COLUMNS)
            self._writer.writeheader()
        self._writer.writerow(row_to_dict(row))

    def reset(self) -> None:
        if self._file_handle is None or self._writer is None:
            return
        self._file_handle.seek(0)
        self._file_handle.truncate()
        self._writer.writeheader()

    def close(self) -> None:
        if self._file_handle:
            self._file_handle.close()
            self._file_handle = None
            self._writer = None


class RootRowSink:
    """
    Buffers rows and writes them as a flat TTree on close, using the branch
    layout of the combined ROOT output. Absent trigger numbers become
    the all-ones sentinel.
    """

    def __init__(self, path: Path, tree_name: str = "combined", absent_trigger: int = ABSENT_TRIGGER):
        self.path = path
        self.tree_name = tree_name
        self.absent_trigger = absent_trigger
        self._rows: List[MergedRow] = []
        self._closed = False

    def append(self, row: MergedRow) -> None:
        self._rows.append(row)

    def reset(self) -> None:
        self._rows.clear()

    def branches(self) -> Dict[str, np.ndarray]:
        absent = self.absent_trigger
        columns = {
            "ROC": [row.cycle for row in self._rows],
            "bif_Trig": [absent if row.bif_trigger is None else row.bif_trigger for row in self._rows],
            "ahc_Trig": [absent if row.ahcal_trigger is None else row.ahcal_trigger for row in self._rows],
            "bif_Time": [row.bif_time for row in self._rows],
            "dwc_Trig": [row.event_id or 0 for row in self._rows],
            "dwc_Time": [row.time_since_start or 0 for row in self._rows],
        }
        return {name: np.asarray(values, dtype=ROOT_BRANCHES[name]) for name, values in columns.items()}

    def close(self) -> None:
        if self._closed:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with uproot.recreate(self.path) as root_file:
            tree = root_file.mktree(self.tree_name, {name: np.dtype(dtype) for name, dtype in ROOT_BRANCHES.items()})
            if self._rows:
                tree.extend(self.branches())
        self._closed = True


class MultiSink:
    """Fans rows out to several sinks."""

    def __init__(self, sinks: Iterable[RowSink]):
        self.sinks = list(sinks)

    def append(self, row: MergedRow) -> None:
        for sink in self.sinks:
            sink.append(row)

    def reset(self) -> None:
        for sink in self.sinks:
            sink.reset()

    def close(self) -> None:
        for sink in self.sinks:
            sink.close()


def export_report(
    result: "CorrelationResult",
    output_dir: Path,
    *,
    figure_path: Path | None = None,
    input_paths: Dict[str, Path | None] | None = None,
) -> None:
    """Persist the summary table and markdown report to *output_dir*."""

    output_dir.mkdir(parents=True, exist_ok=True)
    _write_summary_csv(result, output_dir)
    _write_report_md(result, output_dir, figure_path=figure_path, input_paths=input_paths)


def _write_summary_csv(result: "CorrelationResult", output_dir: Path) -> None:
    summary = result.summary
    metrics: MetricSummary = result.metrics
    rows: list[dict[str, object]] = [
        {"metric": "total_rows", "value": summary.total_rows},
        {"metric": "matched_rows", "value": summary.matched_rows},
        {"metric": "bif_only_rows", "value": summary.bif_only_rows},
        {"metric": "ahcal_only_rows", "value": summary.ahcal_only_rows},
        {"metric": "match_fraction", "value": metrics.match_fraction},
        {"metric": "resyncs", "value": summary.resyncs},
        {"metric": "discarded_rows", "value": summary.discarded_rows},
        {"metric": "time_offset", "value": summary.time_offset},
        {"metric": "cycles", "value": metrics.cycles},
        {"metric": "longest_unmatched_run", "value": metrics.longest_unmatched_run},
        {"metric": "mean_matched_spacing", "value": metrics.mean_matched_spacing},
    ]
    rows.extend({"metric": f"bif.{key}", "value": value} for key, value in summary.bif_stats.items())
    rows.extend({"metric": f"ahcal.{key}", "value": value} for key, value in summary.ahcal_stats.items())
    pd.DataFrame(rows).to_csv(output_dir / "summary.csv", index=False)


def _write_report_md(
    result: "CorrelationResult",
    output_dir: Path,
    *,
    figure_path: Path | None,
    input_paths: Dict[str, Path | None] | None,
) -> None:
    summary = result.summary
    metrics = result.metrics
    lines: list[str] = []
    lines.append("# BIF / AHCAL Correlation Report")
    for label, path in (input_paths or {}).items():
        if path is not None:
            lines.append(f"*{label} file:* `{path}`  ")
    lines.append(f"*Rows:* {summary.total_rows}  ")
    lines.append(f"*Time offset (BIF - AHCAL):* {summary.time_offset} ticks  ")
    lines.append(f"*Resyncs:* {summary.resyncs} ({summary.discarded_rows} rows discarded)  ")
    lines.append("")

    lines.append("## Row classification")
    lines.append("| Kind | Rows | Fraction |")
    lines.append("| --- | ---: | ---: |")
    for kind, count in (
        ("matched", summary.matched_rows),
        ("BIF only", summary.bif_only_rows),
        ("AHCAL only", summary.ahcal_only_rows),
    ):
        fraction = count / summary.total_rows if summary.total_rows else float("nan")
        lines.append(f"| {kind} | {count} | {fraction:.4f} |")
    lines.append("")

    lines.append("## Decoder statistics")
    lines.append("| Stream | Counter | Value |")
    lines.append("| --- | --- | ---: |")
    for stream, stats in (("BIF", summary.bif_stats), ("AHCAL", summary.ahcal_stats)):
        for key, value in stats.items():
            lines.append(f"| {stream} | {key} | {value} |")
    lines.append("")

    if figure_path is not None:
        lines.append(f"![Correlation plots]({figure_path.name})")
        lines.append("")

    lines.append("### Notes")
    lines.append(f"- Readout cycles spanned: {metrics.cycles}.")
    lines.append(f"- Longest run of unmatched rows: {metrics.longest_unmatched_run}.")
    lines.append("- Decoder counters include records replayed during resyncs.")

    (output_dir / "report.md").write_text("\n".join(lines), encoding="utf-8")
