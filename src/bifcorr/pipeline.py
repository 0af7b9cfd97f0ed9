"""High level orchestration of a correlation run."""
from __future__ import annotations

import logging
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import pandas as pd

from .data import SupplementarySeries, load_supplementary
from .metrics import MetricSummary, compute_metrics
from .reporting import CsvRowSink, DataFrameSink, MultiSink, RootRowSink
from .streams.ahcal import AhcalFrameDecoder
from .streams.bif import BifFrameDecoder
from .streams.config import OutputConfig, RunConfig
from .streams.correlation import CorrelationEngine, CorrelationSummary, RowSink
from .streams.errors import CorrelationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CorrelationResult:
    summary: CorrelationSummary
    metrics: MetricSummary
    rows: pd.DataFrame


def build_output_sink(path: Path, config: OutputConfig) -> RowSink:
    fmt = config.format_enum
    if path.suffix.lower() == ".csv":
        fmt = "csv"
    elif path.suffix.lower() == ".root":
        fmt = "root"
    if fmt == "csv":
        return CsvRowSink(path)
    return RootRowSink(path, tree_name=config.tree_name, absent_trigger=config.absent_trigger)


def run_correlation(
    bif_path: str | Path,
    ahcal_path: str | Path,
    dwc_path: str | Path | None = None,
    *,
    config: Optional[RunConfig] = None,
    output_path: str | Path | None = None,
) -> CorrelationResult:
    """Decode both raw files, correlate them and optionally persist the rows."""

    config = config or RunConfig()
    logger.info("BIF data file: %s", bif_path)
    logger.info("AHCAL raw data file: %s", ahcal_path)
    logger.info("DWC data file: %s", dwc_path)

    supplementary: Optional[SupplementarySeries] = None
    if dwc_path is not None:
        supplementary = load_supplementary(dwc_path, config.supplementary)
        logger.info("Loaded %d supplementary rows", len(supplementary))

    corr = config.correlation
    frame_sink = DataFrameSink()
    sinks: list[RowSink] = [frame_sink]
    if output_path is not None:
        sinks.append(build_output_sink(Path(output_path), config.output))
    sink = MultiSink(sinks)

    with ExitStack() as stack:
        bif_handle = stack.enter_context(Path(bif_path).open("rb"))
        ahcal_handle = stack.enter_context(Path(ahcal_path).open("rb"))
        engine = CorrelationEngine(
            BifFrameDecoder(bif_handle, initial_cycle=corr.bif_initial_cycle),
            AhcalFrameDecoder(
                ahcal_handle,
                initial_cycle=corr.ahcal_initial_cycle,
                cycle_jump_limit=corr.ahcal_cycle_jump_limit,
            ),
            corr,
            supplementary=supplementary,
        )
        try:
            summary = engine.run(sink)
        except CorrelationError:
            # a failed run leaves no rows behind
            sink.reset()
            raise
        finally:
            sink.close()

    rows = frame_sink.to_dataframe()
    return CorrelationResult(summary=summary, metrics=compute_metrics(rows), rows=rows)
