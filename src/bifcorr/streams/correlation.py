from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Dict, NoReturn, Optional, Protocol, Sequence, Tuple

from .ahcal import AhcalFrameDecoder
from .bif import BifFrameDecoder
from .config import CorrelationConfig
from .errors import EmptyStreamError, IrreconcilableStreamsError
from .frames import U32_MASK, U64_MASK, TriggerRecord, to_int32


class RowKind(str, enum.Enum):
    MATCHED = "matched"
    BIF_ONLY = "bif_only"
    AHCAL_ONLY = "ahcal_only"


class EngineState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    RUNNING = "running"
    RESYNCING = "resyncing"
    DONE = "done"
    IRRECONCILABLE = "irreconcilable"


@dataclass(frozen=True)
class MergedRow:
    """One row of the combined BIF/AHCAL event stream."""

    cycle: int
    bif_trigger: Optional[int]
    ahcal_trigger: Optional[int]
    bif_time: int
    kind: RowKind
    event_id: Optional[int] = None
    time_since_start: Optional[int] = None


class RowSink(Protocol):
    def append(self, row: MergedRow) -> None: ...

    def reset(self) -> None: ...

    def close(self) -> None: ...


@dataclass
class CorrelationSummary:
    total_rows: int
    matched_rows: int
    bif_only_rows: int
    ahcal_only_rows: int
    resyncs: int
    discarded_rows: int
    time_offset: Optional[int]
    bif_stats: Dict[str, int] = field(default_factory=dict)
    ahcal_stats: Dict[str, int] = field(default_factory=dict)

    @property
    def match_fraction(self) -> float:
        if self.total_rows == 0:
            return float("nan")
        return self.matched_rows / self.total_rows


class CorrelationEngine:
    """
    Merge BIF and AHCAL trigger records into one event stream.

    Records are pulled from both decoders and compared in the BIF time base
    (fine bits dropped). The first pair fixes the offset between the two
    clocks; afterwards a BIF record that is too early is emitted alone, an
    AHCAL record that is too early is emitted alone, and records within the
    tolerance are matched. When too few of the first rows after a (re)start
    matched, both streams are rewound and restarted with a growing relative
    skip. Once that first window passes, the alignment is kept to the end.

    *supplementary* is an optional sequence of ``(event_id, time_since_start)``
    rows that is walked in step with the emitted rows; its length bounds the
    number of rows emitted.
    """

    def __init__(
        self,
        bif: BifFrameDecoder,
        ahcal: AhcalFrameDecoder,
        config: Optional[CorrelationConfig] = None,
        supplementary: Optional[Sequence[Tuple[int, int]]] = None,
    ):
        self.bif = bif
        self.ahcal = ahcal
        self.config = (config or CorrelationConfig()).validate()
        self.supplementary = supplementary
        self.state = EngineState.UNINITIALIZED
        self.time_offset: Optional[int] = None
        self.resync_index = 0
        self._window_rows = 0
        self._window_matched = 0
        self._counts: Dict[RowKind, int] = {kind: 0 for kind in RowKind}
        self._discarded = 0
        self._row_index = 0
        self._bif_record: Optional[TriggerRecord] = None
        self._ahcal_record: Optional[TriggerRecord] = None
        self._log = logging.getLogger(__name__)

    def start(self) -> None:
        """Decode the first record of each stream."""

        if self.state is not EngineState.UNINITIALIZED:
            raise RuntimeError(f"engine already started (state {self.state.value})")
        self._bif_record = self.bif.next_record()
        if self._bif_record is None:
            raise EmptyStreamError("BIF stream contains no trigger records")
        self._ahcal_record = self.ahcal.next_record()
        if self._ahcal_record is None:
            raise EmptyStreamError("AHCAL stream contains no trigger records")
        self.state = EngineState.RUNNING
        if self.supplementary is not None and len(self.supplementary) == 0:
            self._log.warning("Supplementary series is empty; nothing to correlate")
            self.state = EngineState.DONE

    def run(self, sink: RowSink) -> CorrelationSummary:
        """Correlate both streams to the end, feeding every row to *sink*."""

        self.start()
        while self.state is EngineState.RUNNING:
            self.step(sink)
        summary = self.summary()
        self._log.info(
            "Correlated %d rows (%d matched, %d BIF only, %d AHCAL only) after %d resyncs",
            summary.total_rows,
            summary.matched_rows,
            summary.bif_only_rows,
            summary.ahcal_only_rows,
            summary.resyncs,
        )
        return summary

    def step(self, sink: RowSink) -> MergedRow:
        """Emit one row and advance the consumed stream(s)."""

        if self.state is not EngineState.RUNNING:
            raise RuntimeError(f"cannot step engine in state {self.state.value}")
        bif_record = self._bif_record
        ahcal_record = self._ahcal_record
        assert bif_record is not None and ahcal_record is not None

        bif_time = bif_record.fine_timestamp >> self.config.bif_fine_bits
        ahcal_time = ahcal_record.fine_timestamp
        if self.time_offset is None:
            self.time_offset = bif_time - ahcal_time
            self._log.debug("Time offset set to %d ticks", self.time_offset)
        offset = self.time_offset
        event_id, time_since_start = self._next_supplementary()

        delta = bif_time - ahcal_time
        tolerance = self.config.tolerance_ticks
        if delta < offset - tolerance:
            kind = RowKind.BIF_ONLY
            row = MergedRow(
                cycle=self._bif_cycle(bif_record),
                bif_trigger=self._bif_trigger(bif_record),
                ahcal_trigger=None,
                bif_time=bif_time,
                kind=kind,
                event_id=event_id,
                time_since_start=time_since_start,
            )
        elif delta > offset + tolerance:
            kind = RowKind.AHCAL_ONLY
            row = MergedRow(
                cycle=to_int32(ahcal_record.cycle),
                bif_trigger=None,
                ahcal_trigger=ahcal_record.trigger_count,
                bif_time=(ahcal_time + offset) & U64_MASK,
                kind=kind,
                event_id=event_id,
                time_since_start=time_since_start,
            )
        else:
            kind = RowKind.MATCHED
            row = MergedRow(
                cycle=self._bif_cycle(bif_record),
                bif_trigger=self._bif_trigger(bif_record),
                ahcal_trigger=ahcal_record.trigger_count,
                bif_time=bif_time,
                kind=kind,
                event_id=event_id,
                time_since_start=time_since_start,
            )
        sink.append(row)
        self._counts[kind] += 1
        self._window_rows += 1
        if kind is RowKind.MATCHED:
            self._window_matched += 1

        if kind is not RowKind.AHCAL_ONLY:
            self._bif_record = self.bif.next_record()
        if kind is not RowKind.BIF_ONLY and self._bif_record is not None:
            self._ahcal_record = self.ahcal.next_record()
        if self._bif_record is None or self._ahcal_record is None:
            self._log.debug("Raw stream exhausted after %d rows", self._row_index)
            self.state = EngineState.DONE
        elif self._window_failed():
            self._resync(sink)
        elif self.supplementary is not None and self._row_index >= len(self.supplementary):
            self._log.debug("Supplementary series exhausted after %d rows", self._row_index)
            self.state = EngineState.DONE
        return row

    def summary(self) -> CorrelationSummary:
        return CorrelationSummary(
            total_rows=sum(self._counts.values()),
            matched_rows=self._counts[RowKind.MATCHED],
            bif_only_rows=self._counts[RowKind.BIF_ONLY],
            ahcal_only_rows=self._counts[RowKind.AHCAL_ONLY],
            resyncs=self.resync_index,
            discarded_rows=self._discarded,
            time_offset=self.time_offset,
            bif_stats=self.bif.stats(),
            ahcal_stats=self.ahcal.stats(),
        )

    def _bif_cycle(self, record: TriggerRecord) -> int:
        return to_int32(record.cycle - self.bif.baseline.cycle_offset() + 1)

    def _bif_trigger(self, record: TriggerRecord) -> int:
        return (record.trigger_count - self.bif.baseline.trigger_offset()) & U32_MASK

    def _next_supplementary(self) -> Tuple[Optional[int], Optional[int]]:
        index = self._row_index
        self._row_index += 1
        if self.supplementary is None:
            return None, None
        event_id, time_since_start = self.supplementary[index]
        return event_id, time_since_start

    def _window_failed(self) -> bool:
        # judged once, on the first rows after a (re)start
        if self._window_rows != self.config.window.size:
            return False
        return self._window_matched < self.config.window.min_matched

    def _resync(self, sink: RowSink) -> None:
        self.state = EngineState.RESYNCING
        self.resync_index += 1
        self._log.warning(
            "Event matching failed (%d of first %d rows matched); new matching index %d",
            self._window_matched,
            self._window_rows,
            self.resync_index,
        )
        cap = self.config.max_resyncs
        if cap is not None and self.resync_index > cap:
            self._give_up(sink, f"no consistent alignment found within {cap} resyncs")

        self.bif.rewind()
        self.ahcal.rewind()
        bif_record = self.bif.next_record()
        ahcal_record = self.ahcal.next_record()
        # attempt 2, 3, 4, 5, ... skips 1 AHCAL, 1 BIF, 2 AHCAL, 2 BIF, ... records
        attempt = self.resync_index + 1
        for _ in range(attempt // 2):
            if bif_record is None or ahcal_record is None:
                break
            if attempt % 2:
                bif_record = self.bif.next_record()
            else:
                ahcal_record = self.ahcal.next_record()
        if bif_record is None or ahcal_record is None:
            self._give_up(sink, f"resync {self.resync_index} skipped past the end of a stream")

        self._bif_record = bif_record
        self._ahcal_record = ahcal_record
        self._discard_rows(sink)
        self.time_offset = None
        self._row_index = 0
        self.state = EngineState.RUNNING

    def _discard_rows(self, sink: RowSink) -> None:
        self._discarded += sum(self._counts.values())
        self._counts = {kind: 0 for kind in RowKind}
        self._window_rows = 0
        self._window_matched = 0
        sink.reset()

    def _give_up(self, sink: RowSink, message: str) -> NoReturn:
        # rows of the rejected alignment never reach the output
        self._discard_rows(sink)
        self.state = EngineState.IRRECONCILABLE
        raise IrreconcilableStreamsError(message, self.resync_index)
