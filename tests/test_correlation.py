from __future__ import annotations

import io
from typing import List, Sequence

import pytest

from bifcorr.demo import (
    SyntheticTrigger,
    build_ahcal_stream,
    build_bif_stream,
    create_demo_triggers,
    drop_triggers,
    encode_bif_frame,
    encode_bif_trigger,
)
from bifcorr.streams.ahcal import AhcalFrameDecoder
from bifcorr.streams.bif import BifFrameDecoder
from bifcorr.streams.config import CorrelationConfig, WindowConfig
from bifcorr.streams.correlation import CorrelationEngine, EngineState, MergedRow, RowKind
from bifcorr.streams.errors import BifDecodeError, EmptyStreamError, IrreconcilableStreamsError


class RecordingSink:
    def __init__(self) -> None:
        self.rows: List[MergedRow] = []
        self.resets: List[int] = []
        self.closed = False

    def append(self, row: MergedRow) -> None:
        self.rows.append(row)

    def reset(self) -> None:
        self.resets.append(len(self.rows))
        self.rows.clear()

    def close(self) -> None:
        self.closed = True


def make_engine(
    bif_triggers: Sequence[SyntheticTrigger],
    ahcal_triggers: Sequence[SyntheticTrigger],
    offset: int,
    config: CorrelationConfig | None = None,
    supplementary=None,
) -> CorrelationEngine:
    bif = BifFrameDecoder(io.BytesIO(build_bif_stream(bif_triggers, offset=offset)))
    ahcal = AhcalFrameDecoder(io.BytesIO(build_ahcal_stream(ahcal_triggers)))
    return CorrelationEngine(bif, ahcal, config, supplementary=supplementary)


def test_constant_offset_matches_every_row() -> None:
    triggers = create_demo_triggers(count=60, seed=3)
    engine = make_engine(triggers, triggers, offset=5000)
    sink = RecordingSink()
    summary = engine.run(sink)

    assert engine.state is EngineState.DONE
    assert summary.total_rows == summary.matched_rows == 60
    assert summary.resyncs == 0
    assert summary.time_offset == 5000
    assert sink.resets == []
    assert all(row.kind is RowKind.MATCHED for row in sink.rows)
    assert [row.bif_trigger for row in sink.rows] == list(range(60))
    assert [row.ahcal_trigger for row in sink.rows] == list(range(60))
    assert [row.bif_time for row in sink.rows] == [trig.time + 5000 for trig in triggers]
    assert [row.cycle for row in sink.rows] == [trig.cycle for trig in triggers]


def test_missing_triggers_produce_single_stream_rows() -> None:
    triggers = create_demo_triggers(count=30, seed=11)
    engine = make_engine(drop_triggers(triggers, [10]), drop_triggers(triggers, [5]), offset=777)
    sink = RecordingSink()
    summary = engine.run(sink)

    assert summary.total_rows == 30
    assert summary.bif_only_rows == 1
    assert summary.ahcal_only_rows == 1
    assert summary.matched_rows == 28

    bif_only = sink.rows[5]
    assert bif_only.kind is RowKind.BIF_ONLY
    assert bif_only.bif_trigger == 5
    assert bif_only.ahcal_trigger is None
    assert bif_only.bif_time == triggers[5].time + 777

    ahcal_only = sink.rows[10]
    assert ahcal_only.kind is RowKind.AHCAL_ONLY
    assert ahcal_only.bif_trigger is None
    assert ahcal_only.ahcal_trigger == 10
    assert ahcal_only.bif_time == triggers[10].time + 777
    assert ahcal_only.cycle == triggers[10].cycle


def _extra_bif_event_fixture(count: int = 60):
    triggers = create_demo_triggers(count=count, seed=5)
    extra = SyntheticTrigger(time=triggers[0].time - 500, cycle=triggers[0].cycle, trigger=0)
    bif_triggers = [extra] + [
        SyntheticTrigger(time=trig.time, cycle=trig.cycle, trigger=trig.trigger + 1) for trig in triggers
    ]
    return triggers, bif_triggers


def test_failed_window_triggers_resync() -> None:
    triggers, bif_triggers = _extra_bif_event_fixture()
    engine = make_engine(bif_triggers, triggers, offset=2000)
    sink = RecordingSink()
    engine.start()
    for _ in range(20):
        engine.step(sink)

    assert engine.resync_index == 1
    assert sink.resets == [20]
    assert sink.rows == []
    assert engine.time_offset is None
    assert engine.state is EngineState.RUNNING


def test_resync_recovers_alignment_after_extra_bif_event() -> None:
    triggers, bif_triggers = _extra_bif_event_fixture()
    engine = make_engine(bif_triggers, triggers, offset=2000)
    sink = RecordingSink()
    summary = engine.run(sink)

    # attempt 1 skips one AHCAL record, attempt 2 skips the extra BIF record
    assert engine.resync_index == 2
    assert sink.resets == [20, 20]
    assert summary.discarded_rows == 40
    assert summary.total_rows == summary.matched_rows == len(triggers)
    assert summary.time_offset == 2000
    assert [row.bif_trigger for row in sink.rows] == [trig.trigger + 1 for trig in triggers]
    assert [row.ahcal_trigger for row in sink.rows] == [trig.trigger for trig in triggers]


def test_resync_cap_reports_irreconcilable_streams() -> None:
    bif_triggers = create_demo_triggers(count=80, seed=1)
    ahcal_triggers = create_demo_triggers(count=80, seed=2)
    config = CorrelationConfig(max_resyncs=3)
    engine = make_engine(bif_triggers, ahcal_triggers, offset=0, config=config)

    sink = RecordingSink()
    with pytest.raises(IrreconcilableStreamsError) as excinfo:
        engine.run(sink)
    assert excinfo.value.resync_index == 4
    assert engine.state is EngineState.IRRECONCILABLE
    # rows of the last rejected alignment are discarded as well
    assert sink.rows == []
    assert sink.resets == [20, 20, 20, 20]
    assert engine.summary().total_rows == 0
    assert engine.summary().discarded_rows == 80


def test_gap_after_first_window_keeps_alignment() -> None:
    triggers = create_demo_triggers(count=80, seed=17)
    engine = make_engine(triggers, drop_triggers(triggers, range(30, 45)), offset=1000)
    sink = RecordingSink()
    summary = engine.run(sink)

    assert engine.resync_index == 0
    assert sink.resets == []
    assert summary.total_rows == 80
    assert summary.bif_only_rows == 15
    assert summary.matched_rows == 65
    assert [row.kind for row in sink.rows[30:45]] == [RowKind.BIF_ONLY] * 15
    assert [row.bif_trigger for row in sink.rows] == list(range(80))


def test_first_window_is_judged_once() -> None:
    triggers = create_demo_triggers(count=40, seed=8)
    # rows 10..19 of the first window unmatched: 10 of 20 fails
    failing = make_engine(triggers, drop_triggers(triggers, range(10, 20)), offset=0)
    sink = RecordingSink()
    failing.start()
    for _ in range(20):
        failing.step(sink)
    assert failing.resync_index == 1

    # same gap one row later: the first window holds 11 matches and passes
    passing = make_engine(triggers, drop_triggers(triggers, range(11, 21)), offset=0)
    summary = passing.run(RecordingSink())
    assert passing.resync_index == 0
    assert summary.bif_only_rows == 10


def test_window_parameters_are_configurable() -> None:
    triggers, bif_triggers = _extra_bif_event_fixture()
    config = CorrelationConfig(window=WindowConfig(size=10, min_matched=6))
    engine = make_engine(bif_triggers, triggers, offset=2000, config=config)
    sink = RecordingSink()
    engine.run(sink)
    assert sink.resets == [10, 10]


def test_supplementary_series_bounds_rows_and_passes_through() -> None:
    triggers = create_demo_triggers(count=30, seed=4)
    series = [(100 + idx, 1000 * idx) for idx in range(5)]
    engine = make_engine(triggers, triggers, offset=10, supplementary=series)
    sink = RecordingSink()
    summary = engine.run(sink)

    assert summary.total_rows == 5
    assert [(row.event_id, row.time_since_start) for row in sink.rows] == series
    assert engine.state is EngineState.DONE


def test_empty_supplementary_series_emits_nothing() -> None:
    triggers = create_demo_triggers(count=10, seed=4)
    engine = make_engine(triggers, triggers, offset=10, supplementary=[])
    sink = RecordingSink()
    summary = engine.run(sink)
    assert summary.total_rows == 0
    assert sink.rows == []


def test_empty_bif_stream_is_rejected() -> None:
    triggers = create_demo_triggers(count=5)
    bif = BifFrameDecoder(io.BytesIO(b""))
    ahcal = AhcalFrameDecoder(io.BytesIO(build_ahcal_stream(triggers)))
    with pytest.raises(EmptyStreamError):
        CorrelationEngine(bif, ahcal).run(RecordingSink())


def test_unknown_bif_subtype_propagates() -> None:
    triggers = create_demo_triggers(count=5)
    bif_data = encode_bif_trigger(triggers[0].time, 0) + encode_bif_frame(triggers[1].time, 7)
    bif = BifFrameDecoder(io.BytesIO(bif_data))
    ahcal = AhcalFrameDecoder(io.BytesIO(build_ahcal_stream(triggers)))
    with pytest.raises(BifDecodeError):
        CorrelationEngine(bif, ahcal).run(RecordingSink())


def test_step_requires_running_engine() -> None:
    triggers = create_demo_triggers(count=5)
    engine = make_engine(triggers, triggers, offset=0)
    with pytest.raises(RuntimeError):
        engine.step(RecordingSink())
