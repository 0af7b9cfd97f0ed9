"""Synthetic raw data for demos and tests."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Sequence

import numpy as np
import pandas as pd

from .pipeline import CorrelationResult, run_correlation
from .plotting import generate_plots
from .reporting import export_report
from .streams.config import RunConfig


def encode_bif_frame(coarse_time: int, subtype: int, field: int = 0) -> bytes:
    word = ((subtype & 0xF) << 12) | (field & 0x0FFF)
    return (coarse_time & 0xFFFFFFFFFFFF).to_bytes(6, "little") + word.to_bytes(2, "little")


def encode_bif_trigger(coarse_time: int, trigger_count: int, fine: int = 0) -> bytes:
    # the decoder adds 0x18 to the raw fine byte
    raw_fine = (fine - 0x18) & 0xFF
    payload = (trigger_count & 0xFFFFFFFF).to_bytes(4, "little") + bytes([raw_fine, 0, 0, 0])
    return encode_bif_frame(coarse_time, 0) + payload


def encode_bif_shutter(coarse_time: int, shutter: int) -> bytes:
    return encode_bif_frame(coarse_time, 3, shutter)


def encode_ahcal_packet(packet_type: int, narrow_cycle: int, trigger_id: int, timestamp: int) -> bytes:
    header = bytes([0x10, 0x00, narrow_cycle & 0xFF, 0, 0, 0, 0, 0x08])
    emit = b"EMIT" + bytes([packet_type & 0xFF, 0]) + (trigger_id & 0xFFFF).to_bytes(2, "little")
    stamp = (timestamp & 0xFFFFFFFFFFFF).to_bytes(6, "little") + b"\xAB\xAB"
    return b"\xCD\xCD" + header + emit + stamp


@dataclass(frozen=True)
class SyntheticTrigger:
    time: int
    cycle: int
    trigger: int


def build_bif_stream(triggers: Iterable[SyntheticTrigger], offset: int = 0) -> bytes:
    """BIF dump with a shutter frame at every cycle change."""

    out = bytearray()
    current_cycle: Optional[int] = None
    for trig in triggers:
        if trig.cycle != current_cycle:
            out += encode_bif_shutter(trig.time + offset - 1, trig.cycle & 0x0FFF)
            current_cycle = trig.cycle
        out += encode_bif_trigger(trig.time + offset, trig.trigger, fine=trig.trigger & 0x1F)
    return bytes(out)


def build_ahcal_stream(triggers: Iterable[SyntheticTrigger]) -> bytes:
    """AHCAL dump with start/stop acquisition packets around every cycle."""

    out = bytearray()
    current_cycle: Optional[int] = None
    last_time = 0
    for trig in triggers:
        if trig.cycle != current_cycle:
            if current_cycle is not None:
                out += encode_ahcal_packet(0x02, current_cycle, 0, last_time + 1)
            out += encode_ahcal_packet(0x01, trig.cycle, 0, trig.time - 1)
            current_cycle = trig.cycle
        out += encode_ahcal_packet(0x10, trig.cycle, trig.trigger, trig.time)
        last_time = trig.time
    if current_cycle is not None:
        out += encode_ahcal_packet(0x02, current_cycle, 0, last_time + 1)
    return bytes(out)


def create_demo_triggers(count: int = 200, per_cycle: int = 25, seed: int = 42) -> list[SyntheticTrigger]:
    rng = np.random.default_rng(seed)
    gaps = rng.integers(800, 4000, size=count)
    times = 10_000 + np.cumsum(gaps)
    return [
        SyntheticTrigger(time=int(t), cycle=1 + idx // per_cycle, trigger=idx)
        for idx, t in enumerate(times)
    ]


def drop_triggers(triggers: Sequence[SyntheticTrigger], indices: Iterable[int]) -> list[SyntheticTrigger]:
    skip = set(indices)
    return [trig for idx, trig in enumerate(triggers) if idx not in skip]


def run_demo(out_dir: Path, *, offset: int = 123_456) -> CorrelationResult:
    out_dir.mkdir(parents=True, exist_ok=True)
    triggers = create_demo_triggers()
    # a few triggers lost by each system
    bif_path = out_dir / "demo_bif.raw"
    ahcal_path = out_dir / "demo_ahcal.raw"
    bif_path.write_bytes(build_bif_stream(drop_triggers(triggers, [40, 41, 120]), offset=offset))
    ahcal_path.write_bytes(build_ahcal_stream(drop_triggers(triggers, [75, 150])))

    dwc_path = out_dir / "demo_dwc.csv"
    pd.DataFrame(
        {
            "event": np.arange(len(triggers), dtype=np.uint32),
            "timeSinceStart": np.array([trig.time for trig in triggers], dtype=np.int64),
        }
    ).to_csv(dwc_path, index=False)

    config = RunConfig()
    config.output.format = "csv"
    result = run_correlation(
        bif_path,
        ahcal_path,
        dwc_path,
        config=config,
        output_path=out_dir / "combined.csv",
    )
    figure_path = None
    try:
        figure_path = generate_plots(result, out_dir)
    except RuntimeError as exc:
        # text report only
        print(f"[warning] plotting skipped: {exc}")

    export_report(
        result,
        out_dir,
        figure_path=figure_path,
        input_paths={"BIF": bif_path, "AHCAL": ahcal_path, "DWC": dwc_path},
    )
    return result
