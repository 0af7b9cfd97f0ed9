from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import BinaryIO, Dict, Iterator, Optional

from .errors import BifDecodeError
from .frames import U32_MASK, StreamBaseline, TriggerRecord, read_exact, read_u16, read_u32, read_u48

FRAME_SIZE = 8

SUBTYPE_TRIGGER = (0, 1)
SUBTYPE_CONTINUATION = 2
SUBTYPE_SHUTTER = 3

SHUTTER_FIELD_MASK = 0x0FFF
SHUTTER_FIELD_MAX = 0x0FFF
SHUTTER_PERIOD = 0x1000

FINE_BITS = 5
FINE_MASK = 0x1F
FINE_CORRECTION = 0x18


@dataclass
class _BifState:
    shutter_counter: int
    last_shutter_field: int


class BifFrameDecoder:
    """
    Pull decoder for the BIF raw dump: a headerless sequence of 8-byte
    little-endian frames.

    Bytes 0-5 of every frame hold the coarse 48-bit timestamp, the upper
    nibble of byte 7 the packet subtype and the low 12 bits of bytes 6-7 the
    shutter field. A trigger frame is followed by a second frame with the
    trigger counter and the fine time correction.
    """

    def __init__(self, stream: BinaryIO, initial_cycle: int = 0):
        self.stream = stream
        self.initial_cycle = initial_cycle
        self.baseline = StreamBaseline()
        self._state = self._new_state()
        self._position = 0
        self._stats: Dict[str, int] = {
            "frames": 0,
            "records": 0,
            "shutter_updates": 0,
            "shutter_rollovers": 0,
        }
        self._log = logging.getLogger(__name__)

    @property
    def cycle(self) -> int:
        return self._state.shutter_counter & U32_MASK

    def _new_state(self) -> _BifState:
        return _BifState(
            shutter_counter=self.initial_cycle,
            last_shutter_field=self.initial_cycle & SHUTTER_FIELD_MASK,
        )

    def _read_frame(self) -> Optional[bytes]:
        frame = read_exact(self.stream, FRAME_SIZE)
        if frame is not None:
            self._position += FRAME_SIZE
            self._stats["frames"] += 1
        return frame

    def next_record(self) -> Optional[TriggerRecord]:
        """Return the next trigger record, or None once the stream is exhausted."""

        while True:
            offset = self._position
            frame = self._read_frame()
            if frame is None:
                return None
            subtype = frame[7] >> 4
            if subtype in SUBTYPE_TRIGGER:
                payload = self._read_frame()
                if payload is None:
                    self._log.debug("BIF stream truncated inside trigger packet at %d", offset)
                    return None
                return self._trigger_record(read_u48(frame, 0), payload)
            if subtype == SUBTYPE_CONTINUATION:
                continue
            if subtype == SUBTYPE_SHUTTER:
                self._update_shutter(read_u16(frame, 6) & SHUTTER_FIELD_MASK)
                continue
            raise BifDecodeError(subtype, offset)

    def _trigger_record(self, coarse_time: int, payload: bytes) -> TriggerRecord:
        trigger_count = read_u32(payload, 0)
        if self.baseline.trigger_count is None:
            self.baseline.trigger_count = trigger_count
        fine_timestamp = (coarse_time << FINE_BITS) | ((payload[4] + FINE_CORRECTION) & FINE_MASK)
        self._stats["records"] += 1
        return TriggerRecord(
            fine_timestamp=fine_timestamp,
            trigger_count=trigger_count,
            cycle=self.cycle,
        )

    def _update_shutter(self, field: int) -> None:
        """
        Fold a 12-bit shutter field into the wide shutter counter.

        A rollover is counted when the field goes from 4095 to 0 between two
        consecutive shutter frames; trigger and continuation frames in
        between do not take part in the comparison.
        """

        state = self._state
        if state.last_shutter_field == SHUTTER_FIELD_MAX and field == 0:
            state.shutter_counter += SHUTTER_PERIOD
            self._stats["shutter_rollovers"] += 1
        state.shutter_counter = (state.shutter_counter & ~SHUTTER_FIELD_MASK) | field
        state.last_shutter_field = field
        if self.baseline.cycle is None:
            self.baseline.cycle = self.cycle
        self._stats["shutter_updates"] += 1

    def rewind(self) -> None:
        """Seek back to the start of the stream and forget everything decoded so far."""

        self.stream.seek(0)
        self._position = 0
        self._state = self._new_state()
        self.baseline = StreamBaseline()

    def __iter__(self) -> Iterator[TriggerRecord]:
        while True:
            record = self.next_record()
            if record is None:
                return
            yield record

    def stats(self) -> Dict[str, int]:
        return dict(self._stats)
