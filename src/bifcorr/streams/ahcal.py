from __future__ import annotations

import logging
import os
from typing import BinaryIO, Dict, Iterator, Optional

from .frames import U32_MASK, TriggerRecord, read_exact, read_u16, read_u48, update_counter_modulo

SYNC_BYTE = 0xCD
BLOCK_SIZE = 8
HEADER_TAG = (0x10, 0x00, 0x08)  # bytes 0, 1 and 7 of the packet header
EMIT_MAGIC = b"EMIT"
TRAILER_MARKER = b"\xAB\xAB"

TYPE_START_ACQUISITION = 0x01
TYPE_STOP_ACQUISITION = 0x02
TYPE_TRIGGER = 0x10

CYCLE_MODULO = 256
CYCLE_MAX_BACKWARDS = 10
CYCLE_JUMP_LIMIT = 50


class AhcalFrameDecoder:
    """
    Pull decoder for AHCAL raw data as dumped by the DAQ producer.

    Packets start with two ``0xCD`` sync bytes followed by three 8-byte
    blocks: the header (payload length and narrow readout cycle), the
    ``EMIT`` block (packet type and trigger id) and the timestamp block
    terminated by ``0xAB 0xAB``. Anything that does not fit is skipped.
    """

    def __init__(
        self,
        stream: BinaryIO,
        initial_cycle: int = 0,
        cycle_jump_limit: int = CYCLE_JUMP_LIMIT,
    ):
        self.stream = stream
        self.initial_cycle = initial_cycle
        self.cycle_jump_limit = cycle_jump_limit
        self.cycle = initial_cycle
        self._position = 0
        self._stats: Dict[str, int] = {
            "records": 0,
            "markers": 0,
            "header_mismatches": 0,
            "magic_mismatches": 0,
            "trailer_mismatches": 0,
            "start_acquisitions": 0,
            "stop_acquisitions": 0,
            "cycle_anomalies": 0,
        }
        self._log = logging.getLogger(__name__)

    def _read(self, size: int) -> Optional[bytes]:
        data = read_exact(self.stream, size)
        if data is not None:
            self._position += size
        return data

    def _skip(self, size: int) -> None:
        self.stream.seek(size, os.SEEK_CUR)
        self._position += size

    def _find_marker(self) -> bool:
        while True:
            byte = self._read(1)
            if byte is None:
                return False
            if byte[0] != SYNC_BYTE:
                continue
            byte = self._read(1)
            if byte is None:
                return False
            if byte[0] == SYNC_BYTE:
                return True

    def next_record(self) -> Optional[TriggerRecord]:
        """Return the next trigger record, or None once the stream is exhausted."""

        while True:
            if not self._find_marker():
                return None
            self._stats["markers"] += 1
            packet_start = self._position - 2

            header = self._read(BLOCK_SIZE)
            if header is None:
                return None
            if (header[0], header[1], header[7]) != HEADER_TAG:
                length = read_u16(header, 0)
                self._stats["header_mismatches"] += 1
                self._log.debug("Skipping %d bytes of foreign packet at %d", length, packet_start)
                self._skip(length)
                continue
            narrow_cycle = header[2]

            block = self._read(BLOCK_SIZE)
            if block is None:
                return None
            if block[:4] != EMIT_MAGIC:
                self._stats["magic_mismatches"] += 1
                self._log.debug("Missing EMIT magic in packet at %d", packet_start)
                self._skip(BLOCK_SIZE)
                continue
            packet_type = block[4]
            trigger_id = read_u16(block, 6)

            block = self._read(BLOCK_SIZE)
            if block is None:
                return None
            if block[6:8] != TRAILER_MARKER:
                self._stats["trailer_mismatches"] += 1
                self._log.debug("Missing timestamp trailer in packet at %d", packet_start)
                continue
            timestamp = read_u48(block, 0)

            if packet_type == TYPE_TRIGGER:
                return self._trigger_record(narrow_cycle, trigger_id, timestamp)
            if packet_type == TYPE_START_ACQUISITION:
                self._stats["start_acquisitions"] += 1
                self.cycle = update_counter_modulo(
                    self.cycle, narrow_cycle, CYCLE_MODULO, CYCLE_MAX_BACKWARDS
                )
            elif packet_type == TYPE_STOP_ACQUISITION:
                self._stats["stop_acquisitions"] += 1

    def _trigger_record(self, narrow_cycle: int, trigger_id: int, timestamp: int) -> TriggerRecord:
        increment = (narrow_cycle - self.cycle) & 0xFF
        if increment > self.cycle_jump_limit:
            self._stats["cycle_anomalies"] += 1
            self._log.warning(
                "Suspicious readout cycle increment %d (cycle %d -> narrow %d, trigger %d)",
                increment,
                self.cycle,
                narrow_cycle,
                trigger_id,
            )
        self.cycle = (self.cycle + increment) & U32_MASK
        self._stats["records"] += 1
        return TriggerRecord(fine_timestamp=timestamp, trigger_count=trigger_id, cycle=self.cycle)

    def rewind(self) -> None:
        """Seek back to the start of the stream and reset the readout cycle."""

        self.stream.seek(0)
        self._position = 0
        self.cycle = self.initial_cycle

    def __iter__(self) -> Iterator[TriggerRecord]:
        while True:
            record = self.next_record()
            if record is None:
                return
            yield record

    def stats(self) -> Dict[str, int]:
        return dict(self._stats)
