from __future__ import annotations

import io
import logging

from bifcorr.demo import encode_ahcal_packet
from bifcorr.streams.ahcal import AhcalFrameDecoder

START = 0x01
STOP = 0x02
TRIGGER = 0x10


def decoder_for(data: bytes, **kwargs) -> AhcalFrameDecoder:
    return AhcalFrameDecoder(io.BytesIO(data), **kwargs)


def test_start_then_trigger_sets_cycle() -> None:
    data = encode_ahcal_packet(START, 5, 0, 100) + encode_ahcal_packet(TRIGGER, 7, 3, 200)
    decoder = decoder_for(data)
    records = list(decoder)
    assert len(records) == 1
    record = records[0]
    assert record.cycle == 5 + ((7 - 5) & 0xFF) == 7
    assert record.trigger_count == 3
    assert record.fine_timestamp == 200
    assert decoder.stats()["start_acquisitions"] == 1


def test_large_cycle_increment_is_reported_but_applied(caplog) -> None:
    data = encode_ahcal_packet(START, 5, 0, 100) + encode_ahcal_packet(TRIGGER, 65, 1, 200)
    decoder = decoder_for(data)
    with caplog.at_level(logging.WARNING, logger="bifcorr.streams.ahcal"):
        record = decoder.next_record()
    assert record is not None
    assert record.cycle == 65
    assert decoder.stats()["cycle_anomalies"] == 1
    assert any("increment 60" in message for message in caplog.messages)


def test_cycle_jump_limit_is_configurable() -> None:
    data = encode_ahcal_packet(START, 5, 0, 100) + encode_ahcal_packet(TRIGGER, 65, 1, 200)
    decoder = decoder_for(data, cycle_jump_limit=100)
    assert decoder.next_record() is not None
    assert decoder.stats()["cycle_anomalies"] == 0


def test_start_acquisition_extends_narrow_cycle() -> None:
    data = (
        encode_ahcal_packet(START, 254, 0, 1)
        + encode_ahcal_packet(TRIGGER, 254, 1, 2)
        + encode_ahcal_packet(STOP, 254, 0, 3)
        + encode_ahcal_packet(START, 255, 0, 4)
        + encode_ahcal_packet(TRIGGER, 255, 2, 5)
        + encode_ahcal_packet(START, 0, 0, 6)
        + encode_ahcal_packet(TRIGGER, 0, 3, 7)
        + encode_ahcal_packet(START, 2, 0, 8)
        + encode_ahcal_packet(TRIGGER, 2, 4, 9)
    )
    decoder = decoder_for(data, initial_cycle=250)
    assert [rec.cycle for rec in decoder] == [254, 255, 256, 258]
    assert decoder.stats()["stop_acquisitions"] == 1


def test_garbage_before_marker_is_skipped() -> None:
    garbage = bytes([0x00, 0x13, 0xCD, 0x42, 0xFF, 0xAB]) * 5
    data = garbage + encode_ahcal_packet(TRIGGER, 0, 9, 12345)
    record = decoder_for(data).next_record()
    assert record is not None
    assert record.trigger_count == 9
    assert record.fine_timestamp == 12345


def test_foreign_packet_is_skipped_by_declared_length() -> None:
    # the skipped payload holds what would otherwise look like a trigger packet
    hidden = encode_ahcal_packet(TRIGGER, 0, 99, 1)
    foreign_header = bytes([len(hidden), 0x00, 0, 0, 0, 0, 0, 0x41])
    data = b"\xCD\xCD" + foreign_header + hidden + encode_ahcal_packet(TRIGGER, 0, 7, 2)
    decoder = decoder_for(data)
    record = decoder.next_record()
    assert record is not None
    assert record.trigger_count == 7
    assert decoder.stats()["header_mismatches"] == 1


def test_missing_magic_skips_block() -> None:
    bad = bytearray(encode_ahcal_packet(TRIGGER, 0, 1, 1))
    bad[10:14] = b"XXXX"
    data = bytes(bad) + encode_ahcal_packet(TRIGGER, 0, 2, 2)
    decoder = decoder_for(data)
    records = list(decoder)
    assert [rec.trigger_count for rec in records] == [2]
    assert decoder.stats()["magic_mismatches"] == 1


def test_missing_trailer_discards_packet() -> None:
    bad = bytearray(encode_ahcal_packet(TRIGGER, 0, 1, 1))
    bad[-1] = 0x00
    data = bytes(bad) + encode_ahcal_packet(TRIGGER, 0, 2, 2)
    decoder = decoder_for(data)
    assert [rec.trigger_count for rec in decoder] == [2]
    assert decoder.stats()["trailer_mismatches"] == 1


def test_truncated_packet_ends_stream() -> None:
    data = encode_ahcal_packet(TRIGGER, 0, 1, 1) + encode_ahcal_packet(TRIGGER, 0, 2, 2)[:-3]
    decoder = decoder_for(data)
    assert decoder.next_record() is not None
    assert decoder.next_record() is None


def test_rewind_resets_cycle() -> None:
    data = encode_ahcal_packet(START, 3, 0, 1) + encode_ahcal_packet(TRIGGER, 4, 1, 2)
    decoder = decoder_for(data)
    assert [rec.cycle for rec in decoder] == [4]
    decoder.rewind()
    assert decoder.cycle == 0
    assert [rec.cycle for rec in decoder] == [4]
