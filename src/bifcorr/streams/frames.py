from __future__ import annotations

from dataclasses import dataclass
from typing import BinaryIO, Optional

U32_MASK = 0xFFFFFFFF
U64_MASK = 0xFFFFFFFFFFFFFFFF


@dataclass(frozen=True)
class TriggerRecord:
    """One trigger decoded from a raw stream."""

    fine_timestamp: int
    trigger_count: int
    cycle: int


@dataclass
class StreamBaseline:
    """First-seen values of a stream; unset fields count as zero."""

    trigger_count: Optional[int] = None
    cycle: Optional[int] = None

    def trigger_offset(self) -> int:
        return self.trigger_count or 0

    def cycle_offset(self) -> int:
        return self.cycle or 0


def _read_le(data: bytes, offset: int, width: int) -> int:
    if offset < 0 or offset + width > len(data):
        raise ValueError(f"cannot read {width} bytes at offset {offset} from {len(data)}-byte buffer")
    value = 0
    for index in range(width):
        value |= data[offset + index] << (8 * index)
    return value


def read_u16(data: bytes, offset: int = 0) -> int:
    return _read_le(data, offset, 2)


def read_u32(data: bytes, offset: int = 0) -> int:
    return _read_le(data, offset, 4)


def read_u48(data: bytes, offset: int = 0) -> int:
    return _read_le(data, offset, 6)


def read_u64(data: bytes, offset: int = 0) -> int:
    return _read_le(data, offset, 8)


def read_exact(stream: BinaryIO, size: int) -> Optional[bytes]:
    """Read exactly *size* bytes, or return None when the stream runs short."""

    data = stream.read(size)
    if data is None or len(data) < size:
        return None
    return bytes(data)


def update_counter_modulo(
    old: int,
    new_mod: int,
    modulo: int,
    max_backwards: int,
    *,
    bits: int = 32,
) -> int:
    """
    Extend a narrow rolling counter into a wide one.

    The result carries *new_mod* in its low bits and is the smallest value not
    below ``old - max_backwards``, so the counter may slip back by up to
    *max_backwards* counts without being mistaken for a full rollover. All
    arithmetic wraps at *bits* bits, like the unsigned hardware registers.
    """

    if modulo <= 0 or modulo & (modulo - 1):
        raise ValueError(f"modulo must be a power of two, got {modulo}")
    width_mask = (1 << bits) - 1
    mask = modulo - 1
    value = (old - max_backwards) & width_mask
    if (value & mask) > (new_mod & mask):
        value = (value + modulo) & width_mask
    return (value & ~mask & width_mask) | (new_mod & mask)


def to_int32(value: int) -> int:
    value &= U32_MASK
    return value - (1 << 32) if value & 0x80000000 else value
