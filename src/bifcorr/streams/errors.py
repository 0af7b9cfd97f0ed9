from __future__ import annotations


class CorrelationError(ValueError):
    """Base class for errors raised while decoding or correlating streams."""


class BifDecodeError(CorrelationError):
    """A BIF frame carried a packet subtype outside {0, 1, 2, 3}."""

    def __init__(self, subtype: int, offset: int):
        super().__init__(f"unknown BIF packet subtype {subtype} at byte offset {offset}")
        self.subtype = subtype
        self.offset = offset


class EmptyStreamError(CorrelationError):
    """A raw stream did not contain a single trigger record."""


class IrreconcilableStreamsError(CorrelationError):
    """Resynchronisation gave up without finding a consistent alignment."""

    def __init__(self, message: str, resync_index: int):
        super().__init__(message)
        self.resync_index = resync_index
