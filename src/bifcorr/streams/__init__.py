"""
Decoders for the BIF and AHCAL raw dumps and the engine that correlates them.

The subpackage holds everything that touches raw bytes: frame decoders,
counter arithmetic, the run configuration and the correlation state machine.
Table loading, sinks and reports live one level up in `bifcorr`.
"""

from .ahcal import AhcalFrameDecoder
from .bif import BifFrameDecoder
from .config import CorrelationConfig, OutputConfig, RunConfig, SupplementaryConfig, WindowConfig, load_config
from .correlation import CorrelationEngine, CorrelationSummary, EngineState, MergedRow, RowKind, RowSink
from .errors import BifDecodeError, CorrelationError, EmptyStreamError, IrreconcilableStreamsError
from .frames import StreamBaseline, TriggerRecord, update_counter_modulo

__all__ = [
    "AhcalFrameDecoder",
    "BifFrameDecoder",
    "CorrelationConfig",
    "OutputConfig",
    "RunConfig",
    "SupplementaryConfig",
    "WindowConfig",
    "load_config",
    "CorrelationEngine",
    "CorrelationSummary",
    "EngineState",
    "MergedRow",
    "RowKind",
    "RowSink",
    "BifDecodeError",
    "CorrelationError",
    "EmptyStreamError",
    "IrreconcilableStreamsError",
    "StreamBaseline",
    "TriggerRecord",
    "update_counter_modulo",
]
