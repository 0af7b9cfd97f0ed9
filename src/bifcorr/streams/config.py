from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

OUTPUT_FORMATS = {"root", "csv"}


@dataclass
class WindowConfig:
    size: int = 20
    min_matched: int = 11


@dataclass
class CorrelationConfig:
    tolerance_ticks: int = 1
    bif_fine_bits: int = 5
    max_resyncs: Optional[int] = 100  # None disables the cap
    bif_initial_cycle: int = 0
    ahcal_initial_cycle: int = 0
    ahcal_cycle_jump_limit: int = 50
    window: WindowConfig = field(default_factory=WindowConfig)

    def validate(self) -> "CorrelationConfig":
        if self.window.size < 1:
            raise ValueError("window.size must be at least 1")
        if not 0 <= self.window.min_matched <= self.window.size:
            raise ValueError("window.min_matched must lie between 0 and window.size")
        if self.tolerance_ticks < 0:
            raise ValueError("tolerance_ticks may not be negative")
        if self.bif_fine_bits < 0:
            raise ValueError("bif_fine_bits may not be negative")
        if self.max_resyncs is not None and self.max_resyncs < 0:
            raise ValueError("max_resyncs may not be negative")
        return self


@dataclass
class OutputConfig:
    format: str = "root"  # root | csv
    tree_name: str = "combined"
    absent_trigger: int = 0xFFFFFFFF

    @property
    def format_enum(self) -> str:
        fmt = self.format.lower()
        if fmt not in OUTPUT_FORMATS:
            raise ValueError(f"Unsupported output format '{self.format}'")
        return fmt

    def validate(self) -> "OutputConfig":
        self.format = self.format_enum
        return self


@dataclass
class SupplementaryConfig:
    tree: str = "DelayWireChambers"
    event_branch: str = "event"
    time_branch: str = "timeSinceStart"


@dataclass
class RunConfig:
    correlation: CorrelationConfig = field(default_factory=CorrelationConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    supplementary: SupplementaryConfig = field(default_factory=SupplementaryConfig)


def _load_json(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {**base}
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merged[key] = _merge(base[key], value)  # type: ignore[index]
        else:
            merged[key] = value
    return merged


def load_config(path: Path | str | None = None, overrides: Sequence[str] | None = None) -> RunConfig:
    """
    Load a correlation run configuration from JSON and apply CLI-style overrides.

    Overrides are expressed as dotted `key=value` pairs, e.g.:
        ["correlation.window.size=30", "output.format=csv"]

    Without *path* the defaults are used as the base.
    """
    data: Dict[str, Any] = _load_json(Path(path)) if path is not None else {}
    override_data: Dict[str, Any] = {}
    for override in overrides or []:
        key, raw_value = _parse_override(override)
        _assign_nested(override_data, key, raw_value)
    merged = _merge(data, override_data)

    corr = merged.get("correlation") or {}
    window = corr.get("window") or {}
    output = merged.get("output") or {}
    supplementary = merged.get("supplementary") or {}
    max_resyncs = corr.get("max_resyncs", 100)
    correlation = CorrelationConfig(
        tolerance_ticks=int(corr.get("tolerance_ticks", 1)),
        bif_fine_bits=int(corr.get("bif_fine_bits", 5)),
        max_resyncs=None if max_resyncs is None else int(max_resyncs),
        bif_initial_cycle=int(corr.get("bif_initial_cycle", 0)),
        ahcal_initial_cycle=int(corr.get("ahcal_initial_cycle", 0)),
        ahcal_cycle_jump_limit=int(corr.get("ahcal_cycle_jump_limit", 50)),
        window=WindowConfig(
            size=int(window.get("size", 20)),
            min_matched=int(window.get("min_matched", 11)),
        ),
    ).validate()
    output_cfg = OutputConfig(
        format=str(output.get("format", "root")),
        tree_name=str(output.get("tree_name", "combined")),
        absent_trigger=int(output.get("absent_trigger", 0xFFFFFFFF)),
    ).validate()
    return RunConfig(
        correlation=correlation,
        output=output_cfg,
        supplementary=SupplementaryConfig(
            tree=str(supplementary.get("tree", "DelayWireChambers")),
            event_branch=str(supplementary.get("event_branch", "event")),
            time_branch=str(supplementary.get("time_branch", "timeSinceStart")),
        ),
    )


def _parse_override(item: str) -> tuple[str, Any]:
    if "=" not in item:
        raise ValueError(f"Override '{item}' must use key=value syntax")
    key, raw_value = item.split("=", 1)
    key = key.strip()
    if not key:
        raise ValueError("Override key may not be empty")
    value = _coerce_value(raw_value.strip())
    return key, value


def _coerce_value(raw: str) -> Any:
    if raw.lower() in {"true", "false"}:
        return raw.lower() == "true"
    if raw.lower() in {"null", "none"}:
        return None
    try:
        if raw.lower().startswith("0x"):
            return int(raw, 16)
        if "." in raw or "e" in raw.lower():
            return float(raw)
        return int(raw)
    except ValueError:
        return raw


def _assign_nested(target: Dict[str, Any], dotted_key: str, value: Any) -> None:
    cursor = target
    parts = dotted_key.split(".")
    for part in parts[:-1]:
        cursor = cursor.setdefault(part, {})
    cursor[parts[-1]] = value
