"""Configuration loader for the execution engine."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict


DEFAULTS: Dict[str, Any] = {
    "step_delay": 1.0,
    "fetch_timeout": 10.0,
    "fetch_real_content": True,
    "intervention_probability": 0.0,
    "intervention_step_index": 2,
    "event_buffer_size": 500,
    "log_root": "runs",
    "data_dir": "data",
    "journal_events": False,
    "retain_finished": 50,
}

_TRUTHY = {"true", "1", "yes", "on"}


@dataclass(slots=True)
class EngineConfig:
    step_delay: float = DEFAULTS["step_delay"]
    fetch_timeout: float = DEFAULTS["fetch_timeout"]
    fetch_real_content: bool = DEFAULTS["fetch_real_content"]
    intervention_probability: float = DEFAULTS["intervention_probability"]
    intervention_step_index: int = DEFAULTS["intervention_step_index"]
    event_buffer_size: int = DEFAULTS["event_buffer_size"]
    log_root: Path = field(default_factory=lambda: Path(DEFAULTS["log_root"]))
    data_dir: Path = field(default_factory=lambda: Path(DEFAULTS["data_dir"]))
    journal_events: bool = DEFAULTS["journal_events"]
    retain_finished: int = DEFAULTS["retain_finished"]

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any]) -> "EngineConfig":
        data = dict(DEFAULTS)
        data.update(mapping)
        probability = min(1.0, max(0.0, float(data["intervention_probability"])))
        return cls(
            step_delay=max(0.0, float(data["step_delay"])),
            fetch_timeout=max(0.1, float(data["fetch_timeout"])),
            fetch_real_content=str(data["fetch_real_content"]).lower() in _TRUTHY,
            intervention_probability=probability,
            intervention_step_index=int(data["intervention_step_index"]),
            event_buffer_size=max(1, int(data["event_buffer_size"])),
            log_root=Path(data["log_root"]),
            data_dir=Path(data["data_dir"]),
            journal_events=str(data["journal_events"]).lower() in _TRUTHY,
            retain_finished=max(0, int(data["retain_finished"])),
        )


def _load_toml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("rb") as fh:
        return tomllib.load(fh)


def load_config(config_path: Path | None = None) -> EngineConfig:
    """Load configuration from environment, optional TOML file, and defaults."""

    env_map: Dict[str, Any] = {}
    for key, value in os.environ.items():
        if key.startswith("EXECUTION_"):
            env_map[key[len("EXECUTION_"):].lower()] = value

    file_map: Dict[str, Any] = {}
    path = config_path or Path("config.toml")
    if path.exists():
        file_map = _load_toml(path).get("execution", {})

    merged = {**file_map, **env_map}
    known = {key: value for key, value in merged.items() if key in DEFAULTS}
    return EngineConfig.from_mapping(known)
