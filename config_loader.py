"""Configuration loader for the off-screen slide render pipeline."""
from __future__ import annotations

import copy
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

try:
    import yaml  # type: ignore
except ModuleNotFoundError as exc:  # pragma: no cover - import guard
    raise RuntimeError(
        "PyYAML is required. Please install it with `pip install pyyaml`."
    ) from exc


DEFAULT_CONFIG: Dict[str, Any] = {
    "output": {"directory": "output"},
    "logging": {"level": "INFO", "file": "logs/run.log"},
    "render": {
        "width": 1920,
        "height": 1080,
        "background": "#000000",
        "camera": {"fov": 75, "near": 0.1, "far": 100, "z": 3},
        "fps": 60,
        "font_path": None,
    },
    "sandbox": {
        "mode": "process",
        "load_timeout_seconds": 15,
        "close_timeout_seconds": 5,
    },
    "transitions": {
        "time_scale": 100,
        "settle_seconds": 0.5,
        "exit_overlap_seconds": 0.3,
        "force_visible": True,
    },
    "capture": {
        "tiers": ["subtree", "snapshot", "manual"],
        "failure_background": "#000000",
        "failure_color": "#ff0000",
        "failure_label": "Screenshot Failed - See Console",
    },
    "export": {"filename_pattern": "slide_{number:02d}.png"},
}


def merge_config(base: Dict[str, Any], override: Dict[str, Any] | None) -> Dict[str, Any]:
    """Recursively merge ``override`` on top of a copy of ``base``."""
    merged = copy.deepcopy(base)
    if not isinstance(override, dict):
        return merged
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def section(config: Dict[str, Any] | None, name: str) -> Dict[str, Any]:
    """Return one config section with defaults filled in."""
    raw = config.get(name, {}) if isinstance(config, dict) else {}
    return merge_config(DEFAULT_CONFIG.get(name, {}), raw if isinstance(raw, dict) else {})


@dataclass
class AppConfig:
    """Wrapper around raw configuration with resolved paths."""

    raw: Dict[str, Any]
    config_path: Path
    project_root: Path
    output_dir: Path
    log_file: Path

    @property
    def logging_level(self) -> str:
        level = (
            self.raw.get("logging", {}).get("level")
            or self.raw.get("logging", {}).get("LEVEL")
            or "INFO"
        )
        return str(level).upper()

    def to_debug_dict(self) -> Dict[str, Any]:
        return {
            "output_dir": str(self.output_dir),
            "log_file": str(self.log_file),
            "render": section(self.raw, "render"),
            "sandbox": section(self.raw, "sandbox"),
        }

    def dumps(self) -> str:
        """Return a JSON string for diagnostics."""
        return json.dumps(self.to_debug_dict(), ensure_ascii=False, indent=2)


def load_config(path: Path | str, project_root: Path | None = None) -> AppConfig:
    """Load YAML config, fill defaults and resolve key directories."""
    config_path = Path(path).expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with config_path.open("r", encoding="utf-8") as fh:
        loaded = yaml.safe_load(fh) or {}
    if not isinstance(loaded, dict):
        raise ValueError(f"Config root must be a mapping: {config_path}")

    raw = merge_config(DEFAULT_CONFIG, loaded)
    root = project_root.resolve() if project_root else config_path.parent

    output_dir = (root / raw["output"].get("directory", "output")).resolve()
    log_file_name = raw["logging"].get("file", "logs/run.log")
    log_file = (root / log_file_name).resolve()

    return AppConfig(
        raw=raw,
        config_path=config_path,
        project_root=root,
        output_dir=output_dir,
        log_file=log_file,
    )
