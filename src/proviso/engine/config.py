"""
Proviso run configuration

Defaults for a run, optionally read from a YAML file. Command-line flags
override whatever the file says.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Optional, Union

import yaml

from proviso.engine.errors import ParseError
from proviso.engine.scheduler import STRATEGIES

CONFIG_ENV = "PROVISO_CONFIG"

TRUE_WORDS = ("yes", "true", "on", "1")
FALSE_WORDS = ("no", "false", "off", "0")


@dataclass
class RunConfig:
    strategy: str = "parallel"
    probe_timeout: float = 10.0
    probe_retries: int = 3
    probe_delay: float = 2.0
    verbosity: int = 0
    json_output: bool = False

    def merged(self, **overrides: Any) -> "RunConfig":
        """Copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def validate(self, file_path: Optional[str] = None) -> "RunConfig":
        """
        Check every value is usable by the scheduler and the probe.

        Raises:
            ParseError: On the first bad value
        """
        if self.strategy not in STRATEGIES:
            raise ParseError(
                f"strategy must be one of {', '.join(STRATEGIES)}, got {self.strategy!r}",
                file_path=file_path,
            )
        if self.probe_timeout <= 0:
            raise ParseError(f"probe_timeout must be positive, got {self.probe_timeout}", file_path=file_path)
        if self.probe_retries < 1:
            raise ParseError(f"probe_retries must be at least 1, got {self.probe_retries}", file_path=file_path)
        if self.probe_delay < 0:
            raise ParseError(f"probe_delay must not be negative, got {self.probe_delay}", file_path=file_path)
        if self.verbosity < 0:
            raise ParseError(f"verbosity must not be negative, got {self.verbosity}", file_path=file_path)
        return self


def load_config(path: Optional[Union[str, Path]] = None) -> RunConfig:
    """
    Read a RunConfig from ``path`` or from $PROVISO_CONFIG.

    A missing path gives the defaults. Keys live either at the top level
    or under a ``defaults`` mapping.
    """
    if path is None:
        path = os.environ.get(CONFIG_ENV)
    if not path:
        return RunConfig()

    path = Path(path)
    if not path.exists():
        raise ParseError(f"Config file not found: {path}", file_path=str(path))

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ParseError(f"YAML syntax error: {e}", file_path=str(path))
    if not isinstance(data, dict):
        raise ParseError("config must be a mapping", file_path=str(path))

    data = data.get("defaults", data)
    known = {f.name: f for f in fields(RunConfig)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ParseError(f"unknown config keys: {', '.join(unknown)}", file_path=str(path))

    values = {}
    for key, value in data.items():
        converter = {"str": str, "float": float, "int": int, "bool": _to_bool}[known[key].type]
        try:
            values[key] = converter(value)
        except (TypeError, ValueError):
            raise ParseError(f"invalid value for {key}: {value!r}", file_path=str(path))
    return RunConfig(**values).validate(str(path))


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    word = str(value).strip().lower()
    if word in TRUE_WORDS:
        return True
    if word in FALSE_WORDS:
        return False
    raise ValueError(f"not a boolean: {value!r}")
