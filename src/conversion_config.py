#!/usr/bin/env python3
"""
Conversion Configuration

Settings shared by the conversion pipeline and the command line.
Defaults can be overridden from a JSON file and then by CLI flags.
"""

import json
import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from exec_encoding import EXEC_BUFFER_SIZE

logger = logging.getLogger(__name__)

# Calls that never make sense in a replayed program: they end the executor,
# replace its image or fork it.
DEFAULT_UNSUPPORTED_CALLS = [
    "exit", "exit_group", "execve", "execveat", "clone", "clone3", "fork", "vfork",
    "rt_sigreturn", "kill", "tgkill", "tkill",
]


@dataclass
class ConversionConfig:
    """Conversion settings"""
    os: str = "linux"
    arch: str = "amd64"
    corpus_path: str = "corpus.db"
    db_version: int = 3
    exec_buffer_size: int = EXEC_BUFFER_SIZE
    deserialize_dir: Optional[str] = None
    fresh_corpus: bool = True
    unsupported_calls: List[str] = field(default_factory=lambda: list(DEFAULT_UNSUPPORTED_CALLS))

    @classmethod
    def from_file(cls, config_file: Union[str, Path]) -> "ConversionConfig":
        """
        Load settings from a JSON object; missing keys keep their defaults.

        Raises:
            OSError: the file cannot be read
            ValueError: the file is not a JSON object
        """
        config_file = Path(config_file)
        with open(config_file, 'r') as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid config file {config_file}: {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"Config file {config_file} must hold a JSON object")

        config = cls()
        config.update(data)
        logger.debug(f"Loaded configuration from {config_file}")
        return config

    def update(self, overrides: Dict[str, Any]) -> None:
        """Apply non-None overrides; unknown keys are warned about and ignored."""
        known = {f.name for f in fields(self)}
        for key, value in overrides.items():
            if key not in known:
                logger.warning(f"Ignoring unknown config key: {key}")
                continue
            if value is not None:
                setattr(self, key, value)

    def save(self, config_file: Union[str, Path]) -> None:
        with open(config_file, 'w') as f:
            json.dump(asdict(self), f, indent=2)
