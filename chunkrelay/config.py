"""Transfer configuration"""

from dataclasses import dataclass, fields, asdict
from pathlib import Path
from typing import Optional, Union
import logging

import yaml

from .exceptions import ConfigError

logger = logging.getLogger(__name__)

MIB = 1024 * 1024

# Chunk size presets offered to users (MB)
CHUNK_SIZE_PRESETS_MB = (9.5, 49, 99, 499)
DEFAULT_CHUNK_SIZE_MB = 9.5

# Files above this size need bypass_limit
LARGE_FILE_LIMIT = 500 * MIB


@dataclass
class TransferConfig:
    """Tunable transfer options.

    Engines hold a reference to one instance and read it on every
    admission cycle, so edits made while a transfer runs are picked up
    without restarting it.
    """
    chunk_size_mb: float = DEFAULT_CHUNK_SIZE_MB
    bypass_limit: bool = False

    parallel_uploads: bool = False
    upload_workers: int = 2
    parallel_downloads: bool = True
    download_workers: int = 3

    base_delay_ms: int = 1500  # between chunk starts
    jitter_ms: int = 1000

    safe_mode: bool = True
    cooldown_seconds: float = 60.0

    session_timeout: float = 15 * 60  # seconds without activity
    sweep_interval: float = 60.0

    scan_page_size: int = 50
    scan_page_delay: float = 0.2

    poll_interval: float = 0.05
    repair_delay: float = 1.0
    repair_linger: float = 5.0

    def __post_init__(self):
        self.validate()

    def validate(self):
        """Raise ConfigError on values the engines cannot work with"""
        if self.chunk_size_mb <= 0:
            raise ConfigError(f"chunk_size_mb must be positive, got {self.chunk_size_mb}")
        for name in ('upload_workers', 'download_workers', 'scan_page_size'):
            if getattr(self, name) < 1:
                raise ConfigError(f"{name} must be at least 1")
        for name in ('base_delay_ms', 'jitter_ms', 'cooldown_seconds',
                     'scan_page_delay', 'repair_delay', 'repair_linger'):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must not be negative")
        if self.poll_interval <= 0:
            raise ConfigError("poll_interval must be positive")

    @property
    def upload_concurrency(self) -> int:
        return self.upload_workers if self.parallel_uploads else 1

    @property
    def download_concurrency(self) -> int:
        return self.download_workers if self.parallel_downloads else 1

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "TransferConfig":
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in data.items():
            if key not in known:
                logger.warning(f"Ignoring unknown config option: {key}")
                continue
            values[key] = value
        try:
            return cls(**values)
        except TypeError as e:
            raise ConfigError(f"Invalid config: {e}") from e


def chunk_size_bytes(chunk_size_mb: float) -> int:
    """Convert a chunk size in MB to bytes"""
    return int(round(chunk_size_mb * MIB))


def load_config(path: Optional[Union[str, Path]] = None, **overrides) -> TransferConfig:
    """Load config from a YAML file, then apply keyword overrides.

    Overrides set to None are skipped so CLI flags can be passed through
    unconditionally.
    """
    data = {}
    if path is not None:
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        try:
            with open(path, 'r') as f:
                loaded = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse {path}: {e}") from e
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"{path} must contain a mapping")
        data.update(loaded)
        logger.debug(f"Loaded config from {path}")

    data.update({k: v for k, v in overrides.items() if v is not None})
    return TransferConfig.from_dict(data)
