"""
Configuration Management

Handles loading configuration from environment variables and config files.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .discovery import STRATEGY_LATENCY, STRATEGY_MAX, STRATEGY_RANDOM, STRATEGY_ROUND_ROBIN

logger = logging.getLogger(__name__)

ENV_PREFIX = 'MERKLESTORE_'

SELECTION_STRATEGIES = (STRATEGY_MAX, STRATEGY_ROUND_ROBIN, STRATEGY_RANDOM, STRATEGY_LATENCY)


def _env(name: str) -> Optional[str]:
    return os.getenv(ENV_PREFIX + name)


def _parse_nodes(value: str) -> List[str]:
    nodes = []
    for node in value.split(','):
        node = node.strip()
        if not node:
            continue
        host, _, port = node.rpartition(':')
        if not host or not port.isdigit():
            logger.warning(f"Ignoring invalid storage node {node!r} (use host:port)")
            continue
        nodes.append(node)
    return nodes


@dataclass
class Config:
    """
    Storage client configuration.

    Configuration priority (highest to lowest):
    1. Environment variables (MERKLESTORE_*)
    2. Config file (config.json)
    3. Default values
    """
    # Network
    storage_nodes: List[str] = field(default_factory=list)  # "host:port"
    selection_strategy: str = 'max'

    # Layout
    chunk_size: int = 256 * 1024  # 256KB

    # Replication
    replica_count: int = 1
    download_replicas: int = 3

    # Performance
    workers: int = 8
    retry_budget: int = 3

    # Timeouts (seconds)
    upload_timeout: float = 300.0
    download_timeout: float = 300.0
    request_timeout: float = 30.0
    probe_timeout: float = 5.0

    # Verification
    verify: bool = True

    # Storage
    ledger_path: Path = field(default_factory=lambda: Path('./merklestore_data/ledger.db'))

    # Logging
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        load_dotenv()

        config = cls()
        config._apply_env()
        return config

    def _apply_env(self):
        nodes = _env('STORAGE_NODES')
        if nodes:
            self.storage_nodes = _parse_nodes(nodes)

        self.selection_strategy = _env('STRATEGY') or self.selection_strategy

        for key, cast in [('chunk_size', int), ('replica_count', int),
                          ('download_replicas', int), ('workers', int),
                          ('retry_budget', int), ('upload_timeout', float),
                          ('download_timeout', float), ('request_timeout', float),
                          ('probe_timeout', float)]:
            value = _env(key.upper())
            if value:
                try:
                    setattr(self, key, cast(value))
                except ValueError:
                    logger.warning(f"Ignoring invalid {ENV_PREFIX}{key.upper()}={value!r}")

        verify = _env('VERIFY')
        if verify:
            self.verify = verify.lower() in ('1', 'true', 'yes')

        ledger_path = _env('LEDGER_PATH')
        if ledger_path:
            self.ledger_path = Path(ledger_path)

        self.log_level = _env('LOG_LEVEL') or self.log_level

    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        """Load configuration from a JSON file."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        config = cls()

        config.storage_nodes = list(data.get('storage_nodes', config.storage_nodes))
        config.selection_strategy = data.get('selection_strategy', config.selection_strategy)
        config.chunk_size = data.get('chunk_size', config.chunk_size)
        config.replica_count = data.get('replica_count', config.replica_count)
        config.download_replicas = data.get('download_replicas', config.download_replicas)
        config.workers = data.get('workers', config.workers)
        config.retry_budget = data.get('retry_budget', config.retry_budget)
        config.upload_timeout = data.get('upload_timeout', config.upload_timeout)
        config.download_timeout = data.get('download_timeout', config.download_timeout)
        config.request_timeout = data.get('request_timeout', config.request_timeout)
        config.probe_timeout = data.get('probe_timeout', config.probe_timeout)
        config.verify = data.get('verify', config.verify)
        if 'ledger_path' in data:
            config.ledger_path = Path(data['ledger_path'])
        config.log_level = data.get('log_level', config.log_level)

        return config

    def validate(self):
        """Raise ValueError on settings no transfer could run with."""
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if self.replica_count < 1:
            raise ValueError("replica_count must be at least 1")
        if self.workers < 1:
            raise ValueError("workers must be at least 1")
        if self.retry_budget < 0:
            raise ValueError("retry_budget must not be negative")
        if self.selection_strategy not in SELECTION_STRATEGIES:
            raise ValueError(
                f"selection_strategy must be one of {', '.join(SELECTION_STRATEGIES)}, "
                f"got {self.selection_strategy!r}"
            )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'storage_nodes': list(self.storage_nodes),
            'selection_strategy': self.selection_strategy,
            'chunk_size': self.chunk_size,
            'replica_count': self.replica_count,
            'download_replicas': self.download_replicas,
            'workers': self.workers,
            'retry_budget': self.retry_budget,
            'upload_timeout': self.upload_timeout,
            'download_timeout': self.download_timeout,
            'request_timeout': self.request_timeout,
            'probe_timeout': self.probe_timeout,
            'verify': self.verify,
            'ledger_path': str(self.ledger_path),
            'log_level': self.log_level,
        }

    def save(self, path: Path):
        """Save configuration to a JSON file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from file and environment.

    Environment variables override file settings.
    """
    config = Config()

    if config_path and Path(config_path).exists():
        config = Config.from_file(Path(config_path))

    load_dotenv()
    config._apply_env()

    return config


# Example config file template
EXAMPLE_CONFIG = """
{
  "storage_nodes": ["10.0.0.11:5678", "10.0.0.12:5678", "10.0.0.13:5678"],
  "selection_strategy": "max",
  "chunk_size": 262144,
  "replica_count": 1,
  "workers": 8,
  "retry_budget": 3,
  "upload_timeout": 300,
  "download_timeout": 300,
  "ledger_path": "./merklestore_data/ledger.db",
  "log_level": "INFO"
}
"""
