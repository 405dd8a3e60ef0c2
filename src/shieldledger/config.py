"""
Runtime Configuration

Knobs that change how a client runs, not what the ledger agrees on. Protocol
constants live in params.py.
"""

from __future__ import annotations
import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import List, Optional

from .keys import SessionContext
from .params import PARAMS_DEFAULT, PARAMS_SMALL, LedgerParams

logger = logging.getLogger(__name__)

PACKAGE_LOGGER = 'shieldledger'

_PRESETS = {
    'default': PARAMS_DEFAULT,
    'small': PARAMS_SMALL,
}


@dataclass
class StorageConfig:
    """Local cache configuration."""
    data_dir: str = "./data"
    db_name: str = "shieldledger.db"
    enabled: bool = True


@dataclass
class ReconstructionConfig:
    """Reconstruction engine configuration."""
    max_workers: int = 4
    max_nonce_scan: int = PARAMS_DEFAULT.max_nonce_scan


@dataclass
class LogConfig:
    """Logging configuration."""
    level: str = "INFO"
    file: Optional[str] = None
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    max_size_mb: int = 10
    backup_count: int = 3


@dataclass
class LedgerConfig:
    """
    Complete client configuration.

    All settings for reconstructing balances against one chain.
    """
    chain_id: int = 1
    params_preset: str = "default"

    storage: StorageConfig = field(default_factory=StorageConfig)
    reconstruction: ReconstructionConfig = field(default_factory=ReconstructionConfig)
    log: LogConfig = field(default_factory=LogConfig)

    @property
    def params(self) -> LedgerParams:
        return _PRESETS[self.params_preset]

    @property
    def db_path(self) -> Path:
        return Path(self.storage.data_dir) / self.storage.db_name

    def session(self, user_key: int) -> SessionContext:
        """Session for `user_key` on the configured chain."""
        return SessionContext(user_key, self.chain_id)

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if self.chain_id < 0:
            errors.append(f"Invalid chain id: {self.chain_id}")

        if self.params_preset not in _PRESETS:
            errors.append(f"Unknown params preset: {self.params_preset!r}")

        if self.storage.enabled and not self.storage.data_dir:
            errors.append("data_dir cannot be empty")

        if self.reconstruction.max_workers < 1:
            errors.append("max_workers must be at least 1")

        if self.reconstruction.max_nonce_scan < 1:
            errors.append("max_nonce_scan must be at least 1")

        if not isinstance(logging.getLevelName(self.log.level.upper()), int):
            errors.append(f"Unknown log level: {self.log.level}")

        return errors

    def to_dict(self) -> dict:
        return {
            "chain_id": self.chain_id,
            "params_preset": self.params_preset,
            "storage": asdict(self.storage),
            "reconstruction": asdict(self.reconstruction),
            "log": asdict(self.log),
        }

    def save(self, path: str) -> None:
        """Save configuration to file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

        logger.info("Configuration saved to %s", path)

    @classmethod
    def load(cls, path: str) -> LedgerConfig:
        """Load configuration from file."""
        with open(path, 'r') as f:
            data = json.load(f)

        config = cls(
            chain_id=data.get("chain_id", 1),
            params_preset=data.get("params_preset", "default"),
        )

        if "storage" in data:
            config.storage = StorageConfig(**data["storage"])

        if "reconstruction" in data:
            config.reconstruction = ReconstructionConfig(**data["reconstruction"])

        if "log" in data:
            config.log = LogConfig(**data["log"])

        logger.info("Configuration loaded from %s", path)
        return config


def setup_logging(config: LogConfig) -> logging.Logger:
    """Attach handlers to the package logger based on config."""
    level = getattr(logging, config.level.upper(), logging.INFO)

    handlers: List[logging.Handler] = [logging.StreamHandler()]

    if config.file:
        from logging.handlers import RotatingFileHandler
        file_handler = RotatingFileHandler(
            config.file,
            maxBytes=config.max_size_mb * 1024 * 1024,
            backupCount=config.backup_count,
        )
        handlers.append(file_handler)

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(config.format)
    for handler in handlers:
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)
    package_logger.setLevel(level)
    return package_logger
