"""
Persisted Record Store

YAML file holding the connection tree (connections -> devices -> points).
Every save keeps a timestamped backup; the oldest beyond max_versions are
removed.
"""

import os
from datetime import datetime, timezone
from pathlib import Path

import yaml

from modbus_gateway.common.config import (
    ConnectionConfig,
    dump_gateway_config,
    load_gateway_config,
)
from modbus_gateway.common.exceptions import ConfigError
from modbus_gateway.common.logging_setup import get_service_logger

logger = get_service_logger("store")


class ConfigStore:
    """
    File store for the connection tree.

    Stores:
    - Current record at `path`
    - Backups of previous records next to it (last max_versions)
    """

    def __init__(self, path: Path | str, max_versions: int = 5):
        self.path = Path(path)
        self.max_versions = max_versions
        self.backup_dir = self.path.parent / f".{self.path.name}.history"

    def load(self) -> dict[str, ConnectionConfig]:
        """
        Load the record.

        Returns:
            Connection configs by name (empty if the file does not exist)

        Raises:
            ConfigError: if the file is not valid YAML
        """
        if not self.path.exists():
            logger.info(f"No record at {self.path}, starting empty")
            return {}

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"invalid record {self.path}: {e}")

        if data is not None and not isinstance(data, dict):
            raise ConfigError(f"invalid record {self.path}: expected a mapping")

        connections = load_gateway_config(data)
        logger.info(
            f"Loaded {len(connections)} connections from {self.path}",
            extra={"connection_count": len(connections)},
        )
        return connections

    def save(self, connections: dict[str, ConnectionConfig]) -> None:
        """Write the record atomically, backing up the previous one"""
        data = dump_gateway_config(connections)
        self.path.parent.mkdir(parents=True, exist_ok=True)

        if self.path.exists():
            self._backup()

        tmp_path = self.path.with_name(f".{self.path.name}.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        os.replace(tmp_path, self.path)

        logger.debug(f"Saved {len(connections)} connections to {self.path}")

    def get_versions(self) -> list[str]:
        """Backup file names, newest first"""
        if not self.backup_dir.exists():
            return []
        return [p.name for p in sorted(self.backup_dir.glob("v_*.yaml"), reverse=True)]

    def _backup(self) -> None:
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        backup = self.backup_dir / f"v_{stamp}.yaml"
        backup.write_bytes(self.path.read_bytes())
        self._cleanup_old_versions()

    def _cleanup_old_versions(self) -> None:
        version_files = sorted(self.backup_dir.glob("v_*.yaml"), reverse=True)
        for old_file in version_files[self.max_versions:]:
            old_file.unlink()
            logger.debug(f"Removed old record version: {old_file.name}")
