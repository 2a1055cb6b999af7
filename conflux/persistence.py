"""Durable key-value storage for configurations, versions and metadata."""

from __future__ import annotations

import json
import logging
import sqlite3
import struct
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

from conflux.models import (
    CF_CONFIGS,
    CF_META,
    CF_VERSIONS,
    COLUMN_FAMILIES,
    NAME_INDEX_PREFIX,
    NEXT_CONFIG_ID_KEY,
    Config,
    ConfigVersion,
    StorageError,
    make_name_index_key,
    make_version_key,
)

logger = logging.getLogger(__name__)

DB_FILE_NAME = "conflux.db"

_U64 = struct.Struct(">Q")


@contextmanager
def _storage_errors(action: str) -> Iterator[None]:
    try:
        yield
    except (sqlite3.Error, OSError, ValueError, KeyError, TypeError) as exc:
        raise StorageError(f"{action}: {exc}") from exc


class DiskStore:
    """Ordered key-value tables, one per column family, kept in a directory."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        with _storage_errors("Failed to open storage"):
            self.path.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.path / DB_FILE_NAME))
            with self._conn:
                for cf in COLUMN_FAMILIES:
                    self._conn.execute(
                        f'CREATE TABLE IF NOT EXISTS "{cf}" '
                        "(key BLOB PRIMARY KEY, value BLOB NOT NULL)"
                    )

    def _put(self, cf: str, key: bytes, value: bytes) -> None:
        self._conn.execute(
            f'INSERT OR REPLACE INTO "{cf}" (key, value) VALUES (?, ?)', (key, value)
        )

    def _delete(self, cf: str, key: bytes) -> None:
        self._conn.execute(f'DELETE FROM "{cf}" WHERE key = ?', (key,))

    def _get(self, cf: str, key: bytes) -> Optional[bytes]:
        row = self._conn.execute(f'SELECT value FROM "{cf}" WHERE key = ?', (key,)).fetchone()
        return None if row is None else bytes(row[0])

    def _items(self, cf: str) -> list[tuple[bytes, bytes]]:
        rows = self._conn.execute(f'SELECT key, value FROM "{cf}" ORDER BY key').fetchall()
        return [(bytes(k), bytes(v)) for k, v in rows]

    def put_config(self, config_key: str, config: Config) -> None:
        """Store a configuration and its name index entry."""
        logger.debug("Persisting config: %s", config_key)
        data = json.dumps(config.to_dict()).encode("utf-8")
        with _storage_errors("Failed to store config"), self._conn:
            self._put(CF_CONFIGS, config_key.encode("utf-8"), data)
            self._put(
                CF_META, make_name_index_key(config.namespace, config.name), _U64.pack(config.id)
            )

    def put_version(self, version: ConfigVersion) -> None:
        logger.debug(
            "Persisting version: config_id=%s, version_id=%s", version.config_id, version.id
        )
        data = json.dumps(version.to_dict()).encode("utf-8")
        with _storage_errors("Failed to store version"), self._conn:
            self._put(CF_VERSIONS, make_version_key(version.config_id, version.id), data)

    def put_next_config_id(self, next_id: int) -> None:
        with _storage_errors("Failed to persist next_config_id"), self._conn:
            self._put(CF_META, NEXT_CONFIG_ID_KEY, _U64.pack(next_id))

    def delete_config(self, config_key: str, config: Config) -> None:
        """Remove a configuration and its name index entry."""
        logger.debug("Deleting config from disk: %s", config_key)
        with _storage_errors("Failed to delete config"), self._conn:
            self._delete(CF_CONFIGS, config_key.encode("utf-8"))
            self._delete(CF_META, make_name_index_key(config.namespace, config.name))

    def delete_version(self, config_id: int, version_id: int) -> None:
        logger.debug("Deleting version from disk: config_id=%s, version_id=%s", config_id, version_id)
        with _storage_errors("Failed to delete version"), self._conn:
            self._delete(CF_VERSIONS, make_version_key(config_id, version_id))

    def load_configurations(self) -> dict[str, Config]:
        """All stored configurations by key, in key order."""
        configurations: dict[str, Config] = {}
        with _storage_errors("Failed to read config"):
            for key, value in self._items(CF_CONFIGS):
                configurations[key.decode("utf-8")] = Config.from_dict(json.loads(value))
        logger.debug("Loaded %d configurations", len(configurations))
        return configurations

    def load_versions(self) -> dict[int, dict[int, ConfigVersion]]:
        """All stored versions grouped by config id; malformed keys are skipped."""
        versions: dict[int, dict[int, ConfigVersion]] = {}
        with _storage_errors("Failed to read version"):
            for key, value in self._items(CF_VERSIONS):
                if len(key) < 16:
                    logger.warning("Invalid version key length: %d", len(key))
                    continue
                config_id = _U64.unpack(key[:8])[0]
                version_id = _U64.unpack(key[8:16])[0]
                version = ConfigVersion.from_dict(json.loads(value))
                versions.setdefault(config_id, {})[version_id] = version
        return versions

    def load_name_index(self) -> dict[str, int]:
        """Configuration keys mapped to config ids."""
        index: dict[str, int] = {}
        with _storage_errors("Failed to read name index"):
            for key, value in self._items(CF_META):
                if not key.startswith(NAME_INDEX_PREFIX):
                    continue
                if len(value) < 8:
                    raise StorageError(f"Invalid name index value length: {len(value)}")
                index[key[1:].decode("utf-8")] = _U64.unpack(value[:8])[0]
        return index

    def load_next_config_id(self) -> Optional[int]:
        """The stored next config id, or None when none is recorded."""
        with _storage_errors("Failed to read next_config_id"):
            value = self._get(CF_META, NEXT_CONFIG_ID_KEY)
        if value is None or len(value) < 8:
            return None
        return _U64.unpack(value[:8])[0]

    def flush(self) -> None:
        with _storage_errors("Failed to flush to disk"):
            self._conn.commit()

    def close(self) -> None:
        with _storage_errors("Failed to close storage"):
            self._conn.close()

    def __enter__(self) -> "DiskStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()