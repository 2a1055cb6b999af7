"""The configuration store: in-memory state backed by durable storage."""

from __future__ import annotations

import copy
import logging
import queue
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping, Optional, Union

from conflux.handlers import (
    CHANGE_QUEUE_CAPACITY,
    CommandHandlers,
    error_response,
)
from conflux.models import (
    ClientWriteResponse,
    Config,
    ConfigChangeEvent,
    ConfigChangeType,
    ConfigFormat,
    ConfigNamespace,
    ConfigVersion,
    CreateConfig,
    CreateVersion,
    DeleteConfig,
    DeleteVersions,
    RaftCommand,
    Release,
    ReleaseVersion,
    StorageError,
    UpdateConfig,
    UpdateReleaseRules,
    ValidationError,
    content_hash,
    make_config_key,
)
from conflux.persistence import DiskStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StorageStats:
    """Counts of what the store currently holds."""

    configs_count: int
    versions_count: int
    name_index_count: int
    next_config_id: int


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Store(CommandHandlers):
    """Configurations and their versions, kept in memory and written through to disk."""

    def __init__(self, path: Union[str, Path]) -> None:
        super().__init__(DiskStore(path))
        self.load_from_disk()

    # -- subscriptions -----------------------------------------------------

    def subscribe_changes(self) -> "queue.Queue[ConfigChangeEvent]":
        """A queue that receives every change event from now on."""
        subscriber: "queue.Queue[ConfigChangeEvent]" = queue.Queue(maxsize=CHANGE_QUEUE_CAPACITY)
        with self._lock:
            self._subscribers.append(subscriber)
        return subscriber

    # -- queries -----------------------------------------------------------

    def get_config(self, namespace: ConfigNamespace, name: str) -> Optional[Config]:
        with self._lock:
            config = self.configurations.get(make_config_key(namespace, name))
            return copy.deepcopy(config) if config is not None else None

    def get_config_version(self, config_id: int, version_id: int) -> Optional[ConfigVersion]:
        with self._lock:
            version = self.versions.get(config_id, {}).get(version_id)
            return copy.deepcopy(version) if version is not None else None

    def get_published_config(
        self,
        namespace: ConfigNamespace,
        name: str,
        client_labels: Mapping[str, str],
    ) -> Optional[tuple[Config, ConfigVersion]]:
        """The configuration and the version released to a client with these labels."""
        config = self.get_config(namespace, name)
        if config is None:
            return None
        release = config.find_matching_release(client_labels) or config.get_default_release()
        version_id = release.version_id if release is not None else config.latest_version_id
        version = self.get_config_version(config.id, version_id)
        if version is None:
            return None
        return config, version

    def get_config_meta(self, config_id: int) -> Optional[Config]:
        with self._lock:
            for key in sorted(self.configurations):
                config = self.configurations[key]
                if config.id == config_id:
                    return copy.deepcopy(config)
        return None

    def list_config_versions(self, config_id: int) -> list[ConfigVersion]:
        """All versions of a configuration in version id order."""
        with self._lock:
            config_versions = self.versions.get(config_id, {})
            return [copy.deepcopy(config_versions[v]) for v in sorted(config_versions)]

    def get_latest_version(self, config_id: int) -> Optional[ConfigVersion]:
        config = self.get_config_meta(config_id)
        if config is None:
            return None
        return self.get_config_version(config_id, config.latest_version_id)

    def config_exists(self, namespace: ConfigNamespace, name: str) -> bool:
        with self._lock:
            return make_config_key(namespace, name) in self.configurations

    def list_configs_in_namespace(self, namespace: ConfigNamespace) -> list[Config]:
        """Configurations in the namespace, in key order."""
        with self._lock:
            return [
                copy.deepcopy(self.configurations[key])
                for key in sorted(self.configurations)
                if self.configurations[key].namespace == namespace
            ]

    # -- commands ----------------------------------------------------------

    def apply_command(self, command: RaftCommand) -> ClientWriteResponse:
        """Apply a command directly to the store."""
        return self._dispatch(command)

    def apply_state_change(self, command: RaftCommand) -> ClientWriteResponse:
        """Apply a command that consensus has committed."""
        return self._dispatch(command)

    def _dispatch(self, command: RaftCommand) -> ClientWriteResponse:
        match command:
            case CreateConfig():
                return self._handle_create_config(command)
            case UpdateConfig():
                return self._handle_update_config(command)
            case CreateVersion():
                return self.handle_create_version(
                    command.config_id,
                    command.content,
                    command.format,
                    command.creator_id,
                    command.description,
                )
            case ReleaseVersion():
                return self._handle_release_version(command.config_id, command.version_id)
            case UpdateReleaseRules():
                return self.handle_update_release_rules(command.config_id, command.releases)
            case DeleteConfig():
                return self.handle_delete_config(command.config_id)
            case DeleteVersions():
                return self.handle_delete_versions(command.config_id, command.version_ids)
        raise TypeError(f"Unknown command: {command!r}")

    def _handle_create_config(self, command: CreateConfig) -> ClientWriteResponse:
        namespace, name = command.namespace, command.name
        with self._lock:
            if self.config_exists(namespace, name):
                return error_response(
                    f"Configuration '{name}' already exists in namespace "
                    f"{namespace.tenant}:{namespace.app}:{namespace.env}"
                )

            config_id = self.next_config_id
            self.next_config_id += 1
            version_id = 1
            now = _now()
            content = bytes(command.content)

            config = Config(
                id=config_id,
                namespace=namespace,
                name=name,
                latest_version_id=version_id,
                releases=[Release.default(version_id)],
                schema=command.schema,
                created_at=now,
                updated_at=now,
            )
            version = ConfigVersion(
                id=version_id,
                config_id=config_id,
                content=content,
                content_hash=content_hash(content),
                format=command.format,
                creator_id=command.creator_id,
                created_at=now,
                description=command.description,
            )

            config_key = make_config_key(namespace, name)
            self.persist_config(config_key, config)
            self.persist_version(version)

            self.configurations[config_key] = copy.deepcopy(config)
            self.versions.setdefault(config_id, {})[version_id] = version
            self.name_index[config_key] = config_id

            self._notify(
                ConfigChangeEvent(
                    config_id=config_id,
                    namespace=namespace,
                    name=name,
                    version_id=version_id,
                    change_type=ConfigChangeType.CREATED,
                )
            )

        return ClientWriteResponse(
            success=True,
            message="Configuration created successfully",
            config_id=config_id,
            data={"config_id": config_id, "version_id": version_id},
        )

    def _handle_update_config(self, command: UpdateConfig) -> ClientWriteResponse:
        config_id = command.config_id
        with self._lock:
            try:
                old_key, config = self.find_config_by_id(config_id)
            except ValidationError:
                return error_response(f"Configuration with ID {config_id} not found")

            version_id = self._next_version_id(config_id)
            now = _now()
            new_key = make_config_key(command.namespace, command.name)

            config.namespace = command.namespace
            config.name = command.name
            config.latest_version_id = version_id
            config.schema = command.schema
            config.updated_at = now

            content = bytes(command.content)
            version = ConfigVersion(
                id=version_id,
                config_id=config_id,
                content=content,
                content_hash=content_hash(content),
                format=command.format,
                creator_id=0,
                created_at=now,
                description=command.description,
            )

            self.persist_config(new_key, config)
            self.persist_version(version)

            if old_key != new_key:
                self.configurations.pop(old_key, None)
                self.name_index.pop(old_key, None)
            self.configurations[new_key] = config
            self.versions.setdefault(config_id, {})[version_id] = version
            self.name_index[new_key] = config_id

            self._notify(
                ConfigChangeEvent(
                    config_id=config_id,
                    namespace=command.namespace,
                    name=command.name,
                    version_id=version_id,
                    change_type=ConfigChangeType.UPDATED,
                )
            )

        return ClientWriteResponse(
            success=True,
            message="Configuration updated successfully",
            config_id=config_id,
            data={"config_id": config_id, "version_id": version_id},
        )

    def _handle_release_version(self, config_id: int, version_id: int) -> ClientWriteResponse:
        with self._lock:
            try:
                config_key, existing = self.find_config_by_id(config_id)
            except ValidationError:
                return error_response(f"Configuration with ID {config_id} not found")
            try:
                self.validate_version_exists(config_id, version_id)
            except ValidationError:
                return error_response(
                    f"Version {version_id} does not exist for config {config_id}"
                )

            config = self.configurations.get(config_key)
            if config is not None:
                default = config.get_default_release()
                if default is not None:
                    default.version_id = version_id
                else:
                    config.releases.append(Release.default(version_id))
                config.updated_at = _now()
                try:
                    self.persist_config(config_key, config)
                except StorageError as exc:
                    return error_response(f"Failed to persist config update: {exc}")

            self._notify(
                ConfigChangeEvent(
                    config_id=config_id,
                    namespace=existing.namespace,
                    name=existing.name,
                    version_id=version_id,
                    change_type=ConfigChangeType.UPDATED,
                )
            )

        return ClientWriteResponse(
            success=True,
            message=f"Version {version_id} released successfully",
            config_id=config_id,
            data={"config_id": config_id, "version_id": version_id},
        )

    # -- persistence -------------------------------------------------------

    def load_from_disk(self) -> None:
        """Merge everything stored on disk into the in-memory state."""
        logger.info("Loading data from disk into memory cache")
        with self._lock:
            self.configurations.update(self.disk.load_configurations())
            for config_id, config_versions in self.disk.load_versions().items():
                self.versions.setdefault(config_id, {}).update(config_versions)
            self.name_index.update(self.disk.load_name_index())
            next_id = self.disk.load_next_config_id()
            if next_id is not None:
                self.next_config_id = next_id
        logger.info("Successfully loaded all data from disk")

    def persist_config(self, config_key: str, config: Config) -> None:
        self.disk.put_config(config_key, config)

    def persist_version(self, version: ConfigVersion) -> None:
        self.disk.put_version(version)

    def persist_metadata(self) -> None:
        with self._lock:
            next_id = self.next_config_id
        self.disk.put_next_config_id(next_id)

    def delete_config_from_disk(self, config_key: str, config: Config) -> None:
        self.disk.delete_config(config_key, config)

    def delete_version_from_disk(self, config_id: int, version_id: int) -> None:
        self.disk.delete_version(config_id, version_id)

    def flush_to_disk(self) -> None:
        self.disk.flush()

    def get_storage_stats(self) -> StorageStats:
        with self._lock:
            return StorageStats(
                configs_count=len(self.configurations),
                versions_count=sum(len(v) for v in self.versions.values()),
                name_index_count=len(self.name_index),
                next_config_id=self.next_config_id,
            )

    def close(self) -> None:
        self.disk.close()

    def __enter__(self) -> "Store":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()