"""Command handlers that change configurations, versions and release rules."""

from __future__ import annotations

import copy
import queue
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional, TypeVar

from conflux.models import (
    ClientWriteResponse,
    Config,
    ConfigChangeEvent,
    ConfigChangeType,
    ConfigFormat,
    ConfigVersion,
    Release,
    StorageError,
    ValidationError,
)
from conflux.persistence import DiskStore

R = TypeVar("R")

CHANGE_QUEUE_CAPACITY = 1000


def error_response(message: str) -> ClientWriteResponse:
    """A failed response carrying only a message."""
    return ClientWriteResponse(success=False, message=message, config_id=None, data=None)


def success_response(message: str, data: Optional[dict[str, Any]]) -> ClientWriteResponse:
    """A successful response with optional payload data."""
    return ClientWriteResponse(success=True, message=message, config_id=None, data=data)


def parse_config_name_from_key(config_key: str) -> str:
    """The configuration name: the last '/'-separated part of its key."""
    return config_key.split("/")[-1]


class CommandHandlers:
    """In-memory configuration state and the commands that modify it.

    When a ``DiskStore`` is given, changed configurations and versions are
    written through to it.
    """

    def __init__(self, disk: Optional[DiskStore] = None) -> None:
        self.disk = disk
        self.configurations: dict[str, Config] = {}
        self.versions: dict[int, dict[int, ConfigVersion]] = {}
        self.name_index: dict[str, int] = {}
        self.next_config_id = 1
        self._lock = threading.RLock()
        self._subscribers: list[queue.Queue] = []

    # -- helpers -----------------------------------------------------------

    def _persist_config(self, config_key: str, config: Config) -> None:
        if self.disk is not None:
            self.disk.put_config(config_key, config)

    def _persist_version(self, version: ConfigVersion) -> None:
        if self.disk is not None:
            self.disk.put_version(version)

    def _notify(self, event: ConfigChangeEvent) -> None:
        """Deliver an event to every subscriber, dropping the oldest when one is full."""
        for subscriber in list(self._subscribers):
            try:
                subscriber.put_nowait(event)
            except queue.Full:
                try:
                    subscriber.get_nowait()
                except queue.Empty:
                    pass
                subscriber.put_nowait(event)

    def _next_version_id(self, config_id: int) -> int:
        return max(self.versions.get(config_id, {}), default=0) + 1

    # -- lookups -----------------------------------------------------------

    def execute_transaction(self, operation: Callable[[], R]) -> R:
        """Run an operation under the store lock and return its result."""
        with self._lock:
            return operation()

    def find_config_by_id(self, config_id: int) -> tuple[str, Config]:
        """The key and a copy of the configuration with this id."""
        with self._lock:
            for key, config in self.configurations.items():
                if config.id == config_id:
                    return key, copy.deepcopy(config)
        raise ValidationError(f"Configuration with ID {config_id} not found")

    def validate_version_exists(self, config_id: int, version_id: int) -> None:
        with self._lock:
            if version_id not in self.versions.get(config_id, {}):
                raise ValidationError(
                    f"Version {version_id} does not exist for config {config_id}"
                )

    # -- commands ----------------------------------------------------------

    def handle_create_version(
        self,
        config_id: int,
        content: bytes,
        format: Optional[ConfigFormat],
        creator_id: int,
        description: str,
    ) -> ClientWriteResponse:
        with self._lock:
            try:
                config_key, existing = self.find_config_by_id(config_id)
            except ValidationError:
                return error_response(f"Configuration with ID {config_id} not found")

            version_id = self._next_version_id(config_id)
            if format is None:
                latest = self.versions.get(config_id, {}).get(existing.latest_version_id)
                format = latest.format if latest is not None else ConfigFormat.JSON

            version = ConfigVersion.create(
                version_id, config_id, bytes(content), format, creator_id, description
            )

            try:
                self._persist_version(version)
            except StorageError as exc:
                return error_response(f"Failed to persist version: {exc}")

            config = self.configurations.get(config_key)
            if config is not None:
                config.latest_version_id = version_id
                config.updated_at = datetime.now(timezone.utc)
                try:
                    self._persist_config(config_key, config)
                except StorageError as exc:
                    return error_response(f"Failed to persist config update: {exc}")

            self.versions.setdefault(config_id, {})[version_id] = version

            self._notify(
                ConfigChangeEvent(
                    config_id=config_id,
                    namespace=existing.namespace,
                    name=existing.name,
                    version_id=version_id,
                    change_type=ConfigChangeType.UPDATED,
                )
            )

        return success_response(
            "Configuration version created successfully",
            {"config_id": config_id, "version_id": version_id},
        )

    def handle_update_release_rules(
        self, config_id: int, releases: Iterable[Release]
    ) -> ClientWriteResponse:
        releases = list(releases)
        with self._lock:
            try:
                config_key, existing = self.find_config_by_id(config_id)
            except ValidationError:
                return error_response(f"Configuration with ID {config_id} not found")

            for release in releases:
                try:
                    self.validate_version_exists(config_id, release.version_id)
                except ValidationError:
                    return error_response(
                        f"Version {release.version_id} does not exist for config {config_id}"
                    )

            config = self.configurations.get(config_key)
            if config is not None:
                config.releases = copy.deepcopy(releases)
                config.updated_at = datetime.now(timezone.utc)
                try:
                    self._persist_config(config_key, config)
                except StorageError as exc:
                    return error_response(f"Failed to persist config update: {exc}")

            self._notify(
                ConfigChangeEvent(
                    config_id=config_id,
                    namespace=existing.namespace,
                    name=existing.name,
                    version_id=0,
                    change_type=ConfigChangeType.RELEASE_UPDATED,
                )
            )

        return success_response(
            "Release rules updated successfully",
            {"config_id": config_id, "release_count": len(releases)},
        )

    def handle_delete_config(self, config_id: int) -> ClientWriteResponse:
        with self._lock:
            try:
                config_key, config = self.find_config_by_id(config_id)
            except ValidationError:
                return error_response(f"Configuration with ID {config_id} not found")

            self.configurations.pop(config_key, None)
            self.versions.pop(config_id, None)
            self.name_index.pop(config_key, None)

            self._notify(
                ConfigChangeEvent(
                    config_id=config_id,
                    namespace=config.namespace,
                    name=config.name,
                    version_id=0,
                    change_type=ConfigChangeType.DELETED,
                )
            )

        return success_response(
            "Configuration deleted successfully", {"config_id": config_id}
        )

    def handle_delete_versions(
        self, config_id: int, version_ids: Iterable[int]
    ) -> ClientWriteResponse:
        with self._lock:
            try:
                self.find_config_by_id(config_id)
            except ValidationError:
                return error_response(f"Configuration with ID {config_id} not found")

            deleted_count = 0
            config_versions = self.versions.get(config_id)
            if config_versions is not None:
                for version_id in version_ids:
                    if config_versions.pop(version_id, None) is not None:
                        deleted_count += 1

        return success_response(
            f"Deleted {deleted_count} versions successfully",
            {"config_id": config_id, "deleted_count": deleted_count},
        )