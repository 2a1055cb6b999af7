"""Domain types, commands, errors and key encodings for the configuration store."""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional, Union

CF_CONFIGS = "configs"
CF_VERSIONS = "versions"
CF_LOGS = "logs"
CF_META = "meta"
COLUMN_FAMILIES = (CF_CONFIGS, CF_VERSIONS, CF_LOGS, CF_META)

NEXT_CONFIG_ID_KEY = b"\x01"
NAME_INDEX_PREFIX = b"\x04"

_U64 = struct.Struct(">Q")


class ConfluxError(Exception):
    """Base class for store errors."""


class StorageError(ConfluxError):
    """Raised when the persistent storage cannot be read or written."""


class ValidationError(ConfluxError):
    """Raised when a request refers to something that does not exist or is invalid."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class ConfigNamespace:
    """Tenant, application and environment a configuration belongs to."""

    tenant: str
    app: str
    env: str

    def to_dict(self) -> dict[str, str]:
        return {"tenant": self.tenant, "app": self.app, "env": self.env}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ConfigNamespace":
        return cls(tenant=data["tenant"], app=data["app"], env=data["env"])


class ConfigFormat(Enum):
    """Format of a configuration's content."""

    JSON = "json"
    YAML = "yaml"
    TOML = "toml"
    PROPERTIES = "properties"
    XML = "xml"


@dataclass
class Release:
    """A release rule: clients carrying all `labels` receive `version_id`."""

    labels: dict[str, str]
    version_id: int
    priority: int = 0

    @classmethod
    def default(cls, version_id: int) -> "Release":
        """A release with no labels, matching every client."""
        return cls(labels={}, version_id=version_id, priority=0)

    def is_default(self) -> bool:
        return not self.labels

    def matches(self, client_labels: Mapping[str, str]) -> bool:
        return all(client_labels.get(key) == value for key, value in self.labels.items())

    def to_dict(self) -> dict[str, Any]:
        return {
            "labels": dict(self.labels),
            "version_id": self.version_id,
            "priority": self.priority,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Release":
        return cls(
            labels=dict(data.get("labels", {})),
            version_id=data["version_id"],
            priority=data.get("priority", 0),
        )


@dataclass
class Config:
    """Configuration metadata: identity, release rules and latest version."""

    id: int
    namespace: ConfigNamespace
    name: str
    latest_version_id: int
    releases: list[Release] = field(default_factory=list)
    schema: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def find_matching_release(self, client_labels: Mapping[str, str]) -> Optional[Release]:
        """The highest-priority release matching the labels; the first wins ties."""
        matching = [r for r in self.releases if r.matches(client_labels)]
        if not matching:
            return None
        return max(matching, key=lambda r: r.priority)

    def get_default_release(self) -> Optional[Release]:
        return next((r for r in self.releases if r.is_default()), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "namespace": self.namespace.to_dict(),
            "name": self.name,
            "latest_version_id": self.latest_version_id,
            "releases": [r.to_dict() for r in self.releases],
            "schema": self.schema,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Config":
        return cls(
            id=data["id"],
            namespace=ConfigNamespace.from_dict(data["namespace"]),
            name=data["name"],
            latest_version_id=data["latest_version_id"],
            releases=[Release.from_dict(r) for r in data.get("releases", [])],
            schema=data.get("schema"),
            created_at=_parse_time(data["created_at"]),
            updated_at=_parse_time(data["updated_at"]),
        )


def content_hash(content: bytes) -> str:
    """Lower-case hex SHA-256 digest of the content."""
    return hashlib.sha256(content).hexdigest()


@dataclass
class ConfigVersion:
    """One immutable piece of content for a configuration."""

    id: int
    config_id: int
    content: bytes
    content_hash: str
    format: ConfigFormat
    creator_id: int
    created_at: datetime
    description: str

    @classmethod
    def create(
        cls,
        id: int,
        config_id: int,
        content: bytes,
        format: ConfigFormat,
        creator_id: int,
        description: str,
    ) -> "ConfigVersion":
        """Build a version stamped now, with its content hash computed."""
        content = bytes(content)
        return cls(
            id=id,
            config_id=config_id,
            content=content,
            content_hash=content_hash(content),
            format=format,
            creator_id=creator_id,
            created_at=_utcnow(),
            description=description,
        )

    def verify_integrity(self) -> bool:
        return content_hash(self.content) == self.content_hash

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "config_id": self.config_id,
            "content": list(self.content),
            "content_hash": self.content_hash,
            "format": self.format.value,
            "creator_id": self.creator_id,
            "created_at": self.created_at.isoformat(),
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ConfigVersion":
        return cls(
            id=data["id"],
            config_id=data["config_id"],
            content=bytes(data["content"]),
            content_hash=data["content_hash"],
            format=ConfigFormat(data["format"]),
            creator_id=data["creator_id"],
            created_at=_parse_time(data["created_at"]),
            description=data["description"],
        )


@dataclass(frozen=True)
class CreateConfig:
    namespace: ConfigNamespace
    name: str
    content: bytes
    format: ConfigFormat
    schema: Optional[str]
    creator_id: int
    description: str


@dataclass(frozen=True)
class UpdateConfig:
    config_id: int
    namespace: ConfigNamespace
    name: str
    content: bytes
    format: ConfigFormat
    schema: Optional[str]
    description: str


@dataclass(frozen=True)
class CreateVersion:
    config_id: int
    content: bytes
    format: Optional[ConfigFormat]
    creator_id: int
    description: str


@dataclass(frozen=True)
class ReleaseVersion:
    config_id: int
    version_id: int


@dataclass(frozen=True)
class UpdateReleaseRules:
    config_id: int
    releases: tuple[Release, ...]


@dataclass(frozen=True)
class DeleteConfig:
    config_id: int


@dataclass(frozen=True)
class DeleteVersions:
    config_id: int
    version_ids: tuple[int, ...]


RaftCommand = Union[
    CreateConfig,
    UpdateConfig,
    CreateVersion,
    ReleaseVersion,
    UpdateReleaseRules,
    DeleteConfig,
    DeleteVersions,
]


@dataclass
class ClientWriteResponse:
    """Outcome of applying a command."""

    success: bool
    message: str
    config_id: Optional[int] = None
    data: Optional[dict[str, Any]] = None


class ConfigChangeType(Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    RELEASE_UPDATED = "release_updated"


@dataclass(frozen=True)
class ConfigChangeEvent:
    config_id: int
    namespace: ConfigNamespace
    name: str
    version_id: int
    change_type: ConfigChangeType


def make_config_key(namespace: ConfigNamespace, name: str) -> str:
    """Key of a configuration: tenant/app/env/name."""
    return f"{namespace.tenant}/{namespace.app}/{namespace.env}/{name}"


def make_version_key(config_id: int, version_id: int) -> bytes:
    """Sixteen bytes: config id then version id, both big-endian u64."""
    return _U64.pack(config_id) + _U64.pack(version_id)


def make_name_index_key(namespace: ConfigNamespace, name: str) -> bytes:
    """Name index key in the meta family: 0x04 then the configuration key."""
    return NAME_INDEX_PREFIX + make_config_key(namespace, name).encode("utf-8")