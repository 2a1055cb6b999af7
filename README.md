# conflux

A versioned configuration store. Configurations live in namespaces (tenant, app,
environment). Each change creates a new version, and release rules choose which
version a client sees based on that client's labels. The store writes its data
to an SQLite file (`conflux.db`) in a directory you choose, and reloads it when
it is opened again. The package also has a small in-memory Raft log store.

It uses only the standard library.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Usage

```python
from conflux.models import (
    ConfigNamespace, ConfigFormat, CreateConfig, CreateVersion,
    UpdateReleaseRules, Release,
)
from conflux.store import Store

namespace = ConfigNamespace(tenant="acme", app="billing", env="dev")

with Store("./data") as store:
    resp = store.apply_command(CreateConfig(
        namespace=namespace,
        name="database.toml",
        content=b'host = "localhost"\nport = 5432',
        format=ConfigFormat.TOML,
        schema=None,
        creator_id=1,
        description="Initial database config",
    ))
    config_id = resp.data["config_id"]

    store.apply_command(CreateVersion(
        config_id=config_id,
        content=b'host = "localhost"\nport = 5433',
        format=ConfigFormat.TOML,
        creator_id=1,
        description="Production version",
    ))

    store.apply_command(UpdateReleaseRules(
        config_id=config_id,
        releases=(
            Release(labels={"env": "production"}, version_id=2, priority=10),
            Release.default(1),
        ),
    ))

    config, version = store.get_published_config(
        namespace, "database.toml", {"env": "production"}
    )
    print(version.id, version.content)   # 2 b'host = "localhost"\nport = 5433'
```

## Modules

- `conflux.models`: the data types (`ConfigNamespace`, `ConfigFormat`,
  `Release`, `Config`, `ConfigVersion`), the commands, `ClientWriteResponse`,
  `ConfigChangeEvent` and `ConfigChangeType`, the errors (`ConfluxError`,
  `StorageError`, `ValidationError`) and the key helpers `make_config_key`,
  `make_version_key`, `make_name_index_key` and `content_hash` (SHA-256, in hex).
- `conflux.persistence`: `DiskStore`, the SQLite-backed tables for
  configurations, versions and metadata.
- `conflux.handlers`: `CommandHandlers`, which holds the in-memory state and
  handles version, release-rule and delete commands.
- `conflux.store`: `Store`, which combines the two. It also provides the
  queries (`get_config`, `get_config_version`, `get_published_config`,
  `get_config_meta`, `list_config_versions`, `get_latest_version`,
  `config_exists`, `list_configs_in_namespace`) and `get_storage_stats`.
- `conflux.raft_log`: `RaftLogStore` with `LogId`, `LeaderId`, `Vote`, `Entry`
  and `LogState`.

### Commands

`Store.apply_command` (and `Store.apply_state_change`, which does the same thing)
accepts `CreateConfig`, `UpdateConfig`, `CreateVersion`, `ReleaseVersion`,
`UpdateReleaseRules`, `DeleteConfig` and `DeleteVersions`. Each one returns a
`ClientWriteResponse`. A rejected command does not raise. For example, the
configuration or version may not exist, or the name may already be taken. In
that case the response has `success=False` and a message that explains why.

A new configuration starts at version 1 with a default release, which has no
labels. `get_published_config` picks the matching release with the highest
priority. If no release matches, it falls back to the default release and then
to the latest version.

### Change notifications

`Store.subscribe_changes()` returns a `queue.Queue` that receives a
`ConfigChangeEvent` for each of these: creating or updating a configuration,
creating a version, releasing a version, updating release rules, and deleting a
configuration. Deleting versions sends no event. Each queue holds up to 1000
events. When a queue is full, its oldest event is dropped.

### Raft log

`RaftLogStore` keeps log entries by index, the saved vote and the last purged
log id. It supports `append`, `truncate` (from an index onward), `purge` (up to
and including an index), `try_get_log_entries(start, stop)` and
`get_log_state`.

## What it does not do

- There is no cluster, consensus engine, network layer, server or command-line
  program. Commands are applied to one local `Store`. `RaftLogStore` keeps
  everything in memory and never writes to disk.
- Only some changes are written to disk. Created configurations and versions,
  updates, new versions, releases and release-rule changes are written through
  to disk. `DeleteConfig` and `DeleteVersions` change only the in-memory state.
  To remove the records from disk, call `delete_config_from_disk` and
  `delete_version_from_disk`.
- Renaming a configuration with `UpdateConfig` leaves its old key on disk.
- The next configuration id is saved only when you call `persist_metadata()`.
  If you do not call it, a reopened store starts counting again from 1.