import pytest

from conflux.models import (
    Config,
    ConfigChangeType,
    ConfigFormat,
    ConfigNamespace,
    CreateConfig,
    CreateVersion,
    DeleteConfig,
    DeleteVersions,
    Release,
    ReleaseVersion,
    UpdateConfig,
    UpdateReleaseRules,
    make_config_key,
)
from conflux.store import StorageStats, Store


@pytest.fixture
def store(tmp_path):
    s = Store(tmp_path)
    yield s
    s.close()


def ns(tenant="test", app="myapp", env="dev"):
    return ConfigNamespace(tenant=tenant, app=app, env=env)


def create_cmd(namespace, name="database.toml", content=b'host = "localhost"\nport = 5432',
               fmt=ConfigFormat.TOML, description="Initial database config", creator_id=1):
    return CreateConfig(
        namespace=namespace,
        name=name,
        content=content,
        format=fmt,
        schema=None,
        creator_id=creator_id,
        description=description,
    )


def test_create_config(store):
    namespace = ns()
    response = store.apply_command(create_cmd(namespace))
    assert response.success
    config = store.get_config(namespace, "database.toml")
    assert config is not None
    assert config.name == "database.toml"
    assert config.namespace == namespace
    assert config.latest_version_id == 1


def test_create_version(store):
    namespace = ns()
    response = store.apply_command(create_cmd(namespace))
    assert response.success
    config_id = response.data["config_id"]

    response = store.apply_command(
        CreateVersion(config_id, b'host = "localhost"\nport = 5433', ConfigFormat.TOML, 1, "Updated port")
    )
    assert response.success
    config = store.get_config(namespace, "database.toml")
    assert config.latest_version_id == 2
    version = store.get_config_version(config_id, 2)
    assert version.description == "Updated port"


def test_update_release_rules(store):
    namespace = ns()
    config_id = store.apply_command(create_cmd(namespace)).data["config_id"]
    store.apply_command(CreateVersion(config_id, b"port = 5433", ConfigFormat.TOML, 1, "Updated port"))

    releases = (Release({"env": "production"}, 2, 10), Release.default(1))
    response = store.apply_command(UpdateReleaseRules(config_id, releases))
    assert response.success
    config = store.get_config(namespace, "database.toml")
    assert len(config.releases) == 2
    assert config.releases == list(releases)


def test_get_published_config(store):
    namespace = ns()
    config_id = store.apply_command(create_cmd(namespace)).data["config_id"]
    store.apply_command(
        CreateVersion(config_id, b"port = 5433", ConfigFormat.TOML, 1, "Production version")
    )
    releases = (Release({"env": "production"}, 2, 10), Release.default(1))
    store.apply_command(UpdateReleaseRules(config_id, releases))

    _, version = store.get_published_config(namespace, "database.toml", {"env": "production"})
    assert version.id == 2
    assert version.description == "Production version"

    _, version = store.get_published_config(namespace, "database.toml", {})
    assert version.id == 1
    assert version.description == "Initial database config"


def test_config_exists_false(store):
    assert store.config_exists(ns("nonexistent", "app", "test"), "missing.json") is False


def test_get_config_none(store):
    assert store.get_config(ns("test", "app", "prod"), "missing.json") is None


def test_get_config_version_none(store):
    assert store.get_config_version(999, 1) is None


def test_get_published_config_none(store):
    assert store.get_published_config(ns("test", "app", "dev"), "missing.json", {}) is None


def test_get_config_meta_none(store):
    assert store.get_config_meta(999) is None


def test_list_config_versions_empty(store):
    assert store.list_config_versions(999) == []


def test_get_latest_version_none(store):
    assert store.get_latest_version(999) is None


def test_list_configs_in_namespace_empty(store):
    assert store.list_configs_in_namespace(ns("empty", "app", "test")) == []


def test_create_duplicate_config(store):
    namespace = ns("test", "dup", "test")
    first = store.apply_command(create_cmd(namespace, "duplicate.json", b"{}", ConfigFormat.JSON, "First config"))
    assert first.success
    second = store.apply_command(
        create_cmd(namespace, "duplicate.json", b"{}", ConfigFormat.JSON, "Duplicate config", creator_id=2)
    )
    assert not second.success
    assert "already exists" in second.message


def test_create_version_nonexistent_config(store):
    response = store.apply_command(CreateVersion(999, b"new content", ConfigFormat.JSON, 1, "x"))
    assert not response.success
    assert "not found" in response.message


def test_update_release_rules_nonexistent_config(store):
    response = store.apply_command(UpdateReleaseRules(999, (Release({"env": "prod"}, 1, 10),)))
    assert not response.success
    assert "not found" in response.message


def test_update_release_rules_nonexistent_version(store):
    created = store.apply_command(create_cmd(ns("test", "app", "test"), "test.json", b"{}", ConfigFormat.JSON, "Test config"))
    assert created.success
    config_id = created.data["config_id"]
    response = store.apply_command(UpdateReleaseRules(config_id, (Release({"env": "prod"}, 999, 10),)))
    assert not response.success
    assert "does not exist" in response.message


def test_release_version_nonexistent_config(store):
    response = store.apply_command(ReleaseVersion(999, 1))
    assert not response.success
    assert "not found" in response.message


def test_release_version_nonexistent_version(store):
    created = store.apply_command(create_cmd(ns("test", "app", "test"), "test.json", b"{}", ConfigFormat.JSON, "Test config"))
    config_id = created.data["config_id"]
    response = store.apply_command(ReleaseVersion(config_id, 999))
    assert not response.success
    assert "does not exist" in response.message


def test_release_version_updates_default(store):
    namespace = ns()
    config_id = store.apply_command(create_cmd(namespace)).data["config_id"]
    store.apply_command(CreateVersion(config_id, b"v2", None, 1, "second"))
    response = store.apply_command(ReleaseVersion(config_id, 2))
    assert response.success
    assert response.message == "Version 2 released successfully"
    config = store.get_config(namespace, "database.toml")
    assert config.get_default_release().version_id == 2
    assert len(config.releases) == 1
    # format inherited from the latest version
    assert store.get_config_version(config_id, 2).format == ConfigFormat.TOML


def test_update_config_command(store):
    namespace = ns("test", "update", "test")
    created = store.apply_command(
        create_cmd(namespace, "update.json", b'{"initial": true}', ConfigFormat.JSON, "Initial config")
    )
    config_id = created.data["config_id"]
    response = store.apply_command(
        UpdateConfig(config_id, namespace, "updated.yaml", b"updated: true", ConfigFormat.YAML, "v2", "Updated config")
    )
    assert response.success
    config = store.get_config(namespace, "updated.yaml")
    assert config.name == "updated.yaml"
    assert config.schema == "v2"
    assert config.latest_version_id == 2
    assert store.get_config(namespace, "update.json") is None
    version = store.get_config_version(config_id, 2)
    assert version.content == b"updated: true"
    assert version.format == ConfigFormat.YAML
    assert version.description == "Updated config"
    assert version.creator_id == 0


def test_update_config_nonexistent(store):
    response = store.apply_command(
        UpdateConfig(999, ns("test", "app", "test"), "nonexistent.json", b"{}", ConfigFormat.JSON, None, "x")
    )
    assert not response.success
    assert "not found" in response.message


def test_subscribe_changes(store):
    receiver = store.subscribe_changes()
    namespace = ns("test", "subscription", "test")
    store.apply_command(create_cmd(namespace, "subscribe.json", b"{}", ConfigFormat.JSON, "Subscription test"))
    event = receiver.get(timeout=0.1)
    assert event.namespace == namespace
    assert event.name == "subscribe.json"
    assert event.change_type == ConfigChangeType.CREATED


def test_apply_command_create_config_lists(store):
    namespace = ns("test", "app", "dev")
    response = store.apply_command(create_cmd(namespace, "test-config", b"test content", ConfigFormat.JSON, "Test configuration"))
    assert response.success
    assert response.data == {"config_id": 1, "version_id": 1}
    configs = store.list_configs_in_namespace(namespace)
    assert [c.name for c in configs] == ["test-config"]


def test_apply_command_create_version_lists(store):
    namespace = ns("test", "app", "dev")
    config_id = store.apply_command(create_cmd(namespace, "test-config", b"test content", ConfigFormat.JSON, "Test configuration")).config_id
    assert config_id == 1
    response = store.apply_command(CreateVersion(config_id, b'{"key": "value"}', ConfigFormat.JSON, 1, "Test version"))
    assert response.success
    versions = store.list_config_versions(config_id)
    assert [v.id for v in versions] == [1, 2]
    assert versions[1].description == "Test version"
    assert store.get_latest_version(config_id).id == 2


def test_apply_command_update_release_rules_meta(store):
    namespace = ns("test", "app", "dev")
    config_id = store.apply_command(create_cmd(namespace, "test-config", b"c", ConfigFormat.JSON, "d")).config_id
    response = store.apply_command(UpdateReleaseRules(config_id, (Release({}, 1, 0),)))
    assert response.success
    assert len(store.get_config_meta(config_id).releases) == 1


def test_apply_command_delete_config(store):
    namespace = ns("test", "app", "dev")
    config_id = store.apply_command(create_cmd(namespace, "test-config", b"c", ConfigFormat.JSON, "d")).config_id
    response = store.apply_state_change(DeleteConfig(config_id))
    assert response.success
    assert store.get_config_meta(config_id) is None
    assert store.list_config_versions(config_id) == []


def test_apply_command_invalid_config_id(store):
    response = store.apply_command(DeleteConfig(99999))
    assert not response.success
    assert "not found" in response.message


def test_delete_versions(store):
    namespace = ns()
    config_id = store.apply_command(create_cmd(namespace)).config_id
    store.apply_command(CreateVersion(config_id, b"v2", None, 1, "second"))
    response = store.apply_command(DeleteVersions(config_id, (2, 7)))
    assert response.success
    assert response.data == {"config_id": config_id, "deleted_count": 1}
    assert [v.id for v in store.list_config_versions(config_id)] == [1]


def test_unknown_command_raises(store):
    with pytest.raises(TypeError):
        store.apply_command("not a command")


def test_release_rules_persistence(tmp_path):
    namespace = ns()
    releases = (Release({"env": "production"}, 2, 10), Release.default(1))
    with Store(tmp_path) as first:
        response = first.apply_command(create_cmd(namespace, "test-config.toml", b'key = "value"', ConfigFormat.TOML, "Test config"))
        config_id = response.data["config_id"]
        assert first.apply_command(CreateVersion(config_id, b'key = "updated_value"', ConfigFormat.TOML, 1, "Updated config")).success
        assert first.apply_command(UpdateReleaseRules(config_id, releases)).success
        assert first.get_config(namespace, "test-config.toml").releases == list(releases)

    with Store(tmp_path) as second:
        loaded = second.get_config(namespace, "test-config.toml")
        assert loaded.releases == list(releases)
        assert second.get_config_version(config_id, 2).description == "Updated config"


def test_improved_error_handling(store):
    response = store.apply_command(UpdateReleaseRules(999, (Release.default(1),)))
    assert not response.success
    assert "Configuration with ID 999 not found" in response.message

    config_id = store.apply_command(create_cmd(ns(), "test-config.toml")).data["config_id"]
    response = store.apply_command(UpdateReleaseRules(config_id, (Release.default(999),)))
    assert not response.success
    assert "Version 999 does not exist" in response.message


def test_load_from_disk_empty(store):
    store.load_from_disk()
    assert store.get_storage_stats() == StorageStats(0, 0, 0, 1)


def test_persist_and_load_config(store):
    namespace = ns("test", "app", "dev")
    config = Config(id=1, namespace=namespace, name="test-config", latest_version_id=1)
    store.persist_config(make_config_key(namespace, "test-config"), config)
    store.configurations.clear()
    store.load_from_disk()
    loaded = store.get_config(namespace, "test-config")
    assert loaded.id == 1


def test_storage_stats_after_create(store):
    store.apply_command(create_cmd(ns()))
    stats = store.get_storage_stats()
    assert stats == StorageStats(configs_count=1, versions_count=1, name_index_count=1, next_config_id=2)


def test_persist_metadata_round_trip(tmp_path):
    with Store(tmp_path) as first:
        first.apply_command(create_cmd(ns()))
        first.persist_metadata()
        first.flush_to_disk()
    with Store(tmp_path) as second:
        assert second.get_storage_stats().next_config_id == 2


def test_delete_from_disk(tmp_path):
    namespace = ns()
    with Store(tmp_path) as first:
        config_id = first.apply_command(create_cmd(namespace)).config_id
        config = first.get_config_meta(config_id)
        first.delete_config_from_disk(make_config_key(namespace, "database.toml"), config)
        first.delete_version_from_disk(config_id, 1)
    with Store(tmp_path) as second:
        assert second.get_config(namespace, "database.toml") is None
        assert second.get_config_version(config_id, 1) is None
        assert second.get_storage_stats().name_index_count == 0