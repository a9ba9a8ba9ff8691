"""
Unit tests for environment resolution.
"""
import os
import stat

import pytest

from rstack.exceptions import ValidationError
from rstack.MANAGERS.config_store import ConfigStore
from rstack.MANAGERS.environment_manager import EnvironmentManager
from rstack.MODELS.service_definition import EnvBinding


@pytest.fixture
def store():
    return ConfigStore()


@pytest.fixture
def manager(tool_config, store):
    return EnvironmentManager(tool_config, store)


def test_group_context_prefers_persisted_values(graph, manager, store, tool_config):
    assert manager.group_context(graph, "app") == {"DB_USER": "app"}
    store.set(tool_config.group_env_file("app"), "DB_USER", "other")
    assert manager.group_context(graph, "app")["DB_USER"] == "other"


def test_resolves_refs_templates_and_cross_group(graph, manager, store, tool_config, provisioned):
    store.set(tool_config.group_env_file("media"), "MEDIA_TOKEN", "tok-9")

    env = manager.resolve(graph, graph.services["app"])

    assert env == {
        "DATABASE_URL": "postgresql://app:p@ss$word@app-db/app",
        "MEDIA_TOKEN": "tok-9",
        "API_KEY": "feedface",
    }


def test_undiscovered_secret_resolves_empty(graph, manager, provisioned):
    assert manager.resolve(graph, graph.services["app"])["MEDIA_TOKEN"] == ""


def test_missing_key_is_a_validation_error(graph, manager):
    with pytest.raises(ValidationError, match="DB_PASS"):
        manager.resolve(graph, graph.services["app"])


def test_unknown_group_ref(graph, manager, provisioned):
    service = graph.services["app"].model_copy(update={"environment": [EnvBinding(key="X", ref="ghost.KEY")]})
    with pytest.raises(ValidationError, match="unknown group 'ghost'"):
        manager.resolve(graph, service)


def test_broken_template(graph, manager, provisioned):
    service = graph.services["app"].model_copy(update={"environment": [EnvBinding(key="X", value="{{ DB_USER ")]})
    with pytest.raises(ValidationError, match="not a valid template"):
        manager.resolve(graph, service)


def test_render_settings_skips_unrenderable(graph, manager, provisioned, store, tool_config):
    patch = manager.render_settings(graph, graph.services["app"])
    assert patch == {"upstream.key": "upstream-123"}

    store.set(tool_config.group_env_file("media"), "MEDIA_TOKEN", "tok-9")
    patch = manager.render_settings(graph, graph.services["app"])
    assert patch == {"upstream.key": "upstream-123", "media.token": "tok-9"}
    assert manager.render_settings(graph, graph.services["media"]) == {}


def test_write_env_file(graph, manager, tool_config):
    service = graph.services["media"]
    assert manager.write_env_file(service, {"TZ": "UTC", "CLAIM": ""}) is True
    assert manager.write_env_file(service, {"TZ": "UTC", "CLAIM": ""}) is False

    path = tool_config.service_env_file("media", "media")
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
