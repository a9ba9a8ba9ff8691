"""
End-to-end CLI tests against an in-memory host and fake service APIs.
"""
import os

import pytest
from click.testing import CliRunner

from rstack.CLI.main import cli
from rstack.MANAGERS.config_store import ConfigStore

TOKEN_PREFS = '<Preferences Token="tok-42"/>'


@pytest.fixture
def invoke(tmp_path, host, http, stack_file, tool_config):
    """Runs one rstack command with a fresh context sharing the same fake host."""
    def write_prefs():
        path = os.path.join(tool_config.media_root, "media", "config", "prefs.xml")
        with open(path, "w") as f:
            f.write(TOKEN_PREFS)

    host.on_create["media"] = write_prefs
    environ = {
        "RSTACK_SYSTEMD_DIR": tool_config.systemd_dir,
        "RSTACK_APT_KEYRING": tool_config.apt_keyring,
        "RSTACK_APT_SOURCES_LIST": tool_config.apt_sources_list,
        "RSTACK_OS_RELEASE": tool_config.os_release,
    }
    base = ["--env-file", str(tmp_path / "absent.env"), "--media-root", tool_config.media_root,
            "-f", stack_file]

    def _invoke(*args, input=None, interactive=False):
        obj = {
            "runner": host,
            "mountinfo_path": host.mountinfo_path,
            "list_mountpoints": host.mountpoints,
            "sleep": lambda seconds: None,
            "http": http,
            "facts": {"HOST_IP": "10.0.0.5", "HOST_UID": str(os.getuid()), "HOST_GID": str(os.getgid())},
            "environ": environ,
        }
        flags = [] if interactive else ["--non-interactive"]
        return CliRunner().invoke(cli, base + flags + list(args), obj=obj, input=input)

    return _invoke


@pytest.fixture
def installed(invoke):
    result = invoke("--set", "UPSTREAM_KEY=upstream-123", "install", "--ranking", "2")
    assert result.exit_code == 0, result.output
    return result


def _store_value(tool_config, group, key):
    return ConfigStore().get(tool_config.group_env_file(group), key)


def test_help():
    result = CliRunner().invoke(cli, ["--help"])
    assert result.exit_code == 0
    for command in ("install", "reconfigure", "update", "test-only", "reset", "wipe-db", "wipe-server"):
        assert command in result.output


def test_install(installed, host, http, tool_config):
    assert "✅ APPLY SUMMARY: 3 service(s) ready." in installed.output
    assert {c["status"] for c in host.containers.values()} == {"running"}
    assert {"shared-mount.service", "media-stack.service", "app-stack.service"} <= host.active

    assert _store_value(tool_config, "media", "MEDIA_TOKEN") == "tok-42"
    assert _store_value(tool_config, "media", "MEDIA_CLAIM") == ""
    assert _store_value(tool_config, "app", "RANKING_PRESET") == "2"
    assert len(_store_value(tool_config, "app", "DB_PASS")) == 24

    assert http.settings["upstream"]["key"] == "upstream-123"
    assert http.settings["media"]["token"] == "tok-42"
    assert http.settings["ranking"]["resolutions"]["2160p"] is True
    api_key = _store_value(tool_config, "app", "API_KEY")
    assert all(r[3] == {"x-api-key": api_key} for r in http.requests if "/api/settings" in r[1])


def test_install_output_hides_secrets(installed, tool_config):
    for key in ("DB_PASS", "API_KEY"):
        assert _store_value(tool_config, "app", key) not in installed.output


def test_install_without_required_value_changes_nothing(invoke, host):
    result = invoke("install")
    assert result.exit_code == 1
    assert "Error:" in result.output
    assert "UPSTREAM_KEY" in result.output
    assert host.containers == {}
    assert host.mounts == {}


def test_install_interactive(invoke, tool_config):
    result = invoke("install", input="3\n\nupstream-456\n", interactive=True)
    assert result.exit_code == 0, result.output
    assert "Ranking presets:" in result.output
    assert _store_value(tool_config, "app", "UPSTREAM_KEY") == "upstream-456"
    assert _store_value(tool_config, "app", "RANKING_PRESET") == "3"


def test_install_twice_is_idempotent(installed, invoke, host):
    host.calls.clear()
    result = invoke("install")
    assert result.exit_code == 0, result.output
    assert not any(c[:2] == ["docker", "compose"] and "up" in c for c in host.calls)


def test_failed_service_exits_nonzero(invoke, host):
    host.broken.add("app-db")
    result = invoke("--set", "UPSTREAM_KEY=upstream-123", "install")
    assert result.exit_code == 1
    assert "⚠️ APPLY SUMMARY: 1 failed" in result.output
    assert "app-stack.service" not in host.active


def test_status(invoke, installed):
    result = invoke("status")
    assert result.exit_code == 0
    rows = [line.split() for line in result.output.splitlines()]
    assert ["SERVICE", "STATUS", "HEALTH"] in rows
    assert ["app-db", "running", "none"] in rows


def test_render_touches_nothing(invoke, host, tmp_path):
    out = str(tmp_path / "out")
    result = invoke("render", "-o", out)
    assert result.exit_code == 0, result.output
    assert os.path.isfile(os.path.join(out, "compose", "app", "docker-compose.yml"))
    assert os.path.isfile(os.path.join(out, "systemd", "shared-mount.service"))
    assert "✅ RENDER SUMMARY: 6 file(s) written" in result.output
    assert host.calls == []


def test_test_only(invoke, installed, host):
    result = invoke("test-only")
    assert result.exit_code == 0, result.output
    assert "[PASS] app sees /mount" in result.output
    assert "✅ TEST SUMMARY: Looks good." in result.output

    host.containers["media"]["status"] = "exited"
    result = invoke("test-only")
    assert result.exit_code == 1
    assert "[FAIL] container media: exited" in result.output
    assert "⚠️ TEST SUMMARY: Issues detected." in result.output


def test_commands_need_an_install(invoke):
    for command in ("test-only", "update", "reset", "reconfigure"):
        result = invoke(command)
        assert result.exit_code == 1, command
        assert "rstack install" in result.output


def test_reconfigure_rotates(invoke, installed, host, tool_config):
    old_key = _store_value(tool_config, "app", "API_KEY")
    old_pass = _store_value(tool_config, "app", "DB_PASS")

    result = invoke("reconfigure", "--rotate", "API_KEY")

    assert result.exit_code == 0, result.output
    assert _store_value(tool_config, "app", "API_KEY") != old_key
    assert _store_value(tool_config, "app", "DB_PASS") == old_pass
    assert _store_value(tool_config, "app", "UPSTREAM_KEY") == "upstream-123"
    rows = [line.split() for line in result.output.splitlines()]
    assert ["app", "running_healthy", "recreated"] in rows
    assert ["app-db", "running_healthy", "unchanged"] in rows


def test_update(invoke, installed, host):
    host.images["example/media:1"] = "sha256:media-v2"
    result = invoke("update")
    assert result.exit_code == 0, result.output
    assert ["media", "running_healthy", "recreated"] in [line.split() for line in result.output.splitlines()]


def test_soft_reset(invoke, installed, tool_config):
    result = invoke("reset")
    assert result.exit_code == 0, result.output
    assert "✅ RESET SUMMARY: soft reset complete." in result.output
    assert _store_value(tool_config, "app", "API_KEY")


def test_wipe_db_needs_phrase(invoke, installed, host):
    result = invoke("wipe-db")
    assert result.exit_code == 1
    assert "WIPE-DB" in result.output
    assert host.containers["app-db"]["status"] == "running"


def test_wipe_db_reset(invoke, installed, host, tool_config):
    result = invoke("wipe-db-reset", "--confirm", "WIPE-DB")
    assert result.exit_code == 0, result.output
    assert "✅ RESET SUMMARY: wipe-db reset complete." in result.output
    assert host.containers["app-db"]["status"] == "running"
    assert "setting(s) pushed" in result.output


def test_wipe_server(invoke, installed, host, tool_config):
    result = invoke("wipe-server", "--confirm", "WIPE-SERVER")
    assert result.exit_code == 0, result.output
    assert "✅ RESET SUMMARY: hard reset complete." in result.output
    assert host.containers == {}
    assert not os.path.exists(tool_config.media_root)
    assert "app-stack.service" not in host.enabled


def test_install_with_undefined_template_changes_nothing(invoke, host, stack_file):
    with open(stack_file) as f:
        content = f.read()
    with open(stack_file, "w") as f:
        f.write(content.replace("{{ DB_USER }}:{{ DB_PASS }}", "{{ NOPE }}"))

    result = invoke("--set", "UPSTREAM_KEY=upstream-123", "install")

    assert result.exit_code == 1
    assert "NOPE" in result.output
    assert host.containers == {}
    assert host.mounts == {}
    assert not any(c[0] in ("mount", "systemctl") for c in host.calls)


def test_reconfigure_with_undefined_template_keeps_stack(invoke, installed, host, stack_file):
    with open(stack_file) as f:
        content = f.read()
    with open(stack_file, "w") as f:
        f.write(content.replace("{{ DB_USER }}:{{ DB_PASS }}", "{{ NOPE }}"))
    host.calls.clear()

    result = invoke("reconfigure")

    assert result.exit_code == 1
    assert "NOPE" in result.output
    assert not any(c[:2] == ["docker", "compose"] for c in host.calls)
    assert {c["status"] for c in host.containers.values()} == {"running"}


def test_bad_tool_setting_is_reported(tmp_path):
    result = CliRunner().invoke(cli, ["--env-file", str(tmp_path / "absent.env"), "status"],
                                obj={"environ": {"RSTACK_HEALTH_MAX_WAIT": "abc"}})
    assert result.exit_code == 1
    assert "Error: Bad setting RSTACK_HEALTH_MAX_WAIT" in result.output
    assert result.exception is None or isinstance(result.exception, SystemExit)
