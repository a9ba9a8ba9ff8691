"""
Unit tests for the runtime package manager and the command runner.
"""
import pytest

from rstack.exceptions import CommandError
from rstack.MANAGERS.package_manager import RUNTIME_PACKAGES, PackageManager
from rstack.RUNNERS.command_runner import CommandRunner


@pytest.fixture
def packages(host, tool_config):
    return PackageManager(host, tool_config.apt_keyring, tool_config.apt_sources_list, tool_config.os_release)


class TestPackageManager:
    """Tests for PackageManager."""

    def test_runtime_present_is_left_alone(self, host, packages):
        assert packages.ensure_runtime() is False
        assert not host.ran("env", "DEBIAN_FRONTEND=noninteractive", "apt-get")

    def test_installs_runtime(self, host, packages, tool_config, tmp_path):
        host.failing["docker compose version"] = "docker: 'compose' is not a docker command"
        (tmp_path / "os-release").write_text('ID=debian\nVERSION_CODENAME="bookworm"\n')
        (tmp_path / "apt").mkdir()
        (tmp_path / "apt" / "docker.gpg").write_text("key")

        assert packages.ensure_runtime() is True

        with open(tool_config.apt_sources_list) as f:
            line = f.read()
        assert f"signed-by={tool_config.apt_keyring}" in line
        assert "bookworm stable" in line
        assert host.ran("env", "DEBIAN_FRONTEND=noninteractive", "apt-get", "install", "-y", *RUNTIME_PACKAGES)
        assert host.ran("systemctl", "enable", "--now", "docker")
        assert not host.ran("curl")

    def test_unknown_codename(self, host, packages):
        host.failing["docker compose version"] = "missing"
        with pytest.raises(CommandError, match="codename"):
            packages.ensure_runtime()

    def test_purge_collects_errors(self, host, packages):
        host.failing["env DEBIAN_FRONTEND=noninteractive apt-get purge"] = "dpkg lock held"
        errors = packages.purge_runtime()
        assert errors == ["purge packages: dpkg lock held"]
        assert host.ran("rm", "-rf", "/var/lib/docker")
        assert host.ran("env", "DEBIAN_FRONTEND=noninteractive", "apt-get", "autoremove", "-y")


class TestCommandRunner:
    """Tests for CommandRunner against real processes."""

    def test_captures_output(self):
        result = CommandRunner().run(["echo", "hello"])
        assert result.ok
        assert result.stdout.strip() == "hello"

    def test_check_raises(self):
        with pytest.raises(CommandError) as info:
            CommandRunner().run(["sh", "-c", "echo boom >&2; exit 3"])
        assert info.value.returncode == 3
        assert "boom" in str(info.value)

    def test_unchecked_failure(self):
        result = CommandRunner().run(["false"], check=False)
        assert result.returncode == 1

    def test_missing_program(self):
        result = CommandRunner().run(["rstack-no-such-program"], check=False)
        assert result.returncode == 127

    def test_dry_run(self):
        result = CommandRunner(dry_run=True).run(["rstack-no-such-program"])
        assert result.ok

    def test_input_text(self):
        assert CommandRunner().run(["cat"], input_text="piped").stdout == "piped"
