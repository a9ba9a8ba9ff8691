"""
Shared fixtures: an in-memory stand-in for the host (docker, mount, systemctl)
and for the HTTP endpoints services expose.
"""
import json
import os
from typing import Callable, Dict, List, Optional

import pytest
import yaml

from rstack.CLI.components import Components
from rstack.exceptions import CommandError
from rstack.MANAGERS.config_store import ConfigStore
from rstack.MODELS.tool_config import ToolConfig
from rstack.PARSERS.stack_parser import StackParser
from rstack.RUNNERS.command_runner import CommandResult
from rstack.UTILS.http_client import HttpResponse

TEST_STACK = """
name: test
networks: [test-net]
mounts:
  shared:
    path: ${MEDIA_ROOT}/shared/mount
    propagation: rshared
groups:
  media:
    config:
      TZ: UTC
    secrets:
      MEDIA_CLAIM:
        kind: prompted
        default: ""
      MEDIA_TOKEN:
        kind: discovered
        path: ${MEDIA_ROOT}/media/config/prefs.xml
        pattern: 'Token="([^"]+)"'
        after: media
        max_wait: 3
        interval: 1
        clears: [MEDIA_CLAIM]
    services:
      media:
        image: example/media:1
        networks: [test-net]
        volumes:
          - ${MEDIA_ROOT}/media/config:/config
          - ${MEDIA_ROOT}/shared/mount:/mount:rslave
        data_paths:
          - ${MEDIA_ROOT}/media/config
        environment:
          TZ: {ref: TZ}
          CLAIM: {ref: MEDIA_CLAIM}
        health:
          kind: http
          target: http://media.test/health
          interval: 1
          retries: 3
  app:
    config:
      DB_USER: app
    secrets:
      DB_PASS: {kind: generated, shape: alnum, length: 24}
      API_KEY: {kind: generated, shape: hex, length: 16}
      UPSTREAM_KEY:
        kind: required
        constraint: {min_length: 8}
    services:
      app-db:
        image: postgres:17-alpine
        role: database
        networks: [test-net]
        volumes:
          - ${MEDIA_ROOT}/app/db:/var/lib/postgresql/data
        data_paths:
          - ${MEDIA_ROOT}/app/db
        environment:
          POSTGRES_USER: {ref: DB_USER}
          POSTGRES_PASSWORD: {ref: DB_PASS}
        health:
          kind: exec
          target: pg_isready
          interval: 1
          retries: 3
      app:
        image: example/app:1
        depends_on: [app-db, media]
        networks: [test-net]
        volumes:
          - ${MEDIA_ROOT}/shared/mount:/mount:rshared
        environment:
          DATABASE_URL: "postgresql://{{ DB_USER }}:{{ DB_PASS }}@app-db/app"
          MEDIA_TOKEN: {ref: media.MEDIA_TOKEN}
          API_KEY: {ref: API_KEY}
        health:
          kind: http
          target: http://app.test/health
          interval: 1
          retries: 3
        settings:
          url: http://app.test/api/settings
          api_key_ref: API_KEY
          ranking: true
          values:
            upstream.key: "{{ UPSTREAM_KEY }}"
            media.token: "{{ media.MEDIA_TOKEN }}"
"""


class FakeHost:
    """
    Command runner that keeps docker, mount and systemd state in memory.

    Containers are created from the compose file named on the command line,
    so the container name and config-hash label are whatever rstack wrote.
    """

    def __init__(self, mountinfo_path: str):
        self.mountinfo_path = mountinfo_path
        self.calls: List[List[str]] = []
        self.containers: Dict[str, dict] = {}
        self.images: Dict[str, str] = {}
        self.networks = set()
        self.mounts: Dict[str, str] = {}
        self.enabled = set()
        self.active = set()
        self.failing: Dict[str, str] = {}  # command prefix -> stderr
        self.broken = set()  # containers that exit right after start
        self.exec_failures = set()  # containers whose exec commands fail
        self.on_create: Dict[str, Callable[[], None]] = {}
        self._write_mountinfo()

    # CommandRunner interface

    def which(self, program: str) -> Optional[str]:
        return None

    def run(self, command, check=True, cwd=None, timeout=None, input_text=None) -> CommandResult:
        self.calls.append(list(command))
        joined = " ".join(command)
        for prefix, stderr in self.failing.items():
            if joined.startswith(prefix):
                result = CommandResult(command=list(command), returncode=1, stderr=stderr)
                break
        else:
            result = self._dispatch(list(command))
        if check and not result.ok:
            raise CommandError(list(command), result.returncode, result.stderr)
        return result

    # helpers for assertions

    def ran(self, *prefix: str) -> bool:
        return any(c[:len(prefix)] == list(prefix) for c in self.calls)

    def mountpoints(self) -> List[str]:
        return list(self.mounts)

    def _ok(self, command, stdout=""):
        return CommandResult(command=command, returncode=0, stdout=stdout)

    def _fail(self, command, stderr="", code=1):
        return CommandResult(command=command, returncode=code, stderr=stderr)

    def _dispatch(self, command: List[str]) -> CommandResult:
        tool = command[0]
        if tool == "docker":
            return self._docker(command)
        if tool == "mount":
            return self._mount(command)
        if tool == "umount":
            self.mounts.pop(command[-1], None)
            self._write_mountinfo()
            return self._ok(command)
        if tool == "systemctl":
            return self._systemctl(command)
        return self._ok(command)

    def _docker(self, command: List[str]) -> CommandResult:
        args = command[1:]
        if args[0] == "compose":
            if args[1] == "version":
                return self._ok(command, "Docker Compose version v2.29.0")
            compose_file, verb = args[4], args[5]
            if verb == "up":
                return self._compose_up(command, compose_file, args[-1], "--force-recreate" in args)
            if verb == "down":
                document = self._load(compose_file)
                for block in document.get("services", {}).values():
                    self.containers.pop(block["container_name"], None)
                return self._ok(command)
            return self._ok(command)

        if args[0] == "inspect":
            container = self.containers.get(args[-1])
            if container is None:
                return self._fail(command, f"Error: No such container: {args[-1]}")
            return self._ok(command, json.dumps([{
                "Image": container["image_id"],
                "State": {"Status": container["status"]},
                "Config": {"Labels": container["labels"]},
            }]))
        if args[:2] == ["image", "inspect"]:
            image = args[-1]
            return self._ok(command, self.images.setdefault(image, f"sha256:{image}") + "\n")
        if args[0] == "start":
            self.containers[args[-1]]["status"] = "exited" if args[-1] in self.broken else "running"
            return self._ok(command)
        if args[0] == "stop":
            if args[-1] in self.containers:
                self.containers[args[-1]]["status"] = "exited"
            return self._ok(command)
        if args[0] == "rm":
            self.containers.pop(args[-1], None)
            return self._ok(command)
        if args[0] == "exec":
            container = self.containers.get(args[1])
            if container is None or container["status"] != "running" or args[1] in self.exec_failures:
                return self._fail(command, "exec failed")
            return self._ok(command)
        if args[0] == "network":
            name = args[-1]
            if args[1] == "inspect":
                return self._ok(command) if name in self.networks else self._fail(command, "not found")
            if args[1] == "create":
                self.networks.add(name)
            elif args[1] == "rm":
                self.networks.discard(name)
            return self._ok(command)
        return self._ok(command)

    def _compose_up(self, command, compose_file, service, recreate) -> CommandResult:
        block = self._load(compose_file)["services"][service]
        name = block["container_name"]
        exists = name in self.containers
        self.containers[name] = {
            "image_id": self.images.setdefault(block["image"], f"sha256:{block['image']}"),
            "status": "exited" if name in self.broken else "running",
            "labels": dict(block.get("labels") or {}),
        }
        if (not exists or recreate) and name in self.on_create:
            self.on_create[name]()
        return self._ok(command)

    def _load(self, path: str) -> dict:
        with open(path, "r") as f:
            return yaml.safe_load(f) or {}

    def _mount(self, command: List[str]) -> CommandResult:
        path = command[-1]
        if command[1] == "--bind":
            os.makedirs(path, exist_ok=True)
            self.mounts[path] = "private"
        elif command[1].startswith("--make-"):
            if path not in self.mounts:
                return self._fail(command, f"mount: {path}: not mount point or bad option")
            mode = command[1][len("--make-"):]
            self.mounts[path] = {"shared": "shared", "rshared": "shared",
                                 "slave": "slave", "rslave": "slave"}.get(mode, "private")
        self._write_mountinfo()
        return self._ok(command)

    def _systemctl(self, command: List[str]) -> CommandResult:
        verb = command[1]
        units = [a for a in command[2:] if not a.startswith("--")]
        if verb == "enable":
            self.enabled.update(units)
            if "--now" in command:
                self.active.update(units)
        elif verb == "disable":
            self.enabled.difference_update(units)
            if "--now" in command:
                self.active.difference_update(units)
        elif verb == "start":
            self.active.update(units)
        elif verb == "stop":
            self.active.difference_update(units)
        elif verb == "is-active":
            return self._ok(command) if units[0] in self.active else self._fail(command, "", 3)
        return self._ok(command)

    def _write_mountinfo(self) -> None:
        tags = {"shared": "shared:1", "slave": "master:1", "private": ""}
        lines = ["22 1 8:1 / / rw,relatime shared:1 - ext4 /dev/sda1 rw"]
        for index, (path, propagation) in enumerate(self.mounts.items(), start=100):
            optional = tags[propagation]
            fields = [str(index), "22", "8:1", path, path.replace(" ", "\\040"), "rw,relatime"]
            if optional:
                fields.append(optional)
            fields += ["-", "ext4", "/dev/sda1", "rw"]
            lines.append(" ".join(fields))
        with open(self.mountinfo_path, "w") as f:
            f.write("\n".join(lines) + "\n")


class FakeHttp:
    """
    HTTP transport answering health endpoints and a settings API that stores
    a nested document.
    """

    def __init__(self, settings: Optional[dict] = None):
        self.healthy = set()
        self.settings = settings if settings is not None else {}
        self.settings_prefix = "/api/settings"
        self.requests: List[tuple] = []
        self.rejected_keys = set()
        self.ignored_keys = set()
        self.after_set: Optional[Callable[[dict], None]] = None

    def __call__(self, method, url, payload=None, headers=None, timeout=10.0) -> HttpResponse:
        self.requests.append((method, url, payload, dict(headers or {})))
        host_path = url.split("://", 1)[-1]
        host, _, path = host_path.partition("/")
        path = "/" + path

        if path.startswith(self.settings_prefix):
            return self._settings(method, path[len(self.settings_prefix):], payload)
        if host in self.healthy:
            return HttpResponse(status=200, body="ok")
        raise OSError(f"connection refused: {host}")

    def _settings(self, method, path, payload) -> HttpResponse:
        if method == "GET" and path == "/get/all":
            return HttpResponse(status=200, body=json.dumps(self.settings))
        if method == "POST" and path.startswith("/set/"):
            parts = path[len("/set/"):].split("/")
            key = ".".join(parts)
            if key in self.rejected_keys:
                return HttpResponse(status=422, body="invalid value")
            if key not in self.ignored_keys:
                node = self.settings
                for part in parts[:-1]:
                    node = node.setdefault(part, {})
                node[parts[-1]] = payload["value"]
            if self.after_set is not None:
                self.after_set(self.settings)
            return HttpResponse(status=200, body="{}")
        return HttpResponse(status=404, body="not found")


@pytest.fixture
def host(tmp_path):
    return FakeHost(str(tmp_path / "mountinfo"))


@pytest.fixture
def http():
    fake = FakeHttp()
    fake.healthy.update({"media.test", "app.test"})
    return fake


@pytest.fixture
def tool_config(tmp_path):
    return ToolConfig(
        media_root=str(tmp_path / "media"),
        systemd_dir=str(tmp_path / "systemd"),
        stack_file=str(tmp_path / "stack.yml"),
        apt_keyring=str(tmp_path / "apt" / "docker.gpg"),
        apt_sources_list=str(tmp_path / "apt" / "docker.list"),
        os_release=str(tmp_path / "os-release"),
    )


@pytest.fixture
def stack_file(tmp_path):
    path = tmp_path / "stack.yml"
    path.write_text(TEST_STACK)
    return str(path)


@pytest.fixture
def graph(tool_config, stack_file):
    context = {"MEDIA_ROOT": tool_config.media_root, "HOST_IP": "10.0.0.5",
               "HOST_UID": str(os.getuid()), "HOST_GID": str(os.getgid())}
    return StackParser(context).parse(stack_file)


@pytest.fixture
def components(tool_config, host, http):
    return Components.build(tool_config, runner=host, mountinfo_path=host.mountinfo_path,
                            list_mountpoints=host.mountpoints, sleep=lambda s: None, http=http)


@pytest.fixture
def provisioned(tool_config):
    """Secrets an install would have persisted, minus the discovered token."""
    values = {
        "app": {"DB_PASS": "p@ss$word", "API_KEY": "feedface", "UPSTREAM_KEY": "upstream-123"},
        "media": {"MEDIA_CLAIM": "claim-1"},
    }
    store = ConfigStore()
    for group, pairs in values.items():
        for key, value in pairs.items():
            store.set(tool_config.group_env_file(group), key, value)
    return values
