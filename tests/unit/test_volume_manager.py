# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Unit tests for the host directory layout.
"""
import os
import stat

from rstack.MANAGERS.volume_manager import VolumeManager
from rstack.MODELS.service_definition import ServiceDefinition, VolumeMount


class TestVolumeManager:
    """Tests for VolumeManager."""

    def test_host_paths(self, tool_config):
        """Bind mounts and data paths, without named volumes or duplicates."""
        svc = ServiceDefinition(
            name="riven", group="riven", image="riven:1",
            volumes=[VolumeMount(host_path="/opt/media/riven/data", container_path="/data"),
                     VolumeMount(host_path="cache", container_path="/cache")],
            data_paths=["/opt/media/riven/data", "/opt/media/riven/logs"],
        )
        vm = VolumeManager(tool_config)
        assert vm.host_paths(svc) == ["/opt/media/riven/data", "/opt/media/riven/logs"]

    def test_prepare_layout(self, tool_config, graph):
        """Group directories are private and managed mounts are skipped."""
        vm = VolumeManager(tool_config)
        created = vm.prepare_layout(graph)

        group_dir = tool_config.group_dir("app")
        assert group_dir in created
        assert stat.S_IMODE(os.stat(group_dir).st_mode) == 0o700
        assert os.path.isdir(os.path.join(tool_config.media_root, "app", "db"))
        assert os.path.join(tool_config.media_root, "shared", "mount") not in created

    def test_prepare_layout_idempotent(self, tool_config, graph):
        """A second run creates nothing."""
        vm = VolumeManager(tool_config)
        vm.prepare_layout(graph)
        assert vm.prepare_layout(graph) == []

    def test_purge_recreates_empty(self, tool_config, graph):
        """Data directories are deleted and, on request, recreated empty."""
        vm = VolumeManager(tool_config)
        vm.prepare_layout(graph)
        db_dir = os.path.join(tool_config.media_root, "app", "db")
        with open(os.path.join(db_dir, "PG_VERSION"), "w") as f:
            f.write("17")

        assert vm.purge(graph.services["app-db"], recreate=True) == [db_dir]
        assert os.listdir(db_dir) == []

    def test_purge_refuses_paths_outside_root(self, tool_config, tmp_path):
        """Nothing outside the media root is ever deleted."""
        outside = tmp_path / "elsewhere"
        outside.mkdir()
        svc = ServiceDefinition(name="x", group="g", image="x:1", data_paths=[str(outside)])
        assert VolumeManager(tool_config).purge(svc) == []
        assert outside.is_dir()

    def test_remove_root(self, tool_config, graph):
        """The whole media root goes."""
        vm = VolumeManager(tool_config)
        vm.prepare_layout(graph)
        assert vm.remove_root() is True
        assert not os.path.exists(tool_config.media_root)
        assert vm.remove_root() is False
