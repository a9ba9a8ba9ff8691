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
Pushing configuration into a running service's settings API.

Settings are written one key at a time and only where the live value
differs. The full document is snapshotted before and compared after, so a
write that resets unrelated keys is detected and reported.
"""
import copy
import http.client
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from pydantic import SecretStr

from ..exceptions import SettingsPushError
from ..MODELS.run_state import SettingsReport
from ..UTILS import http_client

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass
class SettingsEndpoint:
    """Where and how to reach one service's settings API."""

    service: str
    url: str
    api_key: Optional[SecretStr] = None
    api_key_header: str = "x-api-key"

    def headers(self) -> Dict[str, str]:
        if self.api_key is None or not self.api_key.get_secret_value():
            return {}
        return {self.api_key_header: self.api_key.get_secret_value()}


def flatten(document: Any, prefix: str = "") -> Dict[str, Any]:
    """
    Flattens nested mappings into dotted keys; lists and scalars are leaves.
    """
    if not isinstance(document, dict) or (prefix and not document):
        return {prefix: document} if prefix else {}
    flat: Dict[str, Any] = {}
    for key, value in document.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        flat.update(flatten(value, path))
    return flat


def get_path(document: Any, dotted: str) -> Any:
    node = document
    for part in dotted.split("."):
        if not isinstance(node, dict) or part not in node:
            return _MISSING
        node = node[part]
    return node


def deep_merge(base: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    """
    Applies a dotted-key patch to a copy of ``base``.

    :param base: Nested settings document.
    :param patch: Dotted key -> value.
    :return: The merged document; ``base`` is not modified.
    """
    merged = copy.deepcopy(base)
    for dotted, value in patch.items():
        node = merged
        parts = dotted.split(".")
        for part in parts[:-1]:
            if not isinstance(node.get(part), dict):
                node[part] = {}
            node = node[part]
        node[parts[-1]] = value
    return merged


class SettingsApplier:
    """
    Field-level read-merge-write against a service's admin API:

    * ``GET  <url>/get/all``  full settings document
    * ``POST <url>/set/<a/b/c>`` with ``{"value": v}``  one key
    """
    def __init__(
        self,
        snapshot_dir: Optional[str] = None,
        transport: Callable[..., http_client.HttpResponse] = http_client.request,
        timeout: float = 15.0,
    ):
        """
        :param snapshot_dir: Where pre-push snapshots are kept; None disables them.
        :param transport: HTTP transport.
        :param timeout: Per-request timeout in seconds.
        """
        self.snapshot_dir = snapshot_dir
        self.transport = transport
        self.timeout = timeout

    def fetch(self, endpoint: SettingsEndpoint) -> Dict[str, Any]:
        """
        :raises SettingsPushError: If the document cannot be read.
        """
        url = endpoint.url.rstrip("/") + "/get/all"
        try:
            response = self.transport("GET", url, headers=endpoint.headers(), timeout=self.timeout)
        except (OSError, http.client.HTTPException) as e:
            raise SettingsPushError("*", f"cannot read settings: {e}") from e
        if not response.ok:
            raise SettingsPushError("*", f"cannot read settings: HTTP {response.status}")
        try:
            document = response.json()
        except ValueError as e:
            raise SettingsPushError("*", "settings document is not JSON") from e
        if not isinstance(document, dict):
            raise SettingsPushError("*", "settings document is not an object")
        return document

    def push(self, endpoint: SettingsEndpoint, key: str, value: Any) -> None:
        """
        Writes a single key.

        :raises SettingsPushError: If the service rejects the write.
        """
        url = endpoint.url.rstrip("/") + "/set/" + key.replace(".", "/")
        try:
            response = self.transport("POST", url, payload={"value": value},
                                      headers=endpoint.headers(), timeout=self.timeout)
        except (OSError, http.client.HTTPException) as e:
            raise SettingsPushError(key, str(e)) from e
        if not response.ok:
            detail = response.body.strip()[:200]
            raise SettingsPushError(key, f"HTTP {response.status}" + (f": {detail}" if detail else ""))

    def apply_settings(self, endpoint: SettingsEndpoint, patch: Dict[str, Any]) -> SettingsReport:
        """
        Pushes ``patch`` to the service.

        :param endpoint: The service's settings API.
        :param patch: Dotted key -> desired value.
        :return: What was pushed, skipped, failed or clobbered.
        """
        report = SettingsReport(service=endpoint.service)
        try:
            before = self.fetch(endpoint)
        except SettingsPushError as e:
            logger.warning("%s: %s", endpoint.service, e)
            report.errors.append(str(e))
            return report
        report.snapshot_path = self._save_snapshot(endpoint.service, before)

        applied: Dict[str, Any] = {}
        for key, value in patch.items():
            if get_path(before, key) == value:
                report.unchanged.append(key)
                applied[key] = value
                continue
            try:
                self.push(endpoint, key, value)
            except SettingsPushError as e:
                logger.warning("%s: %s", endpoint.service, e)
                report.errors.append(str(e))
                continue
            report.pushed.append(key)
            applied[key] = value

        if not report.pushed:
            return report

        try:
            after = self.fetch(endpoint)
        except SettingsPushError as e:
            report.errors.append(str(e))
            return report

        expected = flatten(deep_merge(before, applied))
        observed = flatten(after)
        for key in sorted(set(expected) | set(observed)):
            if expected.get(key, _MISSING) == observed.get(key, _MISSING):
                continue
            if any(key == k or key.startswith(k + ".") for k in patch):
                if key in applied:
                    report.errors.append(str(SettingsPushError(key, "value did not stick")))
                continue
            report.clobbered.append(key)

        if report.clobbered:
            logger.warning("%s: push changed unrelated settings: %s (snapshot: %s)",
                           endpoint.service, ", ".join(report.clobbered), report.snapshot_path)
        logger.info("%s: %d setting(s) pushed, %d unchanged", endpoint.service,
                    len(report.pushed), len(report.unchanged))
        return report

    def _save_snapshot(self, service: str, document: Dict[str, Any]) -> Optional[str]:
        if not self.snapshot_dir:
            return None
        os.makedirs(self.snapshot_dir, mode=0o700, exist_ok=True)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        path = os.path.join(self.snapshot_dir, f"{service}-settings-{stamp}.json")
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            json.dump(document, f, indent=2, sort_keys=True)
        return path
