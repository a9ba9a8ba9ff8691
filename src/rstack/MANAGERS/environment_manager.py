"""
Managers for resolving service environment bindings against group
configuration and writing them to per-service env files.
"""
import logging
from typing import Any, Dict, Optional

from jinja2 import Environment, StrictUndefined, TemplateError, UndefinedError, meta

from ..exceptions import ValidationError
from ..MODELS.deployment_graph import DeploymentGraph
from ..MODELS.secret import Discovered
from ..MODELS.service_definition import EnvBinding, ServiceDefinition
from ..MODELS.tool_config import ToolConfig
from .config_store import ConfigStore

logger = logging.getLogger(__name__)


class EnvironmentManager:
    """
    Merges a group's declared defaults with its persisted configuration and
    substitutes the result into each service's bindings.

    ``ref`` bindings may name a key of another group as ``group.KEY``;
    template bindings see other groups as mappings, e.g. ``{{ plex.PLEX_TOKEN }}``.
    """
    def __init__(self, config: ToolConfig, store: ConfigStore):
        """
        Initializes the environment manager.

        :param config: Tool configuration (env file locations).
        :param store: Reads the persisted group configuration.
        """
        self.config = config
        self.store = store
        self.jinja = Environment(undefined=StrictUndefined, keep_trailing_newline=True, autoescape=False)

    def group_context(self, graph: DeploymentGraph, group: str) -> Dict[str, str]:
        """
        Declared defaults, overridden by values persisted in the group's
        env file. Re-read on every call.
        """
        context = dict(graph.config.get(group, {}))
        context.update(self.store.values(self.config.group_env_file(group)))
        return context

    def resolve(self, graph: DeploymentGraph, service: ServiceDefinition,
                contexts: Optional[Dict[str, Dict[str, str]]] = None) -> Dict[str, str]:
        """
        Resolves every binding of ``service``.

        :param graph: The deployment graph (defaults and declared secrets).
        :param service: The service whose environment to resolve.
        :param contexts: Pre-loaded group contexts, loaded on demand if absent.
        :return: Variable name -> value.
        :raises ValidationError: On a missing key or a broken template.
        """
        contexts = contexts if contexts is not None else {}

        def context_of(group: str) -> Dict[str, str]:
            if group not in contexts:
                contexts[group] = self.group_context(graph, group)
            return contexts[group]

        resolved: Dict[str, str] = {}
        for binding in service.environment:
            if binding.ref is not None:
                resolved[binding.key] = self._resolve_ref(graph, service, binding, context_of)
            else:
                resolved[binding.key] = self._render(service, binding, context_of)
        return resolved

    def _resolve_ref(self, graph, service, binding: EnvBinding, context_of) -> str:
        group, key = service.group, binding.ref
        if "." in binding.ref:
            group, key = binding.ref.split(".", 1)
            if group not in graph.groups() and group not in graph.config:
                raise ValidationError(f"{service.name}: env {binding.key} refers to unknown group '{group}'")

        context = context_of(group)
        if key in context:
            return context[key]

        request = graph.find_secret(group, key)
        if request is not None and isinstance(request.policy, Discovered):
            logger.warning("%s: %s has not been discovered yet; using an empty value", service.name, key)
            return ""
        raise ValidationError(f"{service.name}: env {binding.key} refers to missing key {group}.{key}")

    def _render(self, service, binding: EnvBinding, context_of) -> str:
        if "{{" not in binding.value and "{%" not in binding.value:
            return binding.value

        variables = dict(context_of(service.group))
        for group in self._groups_in_template(binding.value):
            variables.setdefault(group, context_of(group))
        try:
            return self.jinja.from_string(binding.value).render(**variables)
        except UndefinedError as e:
            raise ValidationError(f"{service.name}: env {binding.key}: {e.message}") from e
        except TemplateError as e:
            raise ValidationError(f"{service.name}: env {binding.key} is not a valid template: {e}") from e

    def _groups_in_template(self, template: str):
        try:
            names = meta.find_undeclared_variables(self.jinja.parse(template))
        except TemplateError:
            return []
        return [n for n in names if n.islower()]

    def render_settings(self, graph: DeploymentGraph, service: ServiceDefinition) -> Dict[str, Any]:
        """
        Renders the settings patch of ``service``: string values are
        templates like environment values, everything else is passed as is.
        Keys whose template cannot be rendered yet are left out.
        """
        if service.settings is None:
            return {}
        contexts: Dict[str, Dict[str, str]] = {}

        def context_of(group: str) -> Dict[str, str]:
            if group not in contexts:
                contexts[group] = self.group_context(graph, group)
            return contexts[group]

        patch: Dict[str, Any] = {}
        for key, value in service.settings.values.items():
            if isinstance(value, str):
                try:
                    value = self._render(service, EnvBinding(key=key, value=value), context_of)
                except ValidationError as e:
                    logger.warning("Skipping setting %s: %s", key, e)
                    continue
            patch[key] = value
        return patch

    def lookup(self, graph: DeploymentGraph, group: str, key: str) -> Optional[str]:
        """Value of ``key`` in ``group``'s configuration, if any."""
        return self.group_context(graph, group).get(key)

    def write_env_file(self, service: ServiceDefinition, resolved: Dict[str, str]) -> bool:
        """
        Writes ``<service>.env`` (mode 0600) next to the group's compose file.

        :return: True if the content changed.
        """
        path = self.config.service_env_file(service.group, service.name)
        changed = self.store.write(path, resolved)
        if changed:
            logger.info("Updated environment of %s", service.name)
        return changed
