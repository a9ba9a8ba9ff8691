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
Provisioning of secrets and operator inputs: prompted, required, generated
from a cryptographic random source, or discovered from a service's files.
"""
import base64
import logging
import re
import secrets
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Mapping, Optional

from pydantic import SecretStr

from ..exceptions import ValidationError
from ..MODELS.secret import (
    Discovered,
    Generated,
    GenerationMethod,
    Prompted,
    Required,
    Secret,
    SecretConstraint,
    SecretRequest,
    SecretShape,
)
from ..UTILS.retry import retry
from .config_store import ConfigStore

logger = logging.getLogger(__name__)

# (text, default, hidden) -> answer
PromptFn = Callable[[str, Optional[str], bool], str]


def generate(shape: SecretShape, length: int) -> str:
    """
    Produces a random value of the requested shape.

    :param shape: hex / base64 of ``length`` bytes, or alnum of ``length`` chars.
    :param length: Bytes or characters, depending on the shape.
    :return: The generated value.
    """
    if length <= 0:
        raise ValidationError(f"Secret length must be positive, got {length}")
    if shape == SecretShape.HEX:
        return secrets.token_hex(length)
    if shape == SecretShape.BASE64:
        return base64.b64encode(secrets.token_bytes(length)).decode()

    value = ""
    while len(value) < length:
        chunk = base64.b64encode(secrets.token_bytes(length * 2)).decode()
        value += re.sub(r"[/+=\n]", "", chunk)
    return value[:length]


def check_constraint(key: str, value: str, constraint: SecretConstraint) -> None:
    """
    :raises ValidationError: If ``value`` violates ``constraint``.
    """
    if constraint.exact_length is not None and len(value) != constraint.exact_length:
        raise ValidationError(
            f"{key} must be exactly {constraint.exact_length} characters (got {len(value)})"
        )
    if constraint.min_length is not None and len(value) < constraint.min_length:
        raise ValidationError(f"{key} must be at least {constraint.min_length} characters")
    if constraint.pattern is not None and not re.fullmatch(constraint.pattern, value):
        raise ValidationError(f"{key} does not match the expected format")


class SecretProvisioner:
    """
    Resolves each SecretRequest once and persists the result immediately, so
    a value is never silently regenerated.
    """
    def __init__(
        self,
        store: ConfigStore,
        env_file_for: Callable[[str], str],
        prompt: Optional[PromptFn] = None,
        supplied: Optional[Mapping[str, str]] = None,
        interactive: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        :param store: Persistence for provisioned values.
        :param env_file_for: Maps a service group to its env file.
        :param prompt: Asks the operator; required when interactive.
        :param supplied: Pre-supplied values by key (``--set KEY=VALUE``).
        :param interactive: If False, prompts are never shown and defaults apply.
        :param sleep: Sleep function for discovery polling.
        """
        self.store = store
        self.env_file_for = env_file_for
        self.prompt = prompt
        self.supplied: Dict[str, str] = dict(supplied or {})
        self.interactive = interactive
        self.sleep = sleep

    def current(self, request: SecretRequest) -> Optional[str]:
        return self.store.get(self.env_file_for(request.group), request.key)

    def provision(self, request: SecretRequest, rotate: bool = False) -> Optional[Secret]:
        """
        Returns the value for ``request``, obtaining and persisting it if needed.

        An already-persisted, non-empty value is returned unchanged unless
        ``rotate`` is set. Pre-supplied values always win. Discovered secrets
        are only read back here; see ``discover``.

        :param request: What to provision.
        :param rotate: Obtain a new value even if one is stored.
        :return: The secret, or None for a discovered secret not found yet.
        :raises ValidationError: On invalid or missing operator input.
        """
        policy = request.policy
        existing = self.current(request)

        if request.key in self.supplied:
            value = self.supplied[request.key]
            if isinstance(policy, (Required, Prompted)):
                self._validate(request, value)
            return self._persist(request, value, GenerationMethod.SUPPLIED)

        if existing and not rotate:
            return self._secret(request, existing, self._method_of(request))

        if isinstance(policy, Generated):
            value = generate(policy.shape, policy.length)
            logger.info("Generated %s for %s", request.key, request.group)
            return self._persist(request, value, GenerationMethod.RANDOM)

        if isinstance(policy, Required):
            value = self._ask(request, policy.prompt, existing or None, policy.hidden)
            if not value:
                raise ValidationError(f"{request.key} is required")
            self._validate(request, value)
            return self._persist(request, value, GenerationMethod.REQUIRED)

        if isinstance(policy, Prompted):
            default = existing if existing is not None and rotate else policy.default
            value = self._ask(request, policy.prompt, default, False)
            if not value and not policy.allow_empty:
                raise ValidationError(f"{request.key} must not be empty")
            if value:
                self._validate(request, value)
            return self._persist(request, value, GenerationMethod.PROMPTED)

        if existing and isinstance(policy, Discovered):
            return self._secret(request, existing, GenerationMethod.DISCOVERED)
        return None

    def discover(self, request: SecretRequest, max_wait: Optional[float] = None) -> Optional[Secret]:
        """
        Polls the file a running service writes until the pattern matches.

        :param request: A request whose policy is ``Discovered``.
        :param max_wait: Overrides the policy's wait budget.
        :return: The persisted secret, or None if it did not appear in time.
        """
        policy = request.policy
        if not isinstance(policy, Discovered):
            raise ValidationError(f"{request.key} is not a discovered secret")

        existing = self.current(request)
        if existing:
            return self._secret(request, existing, GenerationMethod.DISCOVERED)

        budget = policy.max_wait if max_wait is None else max_wait
        attempts = max(1, int(budget / policy.interval) + 1)
        pattern = re.compile(policy.pattern)

        def _read() -> Optional[str]:
            with open(policy.path, "r", errors="replace") as f:
                match = pattern.search(f.read())
            return match.group(1) if match and match.groups() else (match.group(0) if match else None)

        outcome = retry(_read, attempts=attempts, backoff=policy.interval, max_wait=budget,
                        sleep=self.sleep, label=f"discover {request.key}")
        if not outcome.success:
            logger.warning("%s not found in %s after %.0fs", request.key, policy.path, budget)
            return None

        secret = self._persist(request, outcome.value, GenerationMethod.DISCOVERED)
        for key in request.clears:
            self.store.set(self.env_file_for(request.group), key, "")
        return secret

    def _ask(self, request: SecretRequest, text: Optional[str], default: Optional[str], hidden: bool) -> str:
        if not self.interactive or self.prompt is None:
            if default is None and isinstance(request.policy, Required):
                raise ValidationError(
                    f"{request.key} is required; pass --set {request.key}=VALUE in non-interactive mode"
                )
            return default or ""
        answer = self.prompt(text or request.key, default, hidden)
        return (answer or "").strip()

    def _validate(self, request: SecretRequest, value: str) -> None:
        constraint = getattr(request.policy, "constraint", None)
        if constraint is not None:
            check_constraint(request.key, value, constraint)

    def _persist(self, request: SecretRequest, value: str, method: GenerationMethod) -> Secret:
        self.store.set(self.env_file_for(request.group), request.key, value)
        return self._secret(request, value, method, datetime.now(timezone.utc))

    def _secret(self, request, value, method, persisted_at=None) -> Secret:
        return Secret(
            group=request.group,
            key=request.key,
            value=SecretStr(value),
            generation_method=method,
            persisted_at=persisted_at,
        )

    @staticmethod
    def _method_of(request: SecretRequest) -> GenerationMethod:
        return {
            "required": GenerationMethod.REQUIRED,
            "prompted": GenerationMethod.PROMPTED,
            "generated": GenerationMethod.RANDOM,
            "discovered": GenerationMethod.DISCOVERED,
        }[request.policy.kind]
