"""
Models for secrets and the policies that produce them.
"""
from datetime import datetime
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, SecretStr


class SecretShape(str, Enum):
    """
    Shape of an auto-generated secret.
    """
    HEX = "hex"  # hex string of N random bytes
    BASE64 = "base64"  # base64 string of N random bytes
    ALNUM = "alnum"  # N alphanumeric characters


class GenerationMethod(str, Enum):
    PROMPTED = "prompted"
    RANDOM = "random"
    REQUIRED = "required"
    DISCOVERED = "discovered"
    SUPPLIED = "supplied"


class SecretConstraint(BaseModel):
    """
    Constraint checked against operator-supplied values.
    """
    model_config = ConfigDict(frozen=True)

    exact_length: Optional[int] = None
    min_length: Optional[int] = None
    pattern: Optional[str] = None


class Required(BaseModel):
    """Operator must supply a non-empty value."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["required"] = "required"
    prompt: Optional[str] = None
    constraint: SecretConstraint = Field(default_factory=SecretConstraint)
    hidden: bool = True


class Prompted(BaseModel):
    """Operator is asked, with a default that is accepted on empty input."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["prompted"] = "prompted"
    prompt: Optional[str] = None
    default: str = ""
    constraint: SecretConstraint = Field(default_factory=SecretConstraint)
    allow_empty: bool = True


class Generated(BaseModel):
    """Value is produced from a cryptographic random source."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["generated"] = "generated"
    shape: SecretShape = SecretShape.HEX
    length: int = 16


class Discovered(BaseModel):
    """
    Value is read from a file that a running service writes, e.g. a token in
    an application's preferences file. ``after`` names the service that must
    be running before the file can appear.
    """
    model_config = ConfigDict(frozen=True)

    kind: Literal["discovered"] = "discovered"
    path: str
    pattern: str
    after: str
    max_wait: float = 180.0
    interval: float = 2.0


SecretPolicy = Annotated[
    Union[Required, Prompted, Generated, Discovered], Field(discriminator="kind")
]


class SecretRequest(BaseModel):
    """
    Declaration of one key a service group needs, and how to obtain it.
    """
    model_config = ConfigDict(frozen=True)

    group: str
    key: str
    policy: SecretPolicy
    clears: List[str] = []  # keys blanked once this value is obtained

    @property
    def is_sensitive(self) -> bool:
        if isinstance(self.policy, (Generated, Discovered)):
            return True
        if isinstance(self.policy, Required):
            return self.policy.hidden
        return False


class Secret(BaseModel):
    """
    A provisioned secret. The value never appears in reprs or logs.
    """
    group: str
    key: str
    value: SecretStr
    generation_method: GenerationMethod
    persisted_at: Optional[datetime] = None
