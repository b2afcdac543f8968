"""Credential record models.

A credential record is scoped either to a single project or to a group
(every project whose namespace sits under the group's path). Records are
immutable values: updating a record means storing a complete replacement.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

from agent_gateway.models import now_iso

DEFAULT_BASE_URL = "https://gitlab.com"


class CredentialScope(str, Enum):
    PROJECT = "project"
    GROUP = "group"
    AGENT = "agent"


class OwnerKey(BaseModel):
    """Identity of a stored record: scope plus the owner's id."""

    model_config = ConfigDict(frozen=True)

    scope: CredentialScope
    owner_id: str = Field(min_length=1)

    @classmethod
    def project(cls, project_id: str | int) -> OwnerKey:
        return cls(scope=CredentialScope.PROJECT, owner_id=str(project_id))

    @classmethod
    def group(cls, group_id: str | int) -> OwnerKey:
        return cls(scope=CredentialScope.GROUP, owner_id=str(group_id))

    def associated_data(self) -> bytes:
        """Bytes bound into the ciphertext so a record cannot be moved between keys."""
        return f"{self.scope.value}:{self.owner_id}".encode()

    def __str__(self) -> str:
        return f"{self.scope.value}/{self.owner_id}"


class ProjectCredential(BaseModel):
    model_config = ConfigDict(frozen=True)

    scope: Literal["project"] = "project"
    project_id: str = Field(min_length=1)
    base_url: str = DEFAULT_BASE_URL
    token: str = Field(min_length=1)
    webhook_secret: str = Field(min_length=1)
    project_namespace: str | None = None
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)

    @property
    def owner_key(self) -> OwnerKey:
        return OwnerKey.project(self.project_id)


class GroupCredential(BaseModel):
    model_config = ConfigDict(frozen=True)

    scope: Literal["group"] = "group"
    group_id: str = Field(min_length=1)
    group_path: str = Field(min_length=1)
    group_name: str | None = None
    base_url: str = DEFAULT_BASE_URL
    token: str = Field(min_length=1)
    webhook_secret: str = Field(min_length=1)
    auto_discover_projects: bool = True
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)

    @property
    def owner_key(self) -> OwnerKey:
        return OwnerKey.group(self.group_id)


CredentialRecord = Annotated[
    ProjectCredential | GroupCredential,
    Field(discriminator="scope"),
]


class AgentCredential(BaseModel):
    """The coding agent's own API key. Never scoped to a project."""

    model_config = ConfigDict(frozen=True)

    api_key: str = Field(min_length=1)
    updated_at: str = Field(default_factory=now_iso)


class ResolvedCredentials(BaseModel):
    """Credentials selected for one event, plus where they came from."""

    model_config = ConfigDict(frozen=True)

    record: ProjectCredential | GroupCredential
    source: CredentialScope

    @property
    def base_url(self) -> str:
        return self.record.base_url

    @property
    def token(self) -> str:
        return self.record.token

    @property
    def webhook_secret(self) -> str:
        return self.record.webhook_secret
