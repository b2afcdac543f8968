"""Shared test fixtures for agent-gateway."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from typing import Any
from unittest.mock import MagicMock

import pytest

from agent_gateway.audit.logger import AuditLogger
from agent_gateway.config import GatewaySettings
from agent_gateway.credentials import (
    AgentCredential,
    AgentKeyStore,
    CredentialCipher,
    CredentialDB,
    CredentialStore,
    GroupCredential,
    ProjectCredential,
)

APP_SECRET = "test-app-secret-0123456789"
ADMIN_TOKEN = "test-admin-token-0123456789"
WEBHOOK_SECRET = "hook-secret"
GITLAB_TOKEN = "glpat-test-token"
AGENT_KEY = "sk-ant-test-key"


@pytest.fixture
def mock_audit_logger() -> MagicMock:
    return MagicMock(spec=AuditLogger)


@pytest.fixture
def cipher() -> CredentialCipher:
    return CredentialCipher(APP_SECRET)


@pytest.fixture
def credential_db() -> Iterator[CredentialDB]:
    db = CredentialDB(":memory:")
    yield db
    db.close()


@pytest.fixture
def store(credential_db: CredentialDB, cipher: CredentialCipher) -> CredentialStore:
    return CredentialStore(credential_db, cipher)


@pytest.fixture
def agent_keys(credential_db: CredentialDB, cipher: CredentialCipher) -> AgentKeyStore:
    return AgentKeyStore(credential_db, cipher)


@pytest.fixture
def settings(tmp_path) -> GatewaySettings:
    return GatewaySettings(
        app_secret=APP_SECRET,
        admin_token=ADMIN_TOKEN,
        db_path=str(tmp_path / "gateway.db"),
        unit_url_template="http://{address}.units.test",
    )


@pytest.fixture
def configured_store(store: CredentialStore, agent_keys: AgentKeyStore) -> CredentialStore:
    """Store with project 42 configured and the agent key set."""
    record = make_project_credential()
    store.put(record.owner_key, record)
    agent_keys.put(AgentCredential(api_key=AGENT_KEY))
    return store


# --- Factory functions for test data ---


def make_project_credential(**kwargs: Any) -> ProjectCredential:
    defaults: dict[str, Any] = {
        "project_id": "42",
        "base_url": "https://gitlab.example.com",
        "token": GITLAB_TOKEN,
        "webhook_secret": WEBHOOK_SECRET,
        "project_namespace": "acme/api",
    }
    defaults.update(kwargs)
    return ProjectCredential(**defaults)


def make_group_credential(**kwargs: Any) -> GroupCredential:
    defaults: dict[str, Any] = {
        "group_id": "7",
        "group_path": "acme",
        "group_name": "Acme",
        "base_url": "https://gitlab.example.com",
        "token": "glpat-group-token",
        "webhook_secret": "group-hook-secret",
    }
    defaults.update(kwargs)
    return GroupCredential(**defaults)


def _project(project_id: int = 42, namespace: str = "acme/api") -> dict[str, Any]:
    return {
        "id": project_id,
        "path_with_namespace": namespace,
        "git_http_url": f"https://gitlab.example.com/{namespace}.git",
        "web_url": f"https://gitlab.example.com/{namespace}",
    }


def _user(username: str = "alice", bot: bool = False) -> dict[str, Any]:
    return {"id": 5, "username": username, "bot": bot}


def make_issue_payload(
    action: str = "open",
    description: str = "The login page crashes.",
    username: str = "alice",
    project_id: int = 42,
    namespace: str = "acme/api",
) -> dict[str, Any]:
    return {
        "object_kind": "issue",
        "user": _user(username),
        "project": _project(project_id, namespace),
        "object_attributes": {
            "id": 9001,
            "iid": 12,
            "title": "Login crash",
            "description": description,
            "action": action,
        },
        "labels": [{"id": 1, "title": "bug"}],
    }


def make_note_payload(
    note: str = "@duo-agent please fix this",
    noteable_type: str = "MergeRequest",
    username: str = "alice",
    system: bool = False,
    position: dict[str, Any] | None = None,
    project_id: int = 42,
    namespace: str = "acme/api",
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "object_kind": "note",
        "user": _user(username),
        "project": _project(project_id, namespace),
        "object_attributes": {
            "id": 555,
            "note": note,
            "noteable_type": noteable_type,
            "discussion_id": "abc123",
            "system": system,
        },
    }
    if position is not None:
        payload["object_attributes"]["position"] = position
    if noteable_type == "MergeRequest":
        payload["merge_request"] = {
            "id": 3001,
            "iid": 7,
            "title": "Add caching",
            "description": "Adds a cache layer.",
            "source_branch": "feature/cache",
            "target_branch": "main",
        }
    elif noteable_type == "Issue":
        payload["issue"] = {
            "id": 9001,
            "iid": 12,
            "title": "Login crash",
            "description": "The login page crashes.",
        }
    return payload


def make_mr_payload(
    action: str = "open",
    description: str = "@duo-agent add tests for the cache",
    username: str = "alice",
) -> dict[str, Any]:
    return {
        "object_kind": "merge_request",
        "user": _user(username),
        "project": _project(),
        "object_attributes": {
            "id": 3001,
            "iid": 7,
            "title": "Add caching",
            "description": description,
            "action": action,
            "source_branch": "feature/cache",
            "target_branch": "main",
        },
    }


@pytest.fixture
def issue_payload() -> Callable[..., dict[str, Any]]:
    return make_issue_payload


@pytest.fixture
def note_payload() -> Callable[..., dict[str, Any]]:
    return make_note_payload


@pytest.fixture
def mr_payload() -> Callable[..., dict[str, Any]]:
    return make_mr_payload


@pytest.fixture
def project_credential() -> Callable[..., ProjectCredential]:
    return make_project_credential


@pytest.fixture
def group_credential() -> Callable[..., GroupCredential]:
    return make_group_credential
