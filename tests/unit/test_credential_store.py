"""Tests for the encrypted credential store and namespace resolution."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from agent_gateway.config import GroupMatchPolicy
from agent_gateway.credentials import (
    AgentCredential,
    AgentKeyStore,
    CredentialCipher,
    CredentialDB,
    CredentialScope,
    CredentialStore,
    OwnerKey,
    namespace_matches,
)
from agent_gateway.models import AuditEventType


def _file_store(tmp_path: Path, audit_logger: MagicMock | None = None) -> tuple[CredentialStore, str]:
    db_path = str(tmp_path / "creds.db")
    store = CredentialStore(
        CredentialDB(db_path), CredentialCipher("x" * 32), audit_logger=audit_logger,
    )
    return store, db_path


def _tamper(db_path: str, scope: str, owner_id: str) -> None:
    conn = sqlite3.connect(db_path)
    (ciphertext,) = conn.execute(
        "SELECT ciphertext FROM credentials WHERE scope = ? AND owner_id = ?", (scope, owner_id),
    ).fetchone()
    flipped = bytearray(ciphertext)
    flipped[0] ^= 0x01
    conn.execute(
        "UPDATE credentials SET ciphertext = ? WHERE scope = ? AND owner_id = ?",
        (bytes(flipped), scope, owner_id),
    )
    conn.commit()
    conn.close()


class TestPutGet:
    def test_round_trip_project(self, store, project_credential) -> None:
        record = project_credential()
        store.put(record.owner_key, record)
        loaded = store.get(OwnerKey.project("42"))
        assert loaded is not None
        assert loaded.token == record.token
        assert loaded.webhook_secret == record.webhook_secret
        assert loaded.project_namespace == "acme/api"

    def test_round_trip_group(self, store, group_credential) -> None:
        record = group_credential()
        store.put(record.owner_key, record)
        loaded = store.get(OwnerKey.group("7"))
        assert loaded == record.model_copy(update={"updated_at": loaded.updated_at})

    def test_unknown_key_returns_none(self, store) -> None:
        assert store.get(OwnerKey.project("missing")) is None

    def test_put_replaces_whole_record_and_keeps_created_at(self, store, project_credential) -> None:
        first = project_credential(token="old-token", project_namespace="acme/api")
        store.put(first.owner_key, first)
        created_at = store.get(first.owner_key).created_at

        second = project_credential(token="new-token", project_namespace=None)
        store.put(second.owner_key, second)

        loaded = store.get(second.owner_key)
        assert loaded.token == "new-token"
        assert loaded.project_namespace is None
        assert loaded.created_at == created_at

    def test_put_rejects_mismatched_key(self, store, project_credential) -> None:
        with pytest.raises(ValueError):
            store.put(OwnerKey.project("99"), project_credential(project_id="42"))

    def test_put_writes_audit_event(self, credential_db, cipher, mock_audit_logger, project_credential) -> None:
        store = CredentialStore(credential_db, cipher, audit_logger=mock_audit_logger)
        record = project_credential()
        store.put(record.owner_key, record)
        event = mock_audit_logger.log.call_args[0][0]
        assert event.event_type == AuditEventType.CREDENTIAL_STORED
        assert "token" not in str(event.details)

    def test_database_holds_no_plaintext(self, tmp_path, project_credential) -> None:
        store, db_path = _file_store(tmp_path)
        record = project_credential(token="glpat-very-secret")
        store.put(record.owner_key, record)
        for path in Path(db_path).parent.glob("creds.db*"):
            assert b"glpat-very-secret" not in path.read_bytes()

    def test_delete_and_list(self, store, project_credential, group_credential) -> None:
        store.put(OwnerKey.project("42"), project_credential())
        store.put(OwnerKey.project("43"), project_credential(project_id="43"))
        store.put(OwnerKey.group("7"), group_credential())

        assert [k.owner_id for k in store.list_keys(CredentialScope.PROJECT)] == ["42", "43"]
        assert store.group_paths() == {"7": "acme"}
        assert store.delete(OwnerKey.project("42")) is True
        assert store.delete(OwnerKey.project("42")) is False
        assert store.get(OwnerKey.project("42")) is None


class TestIntegrity:
    def test_tampered_record_reads_as_absent(self, tmp_path, project_credential) -> None:
        audit = MagicMock()
        store, db_path = _file_store(tmp_path, audit)
        record = project_credential()
        store.put(record.owner_key, record)
        audit.reset_mock()

        _tamper(db_path, "project", "42")

        assert store.get(OwnerKey.project("42")) is None
        assert store.resolve("42", None) is None
        event = audit.log.call_args[0][0]
        assert event.event_type == AuditEventType.INTEGRITY_FAILURE

    def test_tampered_record_logs_warning(self, tmp_path, project_credential, caplog) -> None:
        store, db_path = _file_store(tmp_path)
        record = project_credential()
        store.put(record.owner_key, record)
        _tamper(db_path, "project", "42")

        with caplog.at_level("WARNING"):
            store.get(OwnerKey.project("42"))
        assert "integrity" in caplog.text

    def test_ciphertext_moved_to_another_row_fails(self, tmp_path, project_credential) -> None:
        store, db_path = _file_store(tmp_path)
        store.put(OwnerKey.project("1"), project_credential(project_id="1", token="one"))
        store.put(OwnerKey.project("2"), project_credential(project_id="2", token="two"))

        conn = sqlite3.connect(db_path)
        nonce, ciphertext = conn.execute(
            "SELECT nonce, ciphertext FROM credentials WHERE owner_id = '1'",
        ).fetchone()
        conn.execute(
            "UPDATE credentials SET nonce = ?, ciphertext = ? WHERE owner_id = '2'",
            (nonce, ciphertext),
        )
        conn.commit()
        conn.close()

        assert store.get(OwnerKey.project("2")) is None
        assert store.get(OwnerKey.project("1")).token == "one"

    def test_other_app_secret_reads_nothing(self, tmp_path, project_credential) -> None:
        store, db_path = _file_store(tmp_path)
        record = project_credential()
        store.put(record.owner_key, record)

        other = CredentialStore(CredentialDB(db_path), CredentialCipher("y" * 32))
        assert other.get(record.owner_key) is None


class TestResolve:
    def test_project_record_wins_over_group(self, store, project_credential, group_credential) -> None:
        store.put(OwnerKey.group("7"), group_credential(group_path="acme"))
        store.put(OwnerKey.project("42"), project_credential())

        resolved = store.resolve("42", "acme/api")
        assert resolved.source == CredentialScope.PROJECT
        assert resolved.token == "glpat-test-token"

    def test_group_fallback_on_prefix(self, store, group_credential) -> None:
        store.put(OwnerKey.group("7"), group_credential(group_path="acme"))

        resolved = store.resolve("100", "acme/platform/api")
        assert resolved is not None
        assert resolved.source == CredentialScope.GROUP
        assert resolved.token == "glpat-group-token"

    def test_group_fallback_on_exact_path(self, store, group_credential) -> None:
        store.put(OwnerKey.group("7"), group_credential(group_path="acme"))
        assert store.resolve("100", "acme") is not None

    def test_longest_group_path_wins(self, store, group_credential) -> None:
        store.put(OwnerKey.group("1"), group_credential(group_id="1", group_path="acme", token="outer"))
        store.put(
            OwnerKey.group("2"),
            group_credential(group_id="2", group_path="acme/platform", token="inner"),
        )
        assert store.resolve("100", "acme/platform/api").token == "inner"
        assert store.resolve("101", "acme/web").token == "outer"

    def test_no_match_returns_none(self, store, group_credential) -> None:
        store.put(OwnerKey.group("7"), group_credential(group_path="acme"))
        assert store.resolve("100", "acmecorp/api") is None
        assert store.resolve("100", None) is None

    def test_prefix_disabled_requires_exact(self, credential_db, cipher, group_credential) -> None:
        store = CredentialStore(credential_db, cipher, GroupMatchPolicy(allow_prefix=False))
        store.put(OwnerKey.group("7"), group_credential(group_path="acme"))
        assert store.resolve("100", "acme/api") is None
        assert store.resolve("100", "acme") is not None


class TestNamespaceMatches:
    @pytest.mark.parametrize(
        ("group_path", "namespace", "expected"),
        [
            ("acme", "acme", True),
            ("acme", "acme/api", True),
            ("acme/", "/acme/api/", True),
            ("acme", "ACME/Api", True),
            ("acme", "acmecorp/api", False),
            ("acme/platform", "acme/api", False),
            ("acme", "", False),
        ],
    )
    def test_default_policy(self, group_path: str, namespace: str, expected: bool) -> None:
        assert namespace_matches(group_path, namespace, GroupMatchPolicy()) is expected

    def test_case_sensitive_policy(self) -> None:
        policy = GroupMatchPolicy(case_sensitive=True)
        assert namespace_matches("acme", "acme/api", policy)
        assert not namespace_matches("acme", "ACME/api", policy)

    def test_exact_only_policy(self) -> None:
        policy = GroupMatchPolicy(allow_prefix=False)
        assert namespace_matches("acme", "Acme/", policy)
        assert not namespace_matches("acme", "acme/api", policy)


class TestAgentKeyStore:
    def test_round_trip(self, agent_keys) -> None:
        assert agent_keys.get() is None
        agent_keys.put(AgentCredential(api_key="sk-1"))
        assert agent_keys.get().api_key == "sk-1"

    def test_agent_key_is_not_a_project_record(self, store, agent_keys) -> None:
        agent_keys.put(AgentCredential(api_key="sk-1"))
        assert store.list_keys(CredentialScope.PROJECT) == []
        assert store.resolve("default", "default") is None
