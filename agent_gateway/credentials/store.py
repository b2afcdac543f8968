"""Encrypted credential store.

This module provides:
- CredentialStore: project- and group-scoped integration credentials
- AgentKeyStore: the coding agent's own API key, independent of any project
- namespace_matches: the configurable group path matching rule

Every read that fails authentication is reported as "not configured"
to the caller, logged, and recorded in the audit trail.
"""

from __future__ import annotations

import logging

from pydantic import TypeAdapter, ValidationError

from agent_gateway.audit.logger import AuditLogger
from agent_gateway.config import GroupMatchPolicy
from agent_gateway.credentials.cipher import CredentialCipher, IntegrityError
from agent_gateway.credentials.db import CredentialDB
from agent_gateway.credentials.models import (
    AgentCredential,
    CredentialRecord,
    CredentialScope,
    GroupCredential,
    OwnerKey,
    ProjectCredential,
    ResolvedCredentials,
)
from agent_gateway.models import AuditEvent, AuditEventType, RiskLevel, now_iso

logger = logging.getLogger(__name__)

_record_adapter: TypeAdapter[ProjectCredential | GroupCredential] = TypeAdapter(CredentialRecord)

AGENT_OWNER_ID = "default"


def _normalize_path(path: str, case_sensitive: bool) -> str:
    path = path.strip().strip("/")
    return path if case_sensitive else path.lower()


def namespace_matches(group_path: str, namespace: str, policy: GroupMatchPolicy) -> bool:
    """Return True if ``namespace`` belongs to the group at ``group_path``.

    Leading and trailing slashes are ignored on both sides. With prefix
    matching enabled the group path must end on a path-segment boundary,
    so ``acme`` covers ``acme/api`` but not ``acmecorp/api``.
    """
    group = _normalize_path(group_path, policy.case_sensitive)
    candidate = _normalize_path(namespace, policy.case_sensitive)
    if not group or not candidate:
        return False
    if candidate == group:
        return True
    return policy.allow_prefix and candidate.startswith(group + "/")


class _EncryptedRows:
    """Shared encrypt-then-persist / fetch-then-verify plumbing."""

    def __init__(
        self,
        db: CredentialDB,
        cipher: CredentialCipher,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._db = db
        self._cipher = cipher
        self._audit = audit_logger

    def _write(self, key: OwnerKey, payload: bytes, lookup_path: str | None = None) -> None:
        nonce, ciphertext = self._cipher.encrypt(payload, key.associated_data())
        self._db.upsert(
            key.scope.value,
            key.owner_id,
            nonce,
            ciphertext,
            updated_at=now_iso(),
            lookup_path=lookup_path,
        )

    def _open(self, key: OwnerKey, row: dict[str, object]) -> bytes | None:
        try:
            return self._cipher.decrypt(
                bytes(row["nonce"]),  # type: ignore[arg-type]
                bytes(row["ciphertext"]),  # type: ignore[arg-type]
                key.associated_data(),
            )
        except IntegrityError:
            logger.warning("Credential record %s failed integrity check; treating as absent", key)
            if self._audit:
                self._audit.log(AuditEvent(
                    event_type=AuditEventType.INTEGRITY_FAILURE,
                    action=f"decrypt:{key}",
                    result="failure",
                    risk_level=RiskLevel.CRITICAL,
                    details={"scope": key.scope.value, "owner_id": key.owner_id},
                ))
            return None


class CredentialStore(_EncryptedRows):
    """Keyed, encrypted persistence for project and group credentials.

    Exactly one record exists per owner key. ``put`` replaces the whole
    record; ``created_at`` of the replaced record is carried over.
    """

    def __init__(
        self,
        db: CredentialDB,
        cipher: CredentialCipher,
        match_policy: GroupMatchPolicy | None = None,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        super().__init__(db, cipher, audit_logger)
        self._policy = match_policy or GroupMatchPolicy()

    def put(self, key: OwnerKey, record: ProjectCredential | GroupCredential) -> None:
        """Encrypt and store ``record`` under ``key``, replacing any existing record."""
        if record.owner_key != key:
            raise ValueError(f"record belongs to {record.owner_key}, not {key}")

        existing = self.get(key)
        update: dict[str, str] = {"updated_at": now_iso()}
        if existing is not None:
            update["created_at"] = existing.created_at
        record = record.model_copy(update=update)

        lookup_path = record.group_path if isinstance(record, GroupCredential) else None
        self._write(key, record.model_dump_json().encode(), lookup_path=lookup_path)
        logger.info("Stored credentials for %s", key)

        if self._audit:
            self._audit.log(AuditEvent(
                event_type=AuditEventType.CREDENTIAL_STORED,
                action=f"put:{key}",
                result="success",
                risk_level=RiskLevel.MEDIUM,
                details={"scope": key.scope.value, "owner_id": key.owner_id, "replaced": existing is not None},
            ))

    def get(self, key: OwnerKey) -> ProjectCredential | GroupCredential | None:
        """Return the decrypted record for ``key``, or None if absent or corrupted."""
        row = self._db.fetch(key.scope.value, key.owner_id)
        if row is None:
            return None
        return self._decode(key, row)

    def _decode(
        self, key: OwnerKey, row: dict[str, object],
    ) -> ProjectCredential | GroupCredential | None:
        plaintext = self._open(key, row)
        if plaintext is None:
            return None
        try:
            return _record_adapter.validate_json(plaintext)
        except ValidationError:
            logger.warning("Credential record %s decrypted but did not parse", key)
            return None

    def resolve(self, project_id: str | int, project_namespace: str | None) -> ResolvedCredentials | None:
        """Find the credentials that apply to a project.

        Order: the project's own record, then the group whose path covers
        ``project_namespace`` (longest path first), then None.
        """
        project = self.get(OwnerKey.project(project_id))
        if project is not None:
            return ResolvedCredentials(record=project, source=CredentialScope.PROJECT)

        if not project_namespace:
            return None

        candidates = [
            row for row in self._db.fetch_scope(CredentialScope.GROUP.value)
            if row["lookup_path"] and namespace_matches(
                str(row["lookup_path"]), project_namespace, self._policy,
            )
        ]
        candidates.sort(key=lambda row: len(str(row["lookup_path"]).strip("/")), reverse=True)

        for row in candidates:
            key = OwnerKey.group(str(row["owner_id"]))
            group = self._decode(key, row)
            if group is not None:
                logger.debug(
                    "Resolved project %s via group %s", project_id, key.owner_id,
                )
                return ResolvedCredentials(record=group, source=CredentialScope.GROUP)
        return None

    def delete(self, key: OwnerKey) -> bool:
        removed = self._db.delete(key.scope.value, key.owner_id)
        if removed:
            logger.info("Deleted credentials for %s", key)
        return removed

    def list_keys(self, scope: CredentialScope) -> list[OwnerKey]:
        return [
            OwnerKey(scope=scope, owner_id=str(row["owner_id"]))
            for row in self._db.fetch_scope(scope.value)
        ]

    def group_paths(self) -> dict[str, str]:
        """Map of group id to configured group path, without decrypting anything."""
        return {
            str(row["owner_id"]): str(row["lookup_path"])
            for row in self._db.fetch_scope(CredentialScope.GROUP.value)
        }


class AgentKeyStore(_EncryptedRows):
    """Stores the coding agent's API key, encrypted, outside any project scope."""

    _key = OwnerKey(scope=CredentialScope.AGENT, owner_id=AGENT_OWNER_ID)

    def put(self, credential: AgentCredential) -> None:
        self._write(self._key, credential.model_dump_json().encode())
        logger.info("Stored agent API key")
        if self._audit:
            self._audit.log(AuditEvent(
                event_type=AuditEventType.CREDENTIAL_STORED,
                action=f"put:{self._key}",
                result="success",
                risk_level=RiskLevel.MEDIUM,
            ))

    def get(self) -> AgentCredential | None:
        row = self._db.fetch(self._key.scope.value, self._key.owner_id)
        if row is None:
            return None
        plaintext = self._open(self._key, row)
        if plaintext is None:
            return None
        try:
            return AgentCredential.model_validate_json(plaintext)
        except ValidationError:
            logger.warning("Agent key record decrypted but did not parse")
            return None
