"""Encrypted credential store for project, group and agent secrets.

This package provides:
- AES-256-GCM encryption keyed from the application secret
- SQLite persistence of ciphertext rows
- Project-first, group-fallback resolution of integration credentials
"""

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
from agent_gateway.credentials.store import AgentKeyStore, CredentialStore, namespace_matches

__all__ = [
    # Exceptions
    "IntegrityError",
    # Components
    "AgentKeyStore",
    "CredentialCipher",
    "CredentialDB",
    "CredentialStore",
    "namespace_matches",
    # Models
    "AgentCredential",
    "CredentialRecord",
    "CredentialScope",
    "GroupCredential",
    "OwnerKey",
    "ProjectCredential",
    "ResolvedCredentials",
]
