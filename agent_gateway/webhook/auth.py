"""Proof-of-origin verification for inbound webhooks.

Two strategies:
- TOKEN: the platform echoes a shared secret in a header (GitLab's
  ``X-Gitlab-Token``).
- SIGNATURE: the platform sends ``sha256=<hex>``, an HMAC-SHA256 of the raw
  body keyed with the shared secret (``X-Hub-Signature-256``).

Both sides of every comparison are hashed to fixed-length SHA-256 digests
before ``hmac.compare_digest``, so timing depends on neither length.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from enum import Enum

from agent_gateway.credentials.store import CredentialStore
from agent_gateway.errors import NotConfiguredError
from agent_gateway.webhook.models import WebhookEnvelope

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


class VerificationStrategy(str, Enum):
    TOKEN = "token"
    SIGNATURE = "signature"


def constant_time_equals(presented: str | bytes, expected: str | bytes) -> bool:
    """Compare two secrets without leaking their lengths or common prefix."""
    if isinstance(presented, str):
        presented = presented.encode()
    if isinstance(expected, str):
        expected = expected.encode()
    return hmac.compare_digest(
        hashlib.sha256(presented).digest(),
        hashlib.sha256(expected).digest(),
    )


def sign_body(secret: str, body: bytes) -> str:
    """Return the ``sha256=<hex>`` signature header value for ``body``."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + digest


class AuthenticationGate:
    """Validates inbound events against the webhook secret in the credential store."""

    def __init__(self, store: CredentialStore) -> None:
        self._store = store

    def authenticate(
        self,
        envelope: WebhookEnvelope,
        presented_token: str | None,
        raw_body: bytes = b"",
        strategy: VerificationStrategy = VerificationStrategy.TOKEN,
    ) -> bool:
        """Return whether the presented proof matches the stored webhook secret.

        Raises NotConfiguredError when no credential record covers the project.
        """
        resolved = self._store.resolve(envelope.project.id, envelope.project.namespace)
        if resolved is None:
            raise NotConfiguredError(
                f"No GitLab credentials configured for project {envelope.project.id}",
            )

        if not presented_token:
            logger.info("Rejecting event for project %s: no proof of origin", envelope.project.id)
            return False
        if not resolved.webhook_secret:
            logger.info(
                "Rejecting event for project %s: no webhook secret configured",
                envelope.project.id,
            )
            return False

        if strategy == VerificationStrategy.SIGNATURE:
            expected = sign_body(resolved.webhook_secret, raw_body)
            return constant_time_equals(presented_token.strip().lower(), expected)

        return constant_time_equals(presented_token, resolved.webhook_secret)
