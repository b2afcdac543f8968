"""GitLab webhook dispatch pipeline.

Orchestrates one inbound webhook request using direct calls to each stage:

1. Header check (event kind and proof of origin)
2. Body parsing into a WebhookEnvelope
3. Authentication against the stored webhook secret
4. Classification (drops end here with 200)
5. Context assembly
6. In-flight check on the dispatch address
7. Dispatch to the execution unit
8. Error mirroring back to GitLab and audit logging
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING

import httpx

from agent_gateway.errors import (
    AuthenticationError,
    DispatchTransportError,
    ExecutionFailure,
    GatewayError,
    MalformedEventError,
    NotConfiguredError,
)
from agent_gateway.gitlab.client import CommentTarget, GitLabAPIError, GitLabClient
from agent_gateway.models import AuditEvent, AuditEventType, RiskLevel
from agent_gateway.webhook.auth import VerificationStrategy
from agent_gateway.webhook.classifier import Drop
from agent_gateway.webhook.models import EventIdentity, ProcessingMode, WebhookResponse
from agent_gateway.webhook.parser import parse_gitlab_payload

if TYPE_CHECKING:
    from agent_gateway.audit.logger import AuditLogger
    from agent_gateway.webhook.auth import AuthenticationGate
    from agent_gateway.webhook.classifier import EventClassifier
    from agent_gateway.webhook.context import ContextBuilder, ProcessingContext
    from agent_gateway.webhook.inflight import InFlightGuard
    from agent_gateway.webhook.router import DispatchRouter

logger = logging.getLogger(__name__)

EVENT_HEADER = "x-gitlab-event"
TOKEN_HEADER = "x-gitlab-token"
SIGNATURE_HEADER = "x-hub-signature-256"

_MAX_BODY_SIZE = 10 * 1024 * 1024


def _mirror_target(context: ProcessingContext) -> CommentTarget | None:
    if context.mode in (ProcessingMode.ISSUE, ProcessingMode.ISSUE_COMMENT) and context.issue_iid:
        return CommentTarget(project_id=context.project_id or "", kind="issue", iid=context.issue_iid)
    if context.mr_iid:
        return CommentTarget(
            project_id=context.project_id or "", kind="merge_request", iid=context.mr_iid,
        )
    return None


class GitLabWebhookPipeline:
    """Runs the authenticate, classify, build and dispatch stages for one request."""

    def __init__(
        self,
        gate: AuthenticationGate,
        classifier: EventClassifier,
        builder: ContextBuilder,
        router: DispatchRouter,
        inflight: InFlightGuard,
        platform: str = "gitlab",
        mirror_errors: bool = True,
        audit_logger: AuditLogger | None = None,
        client_factory: Callable[..., GitLabClient] = GitLabClient,
        gitlab_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._gate = gate
        self._classifier = classifier
        self._builder = builder
        self._router = router
        self._inflight = inflight
        self._platform = platform
        self._mirror_errors = mirror_errors
        self._audit = audit_logger
        self._client_factory = client_factory
        self._gitlab_transport = gitlab_transport

    async def handle(
        self,
        headers: Mapping[str, str],
        body: bytes,
        source_ip: str | None = None,
    ) -> WebhookResponse:
        """Process one webhook delivery and return the response for GitLab."""
        event_kind = headers.get(EVENT_HEADER)
        if not event_kind:
            return WebhookResponse(
                message="Bad request", status_code=400, error="Missing X-Gitlab-Event header",
            )

        if len(body) > _MAX_BODY_SIZE:
            return WebhookResponse(message="Request body too large", status_code=413)

        try:
            envelope = parse_gitlab_payload(json.loads(body))
        except json.JSONDecodeError:
            return WebhookResponse(message="Bad request", status_code=400, error="Invalid JSON body")
        except MalformedEventError as e:
            return WebhookResponse(message="Bad request", status_code=400, error=e.message)

        project_id = envelope.project.id
        self._log(
            AuditEventType.WEBHOOK_RECEIVED, "received", "success", RiskLevel.INFO,
            source_ip, project_id, {"event": event_kind, "kind": envelope.kind},
        )

        if TOKEN_HEADER in headers:
            presented, strategy = headers.get(TOKEN_HEADER), VerificationStrategy.TOKEN
        else:
            presented, strategy = headers.get(SIGNATURE_HEADER), VerificationStrategy.SIGNATURE

        try:
            authenticated = self._gate.authenticate(envelope, presented, body, strategy)
        except NotConfiguredError as e:
            logger.info("Rejecting event for project %s: %s", project_id, e.message)
            self._log(
                AuditEventType.AUTH_FAILURE, "authenticate", "not_configured", RiskLevel.MEDIUM,
                source_ip, project_id, {"strategy": strategy.value},
            )
            return self._error_response(e)
        if not authenticated:
            self._log(
                AuditEventType.AUTH_FAILURE, "authenticate", "failure", RiskLevel.HIGH,
                source_ip, project_id,
                {"strategy": strategy.value, "token_present": bool(presented)},
            )
            return self._error_response(AuthenticationError("Invalid webhook token"))

        decision = self._classifier.classify(envelope)
        if isinstance(decision, Drop):
            logger.info("Ignoring %s event for project %s: %s", envelope.kind, project_id, decision.message)
            self._log(
                AuditEventType.EVENT_DROPPED, "classify", "ignored", RiskLevel.INFO,
                source_ip, project_id, {"reason": decision.reason.value},
            )
            return WebhookResponse(message=f"Event ignored: {decision.message}", status_code=200)

        try:
            context = self._builder.build(decision, envelope)
        except GatewayError as e:
            logger.warning("Cannot build context for project %s: %s", project_id, e.message)
            return self._error_response(e)

        identity = EventIdentity(
            platform=self._platform, mode=decision.mode, event_id=envelope.object_id,
        )
        address = self._router.address_for(identity)
        if not self._inflight.acquire(address):
            logger.info("Dispatch %s already in flight; acknowledging redelivery", address)
            return WebhookResponse(message="Event already being processed", status_code=202)

        try:
            outcome = await self._router.dispatch(context, identity)
        except ExecutionFailure as e:
            self._log_dispatch(source_ip, project_id, address, "failure", e.message)
            await self._mirror_failure(context, e)
            return WebhookResponse(message="Processing failed", status_code=500, error=e.message)
        except DispatchTransportError as e:
            self._log_dispatch(source_ip, project_id, address, "error", e.message)
            return WebhookResponse(message="Execution unit unavailable", status_code=500)
        finally:
            self._inflight.release(address)

        self._log_dispatch(source_ip, project_id, address, "success", None)
        return WebhookResponse(message=outcome.message, status_code=200)

    async def _mirror_failure(self, context: ProcessingContext, failure: ExecutionFailure) -> None:
        """Post the unit's failure as a comment on the originating thread."""
        if not self._mirror_errors:
            return
        target = _mirror_target(context)
        if target is None or not context.gitlab_url or not context.gitlab_token:
            return

        client = self._client_factory(
            context.gitlab_url, context.gitlab_token, transport=self._gitlab_transport,
        )
        body = f"Automated processing failed:\n\n```\n{failure.message}\n```"
        try:
            await client.post_comment(target, body, discussion_id=context.discussion_id)
        except (GitLabAPIError, httpx.HTTPError) as e:
            logger.warning("Could not mirror failure to %s %s: %s", target.kind, target.iid, e)

    def _error_response(self, error: GatewayError) -> WebhookResponse:
        return WebhookResponse(
            message=type(error).__name__, status_code=error.status_code, error=error.message,
        )

    def _log_dispatch(
        self,
        source_ip: str | None,
        project_id: str,
        address: str,
        result: str,
        error: str | None,
    ) -> None:
        details: dict[str, object] = {"address": address}
        if error:
            details["error"] = error
        risk = RiskLevel.INFO if result == "success" else RiskLevel.MEDIUM
        self._log(AuditEventType.DISPATCH, "dispatch", result, risk, source_ip, project_id, details)

    def _log(
        self,
        event_type: AuditEventType,
        action: str,
        result: str,
        risk_level: RiskLevel,
        source_ip: str | None,
        project_id: str | None,
        details: dict[str, object] | None = None,
    ) -> None:
        if self._audit:
            self._audit.log(AuditEvent(
                event_type=event_type,
                source_ip=source_ip,
                project_id=project_id,
                action=action,
                result=result,
                risk_level=risk_level,
                details=details,
            ))
