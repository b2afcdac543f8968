"""FastAPI application for the webhook gateway."""

from __future__ import annotations

import logging

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from agent_gateway.audit.logger import AuditLogger
from agent_gateway.config import GatewaySettings
from agent_gateway.credentials import (
    AgentKeyStore,
    CredentialCipher,
    CredentialDB,
    CredentialStore,
)
from agent_gateway.proxy.auth_middleware import AuthMiddleware
from agent_gateway.proxy.setup_routes import WEBHOOK_PATH, create_setup_router
from agent_gateway.webhook.auth import AuthenticationGate
from agent_gateway.webhook.classifier import EventClassifier
from agent_gateway.webhook.context import ContextBuilder
from agent_gateway.webhook.inflight import InFlightGuard
from agent_gateway.webhook.relay import GitLabWebhookPipeline
from agent_gateway.webhook.router import DispatchRouter, UnitResolver

logger = logging.getLogger(__name__)


def create_app_from_env() -> FastAPI:
    """Factory for uvicorn --factory: reads config from environment variables."""
    return create_app(GatewaySettings.from_env())


def build_stores(
    settings: GatewaySettings,
    audit_logger: AuditLogger | None = None,
) -> tuple[CredentialStore, AgentKeyStore]:
    """Open the credential database and return the project and agent stores over it."""
    db = CredentialDB(settings.db_path)
    cipher = CredentialCipher(settings.app_secret)
    store = CredentialStore(db, cipher, settings.group_match, audit_logger)
    return store, AgentKeyStore(db, cipher, audit_logger)


def create_app(
    settings: GatewaySettings,
    store: CredentialStore | None = None,
    agent_keys: AgentKeyStore | None = None,
    audit_logger: AuditLogger | None = None,
    unit_transport: httpx.AsyncBaseTransport | None = None,
    gitlab_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Create the gateway app: the GitLab webhook endpoint plus the admin API."""
    if audit_logger is None and settings.audit_log_path:
        audit_logger = AuditLogger.from_env(settings.audit_log_path)
    if store is None or agent_keys is None:
        store, agent_keys = build_stores(settings, audit_logger)

    router = DispatchRouter(
        UnitResolver(settings.unit_url_template),
        timeout_seconds=settings.dispatch_timeout_seconds,
        transport=unit_transport,
    )
    pipeline = GitLabWebhookPipeline(
        gate=AuthenticationGate(store),
        classifier=EventClassifier(settings.classifier),
        builder=ContextBuilder(store, agent_keys),
        router=router,
        inflight=InFlightGuard(settings.inflight_ttl_seconds),
        platform=settings.platform,
        mirror_errors=settings.mirror_errors,
        audit_logger=audit_logger,
        gitlab_transport=gitlab_transport,
    )

    app = FastAPI(docs_url=None, redoc_url=None)
    app.state.pipeline = pipeline

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post(WEBHOOK_PATH)
    async def gitlab_webhook(request: Request) -> JSONResponse:
        headers = {key.lower(): value for key, value in request.headers.items()}
        body = await request.body()
        source_ip = request.client.host if request.client else None
        try:
            result = await pipeline.handle(headers, body, source_ip)
        except Exception:
            logger.exception("Unhandled error processing GitLab webhook")
            return JSONResponse(
                {"message": "Internal error", "error": "Internal server error"},
                status_code=500,
            )
        return JSONResponse(result.to_body(), status_code=result.status_code)

    app.include_router(create_setup_router(store, agent_keys, gitlab_transport=gitlab_transport))

    app.add_middleware(
        AuthMiddleware,
        token=settings.admin_token,
        audit_logger=audit_logger,
        webhook_paths=frozenset({WEBHOOK_PATH}),
    )

    return app
