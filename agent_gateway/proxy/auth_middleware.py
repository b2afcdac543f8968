"""ASGI middleware protecting the administrative surface with a bearer token."""

from __future__ import annotations

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from agent_gateway.audit.logger import AuditLogger
from agent_gateway.models import AuditEvent, AuditEventType, RiskLevel
from agent_gateway.webhook.auth import constant_time_equals

PUBLIC_PATHS = frozenset({"/health"})


class AuthMiddleware:
    """Requires ``Authorization: Bearer <admin token>`` on every non-public path.

    Webhook paths carry their own proof of origin and are passed through.
    """

    def __init__(
        self,
        app: ASGIApp,
        token: str,
        audit_logger: AuditLogger | None = None,
        webhook_paths: frozenset[str] = frozenset(),
    ) -> None:
        self.app = app
        self._token = token
        self.audit_logger = audit_logger
        self._open_paths = PUBLIC_PATHS | webhook_paths

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        if request.url.path.rstrip("/") in self._open_paths:
            await self.app(scope, receive, send)
            return

        auth_header = request.headers.get("authorization", "")
        if not auth_header.startswith("Bearer "):
            reason = "missing_token" if not auth_header else "invalid_format"
            self._log_failure(request, reason)
            response = JSONResponse({"error": "Authentication required"}, status_code=401)
            await response(scope, receive, send)
            return

        if not constant_time_equals(auth_header[7:], self._token):
            self._log_failure(request, "invalid_token")
            response = JSONResponse({"error": "Access denied"}, status_code=403)
            await response(scope, receive, send)
            return

        await self.app(scope, receive, send)

    def _log_failure(self, request: Request, reason: str) -> None:
        if self.audit_logger:
            self.audit_logger.log(AuditEvent(
                event_type=AuditEventType.ADMIN_AUTH_FAILURE,
                source_ip=request.client.host if request.client else None,
                action=f"{request.method} {request.url.path}",
                result="failure",
                risk_level=RiskLevel.HIGH,
                details={"reason": reason},
            ))
